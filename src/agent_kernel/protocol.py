# protocol.py
# Think-phase wire protocol.
#
# Every think turn must be a single JSON object:
#
#   {"thought": "<string>", "action": {"type": "tool",  "name": "<string>", "args": {...}}}
#   {"thought": "<string>", "action": {"type": "final", "answer": "<string>"}}
#   {"thought": "<string>", "action": {"type": "none"}}
#
# Models wrap JSON in prose and code fences, so extraction is tolerant; the
# structure itself is validated strictly. Nothing here guesses at intent.

import json
import logging
import re
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from agent_kernel.errors import ProtocolParseError

logger = logging.getLogger(__name__)

_CODE_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Wire model
# ---------------------------------------------------------------------------


class ToolAction(BaseModel):
    type: Literal["tool"] = "tool"
    name: str
    args: dict[str, Any]

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Tool name is required for action type 'tool'")
        return value


class FinalAction(BaseModel):
    type: Literal["final"] = "final"
    answer: str


class NoneAction(BaseModel):
    type: Literal["none"] = "none"


Action = Annotated[Union[ToolAction, FinalAction, NoneAction], Field(discriminator="type")]


class Step(BaseModel):
    """One think-phase decision."""

    thought: str = ""
    action: Action

    @model_validator(mode="before")
    @classmethod
    def _normalize_action_type(cls, data: Any) -> Any:
        # Tags are matched case-insensitively; "Tool" and "tool" mean the same thing.
        if isinstance(data, dict):
            action = data.get("action")
            if isinstance(action, dict) and isinstance(action.get("type"), str):
                data = {**data, "action": {**action, "type": action["type"].strip().lower()}}
        return data


# ---------------------------------------------------------------------------
# Extraction helpers
# ---------------------------------------------------------------------------


def _strip_code_fence(text: str) -> str:
    match = _CODE_BLOCK.search(text)
    if match:
        return match.group(1).strip()
    return text


def _balanced_object_at(text: str, start: int) -> str | None:
    """Return the brace-balanced span starting at text[start] == '{', string-aware."""
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start:index + 1]
    return None


def _load_object(candidate: str) -> dict | None:
    try:
        value = json.loads(candidate, strict=False)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def extract_json_object(text: str) -> dict | None:
    """
    Locate the first JSON object in `text`.

    Tries the whole (trimmed) text first, then every brace-balanced span in
    order of appearance. Returns None when nothing parses.
    """
    trimmed = text.strip()
    if trimmed.startswith("{") and trimmed.endswith("}"):
        whole = _load_object(trimmed)
        if whole is not None:
            return whole
        logger.debug("Text looks like JSON but does not parse; scanning for an embedded object")

    position = trimmed.find("{")
    while position != -1:
        span = _balanced_object_at(trimmed, position)
        if span is None:
            break
        value = _load_object(span)
        if value is not None:
            return value
        position = trimmed.find("{", position + 1)
    return None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def parse_step(text: str | None) -> Step:
    """
    Parse raw model output into a validated Step.

    Raises ProtocolParseError carrying the reason and the original text on any
    failure: empty input, no JSON object, or an invalid structure.
    """
    if text is None or not text.strip():
        raise ProtocolParseError("Model output is empty or null", text)

    cleaned = _strip_code_fence(text.strip())
    data = extract_json_object(cleaned)
    if data is None:
        raise ProtocolParseError("No valid JSON object found in model output", text)

    try:
        step = Step.model_validate(data)
    except ValidationError as exc:
        raise ProtocolParseError(f"JSON structure validation failed: {exc}", text) from exc

    logger.debug("Parsed step: type=%s, thought length=%d", step.action.type, len(step.thought))
    return step


def encode_step(step: Step) -> str:
    """Serialize a Step to its wire form."""
    return step.model_dump_json()
