# config.py
# Settings: environment (.env supported) plus an optional JSON file listing
# remote tool sources. Values are read once by KernelSettings.from_env().

import json
import os
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from agent_kernel.models import ToolChoice

load_dotenv()

DEFAULT_SYSTEM_PROMPT = "You are an intelligent AI agent. Solve the user's task step by step."
DEFAULT_NEXT_STEP_PROMPT = "What is the next step to take?"


class RemoteSourceConfig(BaseModel):
    """One external tool provider."""

    id: str = Field(..., min_length=1)
    enabled: bool = True
    transport: Literal["sse", "stdio"] = "sse"
    url: str | None = Field(default=None, description="SSE endpoint, e.g. http://localhost:8000/sse")
    command: str | None = Field(default=None, description="Executable for the stdio transport.")
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _transport_target(self) -> "RemoteSourceConfig":
        if self.transport == "sse" and not self.url:
            raise ValueError(f"Remote source {self.id!r}: sse transport requires 'url'.")
        if self.transport == "stdio" and not self.command:
            raise ValueError(f"Remote source {self.id!r}: stdio transport requires 'command'.")
        return self


class KernelSettings(BaseModel):
    model: str = "anthropic/claude-3.5-haiku"
    base_url: str = "https://openrouter.ai/api/v1"
    api_key: str | None = None
    native_tools: bool = False

    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    next_step_prompt: str = DEFAULT_NEXT_STEP_PROMPT
    max_steps: int = Field(default=15, ge=1)
    duplicate_threshold: int = Field(default=3, ge=1)
    empty_threshold: int = Field(default=2, ge=1)
    tool_choice: ToolChoice = ToolChoice.AUTO

    tool_separator: str = Field(default="__", min_length=1)
    namespace_enabled: bool = True
    refresh_every_steps: int = Field(default=5, ge=1)
    history_window: int = Field(default=50, ge=0)

    database_url: str = "sqlite+aiosqlite:///agent_kernel.db"
    workspace: str = "./workspace"
    remote_sources: list[RemoteSourceConfig] = Field(default_factory=list)

    @classmethod
    def from_env(cls) -> "KernelSettings":
        """Build settings from AGENT_* environment variables. Unset keys keep defaults."""
        mapping = {
            "model": "AGENT_MODEL",
            "base_url": "AGENT_BASE_URL",
            "api_key": "OPENROUTER_API_KEY",
            "native_tools": "AGENT_NATIVE_TOOLS",
            "system_prompt": "AGENT_SYSTEM_PROMPT",
            "next_step_prompt": "AGENT_NEXT_STEP_PROMPT",
            "max_steps": "AGENT_MAX_STEPS",
            "duplicate_threshold": "AGENT_DUPLICATE_THRESHOLD",
            "empty_threshold": "AGENT_EMPTY_THRESHOLD",
            "tool_choice": "AGENT_TOOL_CHOICE",
            "tool_separator": "AGENT_TOOL_SEPARATOR",
            "namespace_enabled": "AGENT_NAMESPACE_ENABLED",
            "refresh_every_steps": "AGENT_REFRESH_EVERY_STEPS",
            "history_window": "AGENT_HISTORY_WINDOW",
            "database_url": "AGENT_DATABASE_URL",
            "workspace": "AGENT_WORKSPACE",
        }
        values: dict = {}
        for field, env_var in mapping.items():
            raw = os.getenv(env_var)
            if raw is not None and raw != "":
                values[field] = raw

        sources_file = os.getenv("AGENT_REMOTE_SOURCES")
        if sources_file:
            values["remote_sources"] = load_remote_sources(Path(sources_file))

        # pydantic coerces "15" -> 15 and "true" -> True; bad values raise ValidationError.
        return cls.model_validate(values)


def load_remote_sources(path: Path) -> list[RemoteSourceConfig]:
    """
    Read remote source definitions from a JSON file.

    Accepts either a list of source objects or {"sources": [...]}.
    """
    with open(path, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    if isinstance(data, dict):
        data = data.get("sources", [])
    return [RemoteSourceConfig.model_validate(item) for item in data]
