# termination.py
# Loop safety: max steps, empty-response streaks, duplicate-response streaks.
#
# Checks run in fixed priority order and the first match wins, so exactly one
# termination reason is ever recorded.

import hashlib
import logging
from collections.abc import Iterable

from agent_kernel.models import ExecutionContext, TerminationReason, ToolCall, ToolCallRecord
from agent_kernel.state import AgentEvent

logger = logging.getLogger(__name__)

EMPTY_SIGNATURE = "EMPTY"


def _sha256(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def compute_signature(content: str | None, tool_calls: Iterable[ToolCall | ToolCallRecord] | None) -> str:
    """
    Canonical fingerprint of one assistant response.

    Tool calls become `name:arguments` pairs, sorted so that ordering from the
    model does not matter, then joined with the trimmed text before hashing.
    """
    parts: list[str] = []

    text = (content or "").strip()
    if text:
        parts.append(f"content:{text}")

    calls = sorted(f"{call.name}:{call.arguments}" for call in (tool_calls or ()))
    if calls:
        parts.append("tools:" + "|".join(calls))

    if not parts:
        return EMPTY_SIGNATURE
    return _sha256("".join(parts))


class TerminationPolicy:
    """Stateless object; all state lives on the ExecutionContext it is given."""

    def check_termination(self, ctx: ExecutionContext) -> AgentEvent | None:
        if ctx.step_counter >= ctx.max_steps:
            ctx.termination_reason = TerminationReason.MAX_STEPS
            return AgentEvent.STOP_MAX_STEPS

        if ctx.empty_response_count >= ctx.empty_threshold:
            ctx.termination_reason = TerminationReason.EMPTY_RESPONSE
            return AgentEvent.STOP_EMPTY

        if ctx.duplicate_response_count >= ctx.duplicate_threshold:
            ctx.termination_reason = TerminationReason.DUPLICATE_RESPONSE
            return AgentEvent.STOP_DUPLICATE

        return None

    def record_response(
        self,
        ctx: ExecutionContext,
        content: str | None,
        tool_calls: Iterable[ToolCall | ToolCallRecord] | None,
    ) -> None:
        calls = list(tool_calls or ())
        signature = compute_signature(content, calls)

        if signature == ctx.last_action_signature:
            ctx.duplicate_response_count += 1
        else:
            ctx.duplicate_response_count = 0

        ctx.last_action_signature = signature
        ctx.last_assistant_content = content

        if not (content or "").strip() and not calls:
            self.record_empty_response(ctx)
        else:
            ctx.empty_response_count = 0

        logger.debug(
            "Recorded response: empty_streak=%d duplicate_streak=%d",
            ctx.empty_response_count, ctx.duplicate_response_count,
        )

    def record_empty_response(self, ctx: ExecutionContext) -> None:
        """Count a turn that carried no usable action (blank output, or action type none)."""
        ctx.empty_response_count += 1

    def reset(self, ctx: ExecutionContext) -> None:
        ctx.empty_response_count = 0
        ctx.duplicate_response_count = 0
        ctx.last_assistant_content = None
        ctx.last_action_signature = None
