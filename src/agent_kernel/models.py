# models.py
# Data contracts for the ReAct execution kernel.
# No business logic lives here: schema, validation and small accessors only.

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from agent_kernel.state import AgentState


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class TerminationReason(str, Enum):
    COMPLETED = "COMPLETED"
    MAX_STEPS = "MAX_STEPS"
    EMPTY_RESPONSE = "EMPTY_RESPONSE"
    DUPLICATE_RESPONSE = "DUPLICATE_RESPONSE"
    TOOL_TERMINATE = "TOOL_TERMINATE"
    ERROR = "ERROR"


class ToolChoice(str, Enum):
    AUTO = "auto"
    REQUIRED = "required"
    NONE = "none"


class Phase(str, Enum):
    THINK = "THINK"
    ACT = "ACT"


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


class ToolDefinition(BaseModel):
    """What the model sees of a tool. The invocable handle lives in the registry."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Dispatch name, unique after namespacing.")
    description: str = Field(default="", description="Human-readable purpose of the tool.")
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        description="JSON Schema of the argument object.",
    )


class ToolCall(BaseModel):
    """A single decided tool invocation. `arguments` is a JSON object string."""

    id: str = Field(default_factory=lambda: f"call-{uuid.uuid4().hex[:12]}")
    name: str
    arguments: str = "{}"


class ToolExecutionResult(BaseModel):
    tool_name: str
    arguments: str
    result: str | None = None
    success: bool
    error: str | None = None
    duration_ms: int = 0
    timestamp: datetime = Field(default_factory=_now)

    def to_record(self, tool_call_id: str) -> "ToolResultRecord":
        return ToolResultRecord(
            tool_call_id=tool_call_id,
            tool_name=self.tool_name,
            result=self.result,
            success=self.success,
            error=self.error,
        )


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


class ToolCallRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    arguments: str


class ToolResultRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    tool_call_id: str
    tool_name: str
    result: str | None = None
    success: bool
    error: str | None = None


class StepRecord(BaseModel):
    """Immutable log entry produced on every loop iteration, success or not."""

    model_config = ConfigDict(frozen=True)

    step_number: int
    phase: Phase
    prompt_summary: str | None = None
    tool_calls: tuple[ToolCallRecord, ...] = ()
    tool_results: tuple[ToolResultRecord, ...] = ()
    duration_ms: int = 0
    error: str | None = None
    timestamp: datetime = Field(default_factory=_now)


# ---------------------------------------------------------------------------
# LLM boundary
# ---------------------------------------------------------------------------


class AssistantTurn(BaseModel):
    """What the LLM client hands back: free text plus optional native tool calls."""

    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Run context and result
# ---------------------------------------------------------------------------


class ExecutionContext(BaseModel):
    """
    One per agent run. Owned exclusively by the orchestration that runs it.

    The termination policy reads and writes the streak counters; the kernel
    owns everything else.
    """

    conversation_id: str = Field(default_factory=_new_id)
    trace_id: str = Field(default_factory=_new_id)
    user_request: str = ""

    step_counter: int = 0
    max_steps: int = Field(default=15, ge=1)
    current_state: AgentState = AgentState.IDLE

    last_assistant_content: str | None = None
    last_action_signature: str | None = None
    empty_response_count: int = 0
    duplicate_response_count: int = 0
    empty_threshold: int = Field(default=2, ge=1)
    duplicate_threshold: int = Field(default=3, ge=1)

    enabled_source_ids: list[str] = Field(default_factory=list)
    knowledge_enabled: bool = False
    tool_choice: ToolChoice = ToolChoice.AUTO
    system_prompt: str | None = None
    next_step_prompt: str | None = None

    final_answer: str | None = None
    termination_reason: TerminationReason | None = None
    step_records: list[StepRecord] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    start_time: datetime = Field(default_factory=_now)
    end_time: datetime | None = None

    def increment_step(self) -> int:
        self.step_counter += 1
        return self.step_counter

    def add_step_record(self, record: StepRecord) -> None:
        self.step_records.append(record)


class AgentResult(BaseModel):
    """Returned for every run. Partial progress is always included."""

    trace_id: str
    conversation_id: str
    final_state: AgentState
    success: bool
    answer: str | None = None
    termination_reason: TerminationReason | None = None
    total_steps: int = 0
    total_duration_ms: int = 0
    step_records: list[StepRecord] = Field(default_factory=list)
    messages: list[dict[str, Any]] = Field(
        default_factory=list,
        description="Turns appended during the run, starting with the user request.",
    )
    error: str | None = None
    start_time: datetime
    end_time: datetime

    @classmethod
    def from_context(cls, ctx: ExecutionContext, messages: list[dict] | None = None) -> "AgentResult":
        end = ctx.end_time or _now()
        return cls(
            trace_id=ctx.trace_id,
            conversation_id=ctx.conversation_id,
            final_state=ctx.current_state,
            success=ctx.current_state == AgentState.FINISHED,
            answer=ctx.final_answer,
            termination_reason=ctx.termination_reason,
            total_steps=ctx.step_counter,
            total_duration_ms=int((end - ctx.start_time).total_seconds() * 1000),
            step_records=list(ctx.step_records),
            messages=list(messages or []),
            start_time=ctx.start_time,
            end_time=end,
        )

    @classmethod
    def failure(
        cls, ctx: ExecutionContext, error: str, messages: list[dict] | None = None
    ) -> "AgentResult":
        end = ctx.end_time or _now()
        return cls(
            trace_id=ctx.trace_id,
            conversation_id=ctx.conversation_id,
            final_state=AgentState.ERROR,
            success=False,
            answer=ctx.final_answer,
            termination_reason=TerminationReason.ERROR,
            total_steps=ctx.step_counter,
            total_duration_ms=int((end - ctx.start_time).total_seconds() * 1000),
            step_records=list(ctx.step_records),
            messages=list(messages or []),
            error=error,
            start_time=ctx.start_time,
            end_time=end,
        )
