# kernel.py
# ReAct orchestrator.
#
# AgentKernel.execute() drives one run:
#
#   seed history (system + catalog, prior turns, user request)
#   START
#   while not terminal:
#       termination check        -> STOP_* and stop
#       THINKING: LLM call, parse, record  -> THINK_DONE_WITH_TOOLS | THINK_DONE_NO_TOOLS
#       ACTING:   run pending tool calls   -> ACT_DONE | TOOL_TERMINATE
#
# A kernel instance holds no per-run state and can serve many conversations
# at once. Everything a run mutates lives on its ExecutionContext and the
# local _Run object. The two suspension points are the LLM call and the tool
# invocation; nothing is locked across either.
#
# RemoteToolAgent wraps a kernel with a RemoteToolWatcher per run.

import json
import logging
import time
from datetime import datetime, timezone

from agent_kernel.errors import FatalError, KernelError, ProtocolParseError
from agent_kernel.execution import ToolExecutionService
from agent_kernel.filtering import TERMINATE_TOOL, ToolFilter
from agent_kernel.llm import LLMClient
from agent_kernel.models import (
    AgentResult,
    AssistantTurn,
    ExecutionContext,
    Phase,
    StepRecord,
    TerminationReason,
    ToolCall,
    ToolCallRecord,
    ToolExecutionResult,
)
from agent_kernel.protocol import FinalAction, NoneAction, ToolAction, parse_step
from agent_kernel.remote import RemoteToolSourceManager, RemoteToolWatcher
from agent_kernel.state import AgentEvent, AgentState, StateMachine
from agent_kernel.termination import TerminationPolicy

logger = logging.getLogger(__name__)

NO_ACTION_PROMPT = (
    "Your last response contained no action. Respond with exactly one JSON object "
    'whose action is a "tool" call or a "final" answer.'
)
SOURCES_LOST_ANSWER = "Remote tool sources are unavailable - agent terminated."

_SUMMARY_LEN = 200


def _summary(text: str | None) -> str | None:
    if text is None:
        return None
    text = text.strip()
    if len(text) > _SUMMARY_LEN:
        return text[:_SUMMARY_LEN] + "…"
    return text


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _call_records(calls: list[ToolCall]) -> tuple[ToolCallRecord, ...]:
    return tuple(ToolCallRecord(id=c.id, name=c.name, arguments=c.arguments) for c in calls)


def observation_turn(call: ToolCall, result: ToolExecutionResult, native: bool) -> dict:
    """History entry that shows one tool result to the model."""
    if native:
        content = result.result if result.success else f"Error: {result.error}"
        return {"role": "tool", "tool_call_id": call.id, "content": content or ""}

    body: dict = {"tool": call.name, "ok": result.success}
    if result.success:
        body["result"] = result.result
    else:
        body["error"] = result.error
    return {"role": "user", "content": json.dumps({"observation": body}, ensure_ascii=False)}


def _native_assistant_turn(turn: AssistantTurn) -> dict:
    return {
        "role": "assistant",
        "content": turn.content or None,
        "tool_calls": [
            {
                "id": c.id,
                "type": "function",
                "function": {"name": c.name, "arguments": c.arguments},
            }
            for c in turn.tool_calls
        ],
    }


class _Run:
    """Mutable state of one execute() call."""

    def __init__(self, ctx: ExecutionContext, history: list[dict], watcher: RemoteToolWatcher | None) -> None:
        self.ctx = ctx
        self.history = history
        self.watcher = watcher
        self.machine = StateMachine(ctx.conversation_id)
        self.pending: list[ToolCall] = []
        self.native = False
        self.thinks = 0
        self.user_index = 0

    def send(self, event: AgentEvent) -> bool:
        accepted = self.machine.send(event)
        self.ctx.current_state = self.machine.state
        return accepted

    def appended_messages(self) -> list[dict]:
        return list(self.history[self.user_index:])


class AgentKernel:
    def __init__(
        self,
        llm: LLMClient,
        tool_filter: ToolFilter,
        executor: ToolExecutionService,
        policy: TerminationPolicy | None = None,
        native_tools: bool = False,
    ) -> None:
        self._llm = llm
        self._filter = tool_filter
        self._executor = executor
        self._policy = policy or TerminationPolicy()
        self._native_tools = native_tools

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def execute(
        self,
        ctx: ExecutionContext,
        history: list[dict] | None = None,
        watcher: RemoteToolWatcher | None = None,
    ) -> AgentResult:
        """
        Run the loop to a terminal state and return the result.

        `history` holds prior conversation turns (no system prompt); they are
        placed between the system context and the new user request. The
        result's `messages` are the turns appended by this run, starting with
        the user request.
        """
        run = _Run(ctx, self._seed_history(ctx, history or []), watcher)
        run.user_index = len(run.history) - 1

        logger.info(
            "Run started: trace=%s conversation=%s max_steps=%d",
            ctx.trace_id, ctx.conversation_id, ctx.max_steps,
        )
        run.send(AgentEvent.START)

        while not run.machine.is_terminal:
            stop = self._policy.check_termination(ctx)
            if stop is not None:
                logger.info(
                    "Termination triggered: %s at step %d (conversation=%s)",
                    ctx.termination_reason.value, ctx.step_counter, ctx.conversation_id,
                )
                run.send(stop)
                break

            phase = Phase.THINK if run.machine.state is AgentState.THINKING else Phase.ACT
            start = time.monotonic()
            try:
                if phase is Phase.THINK:
                    await self._think(run, start)
                else:
                    await self._act(run, start)
            except Exception as exc:
                return self._fail(run, phase, exc, start)

        return self._finish(run)

    def _seed_history(self, ctx: ExecutionContext, prior: list[dict]) -> list[dict]:
        catalog = self._filter.build_catalog_prompt(ctx)
        system = f"{ctx.system_prompt}\n\n{catalog}" if ctx.system_prompt else catalog
        history = [{"role": "system", "content": system}]
        history.extend(prior)
        history.append({"role": "user", "content": ctx.user_request})
        return history

    # ------------------------------------------------------------------
    # Think phase
    # ------------------------------------------------------------------

    async def _think(self, run: _Run, start: float) -> None:
        ctx = run.ctx
        step = ctx.increment_step()

        if run.watcher is not None:
            await run.watcher.before_think(ctx, run.history)
        if run.thinks > 0 and ctx.next_step_prompt:
            run.history.append({"role": "user", "content": ctx.next_step_prompt})
        run.thinks += 1

        tools = self._filter.allowed_definitions(ctx)
        logger.debug("Think step %d: %d tool(s) visible", step, len(tools))
        turn = await self._llm.complete(list(run.history), tools, ctx.tool_choice)

        if turn.tool_calls:
            self._accept_native_calls(run, turn)
        elif not turn.content.strip():
            logger.warning("Empty model response at step %d", step)
            self._no_action(run, None)
        elif self._native_tools or run.native:
            self._accept_native_text(run, turn.content)
        else:
            self._accept_protocol_step(run, turn.content)

        ctx.add_step_record(
            StepRecord(
                step_number=step,
                phase=Phase.THINK,
                prompt_summary=_summary(turn.content) or _summary(", ".join(c.name for c in turn.tool_calls)),
                tool_calls=_call_records(run.pending),
                duration_ms=_elapsed_ms(start),
            )
        )

    def _accept_native_calls(self, run: _Run, turn: AssistantTurn) -> None:
        self._policy.record_response(run.ctx, turn.content, turn.tool_calls)
        run.history.append(_native_assistant_turn(turn))
        run.pending = list(turn.tool_calls)
        run.native = True
        run.send(AgentEvent.THINK_DONE_WITH_TOOLS)

    def _accept_native_text(self, run: _Run, text: str) -> None:
        """Plain text with no tool calls is the answer, unless it is a protocol step."""
        try:
            parse_step(text)
        except ProtocolParseError:
            pass
        else:
            self._accept_protocol_step(run, text)
            return

        ctx = run.ctx
        self._policy.record_response(ctx, text, [])
        run.history.append({"role": "assistant", "content": text})
        ctx.last_assistant_content = text
        ctx.final_answer = text
        run.pending = []
        run.send(AgentEvent.THINK_DONE_NO_TOOLS)

    def _accept_protocol_step(self, run: _Run, text: str) -> None:
        ctx = run.ctx
        step = parse_step(text)
        run.history.append({"role": "assistant", "content": text})
        action = step.action

        if isinstance(action, NoneAction):
            self._no_action(run, text)
            return

        if isinstance(action, ToolAction):
            call = ToolCall(name=action.name, arguments=json.dumps(action.args, ensure_ascii=False))
            self._policy.record_response(ctx, text, [call])
            ctx.last_assistant_content = step.thought or text
            run.pending = [call]
            run.native = False
            run.send(AgentEvent.THINK_DONE_WITH_TOOLS)
            return

        if isinstance(action, FinalAction):
            self._policy.record_response(ctx, text, [])
            ctx.last_assistant_content = action.answer
            ctx.final_answer = action.answer
            run.pending = []
            run.send(AgentEvent.THINK_DONE_NO_TOOLS)

    def _no_action(self, run: _Run, text: str | None) -> None:
        # Counted as an empty response; the termination policy bounds the retries.
        self._policy.record_response(run.ctx, None, [])
        if text is not None:
            run.ctx.last_assistant_content = text
        run.pending = []
        run.history.append({"role": "user", "content": NO_ACTION_PROMPT})

    # ------------------------------------------------------------------
    # Act phase
    # ------------------------------------------------------------------

    async def _act(self, run: _Run, start: float) -> None:
        ctx = run.ctx
        calls = run.pending
        terminate = next((c for c in calls if c.name == TERMINATE_TOOL), None)
        if terminate is not None:
            calls = [terminate]

        results: list[ToolExecutionResult] = []
        for call in calls:
            if call.name != TERMINATE_TOOL and not self._filter.is_allowed(call.name, ctx):
                logger.warning("Tool %s is not available in this run", call.name)
                result = ToolExecutionResult(
                    tool_name=call.name,
                    arguments=call.arguments,
                    success=False,
                    error=f"Tool not available: {call.name}",
                )
            else:
                result = await self._executor.invoke(call.name, call.arguments)
            results.append(result)
            run.history.append(observation_turn(call, result, run.native))

        run.pending = []
        ctx.add_step_record(
            StepRecord(
                step_number=ctx.step_counter,
                phase=Phase.ACT,
                prompt_summary=_summary(", ".join(c.name for c in calls)),
                tool_calls=_call_records(calls),
                tool_results=tuple(r.to_record(c.id) for c, r in zip(calls, results)),
                duration_ms=_elapsed_ms(start),
            )
        )

        if terminate is not None:
            ctx.final_answer = _terminate_answer(terminate) or ctx.last_assistant_content
            ctx.termination_reason = TerminationReason.TOOL_TERMINATE
            run.send(AgentEvent.TOOL_TERMINATE)
            return

        if run.watcher is not None and run.watcher.sources_lost():
            logger.error("All enabled remote sources lost (conversation=%s)", ctx.conversation_id)
            ctx.final_answer = SOURCES_LOST_ANSWER
            ctx.termination_reason = TerminationReason.TOOL_TERMINATE
            run.send(AgentEvent.TOOL_TERMINATE)
            return

        run.send(AgentEvent.ACT_DONE)

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def _fail(self, run: _Run, phase: Phase, exc: Exception, start: float) -> AgentResult:
        ctx = run.ctx
        if not isinstance(exc, KernelError):
            wrapped = FatalError(f"{type(exc).__name__}: {exc}")
            wrapped.__cause__ = exc
            exc = wrapped
        error = str(exc)
        logger.error(
            "%s phase failed at step %d [%s]: %s (conversation=%s)",
            phase.value, ctx.step_counter, exc.code, error, ctx.conversation_id,
            exc_info=exc.__cause__ or exc,
        )

        ctx.add_step_record(
            StepRecord(
                step_number=ctx.step_counter,
                phase=phase,
                prompt_summary=_summary(getattr(exc, "original_text", None)),
                tool_calls=_call_records(run.pending),
                duration_ms=_elapsed_ms(start),
                error=error,
            )
        )
        run.send(AgentEvent.FAIL)
        ctx.termination_reason = TerminationReason.ERROR
        ctx.end_time = datetime.now(timezone.utc)
        return AgentResult.failure(ctx, error, run.appended_messages())

    def _finish(self, run: _Run) -> AgentResult:
        ctx = run.ctx
        if ctx.final_answer is None:
            ctx.final_answer = ctx.last_assistant_content
        if ctx.termination_reason is None:
            ctx.termination_reason = TerminationReason.COMPLETED
        ctx.end_time = datetime.now(timezone.utc)

        logger.info(
            "Run finished: trace=%s reason=%s steps=%d",
            ctx.trace_id, ctx.termination_reason.value, ctx.step_counter,
        )
        return AgentResult.from_context(ctx, run.appended_messages())


def _terminate_answer(call: ToolCall) -> str | None:
    try:
        args = json.loads(call.arguments or "{}")
    except json.JSONDecodeError:
        return None
    if isinstance(args, dict) and args.get("answer") is not None:
        return str(args["answer"])
    return None


# ---------------------------------------------------------------------------
# Remote-aware wrapper
# ---------------------------------------------------------------------------


class RemoteToolAgent:
    """Runs the kernel with a fresh RemoteToolWatcher for every request."""

    def __init__(self, kernel: AgentKernel, manager: RemoteToolSourceManager, refresh_every: int = 5) -> None:
        self._kernel = kernel
        self._manager = manager
        self._refresh_every = refresh_every

    def watcher_for(self, ctx: ExecutionContext) -> RemoteToolWatcher:
        return RemoteToolWatcher(
            self._manager,
            self._manager.registry,
            self._manager.namespace,
            enabled_source_ids=ctx.enabled_source_ids,
            refresh_every=self._refresh_every,
        )

    async def execute(self, ctx: ExecutionContext, history: list[dict] | None = None) -> AgentResult:
        return await self._kernel.execute(ctx, history, self.watcher_for(ctx))
