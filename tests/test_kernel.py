import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from agent_kernel.execution import ToolExecutionService
from agent_kernel.filtering import ToolFilter
from agent_kernel.kernel import NO_ACTION_PROMPT, SOURCES_LOST_ANSWER, AgentKernel, RemoteToolAgent
from agent_kernel.models import AssistantTurn, ExecutionContext, Phase, TerminationReason, ToolCall
from agent_kernel.namespace import ToolNamespace
from agent_kernel.registry import Tool, ToolRegistry
from agent_kernel.remote import RemoteToolSourceManager
from agent_kernel.state import AgentState
from agent_kernel.tools import register_local_tools


def _say(payload: dict) -> AssistantTurn:
    return AssistantTurn(content=json.dumps(payload))


def _tool(name: str, args: dict, thought: str = "calling") -> AssistantTurn:
    return _say({"thought": thought, "action": {"type": "tool", "name": name, "args": args}})


def _final(answer: str) -> AssistantTurn:
    return _say({"thought": "finished", "action": {"type": "final", "answer": answer}})


NONE_TURN = _say({"thought": "x", "action": {"type": "none"}})


@pytest.fixture
def registry(tmp_path):
    reg = ToolRegistry()
    register_local_tools(reg, str(tmp_path))
    return reg


def _kernel(registry: ToolRegistry, *turns: AssistantTurn, side_effect=None):
    llm = MagicMock()
    llm.complete = AsyncMock(side_effect=side_effect if side_effect is not None else list(turns))
    tool_filter = ToolFilter(registry, ToolNamespace())
    return AgentKernel(llm, tool_filter, ToolExecutionService(registry)), llm


def _phases(result) -> list[Phase]:
    return [r.phase for r in result.step_records]

# ---------------------------------------------------------------------------
# End-to-end scenarios
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_echo_then_final(registry):
    kernel, llm = _kernel(registry, _tool("echo", {"message": "hi"}), _final("done"))
    ctx = ExecutionContext(user_request="say hi")

    result = await kernel.execute(ctx)

    assert result.success is True
    assert result.final_state is AgentState.FINISHED
    assert result.answer == "done"
    assert result.termination_reason is TerminationReason.COMPLETED
    assert _phases(result) == [Phase.THINK, Phase.ACT, Phase.THINK]
    assert result.total_steps == 2

    act = result.step_records[1]
    assert act.tool_calls[0].name == "echo"
    assert act.tool_results[0].result == "Echo: hi"
    assert act.tool_results[0].tool_call_id == act.tool_calls[0].id

    observation = json.loads(result.messages[2]["content"])
    assert observation == {"observation": {"tool": "echo", "ok": True, "result": "Echo: hi"}}
    assert result.messages[0] == {"role": "user", "content": "say hi"}
    assert llm.complete.await_count == 2

@pytest.mark.asyncio
async def test_repeated_none_stops_on_empty_streak(registry):
    kernel, llm = _kernel(registry, side_effect=lambda *a: NONE_TURN)
    ctx = ExecutionContext(max_steps=3, empty_threshold=2)

    result = await kernel.execute(ctx)

    assert result.termination_reason is TerminationReason.EMPTY_RESPONSE
    assert result.final_state is AgentState.FINISHED
    assert ctx.step_counter == 2
    assert llm.complete.await_count == 2
    assert _phases(result) == [Phase.THINK, Phase.THINK]
    assert result.messages.count({"role": "user", "content": NO_ACTION_PROMPT}) == 2

@pytest.mark.asyncio
async def test_blank_turns_count_as_empty(registry):
    kernel, _ = _kernel(registry, side_effect=lambda *a: AssistantTurn(content="  "))
    result = await kernel.execute(ExecutionContext(max_steps=10, empty_threshold=2))
    assert result.termination_reason is TerminationReason.EMPTY_RESPONSE
    assert result.total_steps == 2

@pytest.mark.asyncio
async def test_max_steps_bound(registry):
    counter = iter(range(100))
    kernel, _ = _kernel(registry, side_effect=lambda *a: _tool("echo", {"message": str(next(counter))}))
    ctx = ExecutionContext(max_steps=3)

    result = await kernel.execute(ctx)

    assert result.termination_reason is TerminationReason.MAX_STEPS
    assert result.final_state is AgentState.FINISHED
    assert ctx.step_counter == 3
    assert _phases(result) == [Phase.THINK, Phase.ACT] * 2 + [Phase.THINK]

    # The third decision is recorded but never executed.
    last = result.step_records[-1]
    assert [c.name for c in last.tool_calls] == ["echo"]
    assert json.loads(last.tool_calls[0].arguments) == {"message": "2"}
    assert last.tool_results == ()

@pytest.mark.asyncio
async def test_identical_responses_stop_on_duplicate_streak(registry):
    kernel, _ = _kernel(registry, side_effect=lambda *a: _tool("echo", {"message": "again"}))
    ctx = ExecutionContext(max_steps=10, duplicate_threshold=2)

    result = await kernel.execute(ctx)

    assert result.termination_reason is TerminationReason.DUPLICATE_RESPONSE
    assert ctx.step_counter == 3

@pytest.mark.asyncio
async def test_final_answer_without_tools(registry):
    kernel, _ = _kernel(registry, _final("42"))
    result = await kernel.execute(ExecutionContext(user_request="meaning?"))
    assert result.answer == "42"
    assert _phases(result) == [Phase.THINK]

# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_malformed_output_fails_the_run(registry):
    kernel, _ = _kernel(registry, AssistantTurn(content="I think I should search."))

    result = await kernel.execute(ExecutionContext())

    assert result.success is False
    assert result.final_state is AgentState.ERROR
    assert result.termination_reason is TerminationReason.ERROR
    assert "No valid JSON" in result.error
    assert len(result.step_records) == 1
    assert result.step_records[0].error == result.error
    assert result.step_records[0].prompt_summary == "I think I should search."

@pytest.mark.asyncio
async def test_llm_exception_keeps_partial_progress(registry):
    kernel, _ = _kernel(registry, side_effect=[_tool("echo", {"message": "a"}), RuntimeError("provider down")])

    result = await kernel.execute(ExecutionContext(user_request="go"))

    assert result.success is False
    assert result.error == "RuntimeError: provider down"
    assert _phases(result) == [Phase.THINK, Phase.ACT, Phase.THINK]
    assert result.step_records[-1].error == "RuntimeError: provider down"
    assert len(result.messages) == 3

@pytest.mark.asyncio
async def test_unknown_tool_is_observed_not_fatal(registry):
    kernel, _ = _kernel(registry, _tool("missing", {}), _final("recovered"))

    result = await kernel.execute(ExecutionContext())

    assert result.answer == "recovered"
    observation = json.loads(result.messages[2]["content"])["observation"]
    assert observation == {"tool": "missing", "ok": False, "error": "Tool not found: missing"}

@pytest.mark.asyncio
async def test_tool_from_disabled_source_is_refused(registry):
    invoked = AsyncMock(return_value="secret")
    registry.register(Tool(Tool.local("b__x", lambda a: "").definition, invoked))
    kernel, _ = _kernel(registry, _tool("b__x", {}), _final("ok"))

    result = await kernel.execute(ExecutionContext(enabled_source_ids=["a"]))

    invoked.assert_not_awaited()
    assert result.step_records[1].tool_results[0].error == "Tool not available: b__x"

# ---------------------------------------------------------------------------
# Native tool calls and terminate
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_native_tool_calls(registry):
    call = ToolCall(id="call-1", name="echo", arguments='{"message": "native"}')
    kernel, _ = _kernel(registry, AssistantTurn(tool_calls=[call]), _final("ok"))

    result = await kernel.execute(ExecutionContext())

    assert result.messages[1]["tool_calls"][0]["function"]["name"] == "echo"
    assert result.messages[2] == {"role": "tool", "tool_call_id": "call-1", "content": "Echo: native"}
    assert result.answer == "ok"

@pytest.mark.asyncio
async def test_native_text_after_tool_call_is_the_answer(registry):
    call = ToolCall(id="call-1", name="echo", arguments='{"message": "hi"}')
    reply = AssistantTurn(content="The echo tool returned: Echo: hi")
    kernel, _ = _kernel(registry, AssistantTurn(tool_calls=[call]), reply)

    result = await kernel.execute(ExecutionContext())

    assert result.success is True
    assert result.termination_reason is TerminationReason.COMPLETED
    assert result.answer == "The echo tool returned: Echo: hi"
    assert _phases(result) == [Phase.THINK, Phase.ACT, Phase.THINK]
    assert result.messages[-1] == {"role": "assistant", "content": "The echo tool returned: Echo: hi"}

@pytest.mark.asyncio
async def test_native_mode_accepts_plain_text_on_first_turn(registry):
    llm = MagicMock()
    llm.complete = AsyncMock(return_value=AssistantTurn(content="Paris."))
    kernel = AgentKernel(
        llm, ToolFilter(registry, ToolNamespace()), ToolExecutionService(registry), native_tools=True
    )

    result = await kernel.execute(ExecutionContext(user_request="Capital of France?"))

    assert result.success is True
    assert result.answer == "Paris."
    assert _phases(result) == [Phase.THINK]

@pytest.mark.asyncio
async def test_native_mode_still_accepts_protocol_steps(registry):
    llm = MagicMock()
    llm.complete = AsyncMock(return_value=_final("from json"))
    kernel = AgentKernel(
        llm, ToolFilter(registry, ToolNamespace()), ToolExecutionService(registry), native_tools=True
    )

    result = await kernel.execute(ExecutionContext())

    assert result.answer == "from json"

@pytest.mark.asyncio
async def test_native_terminate_takes_priority(registry):
    calls = [
        ToolCall(id="c1", name="echo", arguments='{"message": "ignored"}'),
        ToolCall(id="c2", name="terminate", arguments='{"answer": "bye"}'),
    ]
    kernel, llm = _kernel(registry, AssistantTurn(tool_calls=calls))

    result = await kernel.execute(ExecutionContext())

    assert result.answer == "bye"
    assert result.termination_reason is TerminationReason.TOOL_TERMINATE
    assert result.final_state is AgentState.FINISHED
    act = result.step_records[1]
    assert [c.name for c in act.tool_calls] == ["terminate"]
    assert llm.complete.await_count == 1

# ---------------------------------------------------------------------------
# History shaping
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_history_seeding_and_next_step_prompt(registry):
    kernel, llm = _kernel(registry, _tool("echo", {"message": "1"}), _final("done"))
    prior = [{"role": "user", "content": "earlier"}, {"role": "assistant", "content": "reply"}]
    ctx = ExecutionContext(user_request="now", system_prompt="Be brief.", next_step_prompt="Next?")

    await kernel.execute(ctx, history=prior)

    first = llm.complete.await_args_list[0].args[0]
    assert first[0]["role"] == "system"
    assert first[0]["content"].startswith("Be brief.")
    assert "AVAILABLE TOOLS" in first[0]["content"]
    assert first[1:] == prior + [{"role": "user", "content": "now"}]

    second = llm.complete.await_args_list[1].args[0]
    assert second[-1] == {"role": "user", "content": "Next?"}

@pytest.mark.asyncio
async def test_filtered_tools_are_passed_to_llm(registry):
    kernel, llm = _kernel(registry, _final("x"))
    await kernel.execute(ExecutionContext())
    tools = llm.complete.await_args_list[0].args[1]
    names = [d.name for d in tools]
    assert "terminate" not in names
    assert "echo" in names

# ---------------------------------------------------------------------------
# Remote sources
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_lost_sources_force_termination(registry):
    kernel, _ = _kernel(registry, _tool("echo", {"message": "x"}), _final("never"))
    watcher = MagicMock()
    watcher.before_think = AsyncMock()
    watcher.sources_lost.return_value = True

    result = await kernel.execute(ExecutionContext(enabled_source_ids=["weather"]), watcher=watcher)

    assert result.answer == SOURCES_LOST_ANSWER
    assert result.termination_reason is TerminationReason.TOOL_TERMINATE
    watcher.before_think.assert_awaited_once()

@pytest.mark.asyncio
async def test_remote_tool_agent_builds_watcher_per_run(registry):
    kernel = MagicMock()
    kernel.execute = AsyncMock(return_value="result")
    manager = RemoteToolSourceManager(registry, ToolNamespace())
    agent = RemoteToolAgent(kernel, manager, refresh_every=3)
    ctx = ExecutionContext(enabled_source_ids=["weather"])

    assert await agent.execute(ctx, []) == "result"

    watcher = kernel.execute.await_args.args[2]
    assert watcher is not agent.watcher_for(ctx)
    assert watcher.sources_lost() is True
