from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from agent_kernel.llm import OpenAIChatClient, to_openai_tool
from agent_kernel.models import ToolChoice, ToolDefinition

ECHO = ToolDefinition(name="echo", description="Echo", input_schema={"type": "object", "properties": {}})


def _client(message):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(
        return_value=SimpleNamespace(choices=[SimpleNamespace(message=message)])
    )
    return client


def test_to_openai_tool():
    assert to_openai_tool(ECHO) == {
        "type": "function",
        "function": {"name": "echo", "description": "Echo", "parameters": {"type": "object", "properties": {}}},
    }

@pytest.mark.asyncio
async def test_protocol_mode_sends_no_tools():
    raw = _client(SimpleNamespace(content='  {"thought": "t"}  ', tool_calls=None))
    llm = OpenAIChatClient("m", client=raw)

    turn = await llm.complete([{"role": "user", "content": "hi"}], [ECHO], ToolChoice.AUTO)

    assert turn.content == '{"thought": "t"}'
    assert turn.tool_calls == []
    kwargs = raw.chat.completions.create.await_args.kwargs
    assert kwargs == {"model": "m", "messages": [{"role": "user", "content": "hi"}]}

@pytest.mark.asyncio
async def test_native_mode_parses_tool_calls():
    call = SimpleNamespace(id="c1", function=SimpleNamespace(name="echo", arguments='{"message": "x"}'))
    raw = _client(SimpleNamespace(content=None, tool_calls=[call]))
    llm = OpenAIChatClient("m", native_tools=True, client=raw)

    turn = await llm.complete([], [ECHO], ToolChoice.REQUIRED)

    assert turn.content == ""
    assert turn.tool_calls[0].id == "c1"
    assert turn.tool_calls[0].arguments == '{"message": "x"}'
    kwargs = raw.chat.completions.create.await_args.kwargs
    assert kwargs["tool_choice"] == "required"
    assert kwargs["tools"][0]["function"]["name"] == "echo"

@pytest.mark.asyncio
async def test_native_mode_respects_tool_choice_none():
    raw = _client(SimpleNamespace(content="ok", tool_calls=None))
    llm = OpenAIChatClient("m", native_tools=True, client=raw)
    await llm.complete([], [ECHO], ToolChoice.NONE)
    assert "tools" not in raw.chat.completions.create.await_args.kwargs
