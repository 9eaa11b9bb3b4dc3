import pytest

from agent_kernel.errors import ProtocolParseError
from agent_kernel.protocol import (
    FinalAction,
    NoneAction,
    Step,
    ToolAction,
    encode_step,
    extract_json_object,
    parse_step,
)

# ---------------------------------------------------------------------------
# Tolerant extraction
# ---------------------------------------------------------------------------

def test_parse_plain_tool_action():
    step = parse_step('{"thought": "look it up", "action": {"type": "tool", "name": "search", "args": {"query": "x"}}}')
    assert step.thought == "look it up"
    assert isinstance(step.action, ToolAction)
    assert step.action.name == "search"
    assert step.action.args == {"query": "x"}

def test_parse_json_embedded_in_prose():
    text = 'Sure, here is my step:\n{"thought": "done", "action": {"type": "final", "answer": "42"}}\nHope that helps!'
    step = parse_step(text)
    assert isinstance(step.action, FinalAction)
    assert step.action.answer == "42"

def test_parse_fenced_code_block():
    text = '```json\n{"thought": "wait", "action": {"type": "none"}}\n```'
    step = parse_step(text)
    assert isinstance(step.action, NoneAction)

def test_parse_braces_inside_strings():
    text = 'prefix {"thought": "use {curly} braces", "action": {"type": "final", "answer": "a } b"}} suffix'
    step = parse_step(text)
    assert step.thought == "use {curly} braces"
    assert step.action.answer == "a } b"

def test_parse_skips_non_json_braces_before_object():
    text = 'Set {x} first. {"thought": "t", "action": {"type": "none"}}'
    assert isinstance(parse_step(text).action, NoneAction)

def test_action_type_is_case_insensitive():
    step = parse_step('{"thought": "", "action": {"type": "FINAL", "answer": "ok"}}')
    assert isinstance(step.action, FinalAction)

def test_tool_action_with_empty_args():
    step = parse_step('{"thought": "t", "action": {"type": "tool", "name": "get_current_time", "args": {}}}')
    assert step.action.args == {}

def test_extract_returns_none_without_object():
    assert extract_json_object("no json here") is None
    assert extract_json_object("[1, 2, 3]") is None

# ---------------------------------------------------------------------------
# Strict validation
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("text", ["", "   ", None])
def test_parse_rejects_empty_input(text):
    with pytest.raises(ProtocolParseError, match="empty"):
        parse_step(text)

def test_parse_rejects_text_without_balanced_object():
    with pytest.raises(ProtocolParseError) as exc_info:
        parse_step('I will call {"thought": "x", "action": ')
    assert exc_info.value.original_text == 'I will call {"thought": "x", "action": '
    assert "No valid JSON" in exc_info.value.reason

def test_parse_rejects_unknown_action_type():
    with pytest.raises(ProtocolParseError, match="validation failed"):
        parse_step('{"thought": "x", "action": {"type": "dance"}}')

def test_parse_rejects_tool_without_name():
    with pytest.raises(ProtocolParseError):
        parse_step('{"thought": "x", "action": {"type": "tool", "args": {}}}')

def test_parse_rejects_tool_with_blank_name():
    with pytest.raises(ProtocolParseError):
        parse_step('{"thought": "x", "action": {"type": "tool", "name": "  ", "args": {}}}')

def test_parse_rejects_tool_without_args():
    with pytest.raises(ProtocolParseError):
        parse_step('{"thought": "x", "action": {"type": "tool", "name": "echo"}}')

def test_parse_rejects_final_without_answer():
    with pytest.raises(ProtocolParseError):
        parse_step('{"thought": "x", "action": {"type": "final"}}')

def test_parse_rejects_missing_action():
    with pytest.raises(ProtocolParseError):
        parse_step('{"thought": "only thinking"}')

# ---------------------------------------------------------------------------
# Wire form
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "step",
    [
        Step(thought="call", action=ToolAction(name="echo", args={"message": "hi", "n": [1, 2]})),
        Step(thought="finish", action=FinalAction(answer="done")),
        Step(thought="", action=NoneAction()),
    ],
)
def test_encode_then_parse_preserves_step(step):
    assert parse_step(encode_step(step)) == step
