import asyncio
from unittest.mock import MagicMock, patch

import httpx
import pytest

from agent_kernel.errors import ToolExecutionError
from agent_kernel.registry import ToolRegistry
from agent_kernel.tools import (
    _tool_current_time,
    _tool_echo,
    _tool_file_write,
    _tool_http_post,
    _tool_search,
    _tool_summarize,
    local_tools,
    register_local_tools,
)

# ---------------------------------------------------------------------------
# Generator/API Handling Tests
# ---------------------------------------------------------------------------

@patch("ddgs.DDGS")
def test_tool_search_success(mock_ddgs_cls):
    mock_instance = mock_ddgs_cls.return_value
    mock_instance.text.return_value = [
        {"title": "Result 1", "body": "Body 1", "href": "http://1.com"}
    ]

    result = _tool_search({"query": "test"})
    assert "Result 1" in result
    assert "Body 1" in result
    assert "http://1.com" in result

@patch("ddgs.DDGS")
def test_tool_search_empty_query(mock_ddgs_cls):
    result = _tool_search({"query": "   "})
    assert "Error: no query provided" in result
    mock_ddgs_cls.assert_not_called()

@patch("ddgs.DDGS")
def test_tool_search_no_results(mock_ddgs_cls):
    mock_ddgs_cls.return_value.text.return_value = []
    assert "No results found" in _tool_search({"query": "ghost"})

@patch("ddgs.DDGS")
def test_tool_search_exception(mock_ddgs_cls):
    mock_ddgs_cls.return_value.text.side_effect = Exception("Network timeout")
    with pytest.raises(ToolExecutionError, match="Search failed: Network timeout"):
        _tool_search({"query": "crash"})

@patch("ddgs.DDGS")
def test_tool_search_caps_result_count(mock_ddgs_cls):
    mock_ddgs_cls.return_value.text.return_value = []
    _tool_search({"query": "many", "max_results": 50})
    mock_ddgs_cls.return_value.text.assert_called_once_with("many", max_results=10)

@patch("httpx.post")
def test_tool_http_post(mock_post):
    mock_post.return_value = MagicMock(status_code=202, content=b"ok")
    result = _tool_http_post({"url": "http://hook.local/in", "payload": {"a": 1}})
    mock_post.assert_called_once_with("http://hook.local/in", json={"a": 1}, timeout=10)
    assert "202" in result

def test_tool_http_post_requires_url():
    assert _tool_http_post({"url": ""}) == "Error: no URL provided."

@patch("httpx.post", side_effect=httpx.ConnectError("refused"))
def test_tool_http_post_transport_error(mock_post):
    with pytest.raises(ToolExecutionError, match="POST http://hook.local/in failed"):
        _tool_http_post({"url": "http://hook.local/in"})

# ---------------------------------------------------------------------------
# Simple tools
# ---------------------------------------------------------------------------

def test_echo():
    assert _tool_echo({"message": "hi"}) == "Echo: hi"

def test_current_time_is_iso():
    value = _tool_current_time({})
    assert "T" in value and len(value) == 19

def test_tool_summarize_truncation():
    assert len(_tool_summarize({"text": "a" * 5000})) == 4000

def test_tool_summarize_short_text_unchanged():
    assert _tool_summarize({"text": " short "}) == "short"

# ---------------------------------------------------------------------------
# Security Sandboxing Tests
# ---------------------------------------------------------------------------

def test_file_write_inside_workspace(tmp_path):
    workspace = tmp_path / "workspace"
    result = _tool_file_write({"path": "notes/safe.txt", "content": "ok"}, workspace=str(workspace))
    assert "Wrote 2 bytes" in result
    assert (workspace / "notes" / "safe.txt").read_text() == "ok"

def test_file_write_path_traversal(tmp_path):
    workspace = tmp_path / "workspace"
    workspace.mkdir()

    result = _tool_file_write({"path": "../outside.txt", "content": "hack"}, workspace=str(workspace))

    assert "SECURITY BLOCK" in result
    assert not (tmp_path / "outside.txt").exists()

def test_file_write_absolute_path_blocked(tmp_path):
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    target = tmp_path / "abs.txt"
    result = _tool_file_write({"path": str(target), "content": "x"}, workspace=str(workspace))
    assert "SECURITY BLOCK" in result
    assert not target.exists()

def test_file_write_requires_path(tmp_path):
    assert _tool_file_write({"path": " "}, workspace=str(tmp_path)) == "Error: no path provided."

# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------

def test_register_local_tools(tmp_path):
    registry = ToolRegistry()
    count = register_local_tools(registry, str(tmp_path))
    assert count == len(local_tools(str(tmp_path)))
    assert {"echo", "terminate", "get_current_time", "search", "summarize", "file_write", "http_post"} <= registry.names()

def test_registered_file_write_is_bound_to_workspace(tmp_path):
    registry = ToolRegistry()
    register_local_tools(registry, str(tmp_path))
    result = asyncio.run(registry.get("file_write").invoke({"path": "a.txt", "content": "abc"}))
    assert "Wrote 3 bytes" in result
    assert (tmp_path / "a.txt").read_text() == "abc"

def test_terminate_tool_echoes_answer():
    registry = ToolRegistry()
    register_local_tools(registry)
    result = asyncio.run(registry.get("terminate").invoke({"answer": "bye"}))
    assert result == 'TERMINATE:{"answer": "bye"}'
