# tools.py
# Local tool bootstrap: built-in implementations registered at startup.
# The kernel never calls these functions directly; it dispatches through the
# registry by name like any remote tool.

import json
import os
from datetime import datetime
from functools import partial
from pathlib import Path

from agent_kernel.errors import ToolExecutionError
from agent_kernel.registry import Tool, ToolRegistry

SEARCH_MAX_RESULTS = 10
SUMMARY_LIMIT = 4000


def _tool_echo(args: dict) -> str:
    return f"Echo: {args.get('message', '')}"


def _tool_current_time(args: dict) -> str:
    return datetime.now().isoformat(timespec="seconds")


def _tool_terminate(args: dict) -> str:
    # Only reachable through native tool calls; the kernel ends the run itself.
    return "TERMINATE:" + json.dumps(args, ensure_ascii=False)


def _tool_search(args: dict) -> str:
    from ddgs import DDGS
    query = args.get("query", "").strip()
    if not query:
        return "Error: no query provided."
    limit = max(1, min(int(args.get("max_results", 4)), SEARCH_MAX_RESULTS))

    try:
        results = list(DDGS().text(query, max_results=limit))
    except Exception as e:
        raise ToolExecutionError("search", f"Search failed: {e}") from e

    if not results:
        return "No results found."

    lines = []
    for r in results:
        lines.append(f"[{r.get('title', 'No Title')}]\n{r.get('body', '')}\nSource: {r.get('href', '')}")
    return "\n\n".join(lines)


def _tool_summarize(args: dict) -> str:
    text = args.get("text", "").strip()
    if not text:
        return "Error: no text provided."
    return text[:SUMMARY_LIMIT]


def _tool_file_write(args: dict, workspace: str) -> str:
    path = args.get("path", "").strip()
    content = args.get("content", "")
    if not path:
        return "Error: no path provided."

    root = Path(workspace).resolve()
    target = (root / path).resolve()
    if target != root and root not in target.parents:
        return f"SECURITY BLOCK: {path!r} resolves outside the workspace."

    os.makedirs(target.parent, exist_ok=True)
    with open(target, "w", encoding="utf-8") as fh:
        fh.write(content)
    return f"Wrote {len(content)} bytes to {target.relative_to(root)}."


def _tool_http_post(args: dict) -> str:
    import httpx
    url = args.get("url", "").strip()
    payload = args.get("payload", {})
    if not url:
        return "Error: no URL provided."
    try:
        response = httpx.post(url, json=payload, timeout=10)
    except httpx.HTTPError as e:
        raise ToolExecutionError("http_post", f"POST {url} failed: {e}") from e
    return f"POST {url} → {response.status_code} ({len(response.content)} bytes)"


def _object_schema(properties: dict | None = None, required: list[str] | None = None) -> dict:
    schema: dict = {"type": "object", "properties": properties or {}}
    if required:
        schema["required"] = required
    return schema


def _string(description: str) -> dict:
    return {"type": "string", "description": description}


def local_tools(workspace: str = "./workspace") -> list[Tool]:
    return [
        Tool.local(
            "terminate",
            _tool_terminate,
            "Terminate the agent with a final answer.",
            _object_schema({"answer": _string("The final answer to return to the user")}, ["answer"]),
        ),
        Tool.local(
            "get_current_time",
            _tool_current_time,
            "Get the current local date and time.",
        ),
        Tool.local(
            "echo",
            _tool_echo,
            "Echo back the input message. Useful for testing.",
            _object_schema({"message": _string("The message to echo back")}, ["message"]),
        ),
        Tool.local(
            "search",
            _tool_search,
            "Search the web and return the top results.",
            _object_schema(
                {
                    "query": _string("Search query"),
                    "max_results": {"type": "integer", "minimum": 1, "maximum": SEARCH_MAX_RESULTS},
                },
                ["query"],
            ),
        ),
        Tool.local(
            "summarize",
            _tool_summarize,
            f"Trim a block of text to at most {SUMMARY_LIMIT} characters.",
            _object_schema({"text": _string("Text to summarize")}, ["text"]),
        ),
        Tool.local(
            "file_write",
            partial(_tool_file_write, workspace=workspace),
            "Write text to a file inside the agent workspace.",
            _object_schema(
                {"path": _string("Path relative to the workspace"), "content": _string("File content")},
                ["path", "content"],
            ),
        ),
        Tool.local(
            "http_post",
            _tool_http_post,
            "POST a JSON payload to a URL.",
            _object_schema(
                {"url": _string("Destination URL"), "payload": {"type": "object"}},
                ["url"],
            ),
        ),
    ]


def register_local_tools(registry: ToolRegistry, workspace: str = "./workspace") -> int:
    tools = local_tools(workspace)
    for tool in tools:
        registry.register(tool)
    return len(tools)
