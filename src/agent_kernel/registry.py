# registry.py
# Process-wide catalog of dispatchable tools.
#
# A Tool is one capability: a ToolDefinition plus an invoke(args) coroutine.
# Local and remote tools are just two constructors of the same thing, so the
# registry and the execution service never branch on where a tool came from.
#
# The registry is the only mutable state shared across concurrent runs and is
# guarded by a lock. Readers receive snapshots, never the live dict.

import asyncio
import inspect
import logging
import threading
from collections.abc import Awaitable, Callable
from typing import Any

from agent_kernel.models import ToolDefinition

logger = logging.getLogger(__name__)

Handler = Callable[[dict], Any]


class Tool:
    """Capability interface: `definition` + `await invoke(args) -> str`."""

    def __init__(self, definition: ToolDefinition, invoker: Callable[[dict], Awaitable[Any]]) -> None:
        self.definition = definition
        self._invoker = invoker

    @property
    def name(self) -> str:
        return self.definition.name

    async def invoke(self, args: dict) -> str:
        result = await self._invoker(args)
        return "" if result is None else str(result)

    def __repr__(self) -> str:
        return f"Tool({self.name!r})"

    @classmethod
    def local(
        cls,
        name: str,
        handler: Handler,
        description: str = "",
        input_schema: dict | None = None,
    ) -> "Tool":
        """
        Wrap a plain handler taking the argument dict.

        Coroutine handlers are awaited directly; blocking handlers run in a
        worker thread so they never stall the event loop.
        """
        definition = ToolDefinition(
            name=name,
            description=description,
            input_schema=input_schema or {"type": "object", "properties": {}},
        )

        if inspect.iscoroutinefunction(handler):
            async def invoker(args: dict) -> Any:
                return await handler(args)
        else:
            async def invoker(args: dict) -> Any:
                return await asyncio.to_thread(handler, args)

        return cls(definition, invoker)


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}
        self._lock = threading.RLock()

    def register(self, tool: Tool) -> None:
        """Add or replace a tool under its dispatch name."""
        with self._lock:
            if tool.name in self._tools:
                logger.debug("Tool %s already registered, replacing", tool.name)
            self._tools[tool.name] = tool
        logger.info("Registered tool: %s", tool.name)

    def unregister(self, name: str) -> bool:
        with self._lock:
            removed = self._tools.pop(name, None)
        if removed is not None:
            logger.info("Unregistered tool: %s", name)
        return removed is not None

    def unregister_by_prefix(self, prefix: str) -> int:
        """Bulk removal, used when a remote source is refreshed or disconnects."""
        with self._lock:
            doomed = [name for name in self._tools if name.startswith(prefix)]
            for name in doomed:
                del self._tools[name]
        logger.info("Unregistered %d tool(s) with prefix %r", len(doomed), prefix)
        return len(doomed)

    def get(self, name: str) -> Tool | None:
        with self._lock:
            return self._tools.get(name)

    def get_definition(self, name: str) -> ToolDefinition | None:
        tool = self.get(name)
        return tool.definition if tool is not None else None

    def has(self, name: str) -> bool:
        with self._lock:
            return name in self._tools

    def list_all(self) -> list[Tool]:
        with self._lock:
            return list(self._tools.values())

    def definitions(self) -> list[ToolDefinition]:
        return [tool.definition for tool in self.list_all()]

    def names(self) -> set[str]:
        with self._lock:
            return set(self._tools)

    def size(self) -> int:
        with self._lock:
            return len(self._tools)

    def clear(self) -> None:
        logger.warning("Clearing all tools from registry")
        with self._lock:
            self._tools.clear()
