# remote.py
# Remote tool sources (MCP servers) and the per-run watcher that keeps the
# model's view of them current.
#
# RemoteToolSourceManager
#   Holds one live ClientSession per source id, lists each source's tools and
#   registers them under namespaced dispatch names. A transport failure drops
#   the source and removes its tools in one prefix sweep.
#
# RemoteToolWatcher
#   Per-run companion for the kernel. Refreshes the enabled sources every N
#   think steps and posts a notice when the tool set changed. Also reports
#   when every enabled source has gone away.

import json
import logging
import threading
from contextlib import AsyncExitStack
from typing import Any

import anyio
from mcp import ClientSession, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client

from agent_kernel.config import RemoteSourceConfig
from agent_kernel.errors import RemoteSourceError, ToolExecutionError
from agent_kernel.filtering import render_definitions
from agent_kernel.models import ExecutionContext, ToolDefinition
from agent_kernel.namespace import ToolNamespace
from agent_kernel.registry import Tool, ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_INPUT_SCHEMA = {"type": "object", "properties": {}}

# Failures that mean the connection itself is gone, not that a call failed.
TRANSPORT_ERRORS = (
    OSError,
    anyio.ClosedResourceError,
    anyio.BrokenResourceError,
    anyio.EndOfStream,
)


def convert_input_schema(schema: Any) -> dict:
    """Turn a source's native schema object into a plain JSON Schema dict."""
    if schema is None:
        return dict(DEFAULT_INPUT_SCHEMA)
    if hasattr(schema, "model_dump"):
        schema = schema.model_dump(exclude_none=True)
    if isinstance(schema, str):
        try:
            schema = json.loads(schema)
        except json.JSONDecodeError:
            logger.warning("Input schema is not valid JSON, using an empty object schema")
            return dict(DEFAULT_INPUT_SCHEMA)
    if not isinstance(schema, dict):
        return dict(DEFAULT_INPUT_SCHEMA)
    return dict(schema)


def render_content(blocks: list[Any] | None) -> str:
    """Concatenate a tool result's content blocks into text."""
    parts: list[str] = []
    for block in blocks or []:
        text = getattr(block, "text", None)
        if text is not None:
            parts.append(text)
        elif hasattr(block, "model_dump_json"):
            parts.append(block.model_dump_json(exclude_none=True))
        else:
            parts.append(str(block))
    return "".join(parts)


class _Connection:
    def __init__(self, session: Any, stack: AsyncExitStack | None, config: RemoteSourceConfig | None) -> None:
        self.session = session
        self.stack = stack
        self.config = config


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class RemoteToolSourceManager:
    def __init__(
        self,
        registry: ToolRegistry,
        namespace: ToolNamespace,
        configs: list[RemoteSourceConfig] | None = None,
    ) -> None:
        self._registry = registry
        self._namespace = namespace
        self._configs = {c.id: c for c in (configs or [])}
        self._connections: dict[str, _Connection] = {}
        self._lock = threading.RLock()

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def namespace(self) -> ToolNamespace:
        return self._namespace

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Connect every enabled configured source. One failure does not stop the others."""
        enabled = [c for c in self._configs.values() if c.enabled]
        logger.info("Initializing remote tool sources: %d configured, %d enabled", len(self._configs), len(enabled))
        for config in enabled:
            try:
                await self.connect(config)
            except Exception:
                logger.exception("Failed to connect to remote source %s", config.id)

    async def connect(self, config: RemoteSourceConfig) -> None:
        logger.info("Connecting to remote source %s (%s)", config.id, config.transport)
        self._configs[config.id] = config

        stack = AsyncExitStack()
        try:
            if config.transport == "sse":
                read, write = await stack.enter_async_context(sse_client(config.url))
            else:
                params = StdioServerParameters(
                    command=config.command,
                    args=list(config.args),
                    env=dict(config.env) or None,
                )
                read, write = await stack.enter_async_context(stdio_client(params))
            session = await stack.enter_async_context(ClientSession(read, write))
            await session.initialize()
        except BaseException:
            await stack.aclose()
            raise

        with self._lock:
            self._connections[config.id] = _Connection(session, stack, config)
        logger.info("Connected to remote source %s", config.id)

    def attach(self, source_id: str, session: Any) -> None:
        """Adopt an already-initialized session whose lifecycle is managed elsewhere."""
        with self._lock:
            self._connections[source_id] = _Connection(session, None, self._configs.get(source_id))
        logger.info("Attached remote source %s", source_id)

    async def disconnect(self, source_id: str) -> None:
        with self._lock:
            connection = self._connections.pop(source_id, None)
        self._registry.unregister_by_prefix(self._namespace.source_prefix(source_id))
        if connection is None:
            return
        if connection.stack is not None:
            try:
                await connection.stack.aclose()
            except Exception:
                logger.warning("Error closing remote source %s", source_id, exc_info=True)
        logger.info("Disconnected from remote source %s", source_id)

    async def reconnect(self, source_id: str) -> None:
        config = self._configs.get(source_id)
        if config is None:
            raise RemoteSourceError(source_id, f"No configuration for remote source {source_id}")
        await self.disconnect(source_id)
        await self.connect(config)

    async def close_all(self) -> None:
        logger.info("Shutting down remote tool sources")
        for source_id in self.connected_source_ids():
            await self.disconnect(source_id)

    def is_connected(self, source_id: str) -> bool:
        with self._lock:
            return source_id in self._connections

    def connected_source_ids(self) -> list[str]:
        with self._lock:
            return list(self._connections)

    async def ping(self, source_id: str) -> bool:
        """Health check. A source that fails to answer is dropped."""
        session = self._session(source_id)
        try:
            await session.send_ping()
        except TRANSPORT_ERRORS as exc:
            await self._drop(source_id, exc)
            return False
        return True

    async def _drop(self, source_id: str, reason: BaseException) -> None:
        logger.error("Remote source %s lost: %s", source_id, reason)
        await self.disconnect(source_id)

    def _session(self, source_id: str) -> Any:
        with self._lock:
            connection = self._connections.get(source_id)
        if connection is None:
            raise RemoteSourceError(source_id, f"Remote source not connected: {source_id}")
        return connection.session

    # ------------------------------------------------------------------
    # Tool discovery
    # ------------------------------------------------------------------

    async def synchronize(self, source_id: str) -> int:
        """Replace the registry entries of one source with its current tool list."""
        session = self._session(source_id)
        logger.info("Synchronizing tools from remote source %s", source_id)

        self._registry.unregister_by_prefix(self._namespace.source_prefix(source_id))

        try:
            listing = await session.list_tools()
        except TRANSPORT_ERRORS as exc:
            await self._drop(source_id, exc)
            raise RemoteSourceError(source_id, f"Listing tools failed: {exc}") from exc

        registered = 0
        for remote in listing.tools:
            try:
                self._registry.register(self._remote_tool(source_id, remote))
                registered += 1
            except Exception:
                logger.exception("Failed to register tool %s from %s", getattr(remote, "name", "?"), source_id)

        logger.info("Registered %d tool(s) from remote source %s", registered, source_id)
        return registered

    async def synchronize_all(self) -> int:
        total = 0
        for source_id in self.connected_source_ids():
            try:
                total += await self.synchronize(source_id)
            except Exception:
                logger.exception("Failed to synchronize remote source %s", source_id)
        return total

    def _remote_tool(self, source_id: str, remote: Any) -> Tool:
        remote_name = remote.name
        dispatch_name = self._namespace.namespaced(source_id, remote_name)
        definition = ToolDefinition(
            name=dispatch_name,
            description=remote.description or f"Remote tool: {remote_name}",
            input_schema=convert_input_schema(getattr(remote, "inputSchema", None)),
        )

        async def invoker(args: dict) -> str:
            session = self._session(source_id)
            try:
                result = await session.call_tool(remote_name, arguments=args)
            except TRANSPORT_ERRORS as exc:
                await self._drop(source_id, exc)
                raise ToolExecutionError(dispatch_name, f"Remote source {source_id} unavailable: {exc}") from exc

            text = render_content(result.content)
            if getattr(result, "isError", False):
                raise ToolExecutionError(dispatch_name, text or f"Remote tool {remote_name} reported an error")
            return text

        logger.debug("Registered remote tool %s -> %s", remote_name, dispatch_name)
        return Tool(definition, invoker)


# ---------------------------------------------------------------------------
# Watcher
# ---------------------------------------------------------------------------


class RemoteToolWatcher:
    """
    Owned by one run. The kernel calls before_think() at the start of every
    think phase and sources_lost() after every act phase, so the tool snapshot
    only changes between iterations.
    """

    def __init__(
        self,
        manager: RemoteToolSourceManager,
        registry: ToolRegistry,
        namespace: ToolNamespace,
        enabled_source_ids: list[str] | None = None,
        refresh_every: int = 5,
    ) -> None:
        if refresh_every < 1:
            raise ValueError("refresh_every must be at least 1.")
        self._manager = manager
        self._registry = registry
        self._namespace = namespace
        self._enabled = list(enabled_source_ids or [])
        self._refresh_every = refresh_every
        self._steps_since_refresh = 0

    def _sources(self) -> list[str]:
        return self._enabled or self._manager.connected_source_ids()

    def _remote_names(self) -> set[str]:
        sources = self._sources()
        return {
            name for name in self._registry.names()
            if any(self._namespace.belongs_to_source(name, s) for s in sources)
        }

    async def refresh(self) -> tuple[set[str], set[str]]:
        """Synchronize every watched source; returns (added, removed) dispatch names."""
        before = self._remote_names()
        for source_id in self._sources():
            if not self._manager.is_connected(source_id):
                continue
            try:
                await self._manager.synchronize(source_id)
            except Exception:
                logger.exception("Refresh of remote source %s failed", source_id)
        after = self._remote_names()
        return after - before, before - after

    async def before_think(self, ctx: ExecutionContext, history: list[dict]) -> None:
        self._steps_since_refresh += 1
        if self._steps_since_refresh < self._refresh_every:
            return
        self._steps_since_refresh = 0

        logger.debug("Refreshing remote tools at step %d", ctx.step_counter)
        added, removed = await self.refresh()
        if added or removed:
            logger.info("Remote tool set changed: +%d -%d", len(added), len(removed))
            definitions = [d for d in map(self._registry.get_definition, sorted(added)) if d is not None]
            history.append({"role": "system", "content": tool_change_notice(added, removed, definitions)})

    def sources_lost(self) -> bool:
        """True when sources were enabled for this run and none of them is connected."""
        if not self._enabled:
            return False
        return not any(self._manager.is_connected(s) for s in self._enabled)


def tool_change_notice(
    added: set[str], removed: set[str], definitions: list[ToolDefinition] | None = None
) -> str:
    """Change notice for the model. `definitions` describe the added tools."""
    lines = ["TOOL UPDATE: the set of available tools has changed."]
    if added:
        lines.append("Now available: " + ", ".join(sorted(added)))
    if definitions:
        lines.append("New tool definitions, as a JSON array:")
        lines.append(render_definitions(definitions))
    if removed:
        lines.append("No longer available: " + ", ".join(sorted(removed)))
    lines.append("Use only tools that are currently available.")
    return "\n".join(lines)
