"""External tool gateway: MCP client pools for user-configured servers.

Each owner's enabled servers are connected over the MCP streamable HTTP
transport and their tools exposed to the model under namespaced names
(`<server_slug>__<tool>`), so names stay unique across servers.

Pools are cached per owner and replaced wholesale on invalidation:
a reader holds either the old pool or the new one, never a mix.
Tool failures and timeouts come back as ToolCallResult(is_error=True).
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from mcp import ClientSession
from mcp.client.streamable_http import streamablehttp_client

from marginalia.config import Settings
from marginalia.schemas import ToolCallResult
from marginalia.storage.servers import ToolServerConfig, ToolServerStore

logger = logging.getLogger(__name__)

TOOL_SEPARATOR = "__"
MAX_TOOL_NAME = 64  # Anthropic tool name limit

_SLUG_INVALID = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    slug = _SLUG_INVALID.sub("_", name.lower()).strip("_")
    return slug or "server"


def _result_text(result: Any) -> str:
    """Flatten an MCP CallToolResult's content blocks into plain text."""
    parts = []
    for block in getattr(result, "content", None) or []:
        text = getattr(block, "text", None)
        if text is not None:
            parts.append(text)
        else:
            parts.append(f"[{getattr(block, 'type', 'content')} omitted]")
    return "\n".join(parts)


# ---------------------------------------------------------------------------
# Single server connection
# ---------------------------------------------------------------------------


class ServerConnection:
    """One live MCP client session.

    The transport context is entered and exited inside a dedicated task,
    since its cancel scopes must not cross tasks. Tool calls from other
    tasks go through the session's streams.
    """

    def __init__(self, config: ToolServerConfig, settings: Settings) -> None:
        self.config = config
        self._settings = settings
        self.session: ClientSession | None = None
        self.tools: list[Any] = []
        self._ready = asyncio.Event()
        self._stop = asyncio.Event()
        self._error: BaseException | None = None
        self._task: asyncio.Task | None = None

    async def open(self) -> None:
        """Connect, initialize and list tools. Raises on failure."""
        self._task = asyncio.create_task(self._run(), name=f"mcp-{self.config.id}")
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=self._settings.tool_connect_timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise TimeoutError(f"Timed out connecting to {self.config.url}") from None
        if self._error is not None:
            await self.close()
            raise self._error

    async def _run(self) -> None:
        try:
            async with AsyncExitStack() as stack:
                read, write, _ = await stack.enter_async_context(
                    streamablehttp_client(self.config.url, headers=self.config.headers or None)
                )
                session = await stack.enter_async_context(ClientSession(read, write))
                await session.initialize()
                listed = await session.list_tools()
                self.session = session
                self.tools = list(listed.tools)
                self._ready.set()
                await self._stop.wait()
        except Exception as e:
            self._error = e
        finally:
            self.session = None
            self._ready.set()

    async def call_tool(self, name: str, args: dict[str, Any]) -> ToolCallResult:
        if self.session is None:
            return ToolCallResult(content=f"Tool server {self.config.name} is not connected", is_error=True)
        result = await self.session.call_tool(name, args)
        return ToolCallResult(content=_result_text(result), is_error=bool(result.isError))

    async def close(self) -> None:
        self._stop.set()
        if self._task is None:
            return
        try:
            await asyncio.wait_for(self._task, timeout=self._settings.tool_connect_timeout)
        except asyncio.TimeoutError:
            self._task.cancel()
            logger.warning("Tool server %s did not close cleanly", self.config.name)
        self._task = None


# ---------------------------------------------------------------------------
# Per-owner pool
# ---------------------------------------------------------------------------


@dataclass
class _ToolRoute:
    connection: ServerConnection
    remote_name: str


@dataclass
class UserToolPool:
    """Connections to one owner's enabled servers plus the namespaced tool table."""

    owner_id: str
    settings: Settings
    connections: list[ServerConnection] = field(default_factory=list)
    _routes: dict[str, _ToolRoute] = field(default_factory=dict)
    _definitions: list[dict[str, Any]] = field(default_factory=list)
    _leases: int = 0
    _retired: bool = False
    _closed: bool = False

    @classmethod
    async def connect(cls, owner_id: str, configs: list[ToolServerConfig], settings: Settings) -> UserToolPool:
        """Connect to every enabled config; unreachable servers are skipped."""
        pool = cls(owner_id=owner_id, settings=settings)
        candidates = [ServerConnection(c, settings) for c in configs if c.enabled]
        outcomes = await asyncio.gather(*(c.open() for c in candidates), return_exceptions=True)
        for conn, outcome in zip(candidates, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(
                    "Skipping tool server %s (%s) for user %s: %s",
                    conn.config.name, conn.config.url, owner_id, outcome,
                )
                continue
            pool.connections.append(conn)
        pool._index_tools()
        logger.info(
            "Tool pool for user %s: %d servers, %d tools",
            owner_id, len(pool.connections), len(pool._definitions),
        )
        return pool

    def _index_tools(self) -> None:
        used_slugs: set[str] = set()
        for conn in self.connections:
            slug = slugify(conn.config.name)
            base, n = slug, 2
            while slug in used_slugs:
                slug = f"{base}_{n}"
                n += 1
            used_slugs.add(slug)

            for tool in conn.tools:
                name = self._unique_name(f"{slug}{TOOL_SEPARATOR}{tool.name}")
                self._routes[name] = _ToolRoute(connection=conn, remote_name=tool.name)
                self._definitions.append({
                    "name": name,
                    "description": tool.description or f"{tool.name} from {conn.config.name}",
                    "input_schema": tool.inputSchema or {"type": "object", "properties": {}},
                })

    def _unique_name(self, name: str) -> str:
        name = name[:MAX_TOOL_NAME]
        if name not in self._routes:
            return name
        n = 2
        while True:
            suffix = f"_{n}"
            candidate = name[: MAX_TOOL_NAME - len(suffix)] + suffix
            if candidate not in self._routes:
                return candidate
            n += 1

    def get_tools(self) -> list[dict[str, Any]]:
        """Tool definitions in Anthropic API format."""
        return list(self._definitions)

    def is_mcp_tool(self, name: str) -> bool:
        return name in self._routes

    def server_name(self, tool_name: str) -> str | None:
        route = self._routes.get(tool_name)
        return route.connection.config.name if route else None

    async def call_tool(self, name: str, args: dict[str, Any]) -> ToolCallResult:
        """Call a namespaced tool, bounded by tool_call_timeout. Never raises."""
        route = self._routes.get(name)
        if route is None:
            return ToolCallResult(content=f"Unknown tool: {name}", is_error=True)
        try:
            return await asyncio.wait_for(
                route.connection.call_tool(route.remote_name, args),
                timeout=self.settings.tool_call_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Tool %s timed out after %.0fs", name, self.settings.tool_call_timeout)
            return ToolCallResult(
                content=f"Tool call timed out after {self.settings.tool_call_timeout:.0f} seconds",
                is_error=True,
            )
        except Exception as e:
            logger.warning("Tool %s failed: %s", name, e)
            return ToolCallResult(content=f"Tool error: {e}", is_error=True)

    def acquire(self) -> None:
        self._leases += 1

    async def release(self) -> None:
        self._leases -= 1
        if self._retired and self._leases <= 0:
            await self.close()

    def mark_retired(self) -> None:
        self._retired = True

    async def retire(self) -> None:
        """Close now if idle, otherwise once the last lease is released.

        The tool table stays intact so in-flight turns keep resolving names.
        """
        self._retired = True
        if self._leases <= 0:
            await self.close()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await asyncio.gather(*(c.close() for c in self.connections), return_exceptions=True)


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class ToolGateway:
    """Per-owner pool cache in front of the tool server store."""

    def __init__(self, store: ToolServerStore, settings: Settings) -> None:
        self._store = store
        self._settings = settings
        self._pools: dict[str, UserToolPool] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._generations: dict[str, int] = {}

    async def pool_for(self, owner_id: str) -> UserToolPool:
        """Cached pool for owner_id, built on first use.

        Concurrent first callers wait on one build.
        """
        pool = self._pools.get(owner_id)
        if pool is not None:
            return pool

        lock = self._locks.setdefault(owner_id, asyncio.Lock())
        async with lock:
            pool = self._pools.get(owner_id)
            if pool is not None:
                return pool
            generation = self._generations.get(owner_id, 0)
            configs = await self._store.list_servers(owner_id, enabled_only=True)
            pool = await UserToolPool.connect(owner_id, configs, self._settings)
            if self._generations.get(owner_id, 0) != generation:
                # Invalidated mid-build; hand this pool out once but don't cache it
                logger.debug("Pool for user %s went stale during build", owner_id)
                pool.mark_retired()
                return pool
            self._pools[owner_id] = pool
            return pool

    async def invalidate(self, owner_id: str) -> None:
        """Drop the owner's cached pool; the next lookup rebuilds it."""
        self._generations[owner_id] = self._generations.get(owner_id, 0) + 1
        old = self._pools.pop(owner_id, None)
        if old is not None:
            await old.retire()
            logger.info("Invalidated tool pool for user %s", owner_id)

    @asynccontextmanager
    async def lease(self, owner_id: str) -> AsyncIterator[UserToolPool]:
        """Hold the owner's pool for a turn; invalidation defers its close until release."""
        pool = await self.pool_for(owner_id)
        pool.acquire()
        try:
            yield pool
        finally:
            await pool.release()

    async def test_server(self, config: ToolServerConfig) -> dict[str, Any]:
        """Handshake and list tools on one config without touching the cache."""
        conn = ServerConnection(config, self._settings)
        try:
            await conn.open()
        except Exception as e:
            logger.info("Tool server test failed for %s: %s", config.url, e)
            return {"success": False, "error": str(e) or type(e).__name__}
        try:
            return {
                "success": True,
                "toolCount": len(conn.tools),
                "tools": [t.name for t in conn.tools],
            }
        finally:
            await conn.close()

    async def shutdown(self) -> None:
        pools = list(self._pools.values())
        self._pools.clear()
        await asyncio.gather(*(p.close() for p in pools), return_exceptions=True)
        logger.info("Closed %d tool pools", len(pools))
