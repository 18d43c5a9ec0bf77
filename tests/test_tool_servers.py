"""Tests for the tool server store and the MCP tool gateway.

ServerConnection is replaced with an in-process fake so no MCP server
is needed: each fake's behaviour is keyed by the config URL.
"""

import asyncio
import uuid
from types import SimpleNamespace
from unittest.mock import patch

import pytest
import pytest_asyncio

from marginalia.api.mcp import MAX_TOOL_NAME, ToolGateway, UserToolPool, slugify
from marginalia.errors import BadRequest, Conflict, NotFound
from marginalia.schemas import ToolCallResult
from marginalia.storage.servers import (
    ToolServerConfig,
    ToolServerStore,
    validate_server_config,
    validate_server_update,
)

# ---------------------------------------------------------------------------
# Fake MCP connection
# ---------------------------------------------------------------------------


def _tool(name: str, description: str = "") -> SimpleNamespace:
    return SimpleNamespace(
        name=name,
        description=description,
        inputSchema={"type": "object", "properties": {"q": {"type": "string"}}},
    )


class FakeConnection:
    """Stands in for ServerConnection; `servers` maps URL -> tool names."""

    servers: dict[str, list[str]] = {}
    opened: list[str] = []
    closed: list[str] = []
    call_delay: float = 0.0

    def __init__(self, config, settings):
        self.config = config
        self.tools = []

    async def open(self):
        await asyncio.sleep(0.01)
        if self.config.url not in self.servers:
            raise ConnectionError("connection refused")
        FakeConnection.opened.append(self.config.url)
        self.tools = [_tool(n, f"{n} tool") for n in self.servers[self.config.url]]

    async def call_tool(self, name, args):
        if self.call_delay:
            await asyncio.sleep(self.call_delay)
        if name == "explode":
            raise RuntimeError("boom")
        return ToolCallResult(content=f"{name}:{args.get('q', '')}")

    async def close(self):
        FakeConnection.closed.append(self.config.url)


@pytest.fixture(autouse=True)
def fake_connections():
    FakeConnection.servers = {
        "https://search.example/mcp": ["search", "fetch"],
        "https://notes.example/mcp": ["search"],
    }
    FakeConnection.opened = []
    FakeConnection.closed = []
    FakeConnection.call_delay = 0.0
    with patch("marginalia.api.mcp.ServerConnection", FakeConnection):
        yield FakeConnection


def _config(name: str, url: str, enabled: bool = True) -> ToolServerConfig:
    return ToolServerConfig(id=uuid.uuid4(), name=name, url=url, enabled=enabled)


@pytest_asyncio.fixture
async def servers(db, settings):
    return ToolServerStore(db, settings)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidation:
    def test_valid_config(self):
        assert validate_server_config({"name": "Search", "url": "https://x.io/mcp"}) == []

    def test_missing_name_and_bad_url(self):
        errors = validate_server_config({"name": "  ", "url": "ftp://x.io"})
        assert errors == [
            {"field": "name", "message": "Name is required"},
            {"field": "url", "message": "URL must be a valid http(s) URL"},
        ]

    def test_non_string_headers(self):
        errors = validate_server_config({"name": "a", "url": "http://x", "headers": {"X-Key": 1}})
        assert errors == [{"field": "headers", "message": "Header keys and values must be strings"}]

    def test_update_checks_only_supplied_fields(self):
        assert validate_server_update({"enabled": False}) == []
        assert validate_server_update({"enabled": "yes"}) == [
            {"field": "enabled", "message": "Enabled must be a boolean"}
        ]


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class TestToolServerStore:
    async def test_create_and_list(self, servers):
        created = await servers.create("alice", "Search", "https://search.example/mcp", {"X-Key": "k"})
        listed = await servers.list_servers("alice")
        assert [s.id for s in listed] == [created.id]
        assert listed[0].headers == {"X-Key": "k"}
        assert listed[0].enabled is True
        assert await servers.list_servers("bob") == []

    async def test_cap_rejects_eleventh(self, servers):
        for i in range(10):
            await servers.create("alice", f"server {i}", f"https://s{i}.example/mcp")
        with pytest.raises(BadRequest, match="Maximum of 10 servers allowed"):
            await servers.create("alice", "one more", "https://s11.example/mcp")

    async def test_duplicate_name_conflicts(self, servers):
        await servers.create("alice", "Search", "https://a.example/mcp")
        with pytest.raises(Conflict, match='A server named "Search" already exists'):
            await servers.create("alice", "Search", "https://b.example/mcp")
        # Same name for another owner is fine
        await servers.create("bob", "Search", "https://b.example/mcp")

    async def test_update(self, servers):
        created = await servers.create("alice", "Search", "https://a.example/mcp")
        updated = await servers.update("alice", created.id, {"enabled": False, "name": "Renamed"})
        assert updated.enabled is False
        assert updated.name == "Renamed"
        assert await servers.list_servers("alice", enabled_only=True) == []

    async def test_update_without_fields(self, servers):
        created = await servers.create("alice", "Search", "https://a.example/mcp")
        with pytest.raises(BadRequest, match="No fields to update"):
            await servers.update("alice", created.id, {"bogus": 1})

    async def test_update_foreign_server(self, servers):
        created = await servers.create("alice", "Search", "https://a.example/mcp")
        with pytest.raises(NotFound):
            await servers.update("bob", created.id, {"enabled": False})

    async def test_update_rename_conflict(self, servers):
        await servers.create("alice", "One", "https://a.example/mcp")
        two = await servers.create("alice", "Two", "https://b.example/mcp")
        with pytest.raises(Conflict):
            await servers.update("alice", two.id, {"name": "One"})

    async def test_delete(self, servers):
        created = await servers.create("alice", "Search", "https://a.example/mcp")
        await servers.delete("alice", created.id)
        assert await servers.list_servers("alice") == []
        with pytest.raises(NotFound):
            await servers.delete("alice", created.id)

    async def test_get_checks_owner(self, servers):
        created = await servers.create("alice", "Search", "https://a.example/mcp")
        assert (await servers.get("alice", created.id)).name == "Search"
        with pytest.raises(NotFound, match="Server not found"):
            await servers.get("bob", created.id)


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------


class TestUserToolPool:
    def test_slugify(self):
        assert slugify("My Search!") == "my_search"
        assert slugify("***") == "server"

    async def test_namespaced_tools(self, settings):
        pool = await UserToolPool.connect(
            "alice", [_config("Web Search", "https://search.example/mcp")], settings
        )
        names = [t["name"] for t in pool.get_tools()]
        assert names == ["web_search__search", "web_search__fetch"]
        assert pool.get_tools()[0]["input_schema"]["type"] == "object"
        assert pool.is_mcp_tool("web_search__search")
        assert not pool.is_mcp_tool("highlight")
        assert pool.server_name("web_search__fetch") == "Web Search"

    async def test_slug_collision_gets_suffix(self, settings):
        pool = await UserToolPool.connect(
            "alice",
            [
                _config("Notes", "https://search.example/mcp"),
                _config("notes", "https://notes.example/mcp"),
            ],
            settings,
        )
        names = [t["name"] for t in pool.get_tools()]
        assert names == ["notes__search", "notes__fetch", "notes_2__search"]
        assert pool.server_name("notes_2__search") == "notes"

    async def test_long_names_truncated(self, settings, fake_connections):
        fake_connections.servers["https://long.example/mcp"] = ["t" * 80, "t" * 81]
        pool = await UserToolPool.connect("alice", [_config("L", "https://long.example/mcp")], settings)
        names = [t["name"] for t in pool.get_tools()]
        assert all(len(n) <= MAX_TOOL_NAME for n in names)
        assert len(set(names)) == 2

    async def test_unreachable_server_skipped(self, settings):
        pool = await UserToolPool.connect(
            "alice",
            [
                _config("Down", "https://down.example/mcp"),
                _config("Search", "https://search.example/mcp"),
            ],
            settings,
        )
        assert len(pool.connections) == 1
        assert [t["name"] for t in pool.get_tools()] == ["search__search", "search__fetch"]

    async def test_disabled_configs_ignored(self, settings, fake_connections):
        await UserToolPool.connect(
            "alice", [_config("Search", "https://search.example/mcp", enabled=False)], settings
        )
        assert fake_connections.opened == []

    async def test_call_routes_to_remote_name(self, settings):
        pool = await UserToolPool.connect("alice", [_config("S", "https://search.example/mcp")], settings)
        result = await pool.call_tool("s__search", {"q": "climate"})
        assert result == ToolCallResult(content="search:climate")

    async def test_unknown_tool(self, settings):
        pool = await UserToolPool.connect("alice", [], settings)
        result = await pool.call_tool("nope__x", {})
        assert result.is_error
        assert "Unknown tool" in result.content

    async def test_timeout_is_error_result(self, make_settings, fake_connections):
        settings = make_settings(tool_call_timeout=0.05)
        fake_connections.call_delay = 1.0
        pool = await UserToolPool.connect("alice", [_config("S", "https://search.example/mcp")], settings)
        result = await pool.call_tool("s__search", {})
        assert result.is_error
        assert "timed out" in result.content

    async def test_exception_is_error_result(self, settings, fake_connections):
        fake_connections.servers["https://boom.example/mcp"] = ["explode"]
        pool = await UserToolPool.connect("alice", [_config("B", "https://boom.example/mcp")], settings)
        result = await pool.call_tool("b__explode", {})
        assert result.is_error
        assert "boom" in result.content


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class TestToolGateway:
    async def test_pool_cached(self, servers, settings, fake_connections):
        await servers.create("alice", "Search", "https://search.example/mcp")
        gateway = ToolGateway(servers, settings)
        first = await gateway.pool_for("alice")
        second = await gateway.pool_for("alice")
        assert first is second
        assert fake_connections.opened == ["https://search.example/mcp"]

    async def test_concurrent_first_use_builds_once(self, servers, settings, fake_connections):
        await servers.create("alice", "Search", "https://search.example/mcp")
        gateway = ToolGateway(servers, settings)
        pools = await asyncio.gather(*(gateway.pool_for("alice") for _ in range(5)))
        assert all(p is pools[0] for p in pools)
        assert len(fake_connections.opened) == 1

    async def test_invalidation_reflects_new_config(self, servers, settings, fake_connections):
        await servers.create("alice", "Search", "https://search.example/mcp")
        gateway = ToolGateway(servers, settings)
        before = await gateway.pool_for("alice")
        assert len(before.get_tools()) == 2

        await servers.create("alice", "Notes", "https://notes.example/mcp")
        await gateway.invalidate("alice")
        assert "https://search.example/mcp" in fake_connections.closed

        after = await gateway.pool_for("alice")
        assert after is not before
        assert {t["name"] for t in after.get_tools()} == {
            "search__search", "search__fetch", "notes__search",
        }

    async def test_invalidate_during_lease_defers_close(self, servers, settings, fake_connections):
        await servers.create("alice", "Search", "https://search.example/mcp")
        gateway = ToolGateway(servers, settings)

        async with gateway.lease("alice") as pool:
            await gateway.invalidate("alice")
            assert fake_connections.closed == []
            assert pool.is_mcp_tool("search__search")
            assert pool.server_name("search__search") == "Search"
            result = await pool.call_tool("search__search", {"q": "x"})
            assert result.content == "search:x"
            assert not result.is_error

        assert fake_connections.closed == ["https://search.example/mcp"]
        assert await gateway.pool_for("alice") is not pool

    async def test_lease_without_invalidation_keeps_pool_open(self, servers, settings, fake_connections):
        await servers.create("alice", "Search", "https://search.example/mcp")
        gateway = ToolGateway(servers, settings)
        async with gateway.lease("alice") as pool:
            pass
        assert fake_connections.closed == []
        assert await gateway.pool_for("alice") is pool

    async def test_disabled_server_excluded_after_invalidate(self, servers, settings):
        created = await servers.create("alice", "Search", "https://search.example/mcp")
        gateway = ToolGateway(servers, settings)
        await gateway.pool_for("alice")

        await servers.update("alice", created.id, {"enabled": False})
        await gateway.invalidate("alice")
        assert (await gateway.pool_for("alice")).get_tools() == []

    async def test_owners_isolated(self, servers, settings):
        await servers.create("alice", "Search", "https://search.example/mcp")
        gateway = ToolGateway(servers, settings)
        assert (await gateway.pool_for("bob")).get_tools() == []
        assert len((await gateway.pool_for("alice")).get_tools()) == 2

    async def test_test_server_success(self, servers, settings, fake_connections):
        gateway = ToolGateway(servers, settings)
        result = await gateway.test_server(_config("S", "https://search.example/mcp"))
        assert result == {"success": True, "toolCount": 2, "tools": ["search", "fetch"]}
        assert fake_connections.closed == ["https://search.example/mcp"]

    async def test_test_server_failure(self, servers, settings):
        gateway = ToolGateway(servers, settings)
        result = await gateway.test_server(_config("D", "https://down.example/mcp"))
        assert result == {"success": False, "error": "connection refused"}

    async def test_shutdown_closes_pools(self, servers, settings, fake_connections):
        await servers.create("alice", "Search", "https://search.example/mcp")
        gateway = ToolGateway(servers, settings)
        await gateway.pool_for("alice")
        await gateway.shutdown()
        assert fake_connections.closed == ["https://search.example/mcp"]
