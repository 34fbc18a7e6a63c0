"""
Tests for the MCP manager facade.

End-to-end flows over scripted servers: initialize, route a request,
call a tool, disconnect and shut down.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from conftest import make_registry_config, make_server_config
from mcp_orchestrator.mcp.config import ConfigValidationError
from mcp_orchestrator.mcp.manager import (
    Manager,
    ManagerNotInitializedError,
    ManagerOptions,
    is_available,
)
from mcp_orchestrator.mcp.types import ConnectionStatus, LifecycleEvent, RequestContext


def _two_server_config(auto_connect=True):
    return make_registry_config(
        make_server_config("A", tags=("postgres", "database"), tool_namespace="pg_", priority=100),
        make_server_config("B", tags=("github",), priority=50),
        make_server_config("C", enabled=False),
        auto_connect=auto_connect,
    )


async def _manager(pool, fast_options, config=None, **options):
    pool.add("A", tools=("search_docs", "view_skill"))
    pool.add("B", tools=("create_issue",))
    manager = Manager(connection_options=fast_options, client_factory=pool.factory)
    await manager.initialize(ManagerOptions(config=config or _two_server_config(), **options))
    return manager


class TestInitialize:
    @pytest.mark.asyncio
    async def test_initialize_connects_enabled_servers(self, pool, fast_options):
        manager = await _manager(pool, fast_options)

        assert manager.is_initialized()
        assert [s.id for s in manager.get_all_servers()] == ["A", "B"]
        assert {s.id for s in manager.get_connected_servers()} == {"A", "B"}
        assert manager.get_server("C") is None
        assert is_available(manager)

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_auto_connect_option_overrides_config(self, pool, fast_options):
        manager = await _manager(pool, fast_options, auto_connect=False)

        assert not manager.has_connected_servers()
        assert not is_available(manager)
        assert pool.clients == []

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_config_defaults_control_auto_connect(self, pool, fast_options):
        manager = await _manager(pool, fast_options, config=_two_server_config(auto_connect=False))
        assert manager.get_stats().connected_servers == 0
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_second_initialize_is_noop(self, pool, fast_options):
        manager = await _manager(pool, fast_options)
        clients = len(pool.clients)

        await manager.initialize(ManagerOptions(config=make_registry_config()))

        assert len(manager.get_all_servers()) == 2
        assert len(pool.clients) == clients

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_builtin_config_without_user_file(self, pool, fast_options):
        manager = Manager(connection_options=fast_options, client_factory=pool.factory)
        await manager.initialize(ManagerOptions(load_user_config=False, auto_connect=False))

        assert [s.id for s in manager.get_all_servers()] == ["pg-aiguide"]
        assert manager.get_server("pg-aiguide").status == ConnectionStatus.DISCONNECTED

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_invalid_config_file_fails_initialize(self, tmp_path, monkeypatch, pool):
        config_file = tmp_path / "broken.json"
        config_file.write_text(json.dumps({"version": "1.0.0", "servers": [{"id": "x"}]}))
        monkeypatch.setenv("MCP_CONFIG_PATH", str(config_file))

        manager = Manager(client_factory=pool.factory)
        with pytest.raises(ConfigValidationError):
            await manager.initialize()

        assert not manager.is_initialized()

    @pytest.mark.asyncio
    async def test_use_before_initialize_raises(self):
        manager = Manager()

        with pytest.raises(ManagerNotInitializedError):
            manager.get_all_tools()
        with pytest.raises(ManagerNotInitializedError):
            await manager.connect("A")
        assert not is_available(manager)


class TestRequests:
    @pytest.mark.asyncio
    async def test_design_request_gets_postgres_tools_only(self, pool, fast_options):
        manager = await _manager(pool, fast_options)

        selection = manager.get_tools_for_request(
            RequestContext(user_message="Design a schema for a blog")
        )

        assert selection.use_mcp
        assert selection.decision.preferred_servers == ["A"]
        assert set(selection.tools) == {"pg_search_docs", "pg_view_skill"}

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_skip_directive_yields_no_tools(self, pool, fast_options):
        manager = await _manager(pool, fast_options)

        selection = manager.get_tools_for_request(
            RequestContext(user_message="[skip-mcp] Design a schema for a blog")
        )

        assert not selection.use_mcp
        assert selection.tools == {}

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_use_server_directive(self, pool, fast_options):
        manager = await _manager(pool, fast_options)

        selection = manager.get_tools_for_request(
            RequestContext(user_message="[use-server:B] open a ticket")
        )

        assert set(selection.tools) == {"B_create_issue"}
        assert manager.clean_message("[use-server:B] open a ticket") == "open a ticket"

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_disconnect_removes_server_tools(self, pool, fast_options):
        manager = await _manager(pool, fast_options)

        await manager.disconnect("A")

        assert set(manager.get_all_tools()) == {"B_create_issue"}
        assert set(manager.get_tools_from_servers(["A", "B"])) == {"B_create_issue"}

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_call_tool_routes_to_owning_server(self, pool, fast_options):
        manager = await _manager(pool, fast_options)
        calls = []
        manager.on(LifecycleEvent.TOOL_CALL, lambda ctx: calls.append((ctx.server_id, ctx.data)))

        result = await manager.call_tool("pg_search_docs", {"query": "indexes"})

        assert result.success
        assert pool.servers["A"].calls == [("search_docs", {"query": "indexes"})]
        assert calls[0][0] == "A"
        assert calls[0][1]["tool"] == "search_docs"
        assert manager.get_server("A").last_used_at is not None

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_call_tool_client_failure(self, pool, fast_options):
        manager = await _manager(pool, fast_options)
        manager.get_server("B").client.call_tool = AsyncMock(side_effect=RuntimeError("socket closed"))

        result = await manager.call_tool("B_create_issue", {"title": "bug"})

        assert not result.success
        assert result.error == "socket closed"
        assert manager.get_server("B").last_used_at is not None

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_call_unknown_tool(self, pool, fast_options):
        manager = await _manager(pool, fast_options)

        result = await manager.call_tool("pg_missing", {})

        assert not result.success
        assert "not available" in result.error

        await manager.shutdown()


class TestServerManagement:
    @pytest.mark.asyncio
    async def test_register_server_auto_connects(self, pool, fast_options):
        manager = await _manager(pool, fast_options)
        pool.add("D", tools=("lookup",))

        assert await manager.register_server(make_server_config("D"))

        assert manager.get_server("D").connected
        assert "D_lookup" in manager.get_all_tools()

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_register_disabled_server_stays_disconnected(self, pool, fast_options):
        manager = await _manager(pool, fast_options)

        await manager.register_server(make_server_config("E", enabled=False))

        assert manager.get_server("E").status == ConnectionStatus.DISCONNECTED

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_unregister_server(self, pool, fast_options):
        manager = await _manager(pool, fast_options)
        client = manager.get_server("B").client

        assert await manager.unregister_server("B")

        assert client.closed
        assert manager.get_server("B") is None
        assert "B" not in manager.connections.active_health_checks
        assert await manager.unregister_server("B") is False

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_health_check(self, pool, fast_options):
        manager = await _manager(pool, fast_options)
        pool.servers["B"].list_failures = 1

        assert await manager.health_check() == {"A": True, "B": False}

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_export_config(self, pool, fast_options):
        manager = await _manager(pool, fast_options)
        assert [s.id for s in manager.export_config().servers] == ["A", "B"]
        await manager.shutdown()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_reload_applies_new_config(self, pool, fast_options):
        manager = await _manager(pool, fast_options)
        old_clients = list(pool.clients)

        await manager.reload(make_registry_config(make_server_config("B")))

        assert [s.id for s in manager.get_all_servers()] == ["B"]
        assert manager.get_server("B").connected
        assert all(client.closed for client in old_clients)

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_reload_during_slow_connect(self, pool, fast_options):
        server = pool.add("a", connect_delay=0.2)
        config = make_registry_config(make_server_config("a"), auto_connect=False)
        manager = Manager(connection_options=fast_options, client_factory=pool.factory)
        await manager.initialize(ManagerOptions(config=config))

        pending = asyncio.create_task(manager.connect("a"))
        await asyncio.sleep(0.05)
        await manager.reload(config)

        assert await manager.connect("a") is True
        assert await pending is False
        assert server.connect_calls == 2
        assert manager.get_server("a").status == ConnectionStatus.CONNECTED
        assert manager.connections.active_health_checks == ["a"]

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_during_slow_connect(self, pool, fast_options):
        pool.add("a", connect_delay=0.1)
        config = make_registry_config(make_server_config("a"), auto_connect=False)
        manager = Manager(connection_options=fast_options, client_factory=pool.factory)
        await manager.initialize(ManagerOptions(config=config))

        pending = asyncio.create_task(manager.connect("a"))
        await asyncio.sleep(0.01)
        await manager.shutdown()

        assert await pending is False
        await asyncio.sleep(0.15)
        assert manager.connections.active_health_checks == []
        assert all(client.closed for client in pool.clients)

    @pytest.mark.asyncio
    async def test_shutdown_releases_everything(self, pool, fast_options):
        manager = await _manager(pool, fast_options)

        await manager.shutdown()

        assert not manager.is_initialized()
        assert manager.connections.active_health_checks == []
        assert manager.registry.get_all_servers() == []
        assert all(client.closed for client in pool.clients)

        # A second shutdown is harmless
        await manager.shutdown()
