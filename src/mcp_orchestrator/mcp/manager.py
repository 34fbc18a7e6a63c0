"""
MCP Manager.

Façade composing the registry, connection manager and router into an
initialize / use / shutdown lifecycle. A request handler only needs
``get_tools_for_request``.

Each manager owns its collaborators; there is no module-level instance.

Usage:
    manager = Manager()
    await manager.initialize()

    selection = manager.get_tools_for_request(
        RequestContext(user_message="Design a schema for an e-commerce app")
    )
    all_tools = {**builtin_tools, **selection.tools}

    await manager.shutdown()
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import structlog

from mcp_orchestrator.mcp.client import ToolCallResult, ToolDefinition
from mcp_orchestrator.mcp.config import default_registry_config, load_registry_config
from mcp_orchestrator.mcp.connection_manager import (
    ClientFactory,
    ConnectionManager,
    ConnectionOptions,
)
from mcp_orchestrator.mcp.registry import ServerRegistry
from mcp_orchestrator.mcp.router import Router
from mcp_orchestrator.mcp.types import (
    LifecycleEvent,
    LifecycleHandler,
    ManagerStats,
    RegistryConfig,
    RequestContext,
    RoutingDecision,
    ServerConfig,
    ServerInstance,
)

logger = structlog.get_logger(__name__)


class ManagerNotInitializedError(RuntimeError):
    """Raised when the manager is used before ``initialize``."""


@dataclass
class ManagerOptions:
    """Options for ``Manager.initialize``."""

    config: RegistryConfig | None = None
    auto_connect: bool | None = None
    load_user_config: bool = True


@dataclass
class ToolSelection:
    """Tools chosen for one request, with the decision behind them."""

    tools: dict[str, ToolDefinition] = field(default_factory=dict)
    decision: RoutingDecision = field(default_factory=lambda: RoutingDecision(use_mcp=False))

    @property
    def use_mcp(self) -> bool:
        return self.decision.use_mcp


class Manager:
    """High-level API for the MCP subsystem."""

    def __init__(
        self,
        registry: ServerRegistry | None = None,
        connection_manager: ConnectionManager | None = None,
        router: Router | None = None,
        connection_options: ConnectionOptions | None = None,
        client_factory: ClientFactory | None = None,
    ):
        self.registry = registry or ServerRegistry()
        self.connections = connection_manager or ConnectionManager(
            self.registry,
            options=connection_options,
            client_factory=client_factory,
        )
        self.router = router or Router(self.registry)
        self._initialized = False
        self._auto_connect = True
        self._logger = logger.bind(component="Manager")

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def initialize(self, options: ManagerOptions | None = None) -> None:
        """
        Load configuration, register servers and optionally connect them.

        Raises:
            ConfigValidationError: if the configuration is malformed
        """
        if self._initialized:
            self._logger.warning("Already initialized")
            return

        options = options or ManagerOptions()
        self._logger.info("Initializing MCP manager")

        try:
            if options.config is not None:
                config = options.config
            elif options.load_user_config:
                config = load_registry_config()
            else:
                config = default_registry_config()

            await self.registry.initialize(config)

            if options.auto_connect is not None:
                self._auto_connect = options.auto_connect
            else:
                self._auto_connect = config.defaults.auto_connect

            # connect_all() checks the flag, so it must be set first
            self._initialized = True

            if self._auto_connect:
                await self.connect_all()

        except Exception as e:
            self._initialized = False
            self._logger.error("Initialization failed", error=str(e))
            raise

        self._logger.info(
            "MCP manager initialized",
            servers=len(self.registry.get_all_servers()),
            connected=len(self.registry.get_connected_servers()),
        )

    def is_initialized(self) -> bool:
        return self._initialized

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise ManagerNotInitializedError(
                "MCP manager not initialized. Call initialize() first."
            )

    async def reload(self, config: RegistryConfig | None = None) -> None:
        """Disconnect everything, clear the registry and initialize again."""
        self._ensure_initialized()
        self._logger.info("Reloading MCP manager")

        await self.connections.cleanup()
        self.registry.clear()

        self._initialized = False
        await self.initialize(ManagerOptions(config=config, auto_connect=self._auto_connect))

    async def shutdown(self) -> None:
        """Disconnect all servers, stop all timers and clear the registry."""
        if not self._initialized:
            return

        self._logger.info("Shutting down MCP manager")
        await self.connections.cleanup()
        self.registry.clear()
        self._initialized = False
        self._logger.info("MCP manager shut down")

    # ─────────────────────────────────────────────────────────────────────────
    # Connections
    # ─────────────────────────────────────────────────────────────────────────

    async def connect(self, server_id: str) -> bool:
        self._ensure_initialized()
        return await self.connections.connect(server_id)

    async def connect_all(self, server_ids: list[str] | None = None) -> dict[str, bool]:
        self._ensure_initialized()
        return await self.connections.connect_all(server_ids)

    async def disconnect(self, server_id: str) -> None:
        self._ensure_initialized()
        await self.connections.disconnect(server_id)

    async def disconnect_all(self) -> None:
        self._ensure_initialized()
        await self.connections.disconnect_all()

    async def register_server(self, config: ServerConfig) -> bool:
        """Register a server, connecting it when auto-connect is on."""
        self._ensure_initialized()
        registered = await self.registry.register_server(config)

        if registered and self._auto_connect and config.enabled:
            await self.connect(config.id)
        return registered

    async def unregister_server(self, server_id: str) -> bool:
        self._ensure_initialized()
        await self.connections.disconnect(server_id)
        return await self.registry.unregister_server(server_id)

    async def health_check(self) -> dict[str, bool]:
        """Check every connected server still lists a non-empty tool catalogue."""
        self._ensure_initialized()
        results: dict[str, bool] = {}
        for server in self.registry.get_connected_servers():
            healthy = await self.connections.check_health(server.id)
            results[server.id] = healthy
            if not healthy:
                self._logger.warning("Health check failed", server_id=server.id)
        return results

    # ─────────────────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────────────────

    def get_server(self, server_id: str) -> ServerInstance | None:
        self._ensure_initialized()
        return self.registry.get_server(server_id)

    def get_all_servers(self) -> list[ServerInstance]:
        self._ensure_initialized()
        return self.registry.get_all_servers()

    def get_connected_servers(self) -> list[ServerInstance]:
        self._ensure_initialized()
        return self.registry.get_connected_servers()

    def get_servers_by_tag(self, tag: str) -> list[ServerInstance]:
        self._ensure_initialized()
        return self.registry.get_servers_by_tag(tag)

    def get_all_tools(self) -> dict[str, ToolDefinition]:
        self._ensure_initialized()
        return self.registry.get_all_tools()

    def get_tools_from_servers(self, server_ids: list[str]) -> dict[str, ToolDefinition]:
        self._ensure_initialized()
        return self.registry.get_tools_from_servers(server_ids)

    def has_connected_servers(self) -> bool:
        self._ensure_initialized()
        return self.registry.has_connected_servers()

    def get_stats(self) -> ManagerStats:
        self._ensure_initialized()
        return self.registry.get_stats()

    def export_config(self) -> RegistryConfig:
        self._ensure_initialized()
        return self.registry.export_config()

    # ─────────────────────────────────────────────────────────────────────────
    # Requests
    # ─────────────────────────────────────────────────────────────────────────

    def get_tools_for_request(self, context: RequestContext) -> ToolSelection:
        """Route a request and resolve the chosen servers into a tool map."""
        self._ensure_initialized()

        decision = self.router.route(context)
        self.router.log_decision(context, decision)

        tools: dict[str, ToolDefinition] = {}
        if decision.use_mcp and decision.preferred_servers:
            tools = self.registry.get_tools_from_servers(decision.preferred_servers)

        return ToolSelection(tools=tools, decision=decision)

    async def call_tool(self, namespaced_name: str, arguments: dict[str, Any]) -> ToolCallResult:
        """Execute a namespaced tool on the connected server that owns it."""
        self._ensure_initialized()

        resolved = self.registry.resolve_tool(namespaced_name)
        if resolved is None:
            self._logger.warning("Tool not available", tool=namespaced_name)
            return ToolCallResult(
                tool_name=namespaced_name,
                success=False,
                error=f"Tool not available: {namespaced_name}",
            )

        instance, raw_name = resolved
        try:
            result = await instance.client.call_tool(raw_name, arguments)
        except Exception as e:
            self._logger.error(
                "Tool call failed",
                tool=namespaced_name,
                server_id=instance.id,
                error=str(e),
            )
            result = ToolCallResult(tool_name=raw_name, success=False, error=str(e))

        await self.registry.record_tool_call(
            instance.id,
            raw_name,
            data={"success": result.success, "duration_ms": result.duration_ms},
        )
        return result

    def clean_message(self, message: str) -> str:
        return self.router.clean_message(message)

    # ─────────────────────────────────────────────────────────────────────────
    # Events
    # ─────────────────────────────────────────────────────────────────────────

    def on(self, event: LifecycleEvent, handler: LifecycleHandler) -> None:
        self._ensure_initialized()
        self.registry.on(event, handler)

    def off(self, event: LifecycleEvent, handler: LifecycleHandler) -> None:
        self._ensure_initialized()
        self.registry.off(event, handler)


def is_available(manager: Manager) -> bool:
    """Whether the manager is initialized and has at least one connected server."""
    return manager.is_initialized() and manager.has_connected_servers()
