"""
MCP Server Registry.

Authoritative in-memory store of server instances keyed by server id,
plus the lifecycle event bus and tool-map assembly.

Operations on unknown ids log a warning and do nothing; a single bad
server id must never abort the wider request flow.
"""

from __future__ import annotations

import inspect
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import structlog

from mcp_orchestrator.mcp.types import (
    ConnectionStatus,
    LifecycleContext,
    LifecycleEvent,
    LifecycleHandler,
    ManagerStats,
    RegistryConfig,
    RegistryDefaults,
    ServerConfig,
    ServerInstance,
    ServerMetadata,
)

if TYPE_CHECKING:
    from mcp_orchestrator.mcp.client import ToolDefinition

logger = structlog.get_logger(__name__)


class ServerRegistry:
    """
    Registry of MCP server instances.

    Usage:
        registry = ServerRegistry()
        await registry.initialize(config)

        registry.on(LifecycleEvent.AFTER_CONNECT, on_connected)
        tools = registry.get_all_tools()
    """

    def __init__(self) -> None:
        self._servers: dict[str, ServerInstance] = {}
        self._handlers: dict[LifecycleEvent, list[LifecycleHandler]] = {}
        self._config: RegistryConfig | None = None
        self._logger = logger.bind(component="ServerRegistry")

    # ─────────────────────────────────────────────────────────────────────────
    # Registration
    # ─────────────────────────────────────────────────────────────────────────

    async def initialize(self, config: RegistryConfig) -> None:
        """Register every enabled server from a configuration."""
        self._config = config
        self._logger.info("Initializing registry", servers=len(config.servers))

        for server_config in config.servers:
            if server_config.enabled is False:
                self._logger.info("Server is disabled", server_id=server_config.id)
                continue
            await self.register_server(server_config)

    async def register_server(self, config: ServerConfig) -> bool:
        """
        Register a server in ``disconnected`` state.

        Returns:
            False if the id was already registered (nothing changes)
        """
        if config.id in self._servers:
            self._logger.warning("Server already registered", server_id=config.id)
            return False

        self._servers[config.id] = ServerInstance(config=config)
        self._logger.info("Registered server", server_id=config.id)
        return True

    async def unregister_server(self, server_id: str) -> bool:
        """Remove a server, disconnecting it first if it is connected."""
        instance = self._servers.get(server_id)
        if instance is None:
            self._logger.warning("Server not found", server_id=server_id)
            return False

        if instance.status == ConnectionStatus.CONNECTED:
            await self._close_client(instance)
            await self.disconnect_server(server_id)

        self._servers.pop(server_id, None)
        self._logger.info("Unregistered server", server_id=server_id)
        return True

    # ─────────────────────────────────────────────────────────────────────────
    # State transitions
    # ─────────────────────────────────────────────────────────────────────────

    async def update_server_status(
        self,
        server_id: str,
        status: ConnectionStatus,
        client: Any = None,
        tools: dict[str, ToolDefinition] | None = None,
        metadata: ServerMetadata | None = None,
        error: BaseException | None = None,
    ) -> None:
        """
        Change a server's status.

        This is the only path by which status changes. Entering ``connected``
        stamps ``connected_at`` and fires ``after_connect``; entering
        ``error`` fires ``error``.
        """
        instance = self._servers.get(server_id)
        if instance is None:
            self._logger.warning(
                "Status update for unknown server",
                server_id=server_id,
                status=status.value,
            )
            return

        previous = instance.status
        instance.status = status
        if client is not None:
            instance.client = client
        if tools is not None:
            instance.tools = dict(tools)
        if metadata is not None:
            instance.metadata = metadata
        if error is not None:
            instance.error = error

        self._logger.debug(
            "Server status changed",
            server_id=server_id,
            previous=previous.value,
            status=status.value,
        )

        if status == ConnectionStatus.CONNECTED:
            instance.connected_at = datetime.now(timezone.utc)
            instance.error = None
            await self.emit(LifecycleEvent.AFTER_CONNECT, server_id, data={"tools": len(instance.tools)})
        elif status in (ConnectionStatus.ERROR, ConnectionStatus.TIMEOUT):
            await self.emit(LifecycleEvent.ERROR, server_id, error=instance.error)

    async def disconnect_server(self, server_id: str) -> None:
        """Reset a server to ``disconnected`` and drop its handle and tools."""
        instance = self._servers.get(server_id)
        if instance is None:
            self._logger.warning("Disconnect for unknown server", server_id=server_id)
            return

        await self.emit(LifecycleEvent.BEFORE_DISCONNECT, server_id)

        instance.status = ConnectionStatus.DISCONNECTED
        instance.client = None
        instance.tools = {}
        instance.connected_at = None

        await self.emit(LifecycleEvent.AFTER_DISCONNECT, server_id)
        self._logger.info("Disconnected server", server_id=server_id)

    async def _close_client(self, instance: ServerInstance) -> None:
        if instance.client is None:
            return
        try:
            await instance.client.close()
        except Exception as e:
            self._logger.warning(
                "Error closing server client",
                server_id=instance.id,
                error=str(e),
            )

    # ─────────────────────────────────────────────────────────────────────────
    # Usage tracking
    # ─────────────────────────────────────────────────────────────────────────

    def mark_server_used(self, server_id: str) -> None:
        instance = self._servers.get(server_id)
        if instance is not None:
            instance.last_used_at = datetime.now(timezone.utc)

    async def record_tool_call(
        self,
        server_id: str,
        tool_name: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        """Mark a server as used and fire ``tool_call``."""
        self.mark_server_used(server_id)
        await self.emit(
            LifecycleEvent.TOOL_CALL,
            server_id,
            data={"tool": tool_name, **(data or {})},
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────────────────

    def get_server(self, server_id: str) -> ServerInstance | None:
        return self._servers.get(server_id)

    def get_all_servers(self) -> list[ServerInstance]:
        return list(self._servers.values())

    def get_connected_servers(self) -> list[ServerInstance]:
        return [s for s in self._servers.values() if s.status == ConnectionStatus.CONNECTED]

    def get_servers_by_tag(self, tag: str) -> list[ServerInstance]:
        return [s for s in self._servers.values() if tag in s.config.tags]

    def get_servers_by_capability(self, capability: str) -> list[ServerInstance]:
        """Servers whose connected metadata advertises a capability."""
        return [
            s
            for s in self._servers.values()
            if s.metadata is not None and getattr(s.metadata.capabilities, capability, False)
        ]

    def has_connected_servers(self) -> bool:
        return any(s.status == ConnectionStatus.CONNECTED for s in self._servers.values())

    # ─────────────────────────────────────────────────────────────────────────
    # Tool maps
    # ─────────────────────────────────────────────────────────────────────────

    def get_all_tools(self) -> dict[str, ToolDefinition]:
        """Namespaced tools from every connected server."""
        return self._collect_tools(self._servers.values())

    def get_tools_from_servers(self, server_ids: list[str]) -> dict[str, ToolDefinition]:
        """Namespaced tools from the given servers, skipping unconnected ones."""
        instances = [self._servers[sid] for sid in server_ids if sid in self._servers]
        return self._collect_tools(instances)

    def _collect_tools(self, instances: Any) -> dict[str, ToolDefinition]:
        tools: dict[str, ToolDefinition] = {}
        owners: dict[str, str] = {}

        for instance in instances:
            if instance.status != ConnectionStatus.CONNECTED:
                continue

            namespace = instance.config.namespace
            for tool_name, tool_def in instance.tools.items():
                namespaced_name = f"{namespace}{tool_name}"
                previous_owner = owners.get(namespaced_name)
                if previous_owner is not None and previous_owner != instance.id:
                    # Last write wins
                    self._logger.warning(
                        "Tool name collision",
                        tool=namespaced_name,
                        replaced_server=previous_owner,
                        server_id=instance.id,
                    )
                tools[namespaced_name] = tool_def
                owners[namespaced_name] = instance.id

        return tools

    def resolve_tool(self, namespaced_name: str) -> tuple[ServerInstance, str] | None:
        """
        Find the connected server exposing a namespaced tool.

        Scans in registration order and keeps the last match, mirroring the
        last-write-wins rule of tool-map assembly.
        """
        match: tuple[ServerInstance, str] | None = None
        for instance in self._servers.values():
            if instance.status != ConnectionStatus.CONNECTED:
                continue
            namespace = instance.config.namespace
            if not namespaced_name.startswith(namespace):
                continue
            raw_name = namespaced_name[len(namespace):]
            if raw_name in instance.tools:
                match = (instance, raw_name)
        return match

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle events
    # ─────────────────────────────────────────────────────────────────────────

    def on(self, event: LifecycleEvent, handler: LifecycleHandler) -> None:
        """Subscribe a sync or async handler to a lifecycle event."""
        self._handlers.setdefault(LifecycleEvent(event), []).append(handler)

    def off(self, event: LifecycleEvent, handler: LifecycleHandler) -> None:
        """Unsubscribe a handler; unknown handlers are ignored."""
        handlers = self._handlers.get(LifecycleEvent(event))
        if handlers and handler in handlers:
            handlers.remove(handler)

    async def emit(
        self,
        event: LifecycleEvent,
        server_id: str,
        data: Any = None,
        error: BaseException | None = None,
    ) -> None:
        """Deliver an event; handler failures are logged and swallowed."""
        handlers = self._handlers.get(event)
        if not handlers:
            return

        instance = self._servers.get(server_id)
        if instance is None:
            return

        context = LifecycleContext(
            server_id=server_id,
            server_name=instance.config.name,
            event=event,
            data=data,
            error=error,
        )

        for handler in list(handlers):
            try:
                result = handler(context)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self._logger.error(
                    "Lifecycle handler error",
                    event=event.value,
                    server_id=server_id,
                    error=str(e),
                )

    # ─────────────────────────────────────────────────────────────────────────
    # Stats and export
    # ─────────────────────────────────────────────────────────────────────────

    def get_stats(self) -> ManagerStats:
        servers = list(self._servers.values())
        connected = [s for s in servers if s.status == ConnectionStatus.CONNECTED]
        return ManagerStats(
            total_servers=len(servers),
            connected_servers=len(connected),
            disconnected_servers=len(
                [s for s in servers if s.status == ConnectionStatus.DISCONNECTED]
            ),
            error_servers=len(
                [
                    s
                    for s in servers
                    if s.status in (ConnectionStatus.ERROR, ConnectionStatus.TIMEOUT)
                ]
            ),
            total_tools=sum(len(s.tools) for s in connected),
        )

    def clear(self) -> None:
        """Drop every server, handler and the stored configuration."""
        self._servers.clear()
        self._handlers.clear()
        self._config = None
        self._logger.info("Cleared all servers")

    def export_config(self) -> RegistryConfig:
        """Configuration reflecting the currently registered servers."""
        return RegistryConfig(
            version=self._config.version if self._config else "1.0.0",
            servers=[s.config for s in self._servers.values()],
            defaults=self._config.defaults if self._config else RegistryDefaults(),
        )
