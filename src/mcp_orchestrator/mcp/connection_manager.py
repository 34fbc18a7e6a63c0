"""
MCP Connection Manager.

Turns registered servers into connected ones and keeps them that way:

- Sequential retry with a fixed delay, every step bounded by the server timeout
- One in-flight connection task per server id; concurrent callers share it
- A periodic health check per connected server that reconnects on failure

All state changes go through ``ServerRegistry.update_server_status``.

Usage:
    connections = ConnectionManager(registry)
    results = await connections.connect_all()
    ...
    await connections.cleanup()
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable

import structlog

from mcp_orchestrator.mcp.client import MCPClient, MCPError, ToolDefinition
from mcp_orchestrator.mcp.registry import ServerRegistry
from mcp_orchestrator.mcp.types import (
    Capabilities,
    ConnectionStatus,
    LifecycleEvent,
    ServerConfig,
    ServerInstance,
    ServerMetadata,
)

logger = structlog.get_logger(__name__)

ClientFactory = Callable[[ServerConfig, float], Any]


@dataclass
class ConnectionOptions:
    """Connection defaults, used when a server does not set its own."""

    timeout: float = 10.0
    retry_attempts: int = 2
    retry_delay: float = 1.0
    health_check_interval: float = 60.0


class ConnectionFailedError(Exception):
    """Raised (and recorded on the instance) when every attempt failed."""

    def __init__(self, server_id: str, attempts: int, last_error: BaseException | None):
        self.server_id = server_id
        self.attempts = attempts
        self.last_error = last_error
        message = f"Failed to connect to {server_id} after {attempts} attempts"
        if last_error is not None:
            message += f": {last_error}"
        super().__init__(message)


def default_client_factory(config: ServerConfig, timeout: float) -> MCPClient:
    return MCPClient(config, timeout=timeout)


class ConnectionManager:
    """
    Manages MCP server connections for a registry.

    The client returned by ``client_factory`` must provide ``connect()``,
    ``list_tools()`` and ``close()`` coroutines.
    """

    def __init__(
        self,
        registry: ServerRegistry,
        options: ConnectionOptions | None = None,
        client_factory: ClientFactory | None = None,
    ):
        self._registry = registry
        self.options = options or ConnectionOptions()
        self._client_factory = client_factory or default_client_factory
        # Keyed by id, but only shared with callers for the same instance
        self._in_flight: dict[str, tuple[ServerInstance, asyncio.Task[bool]]] = {}
        self._health_tasks: dict[str, asyncio.Task[None]] = {}
        self._logger = logger.bind(component="ConnectionManager")

    @property
    def active_health_checks(self) -> list[str]:
        """Server ids with a running health-check task."""
        return [sid for sid, task in self._health_tasks.items() if not task.done()]

    def is_connecting(self, server_id: str) -> bool:
        return server_id in self._in_flight

    def _timeout_for(self, config: ServerConfig) -> float:
        return config.timeout if config.timeout else self.options.timeout

    def _attempts_for(self, config: ServerConfig) -> int:
        attempts = (
            config.retry_attempts
            if config.retry_attempts is not None
            else self.options.retry_attempts
        )
        # Programmatic configs may carry 0; files are validated to >= 1
        return max(1, attempts)

    def _is_current(self, instance: ServerInstance) -> bool:
        return self._registry.get_server(instance.id) is instance

    # ─────────────────────────────────────────────────────────────────────────
    # Connect
    # ─────────────────────────────────────────────────────────────────────────

    async def connect(self, server_id: str) -> bool:
        """
        Connect a registered server.

        A second call while an attempt sequence is running awaits that same
        sequence instead of starting another one.

        Returns:
            True once the server is connected, False if it ended in ``error``
            or is unknown
        """
        instance = self._registry.get_server(server_id)
        if instance is None:
            self._logger.warning("Server not found", server_id=server_id)
            return False

        entry = self._in_flight.get(server_id)
        if entry is not None and entry[0] is instance:
            self._logger.debug("Already connecting", server_id=server_id)
            task = entry[1]
        elif instance.status == ConnectionStatus.CONNECTED:
            self._logger.debug("Server already connected", server_id=server_id)
            return True
        else:
            task = asyncio.create_task(
                self._connect_with_retry(instance),
                name=f"mcp_connect_{server_id}",
            )
            self._in_flight[server_id] = (instance, task)
            task.add_done_callback(partial(self._forget_in_flight, server_id))

        # A cancelled caller must not cancel the attempt other callers share
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if task.cancelled() and not (current and current.cancelling()):
                # Stopped by disconnect or cleanup, not by our caller
                return False
            raise

    def _forget_in_flight(self, server_id: str, task: asyncio.Task) -> None:
        entry = self._in_flight.get(server_id)
        if entry is not None and entry[1] is task:
            del self._in_flight[server_id]

    async def _cancel_in_flight(self, server_id: str) -> None:
        entry = self._in_flight.pop(server_id, None)
        if entry is None or entry[1] is asyncio.current_task():
            return

        task = entry[1]
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _connect_with_retry(self, instance: ServerInstance) -> bool:
        config = instance.config
        server_id = config.id
        max_attempts = self._attempts_for(config)
        timeout = self._timeout_for(config)

        await self._registry.emit(LifecycleEvent.BEFORE_CONNECT, server_id)
        await self._registry.update_server_status(server_id, ConnectionStatus.CONNECTING)

        last_error: BaseException | None = None
        for attempt in range(1, max_attempts + 1):
            self._logger.info(
                "Connection attempt",
                server_id=server_id,
                attempt=attempt,
                max_attempts=max_attempts,
            )

            try:
                client, tools = await self._connect_once(config, timeout)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = e
                self._logger.warning(
                    "Connection attempt failed",
                    server_id=server_id,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    error=str(e),
                )
                if attempt < max_attempts:
                    await asyncio.sleep(self.options.retry_delay)
                continue

            if not self._is_current(instance):
                # Unregistered or replaced while the attempt was running
                self._logger.info("Server removed during connect", server_id=server_id)
                await self._close_quietly(server_id, client)
                return False

            await self._registry.update_server_status(
                server_id,
                ConnectionStatus.CONNECTED,
                client=client,
                tools=tools,
                metadata=self._extract_metadata(config, client),
            )
            self._start_health_check(server_id)

            self._logger.info(
                "Connected to MCP server",
                server_id=server_id,
                tools=len(tools),
                attempt=attempt,
            )
            return True

        error = ConnectionFailedError(server_id, max_attempts, last_error)
        self._logger.error("All connection attempts failed", server_id=server_id, error=str(error))
        if self._is_current(instance):
            await self._registry.update_server_status(
                server_id,
                ConnectionStatus.ERROR,
                error=error,
            )
        return False

    async def _connect_once(
        self,
        config: ServerConfig,
        timeout: float,
    ) -> tuple[Any, dict[str, ToolDefinition]]:
        """One attempt: create the transport, then fetch the tool catalogue."""
        client = self._client_factory(config, timeout)
        if client is None:
            raise MCPError(-32603, "Failed to create MCP client")

        try:
            await self._bounded(client.connect(), timeout, "Client creation timeout")
            tools = await self._bounded(client.list_tools(), timeout, "Tools fetch timeout")
        except BaseException:
            await self._close_quietly(config.id, client)
            raise

        return client, dict(tools or {})

    @staticmethod
    async def _bounded(awaitable: Awaitable[Any], timeout: float, message: str) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise MCPError(-32001, f"{message} after {timeout}s") from e

    @staticmethod
    def _extract_metadata(config: ServerConfig, client: Any) -> ServerMetadata:
        server_info = getattr(client, "server_info", None) or {}
        return ServerMetadata(
            id=config.id,
            name=config.name,
            description=config.description,
            version=server_info.get("version") or "1.0.0",
            tags=config.tags,
            capabilities=config.capabilities or Capabilities(),
        )

    async def connect_all(self, server_ids: list[str] | None = None) -> dict[str, bool]:
        """
        Connect several servers concurrently.

        One server's failure never cancels another's attempt.

        Returns:
            Mapping of server id to success
        """
        if server_ids is None:
            ids = [s.id for s in self._registry.get_all_servers()]
        else:
            ids = [sid for sid in server_ids if self._registry.get_server(sid) is not None]

        self._logger.info("Connecting to servers", count=len(ids))

        results = await asyncio.gather(
            *(self.connect(sid) for sid in ids),
            return_exceptions=True,
        )

        status: dict[str, bool] = {}
        for sid, result in zip(ids, results):
            if isinstance(result, BaseException):
                self._logger.error("Unexpected connect failure", server_id=sid, error=str(result))
            status[sid] = result is True

        self._logger.info(
            "Connected servers",
            connected=sum(status.values()),
            total=len(ids),
        )
        return status

    # ─────────────────────────────────────────────────────────────────────────
    # Disconnect
    # ─────────────────────────────────────────────────────────────────────────

    async def disconnect(self, server_id: str) -> None:
        """Stop any running connect and the health check, then reset to ``disconnected``."""
        await self._cancel_in_flight(server_id)
        await self._stop_health_check(server_id)

        instance = self._registry.get_server(server_id)
        if instance is None:
            self._logger.warning("Disconnect for unknown server", server_id=server_id)
            return

        if instance.client is None and instance.status == ConnectionStatus.DISCONNECTED:
            self._logger.debug("Server not connected", server_id=server_id)
            return

        await self._close_quietly(server_id, instance.client)
        await self._registry.disconnect_server(server_id)

    async def disconnect_all(self) -> None:
        """Disconnect every server that holds a handle or a non-idle status."""
        server_ids = [
            s.id
            for s in self._registry.get_all_servers()
            if s.client is not None or s.status != ConnectionStatus.DISCONNECTED
        ]
        self._logger.info("Disconnecting servers", count=len(server_ids))

        results = await asyncio.gather(
            *(self.disconnect(sid) for sid in server_ids),
            return_exceptions=True,
        )
        for sid, result in zip(server_ids, results):
            if isinstance(result, BaseException):
                self._logger.error("Disconnect failed", server_id=sid, error=str(result))

    async def _close_quietly(self, server_id: str, client: Any) -> None:
        if client is None:
            return
        try:
            await client.close()
        except Exception as e:
            self._logger.warning("Error closing client", server_id=server_id, error=str(e))

    # ─────────────────────────────────────────────────────────────────────────
    # Health checks
    # ─────────────────────────────────────────────────────────────────────────

    def _start_health_check(self, server_id: str) -> None:
        existing = self._health_tasks.get(server_id)
        if existing is not None and existing is not asyncio.current_task():
            existing.cancel()

        self._health_tasks[server_id] = asyncio.create_task(
            self._health_check_loop(server_id),
            name=f"mcp_health_check_{server_id}",
        )

    async def _stop_health_check(self, server_id: str) -> None:
        task = self._health_tasks.pop(server_id, None)
        if task is None or task is asyncio.current_task():
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _release_health_check(self, server_id: str) -> None:
        if self._health_tasks.get(server_id) is asyncio.current_task():
            del self._health_tasks[server_id]

    async def _health_check_loop(self, server_id: str) -> None:
        while True:
            await asyncio.sleep(self.options.health_check_interval)
            if not await self._perform_health_check(server_id):
                return

    async def _perform_health_check(self, server_id: str) -> bool:
        """
        Re-list tools for one server.

        Returns:
            True if the loop should keep running
        """
        instance = self._registry.get_server(server_id)
        if instance is None or instance.status != ConnectionStatus.CONNECTED:
            self._release_health_check(server_id)
            return False

        try:
            tools = await self._bounded(
                instance.client.list_tools(),
                self._timeout_for(instance.config),
                "Health check timeout",
            )
            if not tools:
                raise MCPError(-32002, "Health check returned an empty tool catalogue")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._logger.warning("Health check failed", server_id=server_id, error=str(e))

            # Keep the slot until the reconnect settles so cleanup can cancel
            # it; a successful reconnect replaces this task with a fresh one
            await self._close_quietly(server_id, instance.client)
            await self._registry.update_server_status(
                server_id,
                ConnectionStatus.ERROR,
                error=e,
            )
            await self.connect(server_id)
            self._release_health_check(server_id)
            return False

        self._logger.debug("Health check passed", server_id=server_id, tools=len(tools))
        return True

    async def check_health(self, server_id: str) -> bool:
        """One-shot check that a connected server still lists tools. No state changes."""
        instance = self._registry.get_server(server_id)
        if instance is None or instance.status != ConnectionStatus.CONNECTED:
            return False
        if instance.client is None:
            return False

        try:
            tools = await self._bounded(
                instance.client.list_tools(),
                self._timeout_for(instance.config),
                "Health check timeout",
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._logger.warning("One-shot health check failed", server_id=server_id, error=str(e))
            return False

        return bool(tools)

    # ─────────────────────────────────────────────────────────────────────────
    # Shutdown
    # ─────────────────────────────────────────────────────────────────────────

    async def cleanup(self) -> None:
        """Cancel running connects and health checks, then disconnect every server."""
        # A health check may start a connect while being cancelled
        while self._health_tasks or self._in_flight:
            tasks = list(self._health_tasks.values())
            tasks.extend(task for _, task in self._in_flight.values())
            self._health_tasks.clear()
            self._in_flight.clear()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        await self.disconnect_all()
        self._logger.info("Cleaned up all connections")
