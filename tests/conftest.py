"""Shared fixtures: in-memory MCP servers injected through ``client_factory``."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

import pytest

from mcp_orchestrator.mcp.client import MCPError, ToolCallResult, ToolDefinition
from mcp_orchestrator.mcp.connection_manager import ConnectionOptions
from mcp_orchestrator.mcp.types import (
    RegistryConfig,
    RegistryDefaults,
    ServerConfig,
    TransportConfig,
    TransportType,
)


@dataclass
class FakeServer:
    """Scripted behaviour of one remote server."""

    server_id: str
    tools: dict[str, ToolDefinition] = field(default_factory=dict)
    connect_failures: int = 0
    list_failures: int = 0
    connect_delay: float = 0.0
    version: str = "2.1.0"
    connect_calls: int = 0
    list_calls: int = 0
    closed: int = 0
    calls: list[tuple[str, dict[str, Any]]] = field(default_factory=list)


class FakeClient:
    def __init__(self, server: FakeServer):
        self.server = server
        self.server_info: dict[str, Any] = {}
        self.closed = False

    async def connect(self) -> None:
        self.server.connect_calls += 1
        if self.server.connect_delay:
            await asyncio.sleep(self.server.connect_delay)
        if self.server.connect_calls <= self.server.connect_failures:
            raise MCPError(-32000, "Connection refused")
        self.server_info = {"name": self.server.server_id, "version": self.server.version}

    async def list_tools(self) -> dict[str, ToolDefinition]:
        self.server.list_calls += 1
        if self.server.list_failures > 0:
            self.server.list_failures -= 1
            raise MCPError(-32000, "Server went away")
        return dict(self.server.tools)

    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> ToolCallResult:
        self.server.calls.append((tool_name, arguments))
        return ToolCallResult(tool_name=tool_name, success=True, result=f"{tool_name} ok")

    async def close(self) -> None:
        self.closed = True
        self.server.closed += 1


class FakeServerPool:
    """Client factory backed by scripted servers, keyed by server id."""

    def __init__(self) -> None:
        self.servers: dict[str, FakeServer] = {}
        self.clients: list[FakeClient] = []

    def add(self, server_id: str, tools: tuple[str, ...] = ("search",), **kwargs: Any) -> FakeServer:
        server = FakeServer(
            server_id=server_id,
            tools={name: make_tool(name, server_id) for name in tools},
            **kwargs,
        )
        self.servers[server_id] = server
        return server

    def factory(self, config: ServerConfig, timeout: float) -> FakeClient:
        server = self.servers.get(config.id) or self.add(config.id)
        client = FakeClient(server)
        self.clients.append(client)
        return client

    def clients_for(self, server_id: str) -> list[FakeClient]:
        return [c for c in self.clients if c.server.server_id == server_id]


def make_tool(name: str, server_id: str) -> ToolDefinition:
    return ToolDefinition(
        name=name,
        description=f"{name} tool",
        input_schema={"type": "object", "properties": {}},
        server_id=server_id,
    )


def make_server_config(
    server_id: str,
    tags: tuple[str, ...] = (),
    priority: int = 0,
    tool_namespace: str | None = None,
    enabled: bool = True,
    timeout: float | None = 1.0,
    retry_attempts: int | None = 1,
) -> ServerConfig:
    return ServerConfig(
        id=server_id,
        name=f"{server_id} server",
        transport=TransportConfig(type=TransportType.HTTP, url=f"https://{server_id}.example.com"),
        enabled=enabled,
        timeout=timeout,
        retry_attempts=retry_attempts,
        priority=priority,
        tags=tags,
        tool_namespace=tool_namespace,
    )


def make_registry_config(*servers: ServerConfig, auto_connect: bool = True) -> RegistryConfig:
    return RegistryConfig(
        servers=list(servers),
        defaults=RegistryDefaults(timeout=1.0, retry_attempts=1, auto_connect=auto_connect),
    )


@pytest.fixture
def pool():
    return FakeServerPool()


@pytest.fixture
def fast_options():
    """No retry delay and a health-check interval long enough to stay idle."""
    return ConnectionOptions(timeout=1.0, retry_attempts=1, retry_delay=0, health_check_interval=3600)


@pytest.fixture(autouse=True)
def clean_mcp_env(monkeypatch):
    for name in (
        "MCP_CONFIG_PATH",
        "MCP_DISABLE_BUILTIN",
        "MCP_AUTO_CONNECT",
        "MCP_TIMEOUT",
        "MCP_RETRY_ATTEMPTS",
    ):
        monkeypatch.delenv(name, raising=False)
