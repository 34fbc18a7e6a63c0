"""
Default MCP connection handle.

``MCPClient`` speaks JSON-RPC 2.0 to one tool server, either over a child
process's stdin/stdout or over HTTP POST. SSE servers are reached through
the same HTTP endpoint; event-stream replies are decoded frame by frame.

Child processes are started with ``asyncio.create_subprocess_exec`` (no
shell), and only launchers in ``ALLOWED_LAUNCHERS`` may be started.
"""

from __future__ import annotations

import asyncio
import json
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from mcp_orchestrator import __version__
from mcp_orchestrator.mcp.types import ServerConfig, TransportType

logger = structlog.get_logger(__name__)

PROTOCOL_VERSION = "2024-11-05"
DEFAULT_REQUEST_TIMEOUT = 10.0

ALLOWED_LAUNCHERS = frozenset({"python", "python3", "node", "npx", "uv", "uvx", "docker"})

# Stdout lines can hold a whole tool catalogue
STDIO_LINE_LIMIT = 10 * 1024 * 1024


class MCPError(Exception):
    """JSON-RPC level failure reported by (or about) a tool server."""

    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"MCP Error {code}: {message}")

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> MCPError:
        return cls(
            payload.get("code", -32000),
            payload.get("message", "Unknown error"),
            payload.get("data"),
        )


@dataclass
class ToolDefinition:
    """A tool as advertised by ``tools/list``."""

    name: str
    description: str
    input_schema: dict[str, Any]
    server_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
            "server_id": self.server_id,
        }


@dataclass
class ToolCallResult:
    """Outcome of ``tools/call``; failures are values, not exceptions."""

    tool_name: str
    success: bool
    result: Any = None
    error: str | None = None
    duration_ms: int = 0


def check_launcher(command: str) -> str:
    """Return ``command`` if its executable is an allowed launcher."""
    executable = os.path.basename(command)
    stem = executable.split(".", 1)[0]
    if executable in ALLOWED_LAUNCHERS or stem in ALLOWED_LAUNCHERS:
        return command
    raise MCPError(
        -32600,
        f"Command '{executable}' not in allowed launchers: {sorted(ALLOWED_LAUNCHERS)}",
    )


def _result_or_raise(message: dict[str, Any]) -> Any:
    if "error" in message:
        raise MCPError.from_payload(message["error"] or {})
    return message.get("result")


class MCPTransport(ABC):
    """One JSON-RPC channel to a server."""

    def __init__(self, config: ServerConfig, timeout: float):
        self.config = config
        self.timeout = timeout
        self.connected = False
        self._next_id = 0
        self._logger = logger.bind(server_id=config.id)

    def _envelope(self, method: str, params: dict[str, Any] | None) -> dict[str, Any]:
        self._next_id += 1
        message: dict[str, Any] = {"jsonrpc": "2.0", "id": self._next_id, "method": method}
        if params:
            message["params"] = params
        return message

    @staticmethod
    def _handshake() -> dict[str, Any]:
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {}},
            "clientInfo": {"name": "mcp-orchestrator", "version": __version__},
        }

    @abstractmethod
    async def open(self) -> dict[str, Any]:
        """Open the channel and return the ``initialize`` result."""

    @abstractmethod
    async def request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        ...

    @abstractmethod
    async def shutdown(self) -> None:
        ...


class StdioTransport(MCPTransport):
    """JSON-RPC over a child process, one message per line."""

    def __init__(self, config: ServerConfig, timeout: float):
        super().__init__(config, timeout)
        self._process: asyncio.subprocess.Process | None = None
        self._reader: asyncio.Task | None = None
        self._waiting: dict[int, asyncio.Future] = {}

    async def open(self) -> dict[str, Any]:
        spec = self.config.transport
        if not spec.command:
            raise MCPError(-32600, "stdio transport needs a command")

        command = check_launcher(spec.command)
        self._logger.info("Spawning MCP server", command=command, args=list(spec.args))
        self._process = await asyncio.create_subprocess_exec(
            command,
            *spec.args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={**os.environ, **spec.env},
            limit=STDIO_LINE_LIMIT,
        )
        self._reader = asyncio.create_task(self._pump_stdout())

        result = await self.request("initialize", self._handshake())
        await self._write({"jsonrpc": "2.0", "method": "notifications/initialized"})
        self.connected = True
        return result or {}

    async def _write(self, message: dict[str, Any]) -> None:
        if self._process is None or self._process.stdin is None:
            raise MCPError(-32600, "Not connected")
        self._process.stdin.write(json.dumps(message).encode() + b"\n")
        await self._process.stdin.drain()

    async def request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        message = self._envelope(method, params)
        reply = asyncio.get_running_loop().create_future()
        self._waiting[message["id"]] = reply

        try:
            await self._write(message)
            return await asyncio.wait_for(reply, timeout=self.timeout)
        except asyncio.TimeoutError:
            raise MCPError(-32000, f"Request timeout: {method}") from None
        finally:
            self._waiting.pop(message["id"], None)

    def _deliver(self, raw: bytes) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            # Servers may log to stdout
            return

        reply = self._waiting.get(message.get("id"))
        if reply is None or reply.done():
            return
        try:
            reply.set_result(_result_or_raise(message))
        except MCPError as e:
            reply.set_exception(e)

    async def _pump_stdout(self) -> None:
        stdout = self._process.stdout
        while line := await stdout.readline():
            self._deliver(line)

        self.connected = False
        for reply in self._waiting.values():
            if not reply.done():
                reply.set_exception(MCPError(-32000, "Server process exited"))

    async def shutdown(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
            self._reader = None

        process, self._process = self._process, None
        if process is not None and process.returncode is None:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                process.kill()

        for reply in self._waiting.values():
            reply.cancel()
        self._waiting.clear()
        self.connected = False


def decode_http_reply(response: httpx.Response) -> dict[str, Any]:
    """JSON body, or the last parseable ``data:`` frame of an event stream."""
    if "text/event-stream" not in response.headers.get("content-type", ""):
        return response.json()

    message: dict[str, Any] = {}
    for line in response.text.splitlines():
        if not line.startswith("data:"):
            continue
        try:
            message = json.loads(line[len("data:"):])
        except json.JSONDecodeError:
            continue
    return message


class HTTPTransport(MCPTransport):
    """JSON-RPC over HTTP POST, carrying the server's session id."""

    def __init__(self, config: ServerConfig, timeout: float):
        super().__init__(config, timeout)
        self._http: httpx.AsyncClient | None = None
        self._session: str | None = None

    async def open(self) -> dict[str, Any]:
        url = self.config.transport.url
        if not url:
            raise MCPError(-32600, "HTTP transport needs a URL")

        self._http = httpx.AsyncClient(
            timeout=self.timeout,
            headers={
                "Accept": "application/json, text/event-stream",
                **self.config.transport.headers,
            },
        )
        result = await self.request("initialize", self._handshake())
        self.connected = True
        return result or {}

    async def request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        if self._http is None:
            raise MCPError(-32600, "Not connected")

        headers = {"Mcp-Session-Id": self._session} if self._session else {}
        response = await self._http.post(
            self.config.transport.url,
            json=self._envelope(method, params),
            headers=headers,
        )
        response.raise_for_status()
        self._session = response.headers.get("mcp-session-id", self._session)
        return _result_or_raise(decode_http_reply(response))

    async def shutdown(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None
        self._session = None
        self.connected = False


TRANSPORTS: dict[TransportType, type[MCPTransport]] = {
    TransportType.STDIO: StdioTransport,
    TransportType.HTTP: HTTPTransport,
    TransportType.SSE: HTTPTransport,
}


class MCPClient:
    """
    Connection handle for one server, as stored on a ``ServerInstance``.

    Usage:
        client = MCPClient(server_config)
        await client.connect()
        tools = await client.list_tools()
        result = await client.call_tool("search", {"query": "indexes"})
        await client.close()
    """

    def __init__(self, config: ServerConfig, timeout: float | None = None):
        self.config = config
        self.timeout = timeout or config.timeout or DEFAULT_REQUEST_TIMEOUT
        self.server_info: dict[str, Any] = {}
        self._transport: MCPTransport | None = None
        self._logger = logger.bind(server_id=config.id)

    @property
    def connected(self) -> bool:
        return self._transport is not None and self._transport.connected

    async def connect(self) -> None:
        if self.connected:
            return

        transport_cls = TRANSPORTS.get(self.config.transport.type)
        if transport_cls is None:
            raise MCPError(-32600, f"Unknown transport: {self.config.transport.type}")

        transport = transport_cls(self.config, self.timeout)
        try:
            result = await transport.open()
        except BaseException:
            await transport.shutdown()
            raise

        self._transport = transport
        self.server_info = result.get("serverInfo") or {}
        self._logger.info(
            "MCP client connected",
            transport=self.config.transport.type.value,
            server_version=self.server_info.get("version"),
        )

    async def list_tools(self) -> dict[str, ToolDefinition]:
        """Tool catalogue keyed by raw (un-namespaced) tool name."""
        if self._transport is None:
            raise MCPError(-32600, "Not connected")

        listing = await self._transport.request("tools/list") or {}
        tools = {
            entry["name"]: ToolDefinition(
                name=entry["name"],
                description=entry.get("description", ""),
                input_schema=entry.get("inputSchema", {}),
                server_id=self.config.id,
            )
            for entry in listing.get("tools", [])
        }
        self._logger.debug("Listed tools", count=len(tools))
        return tools

    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> ToolCallResult:
        started = time.perf_counter()

        def finish(success: bool, result: Any = None, error: str | None = None) -> ToolCallResult:
            return ToolCallResult(
                tool_name=tool_name,
                success=success,
                result=result,
                error=error,
                duration_ms=int((time.perf_counter() - started) * 1000),
            )

        if self._transport is None:
            return ToolCallResult(tool_name=tool_name, success=False, error="Not connected")

        try:
            reply = await asyncio.wait_for(
                self._transport.request("tools/call", {"name": tool_name, "arguments": arguments}),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            return finish(False, error=f"Timeout after {self.timeout}s")
        except (MCPError, httpx.HTTPError) as e:
            return finish(False, error=str(e))

        reply = reply or {}
        content = reply.get("content") or []
        if reply.get("isError"):
            return finish(False, result=content, error="Tool reported an error")

        text = next((part.get("text") for part in content if part.get("type") == "text"), None)
        return finish(True, result=text or content or reply)

    async def close(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.shutdown()
