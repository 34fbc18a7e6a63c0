"""
Tests for the default MCP client.

HTTP servers are simulated with ``httpx.MockTransport``.
"""

import json

import httpx
import pytest

from mcp_orchestrator.mcp.client import MCPClient, MCPError, check_launcher
from mcp_orchestrator.mcp.types import ServerConfig, TransportConfig, TransportType


class FakeHttpServer:
    """JSON-RPC endpoint answering initialize, tools/list and tools/call."""

    def __init__(self, sse=False):
        self.sse = sse
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append((body["method"], request.headers.get("mcp-session-id")))

        method = body["method"]
        headers = {}
        if method == "initialize":
            result = {
                "protocolVersion": "2024-11-05",
                "serverInfo": {"name": "docs", "version": "1.4.0"},
            }
            headers["mcp-session-id"] = "session-1"
        elif method == "tools/list":
            result = {
                "tools": [
                    {
                        "name": "search",
                        "description": "Search the docs",
                        "inputSchema": {"type": "object"},
                    }
                ]
            }
        elif method == "tools/call":
            name = body["params"]["name"]
            if name == "broken":
                return httpx.Response(
                    200,
                    json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": -32602, "message": "bad args"}},
                )
            if name == "refuses":
                result = {"isError": True, "content": [{"type": "text", "text": "nope"}]}
            else:
                result = {"content": [{"type": "text", "text": f"found {body['params']['arguments']['q']}"}]}
        else:
            return httpx.Response(404)

        payload = {"jsonrpc": "2.0", "id": body["id"], "result": result}
        if self.sse:
            headers["content-type"] = "text/event-stream"
            return httpx.Response(
                200, text=f"event: message\ndata: {json.dumps(payload)}\n\n", headers=headers
            )
        return httpx.Response(200, json=payload, headers=headers)


@pytest.fixture
def http_server(monkeypatch):
    server = FakeHttpServer()
    real_client = httpx.AsyncClient

    def client_with_mock_transport(**kwargs):
        return real_client(transport=httpx.MockTransport(server), **kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", client_with_mock_transport)
    return server


def _http_config(server_id="docs"):
    return ServerConfig(
        id=server_id,
        name="Docs",
        transport=TransportConfig(type=TransportType.HTTP, url="https://docs.example.com/mcp"),
        timeout=2.0,
    )


class TestHTTPClient:
    @pytest.mark.asyncio
    async def test_connect_and_list_tools(self, http_server):
        client = MCPClient(_http_config())

        await client.connect()
        tools = await client.list_tools()

        assert client.connected
        assert client.server_info["version"] == "1.4.0"
        assert list(tools) == ["search"]
        assert tools["search"].server_id == "docs"
        assert tools["search"].input_schema == {"type": "object"}
        # Session id from initialize is sent on later requests
        assert http_server.requests == [("initialize", None), ("tools/list", "session-1")]

        await client.close()
        assert not client.connected

    @pytest.mark.asyncio
    async def test_event_stream_responses(self, http_server):
        http_server.sse = True
        client = MCPClient(_http_config())

        await client.connect()

        assert list(await client.list_tools()) == ["search"]
        await client.close()

    @pytest.mark.asyncio
    async def test_call_tool(self, http_server):
        client = MCPClient(_http_config())
        await client.connect()

        result = await client.call_tool("search", {"q": "indexes"})

        assert result.success
        assert result.result == "found indexes"
        await client.close()

    @pytest.mark.asyncio
    async def test_call_tool_errors_become_results(self, http_server):
        client = MCPClient(_http_config())
        await client.connect()

        rpc_error = await client.call_tool("broken", {})
        tool_error = await client.call_tool("refuses", {})

        assert not rpc_error.success
        assert "bad args" in rpc_error.error
        assert not tool_error.success
        assert tool_error.result == [{"type": "text", "text": "nope"}]
        await client.close()

    @pytest.mark.asyncio
    async def test_call_tool_when_not_connected(self):
        result = await MCPClient(_http_config()).call_tool("search", {})
        assert not result.success
        assert result.error == "Not connected"

    @pytest.mark.asyncio
    async def test_list_tools_when_not_connected(self):
        with pytest.raises(MCPError):
            await MCPClient(_http_config()).list_tools()


class TestStdioClient:
    @pytest.mark.asyncio
    async def test_disallowed_command_is_rejected(self):
        config = ServerConfig(
            id="local",
            name="Local",
            transport=TransportConfig(type=TransportType.STDIO, command="/bin/rm", args=("-rf",)),
        )
        client = MCPClient(config)

        with pytest.raises(MCPError, match="not in allowed"):
            await client.connect()
        assert not client.connected

    @pytest.mark.parametrize("command", ["npx", "/usr/local/bin/uvx", "python3.12"])
    def test_allowed_launchers(self, command):
        assert check_launcher(command) == command
