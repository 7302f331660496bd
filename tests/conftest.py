"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
import json
import shlex
import sys
from pathlib import Path
from typing import Any

import pytest
from aiohttp import web

from mcp_switchboard.client import CallResult, RemoteResource, RemoteTool
from mcp_switchboard.config import GatewayConfig, ServerDefinition
from mcp_switchboard.connection import Connection, ConnectionStatus
from mcp_switchboard.state import GatewayState

FAKE_SERVER = Path(__file__).parent / "fake_mcp_server.py"

READ_FILE_SCHEMA = {
    "type": "object",
    "properties": {"path": {"type": "string", "description": "File to read"}},
    "required": ["path"],
}


class FakeClient:
    """Stands in for MCPClient; records calls instead of touching the network."""

    def __init__(
        self,
        result: CallResult | None = None,
        contents: list[dict[str, Any]] | None = None,
        error: Exception | None = None,
        tools: list[RemoteTool] | None = None,
        resources: list[RemoteResource] | None = None,
    ) -> None:
        self.result = result or CallResult(content=[{"type": "text", "text": "ok"}])
        self.contents = contents if contents is not None else []
        self.error = error
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.reads: list[str] = []
        self.tools = tools or []
        self.resources = resources or []
        self.closed = False
        self.is_alive = True

    async def list_tools(self) -> list[RemoteTool]:
        return list(self.tools)

    async def list_resources(self) -> list[RemoteResource]:
        return list(self.resources)

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> CallResult:
        self.calls.append((name, arguments))
        if self.error is not None:
            raise self.error
        return self.result

    async def read_resource(self, uri: str) -> list[dict[str, Any]]:
        self.reads.append(uri)
        if self.error is not None:
            raise self.error
        return self.contents

    async def ping(self, timeout: float) -> None:
        if self.error is not None:
            raise self.error

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_server_definition() -> ServerDefinition:
    """Definition launching the fake stdio MCP server."""
    return ServerDefinition(
        name="fake",
        command=shlex.quote(sys.executable),
        args=[str(FAKE_SERVER)],
    )


@pytest.fixture
def sample_server_definition() -> ServerDefinition:
    """Create a sample stdio server definition for testing."""
    return ServerDefinition(
        name="fs",
        description="Filesystem server for unit tests",
        command="npx -y @test/server",
    )


@pytest.fixture
def sample_gateway_config() -> GatewayConfig:
    """Gateway configuration with one stdio and one HTTP server."""
    return GatewayConfig.from_dict(
        {
            "servers": {
                "fs": {"command": "npx -y @test/fs", "lifecycle": "keep-alive"},
                "github": {"url": "http://localhost:8080/mcp"},
            }
        }
    )


@pytest.fixture
def gateway_state(sample_gateway_config: GatewayConfig) -> GatewayState:
    """Gateway state with no live connections."""
    return GatewayState.create(sample_gateway_config)


@pytest.fixture
def install_connection():
    """Publish a fake connection and build its catalog entry.

    Returns a function ``(state, name, tools=..., resources=..., client=...,
    status=...)`` returning the fake client.
    """

    def install(
        state: GatewayState,
        name: str,
        tools: list[RemoteTool] | None = None,
        resources: list[RemoteResource] | None = None,
        client: FakeClient | None = None,
        status: ConnectionStatus = ConnectionStatus.CONNECTED,
    ) -> FakeClient:
        client = client or FakeClient()
        connection = Connection(
            name=name,
            status=status,
            client=client,  # type: ignore[arg-type]
            tools=tuple(tools or ()),
            resources=tuple(resources or ()),
        )
        state.manager._connections[name] = connection
        state.catalog.rebuild_for_server(name, connection, state.servers[name])
        return client

    return install


@pytest.fixture
def fs_tools() -> list[RemoteTool]:
    """Tools of a small filesystem server."""
    return [
        RemoteTool(name="read_file", description="Read a file from disk", input_schema=READ_FILE_SCHEMA),
        RemoteTool(name="list_dir", description="List directory entries", input_schema=None),
    ]


@pytest.fixture
def minimal_config_yaml(tmp_path):
    """Create a minimal YAML config file."""
    config_file = tmp_path / "servers.yaml"
    config_file.write_text(
        """
port: 39400

servers:
  echo:
    command: "echo test"
    description: "Echo test"
"""
    )
    return config_file


@pytest.fixture
def full_config_yaml(tmp_path):
    """Create a comprehensive YAML config file."""
    config_file = tmp_path / "servers.yaml"
    config_file.write_text(
        """
port: 8080
host: "0.0.0.0"
log_level: DEBUG

settings:
  toolPrefix: short
  healthCheckInterval: 10
  connect_concurrency: 4

servers:
  stdio-server:
    command: "npx -y @test/server"
    description: "Stdio transport server"
    env:
      API_KEY: "test-key"
    lifecycle: keep_alive

  http-server:
    url: "http://localhost:9000/mcp"
    description: "HTTP transport server"
    auth: bearer
    bearerTokenEnv: HTTP_SERVER_TOKEN

  sse-server:
    url: "http://localhost:9001/sse"
    description: "SSE transport server"
    enabled: false
"""
    )
    return config_file


# =============================================================================
# In-process remote MCP servers (aiohttp)
# =============================================================================

REMOTE_TOOLS = [{"name": "search", "description": "Search the web", "inputSchema": {"type": "object"}}]


def remote_reply(message: dict[str, Any]) -> dict[str, Any]:
    """JSON-RPC response of the fake remote server."""
    method = message.get("method")
    if method == "initialize":
        result: dict[str, Any] = {
            "protocolVersion": "2024-11-05",
            "capabilities": {"tools": {}},
            "serverInfo": {"name": "remote", "version": "1.0"},
        }
    elif method == "tools/list":
        result = {"tools": REMOTE_TOOLS}
    elif method == "ping":
        result = {}
    else:
        return {
            "jsonrpc": "2.0",
            "id": message.get("id"),
            "error": {"code": -32601, "message": "Method not found"},
        }
    return {"jsonrpc": "2.0", "id": message.get("id"), "result": result}


def make_streamable_app(event_stream: bool = False, reject: bool = False) -> web.Application:
    """Streamable HTTP server at /mcp (optionally refusing the handshake)."""
    seen: list[dict[str, Any]] = []

    async def handle(request: web.Request) -> web.StreamResponse:
        message = await request.json()
        seen.append({"message": message, "session": request.headers.get("mcp-session-id")})
        if reject:
            return web.Response(status=405)
        if "id" not in message:
            return web.Response(status=202)

        reply = remote_reply(message)
        headers = {"mcp-session-id": "session-1"}
        if event_stream:
            body = f"event: message\ndata: {json.dumps(reply)}\n\n"
            return web.Response(text=body, content_type="text/event-stream", headers=headers)
        return web.json_response(reply, headers=headers)

    app = web.Application()
    app["seen"] = seen
    app.router.add_post("/mcp", handle)
    app.router.add_delete("/mcp", _accepted)
    return app


async def _accepted(_request: web.Request) -> web.Response:
    return web.Response(status=202)


def make_sse_app(path: str = "/sse") -> web.Application:
    """Legacy SSE server: GET ``path`` streams events, POST /messages sends.

    POST to ``path`` is refused so streamable HTTP clients fall back.
    Put ``None`` on ``app["queue"]`` to end the stream.
    """
    queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()

    async def stream(request: web.Request) -> web.StreamResponse:
        resp = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await resp.prepare(request)
        await resp.write(b"event: endpoint\ndata: /messages?session=1\n\n")
        while True:
            message = await queue.get()
            if message is None:
                break
            await resp.write(f"event: message\ndata: {json.dumps(message)}\n\n".encode())
        return resp

    async def messages(request: web.Request) -> web.Response:
        message = await request.json()
        if "id" in message:
            await queue.put(remote_reply(message))
        return web.Response(status=202)

    async def refuse(_request: web.Request) -> web.Response:
        return web.Response(status=405)

    app = web.Application()
    app["queue"] = queue
    app.router.add_get(path, stream)
    app.router.add_post(path, refuse)
    app.router.add_post("/messages", messages)
    return app
