"""
MCP protocol client on top of a transport.

Covers the handful of operations the gateway needs: the initialize
handshake, listing tools and resources, calling a tool, reading a
resource and pinging.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from mcp_switchboard.errors import MCPError
from mcp_switchboard.transport import Transport
from mcp_switchboard.version import __version__

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"


@dataclass(frozen=True)
class RemoteTool:
    """A tool as advertised by a server."""

    name: str
    description: str = ""
    input_schema: Any = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteTool:
        return cls(
            name=str(data["name"]),
            description=data.get("description") or "",
            input_schema=data.get("inputSchema"),
        )


@dataclass(frozen=True)
class RemoteResource:
    """A resource as advertised by a server."""

    uri: str
    name: str
    description: str | None = None
    mime_type: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteResource:
        uri = str(data["uri"])
        return cls(
            uri=uri,
            name=data.get("name") or uri,
            description=data.get("description"),
            mime_type=data.get("mimeType"),
        )


@dataclass
class CallResult:
    """Result of tools/call: content blocks plus the application error flag."""

    content: list[dict[str, Any]] = field(default_factory=list)
    is_error: bool = False
    raw: dict[str, Any] = field(default_factory=dict)


class MCPClient:
    """High-level MCP client for a single server."""

    def __init__(self, name: str, transport: Transport, request_timeout: float | None = 30.0):
        self.name = name
        self.transport = transport
        self.request_timeout = request_timeout
        self.capabilities: dict[str, Any] = {}
        self.server_info: dict[str, Any] = {}

    @property
    def is_alive(self) -> bool:
        return self.transport.is_alive

    async def initialize(self) -> None:
        """Open the transport and perform the initialize handshake."""
        await self.transport.start()

        result = await self.transport.request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": "mcp-switchboard", "version": __version__},
            },
            timeout=self.request_timeout,
        )
        result = result or {}
        self.capabilities = result.get("capabilities") or {}
        self.server_info = result.get("serverInfo") or {}

        await self.transport.notify("notifications/initialized")
        logger.info(f"[{self.name}] MCP initialized")

    async def _paginate(self, method: str, key: str) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        cursor: str | None = None

        while True:
            params = {"cursor": cursor} if cursor else None
            result = await self.transport.request(method, params, timeout=self.request_timeout)
            result = result or {}
            items.extend(item for item in result.get(key) or [] if isinstance(item, dict))
            cursor = result.get("nextCursor")
            if not cursor:
                return items

    async def list_tools(self) -> list[RemoteTool]:
        tools = []
        for item in await self._paginate("tools/list", "tools"):
            if not item.get("name"):
                logger.warning(f"[{self.name}] Ignoring tool without a name")
                continue
            tools.append(RemoteTool.from_dict(item))
        logger.info(f"[{self.name}] Listed {len(tools)} tools")
        return tools

    async def list_resources(self) -> list[RemoteResource]:
        """List resources; servers without resource support yield nothing."""
        if self.capabilities and "resources" not in self.capabilities:
            return []

        try:
            raw = await self._paginate("resources/list", "resources")
        except MCPError as e:
            if e.code == MCPError.METHOD_NOT_FOUND:
                return []
            raise

        resources = [RemoteResource.from_dict(item) for item in raw if item.get("uri")]
        logger.info(f"[{self.name}] Listed {len(resources)} resources")
        return resources

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> CallResult:
        """Invoke a tool. No timeout is imposed beyond the transport's own."""
        result = await self.transport.request(
            "tools/call", {"name": name, "arguments": arguments}
        )
        result = result or {}
        return CallResult(
            content=[block for block in result.get("content") or [] if isinstance(block, dict)],
            is_error=bool(result.get("isError")),
            raw=result,
        )

    async def read_resource(self, uri: str) -> list[dict[str, Any]]:
        result = await self.transport.request("resources/read", {"uri": uri})
        result = result or {}
        return [item for item in result.get("contents") or [] if isinstance(item, dict)]

    async def ping(self, timeout: float) -> None:
        """Round-trip check; servers without ping are asked for tools/list."""
        try:
            await self.transport.request("ping", timeout=timeout)
        except MCPError as e:
            if e.code != MCPError.METHOD_NOT_FOUND:
                raise
            await self.transport.request("tools/list", timeout=timeout)

    async def close(self) -> None:
        await self.transport.close()
