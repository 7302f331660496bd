"""
Connection management - owns the live connection to every upstream server.

A connection bundles the protocol client with the snapshot of tools and
resources the server advertised when it connected, so catalog queries never
need a round trip. Connections are replaced wholesale, never mutated.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING

from mcp_switchboard.auth import resolve_auth_headers
from mcp_switchboard.client import MCPClient, RemoteResource, RemoteTool
from mcp_switchboard.errors import ConnectError, HandshakeRejected, SwitchboardError
from mcp_switchboard.transport import SseTransport, StdioTransport, StreamableHttpTransport, Transport

if TYPE_CHECKING:
    from mcp_switchboard.config import GatewaySettings, ServerDefinition

logger = logging.getLogger(__name__)


class ConnectionStatus(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


@dataclass(frozen=True)
class Connection:
    """State of one server connection."""

    name: str
    status: ConnectionStatus
    client: MCPClient | None = None
    tools: tuple[RemoteTool, ...] = ()
    resources: tuple[RemoteResource, ...] = ()
    error: str | None = None
    connected_at: float | None = None

    @property
    def is_connected(self) -> bool:
        return self.status is ConnectionStatus.CONNECTED and self.client is not None


class ConnectionManager:
    """Opens, tracks and closes connections to MCP servers.

    Handles:
        - Process spawning for stdio servers
        - Streamable HTTP with SSE fallback for remote servers
        - Static bearer / OAuth token-file credentials
        - Lightweight health checks
    """

    def __init__(
        self,
        connect_timeout: float = 30.0,
        oauth_dir: str = "~/.config/mcp-switchboard/oauth",
    ) -> None:
        self.connect_timeout = connect_timeout
        self.oauth_dir = oauth_dir
        self._connections: dict[str, Connection] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @classmethod
    def from_settings(cls, settings: GatewaySettings) -> ConnectionManager:
        return cls(connect_timeout=settings.connect_timeout, oauth_dir=settings.oauth_dir)

    def get_connection(self, name: str) -> Connection | None:
        return self._connections.get(name)

    def names(self) -> list[str]:
        return list(self._connections)

    def _lock(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    def is_busy(self, name: str) -> bool:
        """True while a connect, close or reconnect of this server is running."""
        lock = self._locks.get(name)
        return lock is not None and lock.locked()

    async def connect(self, name: str, definition: ServerDefinition) -> Connection:
        """Connect to a server and snapshot its tools and resources.

        Connects, closes and reconnects of the same server run one at a time.

        Raises:
            ConnectError: On transport, auth or listing failure. A previous
                connection for the same name keeps its snapshot but is marked
                failed; otherwise nothing is published.
        """
        async with self._lock(name):
            return await self._connect(name, definition)

    async def reconnect(self, name: str, definition: ServerDefinition) -> Connection:
        """Close a server and connect it again as one uninterrupted step.

        Raises:
            ConnectError: As for :meth:`connect`
        """
        async with self._lock(name):
            await self._close(name)
            return await self._connect(name, definition)

    async def _connect(self, name: str, definition: ServerDefinition) -> Connection:
        previous = self._connections.get(name)
        if previous is not None:
            self._connections[name] = replace(previous, status=ConnectionStatus.CONNECTING)
        else:
            self._connections[name] = Connection(name=name, status=ConnectionStatus.CONNECTING)

        client: MCPClient | None = None
        try:
            client = await self._open(name, definition)
            tools = await client.list_tools()
            resources = await client.list_resources() if definition.expose_resources else []
        except asyncio.CancelledError:
            if client is not None:
                await client.close()
            raise
        except Exception as e:
            if client is not None:
                await client.close()
            if previous is not None:
                self._connections[name] = replace(
                    previous, status=ConnectionStatus.FAILED, client=None, error=str(e)
                )
                await self._release(previous)
            else:
                self._connections.pop(name, None)
            logger.warning(f"[{name}] Connection failed: {e}")
            raise ConnectError(name, e) from e

        connection = Connection(
            name=name,
            status=ConnectionStatus.CONNECTED,
            client=client,
            tools=tuple(tools),
            resources=tuple(resources),
            connected_at=time.time(),
        )
        self._connections[name] = connection
        if previous is not None:
            await self._release(previous)

        logger.info(f"[{name}] Connected ({len(tools)} tools, {len(resources)} resources)")
        return connection

    async def _open(self, name: str, definition: ServerDefinition) -> MCPClient:
        """Resolve the transport for a definition and run the handshake."""
        if definition.transport_type == "stdio":
            command = definition.command_list
            if not command:
                raise SwitchboardError(f"No command configured for '{name}'")
            transport: Transport = StdioTransport(
                name, command, env=definition.env, cwd=definition.cwd, debug=definition.debug
            )
            return await self._initialize(name, transport)

        assert definition.url
        headers = resolve_auth_headers(definition, self.oauth_dir)

        if definition.transport_type == "http":
            try:
                return await self._initialize(
                    name,
                    StreamableHttpTransport(name, definition.url, headers, self.connect_timeout),
                )
            except HandshakeRejected as e:
                logger.info(f"[{name}] Streamable HTTP rejected (HTTP {e.status}), trying SSE")

        return await self._initialize(
            name, SseTransport(name, definition.url, headers, self.connect_timeout)
        )

    async def _initialize(self, name: str, transport: Transport) -> MCPClient:
        client = MCPClient(name, transport, request_timeout=self.connect_timeout)
        try:
            await client.initialize()
        except BaseException:
            await client.close()
            raise
        return client

    async def _release(self, connection: Connection) -> None:
        if connection.client is None:
            return
        try:
            await connection.client.close()
        except Exception as e:
            logger.warning(f"[{connection.name}] Error while closing: {e}")

    async def close(self, name: str) -> None:
        """Release a server's transport. Safe on closed or unknown names."""
        async with self._lock(name):
            await self._close(name)

    async def discard(self, name: str) -> None:
        """Close a server and forget its connection record."""
        async with self._lock(name):
            await self._close(name)
            self._connections.pop(name, None)

    async def _close(self, name: str) -> None:
        connection = self._connections.get(name)
        if connection is None or connection.client is None:
            return

        self._connections[name] = replace(
            connection, status=ConnectionStatus.DISCONNECTED, client=None
        )
        await self._release(connection)
        logger.info(f"[{name}] Closed")

    async def close_all(self) -> None:
        await asyncio.gather(*(self.close(name) for name in list(self._connections)))

    async def health_check(self, name: str, timeout: float = 5.0) -> bool:
        """Ping a connected server. Never changes connection state."""
        connection = self._connections.get(name)
        if connection is None or not connection.is_connected:
            return False

        assert connection.client is not None
        if not connection.client.is_alive:
            return False

        try:
            await connection.client.ping(timeout)
        except SwitchboardError as e:
            logger.warning(f"[{name}] Health check failed: {e}")
            return False
        return True
