"""
Exceptions raised by the transport, client and connection layers.

Routing misses inside the gateway (unknown tool, disconnected server, bad
search pattern) are not exceptions; they are reported as structured
outcomes by the dispatcher.
"""

from __future__ import annotations

from typing import Any


class SwitchboardError(Exception):
    """Base class for all switchboard errors."""


class MCPError(SwitchboardError):
    """JSON-RPC error returned by an upstream server."""

    METHOD_NOT_FOUND = -32601

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"MCP error {code}: {message}")


class TransportError(SwitchboardError):
    """The transport failed (process exited, HTTP failure, timeout)."""


class HandshakeRejected(TransportError):
    """A streamable HTTP endpoint refused the initialize request."""

    def __init__(self, status: int, message: str = "") -> None:
        self.status = status
        super().__init__(message or f"Handshake rejected with HTTP {status}")


class AuthError(SwitchboardError):
    """Credentials for a server could not be resolved."""


class ConnectError(SwitchboardError):
    """Connecting to a server failed at the transport, auth or listing step."""

    def __init__(self, server: str, cause: BaseException | str) -> None:
        self.server = server
        self.cause = cause
        super().__init__(str(cause) or type(cause).__name__)
