"""
MCP Switchboard - one gateway tool in front of many MCP servers
===============================================================

Connects to any number of MCP servers (stdio, streamable HTTP or SSE) and
exposes them to an agent through a single ``mcp`` tool, so the agent only
pays for the catalog it actually looks at.

Features:
    - One tool, five modes: status, list, search, describe, call
    - Bounded-concurrency startup that never blocks the first query
    - Keep-alive servers with health checks and reconnect backoff
    - Resources exposed as parameterless ``get_*`` tools
    - Server lists imported from Cursor, Claude, VS Code and Windsurf

Example:
    >>> from mcp_switchboard import Gateway, load_config
    >>> gateway = Gateway(load_config("servers.yaml"))
    >>> gateway.start()
    >>> result = await gateway.call({"search": "read file"})

Or via CLI:
    $ mcp-switchboard --config servers.yaml --port 39400
"""

from mcp_switchboard.config import GatewayConfig, GatewaySettings, ServerDefinition, load_config
from mcp_switchboard.dispatcher import GatewayResult, Outcome
from mcp_switchboard.gateway import Gateway
from mcp_switchboard.version import __version__

__all__ = [
    "Gateway",
    "GatewayConfig",
    "GatewayResult",
    "GatewaySettings",
    "Outcome",
    "ServerDefinition",
    "__version__",
    "load_config",
]
