"""
Main Gateway - one ``mcp`` tool in front of many MCP servers.

Features:
    - Non-blocking startup: queries wait for the shared startup task
    - Single gateway tool: status / list / search / describe / call
    - Keep-alive supervision with automatic reconnect
    - Text commands: status, tools, reconnect, auth instructions
    - HTTP surface: /health, /mcp (JSON-RPC), /commands/*
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from aiohttp import web

from mcp_switchboard.auth import oauth_instructions
from mcp_switchboard.dispatcher import GatewayDispatcher, GatewayParams, GatewayResult, Outcome
from mcp_switchboard.errors import ConnectError
from mcp_switchboard.notifications import NotificationSink, Notifier
from mcp_switchboard.orchestrator import connect_all
from mcp_switchboard.state import GatewayState
from mcp_switchboard.version import __version__

if TYPE_CHECKING:
    from mcp_switchboard.config import GatewayConfig

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"

GATEWAY_TOOL: dict[str, Any] = {
    "name": "mcp",
    "description": """MCP gateway - connect to MCP servers and call their tools.

Usage:
  mcp({ })                              -> Show server status
  mcp({ server: "name" })               -> List tools from server
  mcp({ search: "query" })              -> Search for tools (includes schemas, space-separated words OR'd)
  mcp({ describe: "tool_name" })        -> Show tool details and parameters
  mcp({ tool: "name", args: {...} })    -> Call a tool

Mode: tool (call) > describe > search > server (list) > nothing (status)""",
    "inputSchema": {
        "type": "object",
        "properties": {
            "tool": {"type": "string", "description": "Tool name to call"},
            "args": {"type": "object", "description": "Arguments for tool call"},
            "describe": {
                "type": "string",
                "description": "Tool name to describe (shows parameters)",
            },
            "search": {"type": "string", "description": "Search tools by name/description"},
            "regex": {
                "type": "boolean",
                "description": "Treat search as regex (default: substring match)",
            },
            "includeSchemas": {
                "type": "boolean",
                "description": "Include parameter schemas in search results (default: true)",
            },
            "server": {"type": "string", "description": "Filter to specific server"},
        },
    },
}


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


class Gateway:
    """MCP Switchboard gateway.

    Provides:
        - Bounded-concurrency startup that never blocks availability
        - The polymorphic ``mcp`` operation over a searchable tool catalog
        - Supervision of keep-alive servers
        - Status, tools, reconnect and auth commands

    Example:
        >>> config = load_config("servers.yaml")
        >>> gateway = Gateway(config)
        >>> gateway.start()
        >>> result = await gateway.call({"search": "read file"})
    """

    def __init__(
        self,
        config: GatewayConfig,
        sink: NotificationSink | None = None,
        config_loader: Callable[[], GatewayConfig] | None = None,
    ) -> None:
        """Initialize the gateway.

        Args:
            config: Gateway configuration
            sink: Optional host UI receiving notifications and the status line
            config_loader: Re-reads the configuration for a forced reconnect
        """
        self.notifier = Notifier(sink)
        self.state = GatewayState.create(config, self.notifier)
        self.dispatcher = GatewayDispatcher(self.state)
        self._config_loader = config_loader
        self._startup_task: asyncio.Task[None] | None = None

    @property
    def config(self) -> GatewayConfig:
        return self.state.config

    @property
    def ready(self) -> bool:
        """True once startup has finished successfully."""
        task = self._startup_task
        return task is not None and task.done() and not task.cancelled() and task.exception() is None

    # =========================================================================
    # Startup / shutdown
    # =========================================================================

    def start(self) -> asyncio.Task[None]:
        """Schedule startup without waiting for it. Repeated calls share one task."""
        if self._startup_task is None:
            self._startup_task = asyncio.create_task(self._startup())
        return self._startup_task

    async def wait_ready(self) -> None:
        """Wait for startup to finish, starting it if nobody has.

        Raises:
            Exception: Whatever made startup fail
        """
        task = self._startup_task or self.start()
        if task.done():
            task.result()
            return
        await asyncio.shield(task)

    async def _startup(self) -> None:
        servers = self.state.servers
        settings = self.config.settings

        if servers:
            self.notifier.status(f"Connecting to {_plural(len(servers), 'server')}...")

        outcomes = await connect_all(self.state.manager, servers, settings.connect_concurrency)

        for outcome in outcomes:
            definition = servers[outcome.name]
            if outcome.connection is None:
                self.notifier.error(f"MCP: Failed to connect to {outcome.name}: {outcome.error}")
            else:
                entry = self.state.catalog.rebuild_for_server(
                    outcome.name, outcome.connection, definition
                )
                if entry.skipped:
                    self.notifier.warning(
                        f"MCP: {outcome.name} - {len(entry.skipped)} tools skipped"
                    )
            if definition.keep_alive:
                self.state.supervisor.mark_keep_alive(outcome.name, definition)

        connected = sum(1 for outcome in outcomes if outcome.ok)
        if connected:
            total_tools = self.state.catalog.total_tools
            if connected < len(outcomes):
                self.notifier.info(
                    f"MCP: {connected}/{len(outcomes)} servers connected ({total_tools} tools)"
                )
            else:
                self.notifier.info(f"MCP: {connected} servers connected ({total_tools} tools)")

        self.state.supervisor.set_reconnect_callback(self._on_server_reconnected)
        self.state.supervisor.start_health_checks()
        self._update_status_line()

    def _on_server_reconnected(self, name: str) -> None:
        self.state.refresh_server(name)
        self._update_status_line()

    def _update_status_line(self) -> None:
        count = len(self.state.catalog.servers())
        self.notifier.status(f"MCP: {_plural(count, 'server')}" if count else "")

    async def stop(self) -> None:
        """Shut down after any pending startup, closing every connection."""
        task = self._startup_task
        if task is not None and not task.done():
            try:
                await task
            except Exception as e:
                logger.warning(f"Startup failed before shutdown: {e}")
        await self.state.supervisor.graceful_shutdown()
        self.notifier.status("")
        logger.info("Gateway stopped")

    # =========================================================================
    # Gateway tool
    # =========================================================================

    async def call(self, raw_params: Any = None) -> GatewayResult:
        """Run the ``mcp`` operation, waiting for startup first."""
        try:
            await self.wait_ready()
        except Exception as e:
            logger.error(f"MCP initialization failed: {e}")
            mode = GatewayParams.parse(raw_params).mode
            return GatewayResult.failure(
                mode, Outcome.INIT_FAILED, f"MCP initialization failed: {e}", message=str(e)
            )
        return await self.dispatcher.execute(raw_params if raw_params is not None else {})

    # =========================================================================
    # Commands
    # =========================================================================

    def status_text(self) -> str:
        """Every configured server with its status and tool count."""
        lines = ["MCP Server Status:", ""]

        servers = self.state.servers
        for name in servers:
            connection = self.state.manager.get_connection(name)
            tool_count = len(self.state.catalog.tool_names(name) or ())
            status = connection.status.value if connection else "not connected"
            icon = "✓" if status == "connected" else "○"
            lines.append(f"{icon} {name}: {status} ({tool_count} tools)")

        if not servers:
            lines.append("No MCP servers configured")

        return "\n".join(lines)

    def tools_text(self) -> str:
        """Every public tool name and the total."""
        names = self.state.catalog.all_tool_names()
        if not names:
            return "No MCP tools available"

        lines = ["MCP Tools:", ""]
        lines.extend(f"  {name}" for name in names)
        lines.extend(["", f"Total: {len(names)} tools"])
        return "\n".join(lines)

    def auth_instructions(self, server: str) -> str:
        """Steps for providing an OAuth token to a server."""
        definition = self.config.servers.get(server)
        if definition is None:
            return f'Server "{server}" not found in config'
        if definition.auth != "oauth":
            return (
                f'Server "{server}" does not use OAuth authentication.\n'
                f"Current auth mode: {definition.auth}"
            )
        if not definition.url:
            return f'Server "{server}" has no URL configured (OAuth requires HTTP transport)'
        return oauth_instructions(server, self.config.settings.oauth_dir)

    async def reconnect_all(self) -> str:
        """Reload the configuration and reconnect every server, one at a time.

        A server that fails to reconnect loses its catalog entry.

        Returns:
            Per-server report
        """
        with contextlib.suppress(Exception):
            await self.wait_ready()

        self._reload_config()
        servers = self.state.servers
        catalog = self.state.catalog
        supervisor = self.state.supervisor
        lines: list[str] = []

        known = dict.fromkeys(
            [*catalog.servers(), *self.state.manager.names(), *supervisor.names()]
        )
        for name in known:
            if name in servers:
                continue
            supervisor.forget(name)
            await self.state.manager.discard(name)
            catalog.remove(name)
            lines.append(f"- {name}: removed")

        for name, definition in servers.items():
            if definition.keep_alive:
                supervisor.mark_keep_alive(name, definition)
                supervisor.update_definition(name, definition)
            else:
                supervisor.forget(name)

            try:
                connection = await self.state.manager.reconnect(name, definition)
            except ConnectError as e:
                self.notifier.error(f"MCP: Failed to reconnect to {name}: {e}")
                catalog.remove(name)
                lines.append(f"○ {name}: {e}")
                continue

            entry = catalog.rebuild_for_server(name, connection, definition)
            supervisor.reset(name)
            self.notifier.info(
                f"MCP: Reconnected to {name} ({len(connection.tools)} tools, "
                f"{len(connection.resources)} resources)"
            )
            if entry.skipped:
                self.notifier.warning(f"MCP: {name} - {len(entry.skipped)} tools skipped")
            lines.append(f"✓ {name} ({len(entry.names)} tools)")

        self._update_status_line()

        if not lines:
            return "No MCP servers configured"
        return "\n".join(lines)

    def _reload_config(self) -> None:
        if self._config_loader is None:
            return
        try:
            config = self._config_loader()
        except Exception as e:
            self.notifier.error(f"MCP: Failed to reload config: {e}")
            return

        self.state.config = config
        self.state.catalog.prefix = config.settings.tool_prefix
        logger.info(f"Configuration reloaded ({len(config.servers)} servers)")

    # =========================================================================
    # HTTP surface
    # =========================================================================

    def create_app(self) -> web.Application:
        """Create the aiohttp web application."""
        app = web.Application()

        app.router.add_get("/health", self._handle_health)
        app.router.add_post("/mcp", self._handle_mcp)
        app.router.add_get("/commands/status", self._handle_status)
        app.router.add_get("/commands/tools", self._handle_tools)
        app.router.add_post("/commands/reconnect", self._handle_reconnect)
        app.router.add_get("/commands/auth/{name}", self._handle_auth)

        app.on_startup.append(self._on_startup)
        app.on_cleanup.append(self._on_cleanup)

        return app

    async def _on_startup(self, _app: web.Application) -> None:
        self.start()

    async def _on_cleanup(self, _app: web.Application) -> None:
        await self.stop()

    async def run(self) -> None:
        """Serve the HTTP surface until cancelled."""
        app = self.create_app()
        runner = web.AppRunner(app)
        await runner.setup()

        site = web.TCPSite(runner, self.config.host, self.config.port)
        await site.start()

        logger.info(f"MCP Switchboard v{__version__}")
        logger.info(f"Gateway tool: http://{self.config.host}:{self.config.port}/mcp")
        logger.info(f"Servers: {len(self.state.servers)}")

        try:
            while True:
                await asyncio.sleep(3600)
        except asyncio.CancelledError:
            pass
        finally:
            await runner.cleanup()

    async def _handle_health(self, _request: web.Request) -> web.Response:
        """Health check endpoint."""
        servers: dict[str, dict[str, Any]] = {}

        for name in self.state.servers:
            connection = self.state.manager.get_connection(name)
            servers[name] = {
                "status": connection.status.value if connection else "not connected",
                "tools": len(self.state.catalog.tool_names(name) or ()),
                "keepAlive": self.state.supervisor.is_keep_alive(name),
                "error": connection.error if connection else None,
            }

        return web.json_response(
            {"status": "healthy", "ready": self.ready, "servers": servers}
        )

    async def _handle_status(self, _request: web.Request) -> web.Response:
        with contextlib.suppress(Exception):
            await self.wait_ready()
        return web.Response(text=self.status_text())

    async def _handle_tools(self, _request: web.Request) -> web.Response:
        with contextlib.suppress(Exception):
            await self.wait_ready()
        return web.Response(text=self.tools_text())

    async def _handle_reconnect(self, _request: web.Request) -> web.Response:
        return web.Response(text=await self.reconnect_all())

    async def _handle_auth(self, request: web.Request) -> web.Response:
        return web.Response(text=self.auth_instructions(request.match_info["name"]))

    async def _handle_mcp(self, request: web.Request) -> web.Response:
        """JSON-RPC endpoint exposing the single ``mcp`` tool."""
        try:
            body = await request.json()
        except json.JSONDecodeError:
            return web.json_response(
                {
                    "jsonrpc": "2.0",
                    "error": {"code": -32700, "message": "Parse error"},
                    "id": None,
                },
                status=400,
            )

        if not isinstance(body, dict):
            return web.json_response(
                {
                    "jsonrpc": "2.0",
                    "error": {"code": -32600, "message": "Invalid request"},
                    "id": None,
                },
                status=400,
            )

        method = body.get("method", "")
        request_id = body.get("id")

        if method == "initialize":
            return web.json_response(self._rpc_initialize(request_id))
        elif method == "tools/list":
            return web.json_response(
                {"jsonrpc": "2.0", "result": {"tools": [GATEWAY_TOOL]}, "id": request_id}
            )
        elif method == "tools/call":
            return web.json_response(await self._rpc_tools_call(body, request_id))
        elif method == "ping":
            return web.json_response({"jsonrpc": "2.0", "result": {}, "id": request_id})
        elif method.startswith("notifications/"):
            return web.Response(status=202)
        else:
            return web.json_response(
                {
                    "jsonrpc": "2.0",
                    "error": {"code": -32601, "message": f"Unknown method: {method}"},
                    "id": request_id,
                }
            )

    def _rpc_initialize(self, request_id: Any) -> dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "result": {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "mcp-switchboard", "version": __version__},
            },
            "id": request_id,
        }

    async def _rpc_tools_call(self, body: dict[str, Any], request_id: Any) -> dict[str, Any]:
        params = body.get("params") or {}
        tool_name = params.get("name", "") if isinstance(params, dict) else ""

        if tool_name != GATEWAY_TOOL["name"]:
            return {
                "jsonrpc": "2.0",
                "error": {"code": -32602, "message": f"Unknown tool: {tool_name}"},
                "id": request_id,
            }

        result = await self.call(params.get("arguments") or {})
        return {"jsonrpc": "2.0", "result": result.to_mcp(), "id": request_id}
