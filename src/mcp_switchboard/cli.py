"""
Command-line interface for MCP Switchboard.

Usage:
    mcp-switchboard --config servers.yaml --port 39400
    mcp-switchboard status --config servers.yaml
    mcp-switchboard auth github
    mcp-switchboard --help
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Callable
from pathlib import Path

from pydantic import ValidationError

from mcp_switchboard.config import GatewayConfig, load_config
from mcp_switchboard.gateway import Gateway
from mcp_switchboard.version import __version__


def setup_logging(level: str) -> None:
    """Configure logging for the application."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[logging.StreamHandler()],
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="mcp-switchboard",
        description="MCP Switchboard - one gateway tool in front of many MCP servers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  serve         Run the HTTP gateway (default)
  status        Connect once and print server status
  tools         Connect once and print every tool name
  auth NAME     Print OAuth token setup instructions for a server

Configuration file format (YAML):
  port: 39400
  imports: [claude-desktop]
  settings:
    toolPrefix: short

  servers:
    filesystem:
      command: "npx -y @modelcontextprotocol/server-filesystem /tmp"
      lifecycle: keep-alive

    github:
      url: "https://api.example.com/mcp"
      auth: oauth
""",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "command",
        nargs="?",
        choices=["serve", "status", "tools", "auth"],
        default="serve",
        help="What to do (default: serve)",
    )

    parser.add_argument(
        "server",
        nargs="?",
        help="Server name for the auth command",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        help="Path to YAML or JSON configuration file",
    )

    parser.add_argument(
        "-p",
        "--port",
        type=int,
        default=None,
        help="Port to listen on (default: 39400)",
    )

    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: 127.0.0.1)",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level (default: INFO)",
    )

    return parser.parse_args(argv)


async def run_once(gateway: Gateway, render: Callable[[Gateway], str]) -> str:
    """Connect everything, render one report and shut down."""
    gateway.start()
    try:
        await gateway.wait_ready()
        return render(gateway)
    finally:
        await gateway.stop()


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    if args.config and not args.config.exists():
        print(f"Error: Config file not found: {args.config}", file=sys.stderr)
        return 1

    def loader() -> GatewayConfig:
        return load_config(args.config)

    try:
        config = loader()
    except (ValidationError, ValueError) as e:
        print(f"Error: Invalid configuration: {e}", file=sys.stderr)
        return 1

    # Apply command-line overrides
    if args.port is not None:
        config = config.model_copy(update={"port": args.port})
    if args.host is not None:
        config = config.model_copy(update={"host": args.host})
    if args.log_level is not None:
        config = config.model_copy(update={"log_level": args.log_level})

    setup_logging(config.log_level)

    gateway = Gateway(config, config_loader=loader)

    if args.command == "auth":
        if not args.server:
            print("Usage: mcp-switchboard auth <server-name>", file=sys.stderr)
            return 1
        print(gateway.auth_instructions(args.server))
        return 0

    if args.command in ("status", "tools"):
        render = Gateway.status_text if args.command == "status" else Gateway.tools_text
        print(asyncio.run(run_once(gateway, render)))
        return 0

    if not config.servers:
        print("Warning: No servers configured", file=sys.stderr)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    main_task = loop.create_task(gateway.run())

    def signal_handler(_sig: int, _frame: object) -> None:
        print("\nShutting down...")
        loop.call_soon_threadsafe(main_task.cancel)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        loop.run_until_complete(main_task)
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(gateway.stop())
        loop.close()

    return 0


if __name__ == "__main__":
    sys.exit(main())
