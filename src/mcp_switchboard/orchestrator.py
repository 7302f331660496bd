"""
Startup orchestration - connect every configured server concurrently.

At most ``limit`` connection attempts are in flight at once; the rest queue
behind them. Each attempt is isolated so one server's failure never cancels
another's.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from mcp_switchboard.errors import ConnectError

if TYPE_CHECKING:
    from mcp_switchboard.config import ServerDefinition
    from mcp_switchboard.connection import Connection, ConnectionManager

logger = logging.getLogger(__name__)


@dataclass
class ConnectOutcome:
    """Result of one startup connection attempt."""

    name: str
    connection: Connection | None = None
    error: str | None = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.connection is not None


async def connect_all(
    manager: ConnectionManager,
    servers: dict[str, ServerDefinition],
    limit: int = 10,
) -> list[ConnectOutcome]:
    """Connect all servers with bounded concurrency.

    Returns:
        One outcome per server, in configuration order
    """
    semaphore = asyncio.Semaphore(max(limit, 1))

    async def connect_one(name: str, definition: ServerDefinition) -> ConnectOutcome:
        async with semaphore:
            start = time.monotonic()
            try:
                connection = await manager.connect(name, definition)
            except ConnectError as e:
                return ConnectOutcome(
                    name=name, error=str(e), duration=time.monotonic() - start
                )
            except Exception as e:
                logger.exception(f"[{name}] Unexpected error during connect")
                return ConnectOutcome(
                    name=name,
                    error=str(e) or type(e).__name__,
                    duration=time.monotonic() - start,
                )
            return ConnectOutcome(
                name=name, connection=connection, duration=time.monotonic() - start
            )

    outcomes = await asyncio.gather(
        *(connect_one(name, definition) for name, definition in servers.items())
    )

    connected = sum(1 for outcome in outcomes if outcome.ok)
    logger.info(f"Startup connected {connected}/{len(outcomes)} servers")
    return list(outcomes)
