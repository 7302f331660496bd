"""
Lifecycle supervision for keep-alive servers.

A background task periodically pings every keep-alive server and
reconnects the ones found unhealthy or disconnected, backing off
exponentially after failed attempts. Failures stay local to the server
concerned and are only visible through later status queries.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from mcp_switchboard.connection import ConnectionStatus
from mcp_switchboard.errors import ConnectError

if TYPE_CHECKING:
    from mcp_switchboard.config import GatewaySettings, ServerDefinition
    from mcp_switchboard.connection import ConnectionManager
    from mcp_switchboard.notifications import Notifier

logger = logging.getLogger(__name__)

ReconnectCallback = Callable[[str], None]
ConfiguredCheck = Callable[[str], bool]


class SupervisionState(str, Enum):
    MONITORING = "monitoring"
    RECONNECTING = "reconnecting"
    BACKOFF = "backoff"
    STOPPED = "stopped"


@dataclass
class KeepAliveEntry:
    """Supervision record for one keep-alive server."""

    definition: ServerDefinition
    state: SupervisionState = SupervisionState.MONITORING
    failures: int = 0
    next_attempt: float = 0.0


class LifecycleSupervisor:
    """Health checks and reconnect-with-backoff for keep-alive servers.

    Example:
        >>> supervisor = LifecycleSupervisor(manager)
        >>> supervisor.mark_keep_alive("github", definition)
        >>> supervisor.set_reconnect_callback(catalog_refresh)
        >>> supervisor.start_health_checks()
    """

    def __init__(
        self,
        manager: ConnectionManager,
        interval: float = 30.0,
        check_timeout: float = 5.0,
        initial_delay: float = 5.0,
        max_delay: float = 300.0,
        notifier: Notifier | None = None,
        clock: Callable[[], float] = time.monotonic,
        is_configured: ConfiguredCheck | None = None,
    ) -> None:
        self.manager = manager
        self.interval = interval
        self.check_timeout = check_timeout
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.notifier = notifier
        self._clock = clock
        self.is_configured = is_configured
        self._entries: dict[str, KeepAliveEntry] = {}
        self._on_reconnect: ReconnectCallback | None = None
        self._task: asyncio.Task[None] | None = None
        self._stopped = False

    @classmethod
    def from_settings(
        cls,
        manager: ConnectionManager,
        settings: GatewaySettings,
        notifier: Notifier | None = None,
        is_configured: ConfiguredCheck | None = None,
    ) -> LifecycleSupervisor:
        return cls(
            manager,
            interval=settings.health_check_interval,
            check_timeout=settings.health_check_timeout,
            initial_delay=settings.reconnect_initial_delay,
            max_delay=settings.reconnect_max_delay,
            notifier=notifier,
            is_configured=is_configured,
        )

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def mark_keep_alive(self, name: str, definition: ServerDefinition) -> None:
        """Put a server under supervision; no-op if already supervised."""
        if name in self._entries:
            return
        self._entries[name] = KeepAliveEntry(definition=definition)
        logger.debug(f"[{name}] Marked keep-alive")

    def update_definition(self, name: str, definition: ServerDefinition) -> None:
        """Use a reloaded definition for future reconnects of a supervised server."""
        entry = self._entries.get(name)
        if entry is not None:
            entry.definition = definition

    def forget(self, name: str) -> None:
        """Stop supervising a server."""
        if self._entries.pop(name, None) is not None:
            logger.debug(f"[{name}] No longer keep-alive")

    def reset(self, name: str) -> None:
        """Clear backoff after the server was reconnected outside the supervisor."""
        entry = self._entries.get(name)
        if entry is None or entry.state is SupervisionState.STOPPED:
            return
        entry.failures = 0
        entry.next_attempt = 0.0
        entry.state = SupervisionState.MONITORING

    def names(self) -> list[str]:
        return list(self._entries)

    def is_keep_alive(self, name: str) -> bool:
        return name in self._entries

    def entry(self, name: str) -> KeepAliveEntry | None:
        return self._entries.get(name)

    def set_reconnect_callback(self, callback: ReconnectCallback) -> None:
        """Register the single callback run after each successful reconnect.

        Registering again replaces the previous callback.
        """
        self._on_reconnect = callback

    def backoff_delay(self, failures: int) -> float:
        """Capped exponential delay after ``failures`` consecutive failures."""
        if failures <= 0:
            return 0.0
        return min(self.initial_delay * 2 ** (failures - 1), self.max_delay)

    def start_health_checks(self) -> None:
        if self._stopped or self.running:
            return
        self._task = asyncio.create_task(self._health_loop())

    async def _health_loop(self) -> None:
        while not self._stopped:
            await asyncio.sleep(self.interval)
            try:
                await self.check_all()
            except Exception:
                logger.exception("Health check pass failed")

    async def check_all(self) -> None:
        """Run one supervision pass over every keep-alive server."""
        if not self._entries:
            return
        await asyncio.gather(
            *(self._check_server(name, entry) for name, entry in list(self._entries.items()))
        )

    async def _check_server(self, name: str, entry: KeepAliveEntry) -> None:
        if self._stopped or entry.state is SupervisionState.RECONNECTING:
            return
        if entry.state is SupervisionState.BACKOFF and self._clock() < entry.next_attempt:
            return
        if self.is_configured is not None and not self.is_configured(name):
            return
        if self.manager.is_busy(name):
            return

        connection = self.manager.get_connection(name)
        if connection is not None and connection.status is ConnectionStatus.CONNECTING:
            return
        if connection is not None and connection.status is ConnectionStatus.CONNECTED:
            if await self.manager.health_check(name, self.check_timeout):
                return
            logger.warning(f"[{name}] Unhealthy, reconnecting")
        else:
            status = connection.status.value if connection else "not connected"
            logger.info(f"[{name}] Keep-alive server is {status}, reconnecting")

        # Someone else may have started reconnecting during the health check
        if self.manager.is_busy(name):
            return
        await self.reconnect(name)

    async def reconnect(self, name: str) -> bool:
        """Close and reopen one supervised server.

        Returns:
            True when the server is connected again
        """
        entry = self._entries.get(name)
        if entry is None or self._stopped:
            return False
        if self.is_configured is not None and not self.is_configured(name):
            return False

        entry.state = SupervisionState.RECONNECTING

        try:
            connection = await self.manager.reconnect(name, entry.definition)
        except ConnectError as e:
            entry.failures += 1
            delay = self.backoff_delay(entry.failures)
            entry.next_attempt = self._clock() + delay
            entry.state = SupervisionState.BACKOFF
            message = f"MCP: Failed to reconnect to {name}: {e} (retry in {delay:.0f}s)"
            if self.notifier:
                self.notifier.warning(message)
            else:
                logger.warning(message)
            return False

        entry.failures = 0
        entry.next_attempt = 0.0

        if self._on_reconnect is not None:
            try:
                self._on_reconnect(name)
            except Exception:
                logger.exception(f"[{name}] Reconnect callback failed")

        entry.state = SupervisionState.MONITORING
        message = f"MCP: Reconnected to {name} ({len(connection.tools)} tools)"
        if self.notifier:
            self.notifier.info(message)
        else:
            logger.info(message)
        return True

    async def graceful_shutdown(self) -> None:
        """Stop the health loop and close every connection. Idempotent."""
        if self._stopped:
            return
        self._stopped = True

        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        for entry in self._entries.values():
            entry.state = SupervisionState.STOPPED

        await self.manager.close_all()
        logger.info("Lifecycle supervisor stopped")
