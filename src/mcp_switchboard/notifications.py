"""
Notification fan-out to the log and an optional host UI sink.

The sink is purely cosmetic: every message is logged first, and a missing
or failing sink never affects gateway behaviour.
"""

from __future__ import annotations

import logging
from typing import Literal, Protocol

logger = logging.getLogger(__name__)

Level = Literal["info", "warning", "error"]

_LOG_LEVELS = {"info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}


class NotificationSink(Protocol):
    """What a host UI may provide to receive gateway messages."""

    def notify(self, message: str, level: Level) -> None: ...

    def set_status(self, key: str, text: str) -> None: ...


class Notifier:
    """Sends messages to the log and, when present, to a sink."""

    STATUS_KEY = "mcp"

    def __init__(self, sink: NotificationSink | None = None) -> None:
        self.sink = sink

    def notify(self, message: str, level: Level = "info") -> None:
        logger.log(_LOG_LEVELS[level], message)
        if self.sink is None:
            return
        try:
            self.sink.notify(message, level)
        except Exception as e:
            logger.debug(f"Notification sink failed: {e}")

    def info(self, message: str) -> None:
        self.notify(message, "info")

    def warning(self, message: str) -> None:
        self.notify(message, "warning")

    def error(self, message: str) -> None:
        self.notify(message, "error")

    def status(self, text: str) -> None:
        """Update the host status line (cleared with an empty string)."""
        if self.sink is None:
            return
        try:
            self.sink.set_status(self.STATUS_KEY, text)
        except Exception as e:
            logger.debug(f"Status sink failed: {e}")
