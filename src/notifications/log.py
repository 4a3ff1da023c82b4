"""Storage-free notifier and dispatcher that only write to the log."""

from __future__ import annotations

import logging
from collections import deque
from typing import Any

from .base import EventNotifier, Notification


logger = logging.getLogger(__name__)

# Codes are secrets; keep them out of log lines.
_REDACTED_KEYS = {"code"}


def _redact(payload: dict[str, Any]) -> dict[str, Any]:
    return {key: ("***" if key in _REDACTED_KEYS else value) for key, value in payload.items()}


class LogNotifier(EventNotifier):
    """Logs every event and keeps the most recent ones in memory."""

    def __init__(self, *, history_size: int = 1000) -> None:
        self.events: deque[Notification] = deque(maxlen=max(1, int(history_size)))

    async def emit(self, kind: str, payload: dict[str, Any]) -> None:
        self.events.append(Notification(kind=kind, payload=dict(payload)))
        logger.info("Notification %s %s", kind, _redact(payload))

    def of_kind(self, kind: str) -> list[Notification]:
        return [event for event in self.events if event.kind == kind]


class LogDispatcher:
    """Outbox dispatcher used when no webhook is configured."""

    dispatcher_name = "log"

    async def dispatch(self, notification: Notification) -> None:
        logger.info(
            "Outbox job=%s kind=%s payload=%s",
            notification.job_id,
            notification.kind,
            _redact(notification.payload),
        )
