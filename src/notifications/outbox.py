"""Notifier that persists events to the `notification_jobs` outbox."""

from __future__ import annotations

import logging
from typing import Any

from database import enqueue_notification_job

from .base import EventNotifier


logger = logging.getLogger(__name__)


class OutboxNotifier(EventNotifier):
    """Enqueue only; `notifications_worker` delivers."""

    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = db_path

    async def emit(self, kind: str, payload: dict[str, Any]) -> None:
        job_id = await enqueue_notification_job(kind, payload, db_path=self.db_path)
        logger.debug("Queued notification job=%s kind=%s", job_id, kind)
