"""Outbox dispatcher that POSTs each notification to a webhook."""

from __future__ import annotations

import logging

import aiohttp

from .base import Notification


logger = logging.getLogger(__name__)


class WebhookDeliveryError(RuntimeError):
    """Raised when the webhook answers with a non-2xx status."""


class WebhookDispatcher:
    dispatcher_name = "webhook"

    def __init__(self, url: str, *, timeout_sec: float = 5.0) -> None:
        if not url:
            raise ValueError("Webhook URL is required")
        self.url = url
        self.timeout_sec = max(0.5, float(timeout_sec))

    async def dispatch(self, notification: Notification) -> None:
        body = {
            "id": notification.job_id,
            "kind": notification.kind,
            "payload": notification.payload,
        }
        timeout = aiohttp.ClientTimeout(total=self.timeout_sec)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(self.url, json=body) as resp:
                if resp.status >= 300:
                    text = await resp.text()
                    raise WebhookDeliveryError(f"Webhook returned {resp.status}: {text[:200]}")
        logger.info("Webhook delivered job=%s kind=%s", notification.job_id, notification.kind)
