"""Notification emitters and outbox dispatchers."""

from .base import (
    EventNotifier,
    Notification,
    NotificationDispatcher,
    Notifier,
    notify_quietly,
)
from .log import LogDispatcher, LogNotifier
from .outbox import OutboxNotifier
from .webhook import WebhookDeliveryError, WebhookDispatcher

__all__ = [
    "EventNotifier",
    "LogDispatcher",
    "LogNotifier",
    "Notification",
    "NotificationDispatcher",
    "Notifier",
    "OutboxNotifier",
    "WebhookDeliveryError",
    "WebhookDispatcher",
    "notify_quietly",
]
