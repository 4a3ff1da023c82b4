import asyncio
import logging

from config import CFG, is_webhook_delivery_enabled
from database import claim_next_notification_job, finish_notification_job
from notifications import LogDispatcher, Notification, NotificationDispatcher, WebhookDispatcher
from notifications.base import NOTIFICATION_KINDS

logger = logging.getLogger(__name__)

IDLE_BACKOFF_SEC = 2.0


def build_dispatcher() -> NotificationDispatcher:
    """Webhook delivery when NOTIFY_WEBHOOK_URL is set, log-only otherwise."""
    if is_webhook_delivery_enabled():
        return WebhookDispatcher(CFG.notify_webhook_url, timeout_sec=CFG.notify_webhook_timeout_sec)
    return LogDispatcher()


async def process_next_notification_job(
    dispatcher: NotificationDispatcher,
    *,
    db_path: str | None = None,
) -> dict | None:
    """Claim and deliver one job. Returns the job, or None when the queue is empty."""
    job = await claim_next_notification_job(db_path=db_path)
    if not job:
        return None

    job_id = int(job["id"])
    kind = str(job.get("kind") or "").strip()
    try:
        if kind not in NOTIFICATION_KINDS:
            raise ValueError(f"Unknown notification kind: {kind}")
        await dispatcher.dispatch(Notification(kind=kind, payload=job.get("payload") or {}, job_id=job_id))
    except Exception as exc:
        logger.exception("Notification job failed id=%s kind=%s", job_id, kind)
        await finish_notification_job(job_id, status="failed", error=str(exc), db_path=db_path)
        job["status"] = "failed"
        return job

    await finish_notification_job(job_id, status="done", db_path=db_path)
    job["status"] = "done"
    return job


async def notifications_worker_loop(
    dispatcher: NotificationDispatcher,
    *,
    poll_interval_sec: float = 1.0,
    db_path: str | None = None,
) -> None:
    """Background worker that delivers jobs from the notification outbox."""
    sleep_s = max(0.2, float(poll_interval_sec))
    logger.info("Notifications worker started (dispatcher=%s)", dispatcher.dispatcher_name)
    while True:
        try:
            job = await process_next_notification_job(dispatcher, db_path=db_path)
            if not job:
                await asyncio.sleep(sleep_s)
        except Exception:
            logger.exception("Notifications worker tick failed")
            await asyncio.sleep(IDLE_BACKOFF_SEC)
