from database import enqueue_notification_job, get_notification_job, init_db, list_notification_jobs
from notifications import LogDispatcher, OutboxNotifier
from notifications.base import KIND_LEAD_NEW
from notifications_worker import process_next_notification_job


class RecordingDispatcher:
    dispatcher_name = "recording"

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.seen = []

    async def dispatch(self, notification) -> None:
        self.seen.append(notification)
        if self.fail:
            raise RuntimeError("webhook down")


async def test_outbox_notifier_queues_jobs(db_path):
    await init_db(db_path)
    notifier = OutboxNotifier(db_path)
    await notifier.notify_new_lead(business_id=1, lead_id="lead-1", place_id=2, charged=True)

    jobs = await list_notification_jobs(status="pending", db_path=db_path)
    assert len(jobs) == 1
    assert jobs[0]["kind"] == KIND_LEAD_NEW
    assert jobs[0]["payload"] == {"business_id": 1, "lead_id": "lead-1", "place_id": 2, "charged": True}


async def test_worker_delivers_in_order_and_marks_done(db_path):
    await init_db(db_path)
    first = await enqueue_notification_job(KIND_LEAD_NEW, {"lead_id": "a"}, db_path=db_path)
    second = await enqueue_notification_job(KIND_LEAD_NEW, {"lead_id": "b"}, db_path=db_path)
    dispatcher = RecordingDispatcher()

    assert (await process_next_notification_job(dispatcher, db_path=db_path))["id"] == first
    assert (await process_next_notification_job(dispatcher, db_path=db_path))["id"] == second
    assert await process_next_notification_job(dispatcher, db_path=db_path) is None

    assert [n.payload["lead_id"] for n in dispatcher.seen] == ["a", "b"]
    job = await get_notification_job(first, db_path=db_path)
    assert job["status"] == "done"
    assert job["attempts"] == 1


async def test_failed_delivery_is_recorded(db_path):
    await init_db(db_path)
    job_id = await enqueue_notification_job(KIND_LEAD_NEW, {"lead_id": "a"}, db_path=db_path)

    job = await process_next_notification_job(RecordingDispatcher(fail=True), db_path=db_path)
    assert job["status"] == "failed"
    stored = await get_notification_job(job_id, db_path=db_path)
    assert stored["status"] == "failed"
    assert stored["last_error"] == "webhook down"


async def test_unknown_kind_fails_without_dispatch(db_path):
    await init_db(db_path)
    await enqueue_notification_job("mystery", {}, db_path=db_path)
    dispatcher = RecordingDispatcher()

    job = await process_next_notification_job(dispatcher, db_path=db_path)
    assert job["status"] == "failed"
    assert dispatcher.seen == []


async def test_log_dispatcher_accepts_everything(db_path):
    await init_db(db_path)
    await enqueue_notification_job(KIND_LEAD_NEW, {"code": "secret"}, db_path=db_path)
    job = await process_next_notification_job(LogDispatcher(), db_path=db_path)
    assert job["status"] == "done"
