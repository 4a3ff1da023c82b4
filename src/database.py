import asyncio
import json
import logging
import sqlite3
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, TypeVar

import aiosqlite

from config import CFG, DB_PATH
from sqlite_lock_logger import log_sqlite_lock_event


logger = logging.getLogger(__name__)

T = TypeVar("T")

WRITE_RETRY_ATTEMPTS = 3
WRITE_RETRY_BASE_DELAY_SEC = 0.05

NOTIFICATION_JOB_STATUSES = {"pending", "running", "done", "failed"}


class ConcurrencyConflictError(RuntimeError):
    """Raised when the SQLite write lock could not be obtained in time.

    The unit of work was rolled back and left nothing behind; the caller may
    retry it.
    """


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS businesses (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    plan_key TEXT NOT NULL DEFAULT 'FREE',
    lead_price_cents INTEGER,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_businesses_user ON businesses(user_id);

CREATE TABLE IF NOT EXISTS places (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    website TEXT,
    phone TEXT,
    category TEXT,
    business_id INTEGER REFERENCES businesses(id),
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS credit_accounts (
    business_id INTEGER PRIMARY KEY,
    balance_cents INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS credit_transactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    business_id INTEGER NOT NULL,
    type TEXT NOT NULL CHECK (
        type IN ('purchase', 'lead_charge', 'refund', 'bonus', 'premium_subscription')
    ),
    amount_cents INTEGER NOT NULL CHECK (amount_cents <> 0),
    balance_after_cents INTEGER NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    related_place_id INTEGER,
    related_lead_id TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_credit_transactions_business
    ON credit_transactions(business_id, id);

CREATE INDEX IF NOT EXISTS idx_credit_transactions_lead
    ON credit_transactions(business_id, related_lead_id);

CREATE UNIQUE INDEX IF NOT EXISTS uq_credit_transactions_lead_charge
    ON credit_transactions(business_id, type, related_lead_id)
    WHERE type = 'lead_charge' AND related_lead_id IS NOT NULL;

CREATE TRIGGER IF NOT EXISTS trg_credit_transactions_no_update
BEFORE UPDATE ON credit_transactions
BEGIN
    SELECT RAISE(ABORT, 'credit_transactions is append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_credit_transactions_no_delete
BEFORE DELETE ON credit_transactions
BEGIN
    SELECT RAISE(ABORT, 'credit_transactions is append-only');
END;

CREATE TABLE IF NOT EXISTS place_claims (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    place_id INTEGER NOT NULL,
    user_id TEXT NOT NULL,
    status TEXT NOT NULL CHECK (
        status IN ('pending', 'verification_sent', 'verified', 'rejected', 'expired')
    ),
    verification_method TEXT NOT NULL CHECK (
        verification_method IN ('email_domain', 'phone', 'document', 'manual')
    ),
    verification_email TEXT,
    verification_email_domain TEXT,
    verification_phone TEXT,
    verification_code TEXT,
    verification_code_sent_at TEXT,
    verification_code_expires_at TEXT,
    verification_attempts INTEGER NOT NULL DEFAULT 0,
    proof_document_url TEXT,
    business_role TEXT,
    claimant_name TEXT,
    claimant_phone TEXT,
    notes TEXT,
    admin_notes TEXT,
    reviewed_at TEXT,
    reviewed_by TEXT,
    rejection_reason TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    CHECK (verification_code IS NULL OR status = 'verification_sent')
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_place_claims_active
    ON place_claims(place_id, user_id)
    WHERE status IN ('pending', 'verification_sent', 'verified');

CREATE INDEX IF NOT EXISTS idx_place_claims_status ON place_claims(status, id);
CREATE INDEX IF NOT EXISTS idx_place_claims_user ON place_claims(user_id, id);
CREATE INDEX IF NOT EXISTS idx_place_claims_expiry
    ON place_claims(verification_code_expires_at)
    WHERE status = 'verification_sent';

CREATE TABLE IF NOT EXISTS claim_audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    claim_id INTEGER NOT NULL,
    place_id INTEGER NOT NULL,
    actor_user_id TEXT,
    action TEXT NOT NULL,
    payload_json TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_claim_audit_log_claim ON claim_audit_log(claim_id, id);

CREATE TABLE IF NOT EXISTS notification_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    kind TEXT NOT NULL,
    payload_json TEXT NOT NULL DEFAULT '{}',
    status TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    finished_at TEXT,
    updated_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_notification_jobs_status ON notification_jobs(status, id);
"""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Fixed-width UTC ISO-8601, so stored timestamps compare lexically."""
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def utc_now_iso() -> str:
    """Current UTC timestamp in ISO-8601."""
    return to_iso(utc_now())


def parse_iso_utc(raw_value: str | None) -> datetime | None:
    if not raw_value:
        return None
    try:
        parsed = datetime.fromisoformat(str(raw_value))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_json(data: dict[str, Any]) -> str:
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"), default=str)


def resolve_db_path(db_path: str | None = None) -> str:
    return str(db_path or DB_PATH)


async def apply_sqlite_pragmas(db: aiosqlite.Connection) -> None:
    """Apply SQLite settings for concurrent writers sharing one file."""
    # busy_timeout goes first so the WAL switch itself waits instead of failing.
    await db.execute(f"PRAGMA busy_timeout={int(CFG.sqlite_busy_timeout_ms)};")
    await db.execute("PRAGMA journal_mode=WAL;")
    await db.execute("PRAGMA synchronous=NORMAL;")


@asynccontextmanager
async def open_db(db_path: str | None = None) -> AsyncIterator[aiosqlite.Connection]:
    """Open an autocommit connection with row access by column name.

    Transactions are explicit (`BEGIN IMMEDIATE`), see `immediate_transaction`.
    """
    async with aiosqlite.connect(resolve_db_path(db_path), isolation_level=None) as db:
        db.row_factory = aiosqlite.Row
        await apply_sqlite_pragmas(db)
        yield db


def _is_sqlite_locked_error(exc: BaseException) -> bool:
    if not isinstance(exc, (sqlite3.OperationalError, aiosqlite.OperationalError)):
        return False
    msg = str(exc).lower()
    return "database is locked" in msg or "database table is locked" in msg


async def _rollback_quietly(db: aiosqlite.Connection) -> None:
    if not db.in_transaction:
        return
    try:
        await db.execute("ROLLBACK")
    except sqlite3.Error:
        logger.exception("SQLite rollback failed")


@asynccontextmanager
async def immediate_transaction(
    db_path: str | None = None,
    *,
    where: str = "immediate_transaction",
) -> AsyncIterator[aiosqlite.Connection]:
    """Run the block inside `BEGIN IMMEDIATE ... COMMIT`.

    The write lock is taken before the block reads anything, so reads made in
    the block stay valid until commit. Any exception rolls back. Lock timeouts
    surface as `ConcurrencyConflictError`.
    """
    async with open_db(db_path) as db:
        try:
            await db.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as exc:
            if not _is_sqlite_locked_error(exc):
                raise
            log_sqlite_lock_event(where=where, exc=exc, attempt=1, retries=0)
            raise ConcurrencyConflictError(f"{where}: write lock not acquired") from exc

        try:
            yield db
        except sqlite3.OperationalError as exc:
            await _rollback_quietly(db)
            if _is_sqlite_locked_error(exc):
                log_sqlite_lock_event(where=where, exc=exc, attempt=1, retries=0)
                raise ConcurrencyConflictError(f"{where}: lock lost mid-transaction") from exc
            raise
        except BaseException:
            await _rollback_quietly(db)
            raise

        try:
            await db.execute("COMMIT")
        except sqlite3.OperationalError as exc:
            await _rollback_quietly(db)
            if _is_sqlite_locked_error(exc):
                log_sqlite_lock_event(where=where, exc=exc, attempt=1, retries=0)
                raise ConcurrencyConflictError(f"{where}: commit blocked") from exc
            raise


async def with_sqlite_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    retries: int = WRITE_RETRY_ATTEMPTS,
    base_delay: float = WRITE_RETRY_BASE_DELAY_SEC,
) -> T:
    """Retry an idempotent database operation on lock contention."""
    attempt = 0
    while True:
        try:
            return await fn()
        except (sqlite3.OperationalError, ConcurrencyConflictError) as exc:
            locked = isinstance(exc, ConcurrencyConflictError) or _is_sqlite_locked_error(exc)
            if not locked or attempt >= retries:
                raise
            delay = base_delay * (2**attempt)
            code = getattr(fn, "__code__", None)
            extra: dict[str, object] = {}
            if code is not None:
                extra = {
                    "fn_file": str(code.co_filename),
                    "fn_line": int(code.co_firstlineno),
                    "fn_name": str(getattr(fn, "__name__", "")),
                }
            logger.warning("SQLite locked; retry %s/%s in %.2fs", attempt + 1, retries, delay)
            log_sqlite_lock_event(
                where="database.with_sqlite_retry",
                exc=exc,
                attempt=attempt + 1,
                retries=retries,
                delay_sec=delay,
                extra=extra,
            )
            await asyncio.sleep(delay)
            attempt += 1


async def execute_write_with_retry(
    db: aiosqlite.Connection,
    query: str,
    params: Sequence[Any] = (),
) -> aiosqlite.Cursor:
    """Execute a single autocommit write with lightweight retry on lock contention."""
    for attempt in range(WRITE_RETRY_ATTEMPTS):
        try:
            return await db.execute(query, params)
        except sqlite3.OperationalError as error:
            if not _is_sqlite_locked_error(error) or attempt >= WRITE_RETRY_ATTEMPTS - 1:
                raise
            backoff = WRITE_RETRY_BASE_DELAY_SEC * (2**attempt)
            log_sqlite_lock_event(
                where="database.execute_write_with_retry",
                exc=error,
                attempt=attempt + 1,
                retries=WRITE_RETRY_ATTEMPTS - 1,
                delay_sec=backoff,
            )
            await asyncio.sleep(backoff)
    raise RuntimeError("Unexpected retry loop state")


async def init_db(db_path: str | None = None) -> None:
    """Create tables, indexes and triggers. Safe to call on every start."""
    async with open_db(db_path) as db:
        await db.executescript(SCHEMA_SQL)
    logger.info("Database ready at %s", resolve_db_path(db_path))


# ============ Notification outbox ============


def _notification_job_from_row(row: aiosqlite.Row) -> dict[str, Any]:
    payload_raw = row["payload_json"]
    return {
        "id": int(row["id"]),
        "kind": row["kind"],
        "payload": json.loads(payload_raw) if payload_raw else {},
        "status": row["status"],
        "attempts": int(row["attempts"]),
        "last_error": row["last_error"],
        "created_at": row["created_at"],
        "started_at": row["started_at"],
        "finished_at": row["finished_at"],
    }


async def enqueue_notification_job(kind: str, payload: dict, *, db_path: str | None = None) -> int:
    """Persist a notification for the outbox worker."""
    if not kind:
        raise ValueError("kind is required")
    created_at = utc_now_iso()
    payload_json = to_json(payload or {})

    async def _op() -> int:
        async with open_db(db_path) as db:
            cur = await db.execute(
                """
                INSERT INTO notification_jobs (kind, payload_json, status, created_at, updated_at)
                VALUES (?, ?, 'pending', ?, ?)
                """,
                (str(kind), payload_json, created_at, created_at),
            )
            return int(cur.lastrowid)

    return await with_sqlite_retry(_op)


async def get_notification_job(job_id: int, *, db_path: str | None = None) -> dict[str, Any] | None:
    async def _op() -> dict[str, Any] | None:
        async with open_db(db_path) as db:
            async with db.execute("SELECT * FROM notification_jobs WHERE id = ?", (int(job_id),)) as cur:
                row = await cur.fetchone()
        return _notification_job_from_row(row) if row else None

    return await with_sqlite_retry(_op)


async def list_notification_jobs(
    *,
    status: str | None = None,
    limit: int = 50,
    db_path: str | None = None,
) -> list[dict[str, Any]]:
    limit = max(1, min(int(limit), 500))
    where_sql = "WHERE status = ?" if status else ""
    params: tuple = (status, limit) if status else (limit,)

    async def _op() -> list[dict[str, Any]]:
        async with open_db(db_path) as db:
            async with db.execute(
                f"SELECT * FROM notification_jobs {where_sql} ORDER BY id ASC LIMIT ?",
                params,
            ) as cur:
                rows = await cur.fetchall()
        return [_notification_job_from_row(row) for row in rows]

    return await with_sqlite_retry(_op)


async def claim_next_notification_job(*, db_path: str | None = None) -> dict[str, Any] | None:
    """Atomically claim the next pending job and mark it running."""
    now = utc_now_iso()

    async def _op() -> dict[str, Any] | None:
        async with immediate_transaction(db_path, where="database.claim_next_notification_job") as db:
            async with db.execute(
                """
                SELECT * FROM notification_jobs
                 WHERE status = 'pending'
                 ORDER BY id ASC
                 LIMIT 1
                """
            ) as cur:
                row = await cur.fetchone()
            if not row:
                return None
            await db.execute(
                """
                UPDATE notification_jobs
                   SET status = 'running',
                       started_at = COALESCE(started_at, ?),
                       updated_at = ?,
                       attempts = attempts + 1
                 WHERE id = ? AND status = 'pending'
                """,
                (now, now, int(row["id"])),
            )
        job = _notification_job_from_row(row)
        job["status"] = "running"
        job["attempts"] += 1
        return job

    return await with_sqlite_retry(_op)


async def finish_notification_job(
    job_id: int,
    *,
    status: str,
    error: str | None = None,
    db_path: str | None = None,
) -> None:
    """Mark a job done/failed and persist the error."""
    if status not in NOTIFICATION_JOB_STATUSES:
        raise ValueError(f"Invalid notification job status: {status}")
    if status in {"pending", "running"}:
        raise ValueError("finish_notification_job() requires a terminal status")
    now = utc_now_iso()

    async def _op() -> None:
        async with open_db(db_path) as db:
            await execute_write_with_retry(
                db,
                """
                UPDATE notification_jobs
                   SET status = ?, finished_at = ?, updated_at = ?, last_error = ?
                 WHERE id = ?
                """,
                (status, now, now, error, int(job_id)),
            )

    await with_sqlite_retry(_op)
