"""SQLite lock-contention journal.

Ledger appends, claim writes and the notification outbox all share one SQLite
file. WAL and busy_timeout make writers queue, but a writer can still give up
with `database is locked`. Each such event is appended as one JSON line to
`SQLITE_LOCK_LOG_PATH` (or `<LOG_DIR>/locks.log`) so contention can be
reviewed next to the ledger's reconciliation logs.

Writing the journal is best effort and never raises into the caller.
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from config import clean_env_str


_LOCK_LOG_PATH: str | None = None
_LOCK_LOG_PATH_INITIALIZED = False


def _resolve_lock_log_path() -> str | None:
    """Resolve the journal path once per process."""
    global _LOCK_LOG_PATH_INITIALIZED, _LOCK_LOG_PATH
    if _LOCK_LOG_PATH_INITIALIZED:
        return _LOCK_LOG_PATH
    _LOCK_LOG_PATH_INITIALIZED = True

    explicit = clean_env_str(os.getenv("SQLITE_LOCK_LOG_PATH"))
    if explicit:
        _LOCK_LOG_PATH = explicit
        return _LOCK_LOG_PATH

    log_dir = clean_env_str(os.getenv("LOG_DIR"))
    if log_dir:
        _LOCK_LOG_PATH = str(Path(log_dir) / "locks.log")
        return _LOCK_LOG_PATH

    _LOCK_LOG_PATH = None
    return None


def log_sqlite_lock_event(
    *,
    where: str,
    exc: BaseException,
    attempt: int,
    retries: int,
    delay_sec: float | None = None,
    extra: dict[str, Any] | None = None,
) -> None:
    """Append a JSONL entry about lock contention.

    attempt: 1-based attempt number (1..retries+1).
    """
    path = _resolve_lock_log_path()
    if not path:
        return

    payload: dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "where": str(where or ""),
        "attempt": int(attempt),
        "retries": int(retries),
        "error": str(exc),
        "pid": os.getpid(),
    }
    db_path = clean_env_str(os.getenv("DB_PATH"))
    if db_path:
        payload["db_path"] = db_path
    if delay_sec is not None:
        payload["delay_sec"] = round(float(delay_sec), 4)
    if extra:
        for key, value in extra.items():
            payload.setdefault(key, value)

    try:
        log_path = Path(path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str)
        with log_path.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")
    except OSError:
        return
