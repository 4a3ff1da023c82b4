#!/usr/bin/env python3
"""
Static smoke-check: ledger and claim write boundary policy.

Policy goals:
- `credit_transactions` rows are inserted only by the ledger repository.
- `credit_accounts` is written only by the ledger repository.
- ledger/claim service layers never open raw SQL transactions.
- repositories take the write lock through `immediate_transaction`,
  never with a hand-written `BEGIN`.
- no code path updates or deletes transaction rows.

Run:
  python3 scripts/smoke_ledger_write_transaction_policy.py
"""

from __future__ import annotations

from pathlib import Path
import re


def _resolve(path_rel: str) -> Path:
    candidates = []
    try:
        candidates.append(Path(__file__).resolve().parents[1] / path_rel)
    except Exception:
        pass
    candidates.extend(
        [
            Path.cwd() / path_rel,
            Path("/app") / path_rel,
        ]
    )
    for p in candidates:
        if p.exists():
            return p
    return candidates[0] if candidates else Path(path_rel)


SRC_DIR = _resolve("src")
LEDGER_REPO = SRC_DIR / "ledger" / "repository.py"
CLAIMS_REPO = SRC_DIR / "claims" / "repository.py"
DATABASE_FILE = SRC_DIR / "database.py"
SERVICE_FILES = (
    SRC_DIR / "ledger" / "service.py",
    SRC_DIR / "ledger" / "billing.py",
    SRC_DIR / "claims" / "verifier.py",
    SRC_DIR / "claims" / "admin.py",
    SRC_DIR / "api_server.py",
)

TX_INSERT_RE = re.compile(r"INSERT\s+INTO\s+credit_transactions", re.IGNORECASE)
ACCOUNT_WRITE_RE = re.compile(r"(INSERT\s+INTO|UPDATE)\s+credit_accounts", re.IGNORECASE)
TX_MUTATE_RE = re.compile(r"(UPDATE\s+credit_transactions|DELETE\s+FROM\s+credit_transactions)", re.IGNORECASE)
BEGIN_RE = re.compile(r"execute\(\s*[\"']BEGIN", re.IGNORECASE)


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


def _read(path: Path) -> str:
    _assert(path.exists(), f"file not found: {path}")
    return path.read_text(encoding="utf-8")


def main() -> None:
    violations: list[str] = []

    for path in sorted(SRC_DIR.rglob("*.py")):
        text = _read(path)
        rel = path.relative_to(SRC_DIR)
        if path != LEDGER_REPO:
            if TX_INSERT_RE.search(text):
                violations.append(f"{rel}: inserts credit_transactions outside the ledger repository")
            if ACCOUNT_WRITE_RE.search(text):
                violations.append(f"{rel}: writes credit_accounts outside the ledger repository")
        if path != DATABASE_FILE and TX_MUTATE_RE.search(text):
            violations.append(f"{rel}: updates or deletes credit_transactions rows")
        if path != DATABASE_FILE and BEGIN_RE.search(text):
            violations.append(f"{rel}: raw BEGIN outside database.immediate_transaction")

    for path in SERVICE_FILES:
        text = _read(path)
        if "immediate_transaction" in text or "open_db" in text:
            violations.append(f"{path.relative_to(SRC_DIR)}: service layer opens database connections directly")

    for path in (LEDGER_REPO, CLAIMS_REPO):
        if "immediate_transaction(" not in _read(path):
            violations.append(f"{path.relative_to(SRC_DIR)}: expected writes inside immediate_transaction")

    if violations:
        raise SystemExit(
            "ERROR: ledger write transaction policy violation(s):\n" + "\n".join(f"- {v}" for v in violations)
        )

    print("OK: ledger write transaction policy smoke passed.")


if __name__ == "__main__":
    main()
