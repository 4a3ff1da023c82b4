#!/usr/bin/env python3
"""
Smoke test for concurrent lead charges against one credit account.

What it validates:
- 100 concurrent 1-credit charges against a 50-credit balance charge exactly 50.
- the balance never goes below zero and ends at zero.
- `balance_after_cents` forms an unbroken chain across the transaction log.
- a reconcile pass afterwards finds no drift.

Run:
  python3 scripts/smoke_ledger_concurrency.py
"""

from __future__ import annotations

import asyncio
import os
import shutil
import sys
import tempfile
from pathlib import Path


def _resolve_repo_root() -> Path:
    candidates: list[Path] = []
    try:
        candidates.append(Path(__file__).resolve().parents[1])
    except Exception:
        pass
    candidates.extend([Path.cwd(), Path("/app")])
    for root in candidates:
        if (root / "src" / "database.py").exists():
            return root
    raise FileNotFoundError("Cannot locate repo root with src/database.py")


REPO_ROOT = _resolve_repo_root()
CHARGES = 100
CREDIT_CENTS = 100
START_BALANCE_CENTS = 50 * CREDIT_CENTS


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


async def _run_checks(db_path: str) -> None:
    from database import ConcurrencyConflictError, init_db
    from directory import SqlitePlaceRegistry
    from ledger import CreditLedger, LedgerStore
    from ledger.errors import InsufficientFundsError

    await init_db(db_path)
    business = await SqlitePlaceRegistry(db_path).add_business("smoke-owner", "Smoke Cafe")
    ledger = CreditLedger(LedgerStore(db_path))
    await ledger.purchase(business.id, START_BALANCE_CENTS)

    lock_retries = 0

    async def _charge(i: int):
        nonlocal lock_retries
        for attempt in range(20):
            try:
                return await ledger.charge_lead(business.id, f"smoke-lead-{i}", CREDIT_CENTS)
            except InsufficientFundsError:
                return None
            except ConcurrencyConflictError:
                lock_retries += 1
                await asyncio.sleep(0.01 * (attempt + 1))
        raise AssertionError(f"lead {i} never acquired the write lock")

    results = await asyncio.gather(*(_charge(i) for i in range(CHARGES)))
    charged = [tx for tx in results if tx is not None]

    _assert(len(charged) == START_BALANCE_CENTS // CREDIT_CENTS, f"expected 50 charges, got {len(charged)}")
    balance = await ledger.get_balance(business.id)
    _assert(balance == 0, f"expected final balance 0, got {balance}")

    rows, total = await ledger.list_transactions(business.id, limit=200)
    _assert(total == len(charged) + 1, f"unexpected transaction count: {total}")
    running = 0
    for row in reversed(rows):
        running += row.amount_cents
        _assert(row.balance_after_cents == running, f"broken balance chain at tx={row.id}")
        _assert(row.balance_after_cents >= 0, f"negative balance at tx={row.id}")

    _, drift = await ledger.store.reconcile_account(business.id)
    _assert(drift == 0, f"unexpected drift after concurrent charges: {drift}")
    print(f"charged={len(charged)} lock_retries={lock_retries}")


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="listings-smoke-ledger-"))
    try:
        db_path = tmpdir / "state.db"
        os.environ["DB_PATH"] = str(db_path)
        sys.path.insert(0, str(REPO_ROOT / "src"))

        asyncio.run(_run_checks(str(db_path)))
        print("OK: ledger concurrency smoke test passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


if __name__ == "__main__":
    main()
