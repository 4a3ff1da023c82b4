"""Persistence for credit accounts and the append-only transaction log."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta

import aiosqlite

from database import immediate_transaction, open_db, to_iso, utc_now, utc_now_iso
from ledger.errors import InsufficientFundsError, InvalidAmountError
from ledger.models import (
    CREDIT_TYPES,
    NON_NEGATIVE_BALANCE_TYPES,
    BalanceSummary,
    CreditStats,
    CreditTransaction,
    TransactionType,
)


logger = logging.getLogger(__name__)

# Runs inside the append transaction. Returning a transaction short-circuits
# the append and hands that row back to the caller.
Precheck = Callable[[aiosqlite.Connection], Awaitable[CreditTransaction | None]]

MAX_PAGE_SIZE = 500

_TX_COLUMNS = (
    "id, business_id, type, amount_cents, balance_after_cents, description, "
    "related_place_id, related_lead_id, created_at"
)


def _tx_from_row(row: aiosqlite.Row) -> CreditTransaction:
    return CreditTransaction(
        id=int(row["id"]),
        business_id=int(row["business_id"]),
        type=TransactionType(row["type"]),
        amount_cents=int(row["amount_cents"]),
        balance_after_cents=int(row["balance_after_cents"]),
        description=str(row["description"] or ""),
        created_at=str(row["created_at"]),
        related_place_id=int(row["related_place_id"]) if row["related_place_id"] is not None else None,
        related_lead_id=row["related_lead_id"],
    )


async def _read_balance(db: aiosqlite.Connection, business_id: int) -> int:
    async with db.execute(
        "SELECT balance_cents FROM credit_accounts WHERE business_id = ?",
        (int(business_id),),
    ) as cur:
        row = await cur.fetchone()
    return int(row[0]) if row else 0


async def _sum_transactions(db: aiosqlite.Connection, business_id: int) -> tuple[int, int]:
    async with db.execute(
        "SELECT COALESCE(SUM(amount_cents), 0), COUNT(*) FROM credit_transactions WHERE business_id = ?",
        (int(business_id),),
    ) as cur:
        row = await cur.fetchone()
    return int(row[0]), int(row[1])


async def _upsert_balance(db: aiosqlite.Connection, business_id: int, balance_cents: int, now: str) -> None:
    await db.execute(
        """
        INSERT INTO credit_accounts (business_id, balance_cents, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(business_id) DO UPDATE SET
            balance_cents = excluded.balance_cents,
            updated_at = excluded.updated_at
        """,
        (int(business_id), int(balance_cents), now),
    )


class LedgerStore:
    """Credit account projection plus append-only transaction rows."""

    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = db_path

    async def append_transaction(
        self,
        business_id: int,
        type: TransactionType | str,
        amount_cents: int,
        description: str,
        *,
        related_place_id: int | None = None,
        related_lead_id: str | None = None,
        precheck: Precheck | None = None,
    ) -> CreditTransaction:
        """Append one row and move the cached balance in the same transaction.

        The write lock is taken before the balance is read, so concurrent
        appends for a business are totally ordered and `balance_after_cents`
        always chains from the previous row.
        """
        tx_type = TransactionType(type)
        amount = int(amount_cents)
        if tx_type in CREDIT_TYPES and amount <= 0:
            raise InvalidAmountError(f"{tx_type.value} amount must be positive, got {amount}")
        if tx_type not in CREDIT_TYPES and amount >= 0:
            raise InvalidAmountError(f"{tx_type.value} amount must be negative, got {amount}")

        async with immediate_transaction(self.db_path, where="ledger.append_transaction") as db:
            if precheck is not None:
                existing = await precheck(db)
                if existing is not None:
                    return existing

            balance = await _read_balance(db, business_id)
            balance_after = balance + amount
            if balance_after < 0 and tx_type in NON_NEGATIVE_BALANCE_TYPES:
                raise InsufficientFundsError(int(business_id), balance, -amount)

            now = utc_now_iso()
            cur = await db.execute(
                """
                INSERT INTO credit_transactions (
                    business_id, type, amount_cents, balance_after_cents, description,
                    related_place_id, related_lead_id, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    int(business_id),
                    tx_type.value,
                    amount,
                    balance_after,
                    str(description or ""),
                    related_place_id,
                    related_lead_id,
                    now,
                ),
            )
            transaction = CreditTransaction(
                id=int(cur.lastrowid),
                business_id=int(business_id),
                type=tx_type,
                amount_cents=amount,
                balance_after_cents=balance_after,
                description=str(description or ""),
                created_at=now,
                related_place_id=related_place_id,
                related_lead_id=related_lead_id,
            )
            await _upsert_balance(db, business_id, balance_after, now)

        logger.info(
            "Ledger append business=%s type=%s amount=%s balance_after=%s tx=%s",
            business_id,
            tx_type.value,
            amount,
            balance_after,
            transaction.id,
        )
        return transaction

    async def get_balance(self, business_id: int) -> int:
        async with open_db(self.db_path) as db:
            return await _read_balance(db, business_id)

    async def get_transaction(self, transaction_id: int) -> CreditTransaction | None:
        async with open_db(self.db_path) as db:
            async with db.execute(
                f"SELECT {_TX_COLUMNS} FROM credit_transactions WHERE id = ?",
                (int(transaction_id),),
            ) as cur:
                row = await cur.fetchone()
        return _tx_from_row(row) if row else None

    async def list_transactions(
        self,
        business_id: int,
        *,
        limit: int = 50,
        offset: int = 0,
        type: TransactionType | str | None = None,
        since: str | None = None,
        until: str | None = None,
    ) -> tuple[list[CreditTransaction], int]:
        """Return a newest-first page and the total row count for the filters."""
        safe_limit = max(1, min(int(limit), MAX_PAGE_SIZE))
        safe_offset = max(0, int(offset))

        conditions = ["business_id = ?"]
        params: list = [int(business_id)]
        if type is not None:
            conditions.append("type = ?")
            params.append(TransactionType(type).value)
        if since:
            conditions.append("created_at >= ?")
            params.append(str(since))
        if until:
            conditions.append("created_at <= ?")
            params.append(str(until))
        where_sql = " AND ".join(conditions)

        async with open_db(self.db_path) as db:
            async with db.execute(
                f"SELECT COUNT(*) FROM credit_transactions WHERE {where_sql}",
                tuple(params),
            ) as cur:
                total_row = await cur.fetchone()
            async with db.execute(
                f"""
                SELECT {_TX_COLUMNS}
                  FROM credit_transactions
                 WHERE {where_sql}
                 ORDER BY id DESC
                 LIMIT ? OFFSET ?
                """,
                (*params, safe_limit, safe_offset),
            ) as cur:
                rows = await cur.fetchall()
        return [_tx_from_row(row) for row in rows], int(total_row[0] if total_row else 0)

    async def list_account_ids(self) -> list[int]:
        async with open_db(self.db_path) as db:
            async with db.execute(
                """
                SELECT business_id FROM credit_accounts
                UNION
                SELECT DISTINCT business_id FROM credit_transactions
                ORDER BY 1
                """
            ) as cur:
                rows = await cur.fetchall()
        return [int(row[0]) for row in rows]

    async def reconcile_account(self, business_id: int) -> tuple[int, int]:
        """Re-derive the cached balance from the rows.

        Returns (balance_cents, drift_cents) where drift is cached minus derived.
        """
        async with immediate_transaction(self.db_path, where="ledger.reconcile_account") as db:
            derived, row_count = await _sum_transactions(db, business_id)
            cached = await _read_balance(db, business_id)
            drift = cached - derived
            if drift != 0:
                logger.warning(
                    "Ledger drift business=%s cached=%s derived=%s drift=%s rows=%s; correcting",
                    business_id,
                    cached,
                    derived,
                    drift,
                    row_count,
                )
                await _upsert_balance(db, business_id, derived, utc_now_iso())
        return derived, drift

    async def recompute_balance(self, business_id: int) -> int:
        balance, _ = await self.reconcile_account(business_id)
        return balance

    async def get_balance_summary(self, business_id: int) -> BalanceSummary:
        async with open_db(self.db_path) as db:
            balance = await _read_balance(db, business_id)
            async with db.execute(
                """
                SELECT COALESCE(SUM(CASE WHEN amount_cents > 0 THEN amount_cents END), 0),
                       COALESCE(SUM(CASE WHEN amount_cents < 0 THEN -amount_cents END), 0)
                  FROM credit_transactions
                 WHERE business_id = ?
                """,
                (int(business_id),),
            ) as cur:
                row = await cur.fetchone()
        return BalanceSummary(
            business_id=int(business_id),
            balance_cents=balance,
            total_purchased_cents=int(row[0]),
            total_spent_cents=int(row[1]),
        )

    async def get_credit_stats(self, business_id: int, *, days: int = 30) -> CreditStats:
        """Lead spend over the trailing window."""
        window_days = max(1, int(days))
        since = to_iso(utc_now() - timedelta(days=window_days))
        async with open_db(self.db_path) as db:
            balance = await _read_balance(db, business_id)
            async with db.execute(
                """
                SELECT COALESCE(-SUM(amount_cents), 0), COUNT(*)
                  FROM credit_transactions
                 WHERE business_id = ? AND type = 'lead_charge' AND created_at >= ?
                """,
                (int(business_id), since),
            ) as cur:
                row = await cur.fetchone()
        spent = int(row[0])
        leads = int(row[1])
        return CreditStats(
            business_id=int(business_id),
            days=window_days,
            balance_cents=balance,
            spent_cents=spent,
            leads_charged=leads,
            avg_cost_per_lead_cents=round(spent / leads) if leads else 0,
        )

    @staticmethod
    async def find_lead_charge(
        db: aiosqlite.Connection,
        business_id: int,
        lead_id: str,
    ) -> CreditTransaction | None:
        async with db.execute(
            f"""
            SELECT {_TX_COLUMNS}
              FROM credit_transactions
             WHERE business_id = ? AND type = 'lead_charge' AND related_lead_id = ?
             LIMIT 1
            """,
            (int(business_id), str(lead_id)),
        ) as cur:
            row = await cur.fetchone()
        return _tx_from_row(row) if row else None

    @staticmethod
    async def refunded_total_for_lead(db: aiosqlite.Connection, business_id: int, lead_id: str) -> int:
        async with db.execute(
            """
            SELECT COALESCE(SUM(amount_cents), 0)
              FROM credit_transactions
             WHERE business_id = ? AND type = 'refund' AND related_lead_id = ?
            """,
            (int(business_id), str(lead_id)),
        ) as cur:
            row = await cur.fetchone()
        return int(row[0])

    async def get_lead_charge(self, business_id: int, lead_id: str) -> tuple[CreditTransaction | None, int]:
        """Return the lead's charge row (if any) and the cents refunded against it."""
        async with open_db(self.db_path) as db:
            charge = await self.find_lead_charge(db, business_id, lead_id)
            refunded = await self.refunded_total_for_lead(db, business_id, lead_id)
        return charge, refunded
