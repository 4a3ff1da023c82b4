"""Credit ledger use-cases on top of LedgerStore."""

from __future__ import annotations

import logging
from typing import Any

import aiosqlite

from ledger.errors import (
    InvalidAmountError,
    RefundExceedsChargeError,
    RefundTargetNotFoundError,
)
from ledger.models import BalanceSummary, CreditStats, CreditTransaction, TransactionType
from ledger.repository import LedgerStore


logger = logging.getLogger(__name__)


def _positive_cents(amount_cents: Any) -> int:
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise InvalidAmountError(f"amount_cents must be an integer, got {amount_cents!r}")
    if amount_cents <= 0:
        raise InvalidAmountError(f"amount_cents must be positive, got {amount_cents}")
    return amount_cents


class CreditLedger:
    """Every balance mutation goes through here.

    Callers always pass positive amounts; debits are stored negative.
    """

    def __init__(self, store: LedgerStore | None = None) -> None:
        self.store = store or LedgerStore()

    async def purchase(
        self,
        business_id: int,
        amount_cents: int,
        description: str = "Credit purchase",
    ) -> CreditTransaction:
        amount = _positive_cents(amount_cents)
        return await self.store.append_transaction(
            business_id,
            TransactionType.PURCHASE,
            amount,
            description,
        )

    async def bonus(
        self,
        business_id: int,
        amount_cents: int,
        description: str = "Bonus credits",
    ) -> CreditTransaction:
        amount = _positive_cents(amount_cents)
        return await self.store.append_transaction(
            business_id,
            TransactionType.BONUS,
            amount,
            description,
        )

    async def charge_lead(
        self,
        business_id: int,
        lead_id: str,
        amount_cents: int,
        description: str | None = None,
        *,
        place_id: int | None = None,
    ) -> CreditTransaction:
        """Debit a lead once. A repeat call for the same lead returns the original row."""
        transaction, _ = await self.charge_lead_once(
            business_id,
            lead_id,
            amount_cents,
            description,
            place_id=place_id,
        )
        return transaction

    async def charge_lead_once(
        self,
        business_id: int,
        lead_id: str,
        amount_cents: int,
        description: str | None = None,
        *,
        place_id: int | None = None,
    ) -> tuple[CreditTransaction, bool]:
        """charge_lead, plus whether this call wrote the row (False for a repeat)."""
        amount = _positive_cents(amount_cents)
        lead_key = str(lead_id)
        if not lead_key:
            raise InvalidAmountError("lead_id is required for a lead charge")
        replayed = False

        async def _already_charged(db: aiosqlite.Connection) -> CreditTransaction | None:
            nonlocal replayed
            existing = await self.store.find_lead_charge(db, business_id, lead_key)
            if existing is not None:
                replayed = True
                logger.info(
                    "Lead %s already charged for business=%s (tx=%s); not charging again",
                    lead_key,
                    business_id,
                    existing.id,
                )
            return existing

        transaction = await self.store.append_transaction(
            business_id,
            TransactionType.LEAD_CHARGE,
            -amount,
            description or f"Lead charge: {amount} cents",
            related_place_id=place_id,
            related_lead_id=lead_key,
            precheck=_already_charged,
        )
        return transaction, not replayed

    async def refund(
        self,
        business_id: int,
        lead_id: str,
        amount_cents: int,
        description: str | None = None,
    ) -> CreditTransaction:
        """Credit back part or all of a lead charge."""
        amount = _positive_cents(amount_cents)
        lead_key = str(lead_id)

        async def _check_refundable(db: aiosqlite.Connection) -> None:
            charge = await self.store.find_lead_charge(db, business_id, lead_key)
            if charge is None:
                raise RefundTargetNotFoundError(int(business_id), lead_key)
            charged = -charge.amount_cents
            refunded = await self.store.refunded_total_for_lead(db, business_id, lead_key)
            if refunded + amount > charged:
                raise RefundExceedsChargeError(lead_key, charged, refunded, amount)
            return None

        return await self.store.append_transaction(
            business_id,
            TransactionType.REFUND,
            amount,
            description or f"Refund for lead {lead_key}",
            related_lead_id=lead_key,
            precheck=_check_refundable,
        )

    async def charge_premium_subscription(
        self,
        business_id: int,
        amount_cents: int,
        description: str = "Premium subscription",
        *,
        place_id: int | None = None,
    ) -> CreditTransaction:
        amount = _positive_cents(amount_cents)
        return await self.store.append_transaction(
            business_id,
            TransactionType.PREMIUM_SUBSCRIPTION,
            -amount,
            description,
            related_place_id=place_id,
        )

    async def get_balance(self, business_id: int) -> int:
        return await self.store.get_balance(business_id)

    async def list_transactions(self, business_id: int, **filters: Any) -> tuple[list[CreditTransaction], int]:
        return await self.store.list_transactions(business_id, **filters)

    async def get_balance_summary(self, business_id: int) -> BalanceSummary:
        return await self.store.get_balance_summary(business_id)

    async def get_credit_stats(self, business_id: int, *, days: int = 30) -> CreditStats:
        return await self.store.get_credit_stats(business_id, days=days)

    async def reconcile(self, business_id: int) -> int:
        return await self.store.recompute_balance(business_id)

    async def reconcile_all(self) -> dict[str, int]:
        """Re-derive every cached balance. One failing account does not stop the pass."""
        stats = {"scanned": 0, "drifted": 0, "failed": 0}
        for business_id in await self.store.list_account_ids():
            stats["scanned"] += 1
            try:
                _, drift = await self.store.reconcile_account(business_id)
            except Exception:
                stats["failed"] += 1
                logger.exception("Ledger reconcile failed for business=%s", business_id)
                continue
            if drift != 0:
                stats["drifted"] += 1
        return stats
