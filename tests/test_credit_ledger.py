import asyncio
import sqlite3

import pytest

from conftest import retry_on_conflict
from database import open_db
from ledger import CreditLedger, LedgerStore
from ledger.errors import (
    InsufficientFundsError,
    InvalidAmountError,
    RefundExceedsChargeError,
    RefundTargetNotFoundError,
)
from ledger.models import TransactionType


async def test_purchase_then_charge_chains_balance(services, business):
    ledger = services.ledger
    first = await ledger.purchase(business.id, 1000)
    second = await ledger.charge_lead(business.id, "lead-1", 300, place_id=7)

    assert first.balance_after_cents == 1000
    assert second.amount_cents == -300
    assert second.balance_after_cents == 700
    assert second.related_lead_id == "lead-1"
    assert second.related_place_id == 7
    assert await ledger.get_balance(business.id) == 700


async def test_unknown_business_has_zero_balance(services):
    assert await services.ledger.get_balance(424242) == 0


@pytest.mark.parametrize("amount", [0, -5, 2.5, True, "100"])
async def test_rejects_non_positive_or_non_integer_amounts(services, business, amount):
    with pytest.raises(InvalidAmountError):
        await services.ledger.purchase(business.id, amount)
    assert await services.ledger.get_balance(business.id) == 0


async def test_charge_without_funds_leaves_no_row(services, business):
    await services.ledger.purchase(business.id, 200)
    with pytest.raises(InsufficientFundsError) as exc_info:
        await services.ledger.charge_lead(business.id, "lead-1", 500)

    assert exc_info.value.balance_cents == 200
    assert exc_info.value.required_cents == 500
    rows, total = await services.ledger.list_transactions(business.id)
    assert total == 1
    assert rows[0].type is TransactionType.PURCHASE


async def test_charge_may_drain_balance_to_exactly_zero(services, business):
    await services.ledger.purchase(business.id, 500)
    tx = await services.ledger.charge_lead(business.id, "lead-1", 500)
    assert tx.balance_after_cents == 0


async def test_duplicate_lead_charge_returns_original(services, business):
    await services.ledger.purchase(business.id, 1000)
    first = await services.ledger.charge_lead(business.id, "lead-dup", 300)
    again = await services.ledger.charge_lead(business.id, "lead-dup", 300)

    assert again.id == first.id
    assert await services.ledger.get_balance(business.id) == 700
    _, total = await services.ledger.list_transactions(business.id, type=TransactionType.LEAD_CHARGE)
    assert total == 1

    replay, created = await services.ledger.charge_lead_once(business.id, "lead-dup", 300)
    assert replay.id == first.id and created is False
    fresh, created = await services.ledger.charge_lead_once(business.id, "lead-new", 300)
    assert created is True and fresh.balance_after_cents == 400


async def test_premium_subscription_respects_balance(services, business):
    await services.ledger.purchase(business.id, 1000)
    tx = await services.ledger.charge_premium_subscription(business.id, 700, "Starter plan")
    assert tx.type is TransactionType.PREMIUM_SUBSCRIPTION
    assert tx.balance_after_cents == 300

    with pytest.raises(InsufficientFundsError):
        await services.ledger.charge_premium_subscription(business.id, 700)


async def test_refund_is_bounded_by_the_charge(services, business):
    ledger = services.ledger
    await ledger.purchase(business.id, 1000)
    await ledger.charge_lead(business.id, "lead-1", 300)

    with pytest.raises(RefundExceedsChargeError):
        await ledger.refund(business.id, "lead-1", 500)

    partial = await ledger.refund(business.id, "lead-1", 200)
    assert partial.balance_after_cents == 900
    with pytest.raises(RefundExceedsChargeError):
        await ledger.refund(business.id, "lead-1", 101)
    rest = await ledger.refund(business.id, "lead-1", 100)
    assert rest.balance_after_cents == 1000


async def test_refund_requires_an_existing_charge(services, business):
    await services.ledger.purchase(business.id, 1000)
    with pytest.raises(RefundTargetNotFoundError):
        await services.ledger.refund(business.id, "never-charged", 100)


async def test_transactions_are_append_only(services, business, db_path):
    tx = await services.ledger.purchase(business.id, 1000)
    async with open_db(db_path) as db:
        with pytest.raises(sqlite3.DatabaseError):
            await db.execute("UPDATE credit_transactions SET amount_cents = 5 WHERE id = ?", (tx.id,))
        with pytest.raises(sqlite3.DatabaseError):
            await db.execute("DELETE FROM credit_transactions WHERE id = ?", (tx.id,))
    stored = await services.ledger_store.get_transaction(tx.id)
    assert stored.amount_cents == 1000


async def test_list_transactions_is_newest_first_with_filters(services, business):
    ledger = services.ledger
    await ledger.purchase(business.id, 1000)
    await ledger.bonus(business.id, 100)
    await ledger.charge_lead(business.id, "a", 200)
    await ledger.charge_lead(business.id, "b", 200)

    rows, total = await ledger.list_transactions(business.id, limit=2)
    assert total == 4
    assert [row.related_lead_id for row in rows] == ["b", "a"]

    rows, total = await ledger.list_transactions(business.id, limit=2, offset=2)
    assert [row.type for row in rows] == [TransactionType.BONUS, TransactionType.PURCHASE]

    rows, total = await ledger.list_transactions(business.id, type="bonus")
    assert total == 1 and rows[0].amount_cents == 100


async def test_summary_and_stats(services, business):
    ledger = services.ledger
    await ledger.purchase(business.id, 2000)
    await ledger.charge_lead(business.id, "a", 300)
    await ledger.charge_lead(business.id, "b", 400)
    await ledger.refund(business.id, "a", 300)

    summary = await ledger.get_balance_summary(business.id)
    assert summary.balance_cents == 1600
    assert summary.total_purchased_cents == 2300
    assert summary.total_spent_cents == 700

    stats = await ledger.get_credit_stats(business.id, days=7)
    assert stats.leads_charged == 2
    assert stats.spent_cents == 700
    assert stats.avg_cost_per_lead_cents == 350


async def test_reconcile_corrects_drift(services, business, db_path):
    await services.ledger.purchase(business.id, 1000)
    await services.ledger.charge_lead(business.id, "a", 250)
    async with open_db(db_path) as db:
        await db.execute("UPDATE credit_accounts SET balance_cents = 9999 WHERE business_id = ?", (business.id,))

    balance, drift = await services.ledger_store.reconcile_account(business.id)
    assert balance == 750
    assert drift == 9999 - 750
    assert await services.ledger.get_balance(business.id) == 750

    stats = await services.ledger.reconcile_all()
    assert stats == {"scanned": 1, "drifted": 0, "failed": 0}


async def test_concurrent_charges_never_overdraw(services, business):
    ledger = services.ledger
    await ledger.purchase(business.id, 5000)

    async def _charge(i: int):
        try:
            return await retry_on_conflict(lambda: ledger.charge_lead(business.id, f"lead-{i}", 100))
        except InsufficientFundsError:
            return None

    results = await asyncio.gather(*(_charge(i) for i in range(100)))

    charged = [tx for tx in results if tx is not None]
    assert len(charged) == 50
    assert await ledger.get_balance(business.id) == 0
    balances = sorted(tx.balance_after_cents for tx in charged)
    assert balances == list(range(0, 5000, 100))


async def test_separate_ledger_instances_share_one_store(db_path, services, business):
    other = CreditLedger(LedgerStore(db_path))
    await services.ledger.purchase(business.id, 300)
    await other.charge_lead(business.id, "x", 300)
    assert await services.ledger.get_balance(business.id) == 0
