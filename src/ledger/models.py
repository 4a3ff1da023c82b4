"""Credit ledger domain models."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    LEAD_CHARGE = "lead_charge"
    REFUND = "refund"
    BONUS = "bonus"
    PREMIUM_SUBSCRIPTION = "premium_subscription"


CREDIT_TYPES = frozenset({TransactionType.PURCHASE, TransactionType.REFUND, TransactionType.BONUS})
DEBIT_TYPES = frozenset({TransactionType.LEAD_CHARGE, TransactionType.PREMIUM_SUBSCRIPTION})
# Debits of these types may never leave the balance below zero.
NON_NEGATIVE_BALANCE_TYPES = DEBIT_TYPES


@dataclass(frozen=True, slots=True)
class CreditTransaction:
    id: int
    business_id: int
    type: TransactionType
    amount_cents: int
    balance_after_cents: int
    description: str
    created_at: str
    related_place_id: int | None = None
    related_lead_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return data


@dataclass(slots=True)
class BalanceSummary:
    business_id: int
    balance_cents: int
    total_purchased_cents: int
    total_spent_cents: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class CreditStats:
    business_id: int
    days: int
    balance_cents: int
    spent_cents: int
    leads_charged: int
    avg_cost_per_lead_cents: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class Lead:
    """Inbound customer lead for a listed place.

    The business charged and the price both come from the place record;
    `business_id`, when sent, must name the place's owner.
    """

    id: str
    place_id: int
    business_id: int | None = None
    contact_name: str | None = None
    contact_email: str | None = None
    message: str | None = None


@dataclass(slots=True)
class BillingOutcome:
    lead_id: str
    business_id: int | None
    delivered: bool
    charged: bool
    amount_cents: int = 0
    transaction_id: int | None = None
    reason: str | None = None
    replayed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
