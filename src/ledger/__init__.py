"""Per-business prepaid credit ledger."""

from ledger.billing import LeadBillingService
from ledger.errors import (
    ConcurrencyConflictError,
    InsufficientFundsError,
    InvalidAmountError,
    LeadOwnerMismatchError,
    LedgerError,
    RefundExceedsChargeError,
    RefundTargetNotFoundError,
)
from ledger.models import BillingOutcome, CreditTransaction, Lead, TransactionType
from ledger.repository import LedgerStore
from ledger.service import CreditLedger

__all__ = [
    "BillingOutcome",
    "ConcurrencyConflictError",
    "CreditLedger",
    "CreditTransaction",
    "InsufficientFundsError",
    "InvalidAmountError",
    "Lead",
    "LeadBillingService",
    "LeadOwnerMismatchError",
    "LedgerError",
    "LedgerStore",
    "RefundExceedsChargeError",
    "RefundTargetNotFoundError",
    "TransactionType",
]
