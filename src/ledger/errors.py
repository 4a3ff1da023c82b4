"""Credit ledger errors."""

from database import ConcurrencyConflictError


class LedgerError(RuntimeError):
    """Base credit ledger error."""


class InvalidAmountError(LedgerError, ValueError):
    """Raised when an amount is zero, negative or not an integer number of cents."""


class InsufficientFundsError(LedgerError):
    """Raised when a debit would take a non-negative account below zero."""

    def __init__(self, business_id: int, balance_cents: int, required_cents: int) -> None:
        super().__init__(
            f"Insufficient credits for business {business_id}: "
            f"balance {balance_cents} cents, required {required_cents} cents"
        )
        self.business_id = business_id
        self.balance_cents = balance_cents
        self.required_cents = required_cents


class LeadOwnerMismatchError(LedgerError):
    """Raised when a lead names a business that does not own its place."""

    def __init__(self, lead_id: str, place_id: int, business_id: int) -> None:
        super().__init__(f"Lead {lead_id}: business {business_id} does not own place {place_id}")
        self.lead_id = lead_id
        self.place_id = place_id
        self.business_id = business_id


class RefundTargetNotFoundError(LedgerError):
    """Raised when a refund references a lead that was never charged."""

    def __init__(self, business_id: int, lead_id: str) -> None:
        super().__init__(f"No lead charge for lead {lead_id} on business {business_id}")
        self.business_id = business_id
        self.lead_id = lead_id


class RefundExceedsChargeError(LedgerError):
    """Raised when refunds for a lead would add up to more than its charge."""

    def __init__(self, lead_id: str, charged_cents: int, refunded_cents: int, requested_cents: int) -> None:
        super().__init__(
            f"Refund of {requested_cents} cents for lead {lead_id} exceeds the charge: "
            f"charged {charged_cents}, already refunded {refunded_cents}"
        )
        self.lead_id = lead_id
        self.charged_cents = charged_cents
        self.refunded_cents = refunded_cents
        self.requested_cents = requested_cents


__all__ = [
    "ConcurrencyConflictError",
    "InsufficientFundsError",
    "InvalidAmountError",
    "LeadOwnerMismatchError",
    "LedgerError",
    "RefundExceedsChargeError",
    "RefundTargetNotFoundError",
]
