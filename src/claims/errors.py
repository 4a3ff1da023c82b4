"""Claim verification errors."""

from database import ConcurrencyConflictError
from directory.errors import PlaceAlreadyOwnedError, PlaceNotFoundError


class ClaimError(RuntimeError):
    """Base claim verification error."""


class MissingVerificationDetailError(ClaimError, ValueError):
    """Raised when the chosen method lacks its email, phone or document."""


class DuplicateActiveClaimError(ClaimError):
    """Raised when the user already has an active claim for the place."""

    def __init__(self, place_id: int, user_id: str) -> None:
        super().__init__(f"User {user_id} already has an active claim for place {place_id}")
        self.place_id = place_id
        self.user_id = user_id


class DomainMismatchError(ClaimError):
    """Raised when the email domain does not match the place website."""

    def __init__(self, email_domain: str, website_domain: str | None) -> None:
        super().__init__(
            f"Email domain {email_domain!r} does not match the listing website {website_domain!r}"
        )
        self.email_domain = email_domain
        self.website_domain = website_domain


class PhoneMismatchError(ClaimError):
    """Raised when the phone does not match the listing phone."""


class ClaimNotFoundError(ClaimError):
    def __init__(self, claim_id: int) -> None:
        super().__init__(f"Claim {claim_id} not found")
        self.claim_id = claim_id


class ClaimNotAwaitingCodeError(ClaimError):
    """Raised when a code is submitted for a claim not in verification_sent."""

    def __init__(self, claim_id: int, status: str) -> None:
        super().__init__(f"Claim {claim_id} is {status}, not awaiting a code")
        self.claim_id = claim_id
        self.status = status


class CodeExpiredError(ClaimError):
    """Raised when the code is past its expiry; the claim is now expired."""

    def __init__(self, claim_id: int) -> None:
        super().__init__(f"Verification code for claim {claim_id} has expired")
        self.claim_id = claim_id


class CodeMismatchError(ClaimError):
    """Raised on a wrong code. `attempts_remaining` is 0 once the claim is rejected."""

    def __init__(self, claim_id: int, attempts_remaining: int) -> None:
        super().__init__(f"Wrong verification code for claim {claim_id}; {attempts_remaining} attempts remaining")
        self.claim_id = claim_id
        self.attempts_remaining = attempts_remaining


class ClaimAlreadyFinalizedError(ClaimError):
    """Raised when an admin acts on a verified, rejected or expired claim."""

    def __init__(self, claim_id: int, status: str) -> None:
        super().__init__(f"Claim {claim_id} is already {status}")
        self.claim_id = claim_id
        self.status = status


__all__ = [
    "ClaimAlreadyFinalizedError",
    "ClaimError",
    "ClaimNotAwaitingCodeError",
    "ClaimNotFoundError",
    "CodeExpiredError",
    "CodeMismatchError",
    "ConcurrencyConflictError",
    "DomainMismatchError",
    "DuplicateActiveClaimError",
    "MissingVerificationDetailError",
    "PhoneMismatchError",
    "PlaceAlreadyOwnedError",
    "PlaceNotFoundError",
]
