"""Claim verification domain models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Union

from database import parse_iso_utc


class ClaimStatus(str, Enum):
    PENDING = "pending"
    VERIFICATION_SENT = "verification_sent"
    VERIFIED = "verified"
    REJECTED = "rejected"
    EXPIRED = "expired"


ACTIVE_STATUSES = frozenset({ClaimStatus.PENDING, ClaimStatus.VERIFICATION_SENT, ClaimStatus.VERIFIED})
TERMINAL_STATUSES = frozenset({ClaimStatus.VERIFIED, ClaimStatus.REJECTED, ClaimStatus.EXPIRED})


class VerificationMethod(str, Enum):
    EMAIL_DOMAIN = "email_domain"
    PHONE = "phone"
    DOCUMENT = "document"
    MANUAL = "manual"


CODE_METHODS = frozenset({VerificationMethod.EMAIL_DOMAIN, VerificationMethod.PHONE})


@dataclass(frozen=True, slots=True)
class EmailDomainVerification:
    email: str
    domain: str

    @property
    def method(self) -> VerificationMethod:
        return VerificationMethod.EMAIL_DOMAIN


@dataclass(frozen=True, slots=True)
class PhoneVerification:
    phone: str

    @property
    def method(self) -> VerificationMethod:
        return VerificationMethod.PHONE


@dataclass(frozen=True, slots=True)
class DocumentVerification:
    document_url: str | None = None

    @property
    def method(self) -> VerificationMethod:
        return VerificationMethod.DOCUMENT


@dataclass(frozen=True, slots=True)
class ManualVerification:
    @property
    def method(self) -> VerificationMethod:
        return VerificationMethod.MANUAL


Verification = Union[EmailDomainVerification, PhoneVerification, DocumentVerification, ManualVerification]


@dataclass(frozen=True, slots=True)
class PendingCode:
    """One-time code; exists only while the claim is verification_sent."""

    code: str
    sent_at: str
    expires_at: str

    def is_expired(self, now: datetime) -> bool:
        expires_at = parse_iso_utc(self.expires_at)
        return expires_at is None or now >= expires_at


@dataclass(slots=True)
class PlaceClaim:
    id: int
    place_id: int
    user_id: str
    status: ClaimStatus
    verification: Verification
    created_at: str
    updated_at: str
    pending_code: PendingCode | None = None
    verification_attempts: int = 0
    business_role: str | None = None
    claimant_name: str | None = None
    claimant_phone: str | None = None
    notes: str | None = None
    admin_notes: str | None = None
    reviewed_at: str | None = None
    reviewed_by: str | None = None
    rejection_reason: str | None = None

    @property
    def method(self) -> VerificationMethod:
        return self.verification.method

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        """Public view. The code itself is never exposed."""
        verification = self.verification
        return {
            "id": self.id,
            "place_id": self.place_id,
            "user_id": self.user_id,
            "status": self.status.value,
            "verification_method": self.method.value,
            "verification_email": getattr(verification, "email", None),
            "verification_email_domain": getattr(verification, "domain", None),
            "verification_phone": getattr(verification, "phone", None),
            "proof_document_url": getattr(verification, "document_url", None),
            "verification_code_sent_at": self.pending_code.sent_at if self.pending_code else None,
            "verification_code_expires_at": self.pending_code.expires_at if self.pending_code else None,
            "verification_attempts": self.verification_attempts,
            "business_role": self.business_role,
            "claimant_name": self.claimant_name,
            "claimant_phone": self.claimant_phone,
            "notes": self.notes,
            "admin_notes": self.admin_notes,
            "reviewed_at": self.reviewed_at,
            "reviewed_by": self.reviewed_by,
            "rejection_reason": self.rejection_reason,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(slots=True)
class NewClaim:
    """Validated claim ready to be inserted."""

    place_id: int
    user_id: str
    status: ClaimStatus
    verification: Verification
    pending_code: PendingCode | None = None
    business_role: str | None = None
    claimant_name: str | None = None
    claimant_phone: str | None = None
    notes: str | None = None


@dataclass(slots=True)
class ClaimSubmission:
    """Raw claim request as received from the claimant."""

    place_id: int
    user_id: str
    method: VerificationMethod | str
    email: str | None = None
    phone: str | None = None
    document_url: str | None = None
    business_role: str | None = None
    claimant_name: str | None = None
    claimant_phone: str | None = None
    notes: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClaimSubmission:
        def _opt(key: str) -> str | None:
            value = data.get(key)
            if value is None:
                return None
            value = str(value).strip()
            return value or None

        try:
            place_id = int(data["place_id"])
        except (TypeError, ValueError):
            raise ValueError("place_id must be an integer") from None

        return cls(
            place_id=place_id,
            user_id=str(data["user_id"]).strip(),
            method=VerificationMethod(str(data["method"]).strip()),
            email=_opt("email"),
            phone=_opt("phone"),
            document_url=_opt("document_url"),
            business_role=_opt("business_role"),
            claimant_name=_opt("claimant_name"),
            claimant_phone=_opt("claimant_phone"),
            notes=_opt("notes"),
        )
