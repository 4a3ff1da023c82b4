"""Claim verification state machine.

Email-domain and phone claims start in verification_sent with a one-time code
and end verified (right code), rejected (too many wrong codes) or expired.
Document and manual claims start in pending and wait for an admin.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta

from claims.errors import (
    ClaimNotAwaitingCodeError,
    ClaimNotFoundError,
    CodeExpiredError,
    CodeMismatchError,
    ConcurrencyConflictError,
    DomainMismatchError,
    MissingVerificationDetailError,
    PhoneMismatchError,
    PlaceAlreadyOwnedError,
    PlaceNotFoundError,
)
from claims.matching import domains_match, email_domain, phones_match, website_domain
from claims.models import (
    CODE_METHODS,
    ClaimStatus,
    ClaimSubmission,
    DocumentVerification,
    EmailDomainVerification,
    ManualVerification,
    NewClaim,
    PendingCode,
    PhoneVerification,
    PlaceClaim,
    Verification,
    VerificationMethod,
)
from claims.repository import ClaimStore
from database import to_iso, utc_now
from directory.registry import Place, PlaceRegistry
from notifications.base import Notifier, notify_quietly


logger = logging.getLogger(__name__)

CODE_MIN = 100000
CODE_MAX = 999999
DEFAULT_CODE_TTL = timedelta(hours=24)
DEFAULT_MAX_CODE_ATTEMPTS = 5
TOO_MANY_ATTEMPTS_REASON = "too many attempts"
# Compare-and-set retries when another request moved the claim first.
CAS_RETRIES = 3


def generate_verification_code() -> str:
    """Six-digit code from the OS CSPRNG."""
    return str(secrets.randbelow(CODE_MAX - CODE_MIN + 1) + CODE_MIN)


class ClaimVerifier:
    def __init__(
        self,
        store: ClaimStore,
        registry: PlaceRegistry,
        notifier: Notifier,
        *,
        code_ttl: timedelta = DEFAULT_CODE_TTL,
        max_code_attempts: int = DEFAULT_MAX_CODE_ATTEMPTS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.registry = registry
        self.notifier = notifier
        self.code_ttl = code_ttl
        self.max_code_attempts = max(1, int(max_code_attempts))
        self.clock = clock

    def _build_verification(self, submission: ClaimSubmission, place: Place) -> Verification:
        method = VerificationMethod(submission.method)
        if method is VerificationMethod.EMAIL_DOMAIN:
            if not submission.email:
                raise MissingVerificationDetailError("email_domain verification requires an email")
            email_dom = email_domain(submission.email)
            if email_dom is None:
                raise MissingVerificationDetailError(f"Invalid email address: {submission.email!r}")
            site_dom = website_domain(place.website)
            if not domains_match(email_dom, site_dom):
                raise DomainMismatchError(email_dom, site_dom)
            return EmailDomainVerification(email=submission.email.strip().lower(), domain=email_dom)

        if method is VerificationMethod.PHONE:
            if not submission.phone:
                raise MissingVerificationDetailError("phone verification requires a phone number")
            if not phones_match(submission.phone, place.phone):
                raise PhoneMismatchError(f"Phone does not match the listing for place {place.id}")
            return PhoneVerification(phone=submission.phone.strip())

        if method is VerificationMethod.DOCUMENT:
            return DocumentVerification(document_url=submission.document_url)
        return ManualVerification()

    async def submit(self, submission: ClaimSubmission) -> PlaceClaim:
        """Validate a claim request and persist it in its first state."""
        place = await self.registry.get_place(submission.place_id)
        if place is None:
            raise PlaceNotFoundError(int(submission.place_id))
        if place.business_id is not None:
            raise PlaceAlreadyOwnedError(place.id, place.business_id)

        verification = self._build_verification(submission, place)
        pending_code = None
        status = ClaimStatus.PENDING
        if verification.method in CODE_METHODS:
            now = self.clock()
            pending_code = PendingCode(
                code=generate_verification_code(),
                sent_at=to_iso(now),
                expires_at=to_iso(now + self.code_ttl),
            )
            status = ClaimStatus.VERIFICATION_SENT

        claim = await self.store.create(
            NewClaim(
                place_id=place.id,
                user_id=str(submission.user_id),
                status=status,
                verification=verification,
                pending_code=pending_code,
                business_role=submission.business_role,
                claimant_name=submission.claimant_name,
                claimant_phone=submission.claimant_phone,
                notes=submission.notes,
            )
        )

        if pending_code is not None:
            if isinstance(verification, EmailDomainVerification):
                channel, destination = "email", verification.email
            else:
                channel, destination = "sms", verification.phone
            await notify_quietly(
                self.notifier.send_verification_code(
                    claim_id=claim.id,
                    place_id=claim.place_id,
                    channel=channel,
                    destination=destination,
                    code=pending_code.code,
                    expires_at=pending_code.expires_at,
                ),
                what=f"verification code claim={claim.id}",
            )
        await notify_quietly(
            self.notifier.notify_admins_new_claim(
                claim_id=claim.id,
                place_id=claim.place_id,
                user_id=claim.user_id,
                method=claim.method.value,
            ),
            what=f"admin alert claim={claim.id}",
        )
        return claim

    async def submit_code(self, claim_id: int, code: str) -> PlaceClaim:
        """Check a code. Every outcome is persisted before it is reported."""
        submitted = str(code or "").strip()
        for _ in range(CAS_RETRIES):
            claim = await self.store.get(claim_id)
            if claim is None:
                raise ClaimNotFoundError(int(claim_id))
            if claim.status is not ClaimStatus.VERIFICATION_SENT or claim.pending_code is None:
                raise ClaimNotAwaitingCodeError(claim.id, claim.status.value)

            now = self.clock()
            if claim.pending_code.is_expired(now):
                expired = await self.store.update(
                    claim.id,
                    {"status": ClaimStatus.EXPIRED},
                    expect_status=ClaimStatus.VERIFICATION_SENT,
                    expect_attempts=claim.verification_attempts,
                    audit_action="expired",
                    audit_payload={"reason": "code expired"},
                )
                if expired is None:
                    continue
                logger.info("Claim %s expired at code entry", claim.id)
                raise CodeExpiredError(claim.id)

            if secrets.compare_digest(submitted.encode(), claim.pending_code.code.encode()):
                verified = await self.store.update(
                    claim.id,
                    {"status": ClaimStatus.VERIFIED},
                    expect_status=ClaimStatus.VERIFICATION_SENT,
                    expect_attempts=claim.verification_attempts,
                    audit_action="verified",
                    actor_user_id=claim.user_id,
                    audit_payload={"method": claim.method.value},
                    link_owner=True,
                )
                if verified is None:
                    continue
                logger.info("Claim %s verified by code", claim.id)
                return verified

            attempts = claim.verification_attempts + 1
            if attempts >= self.max_code_attempts:
                patch = {
                    "verification_attempts": attempts,
                    "status": ClaimStatus.REJECTED,
                    "rejection_reason": TOO_MANY_ATTEMPTS_REASON,
                }
                action = "rejected"
            else:
                patch = {"verification_attempts": attempts}
                action = "code_mismatch"
            updated = await self.store.update(
                claim.id,
                patch,
                expect_status=ClaimStatus.VERIFICATION_SENT,
                expect_attempts=claim.verification_attempts,
                audit_action=action,
                actor_user_id=claim.user_id,
                audit_payload={"attempts": attempts},
            )
            if updated is None:
                continue
            remaining = max(0, self.max_code_attempts - attempts)
            if updated.status is ClaimStatus.REJECTED:
                logger.info("Claim %s rejected after %s wrong codes", claim.id, attempts)
                await notify_quietly(
                    self.notifier.notify_claim_decision(
                        claim_id=updated.id,
                        place_id=updated.place_id,
                        user_id=updated.user_id,
                        approved=False,
                        reason=TOO_MANY_ATTEMPTS_REASON,
                    ),
                    what=f"claim decision claim={updated.id}",
                )
            raise CodeMismatchError(claim.id, remaining)

        raise ConcurrencyConflictError(f"Claim {claim_id} kept changing during code entry")

    async def expire_stale_claims(self, now: datetime | None = None) -> int:
        expired = await self.store.expire_stale(now or self.clock())
        if expired:
            logger.info("Expired %s stale claims: %s", len(expired), [claim.id for claim in expired])
        return len(expired)
