"""Admin review of place claims."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from claims.errors import (
    ClaimAlreadyFinalizedError,
    ClaimNotFoundError,
    ConcurrencyConflictError,
    MissingVerificationDetailError,
)
from claims.models import ClaimStatus, PlaceClaim
from claims.repository import ClaimStore
from database import to_iso, utc_now
from directory.registry import Business, PlaceRegistry
from notifications.base import Notifier, notify_quietly


logger = logging.getLogger(__name__)

CAS_RETRIES = 3


class ClaimAdminGateway:
    """Approve or reject any non-final claim, plus review queries."""

    def __init__(
        self,
        store: ClaimStore,
        notifier: Notifier,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.clock = clock

    async def _decide(
        self,
        claim_id: int,
        reviewer_id: str,
        *,
        status: ClaimStatus,
        extra: dict[str, Any],
        action: str,
    ) -> PlaceClaim:
        for _ in range(CAS_RETRIES):
            claim = await self.store.get(claim_id)
            if claim is None:
                raise ClaimNotFoundError(int(claim_id))
            if claim.is_terminal:
                raise ClaimAlreadyFinalizedError(claim.id, claim.status.value)

            patch = {
                "status": status,
                "reviewed_at": to_iso(self.clock()),
                "reviewed_by": str(reviewer_id),
                **extra,
            }
            updated = await self.store.update(
                claim.id,
                patch,
                expect_status=claim.status,
                expect_attempts=claim.verification_attempts,
                audit_action=action,
                actor_user_id=str(reviewer_id),
                audit_payload={"from": claim.status.value, "to": status.value, **extra},
                link_owner=status is ClaimStatus.VERIFIED,
            )
            if updated is None:
                continue

            logger.info("Claim %s %s by reviewer=%s", updated.id, action, reviewer_id)
            await notify_quietly(
                self.notifier.notify_claim_decision(
                    claim_id=updated.id,
                    place_id=updated.place_id,
                    user_id=updated.user_id,
                    approved=status is ClaimStatus.VERIFIED,
                    reason=updated.rejection_reason,
                ),
                what=f"claim decision claim={updated.id}",
            )
            return updated

        raise ConcurrencyConflictError(f"Claim {claim_id} kept changing during review")

    async def approve(self, claim_id: int, reviewer_id: str, *, admin_notes: str | None = None) -> PlaceClaim:
        """Mark the claim verified and link the place to the claimant in one transaction.

        A place owned by another business raises PlaceAlreadyOwnedError and the
        claim keeps its current status.
        """
        extra: dict[str, Any] = {}
        if admin_notes:
            extra["admin_notes"] = admin_notes
        return await self._decide(
            claim_id,
            reviewer_id,
            status=ClaimStatus.VERIFIED,
            extra=extra,
            action="approved",
        )

    async def reject(
        self,
        claim_id: int,
        reviewer_id: str,
        reason: str,
        *,
        admin_notes: str | None = None,
    ) -> PlaceClaim:
        reason = str(reason or "").strip()
        if not reason:
            raise MissingVerificationDetailError("A rejection reason is required")
        extra: dict[str, Any] = {"rejection_reason": reason}
        if admin_notes:
            extra["admin_notes"] = admin_notes
        return await self._decide(
            claim_id,
            reviewer_id,
            status=ClaimStatus.REJECTED,
            extra=extra,
            action="rejected",
        )

    async def get_claim(self, claim_id: int) -> PlaceClaim:
        claim = await self.store.get(claim_id)
        if claim is None:
            raise ClaimNotFoundError(int(claim_id))
        return claim

    async def list_claims(
        self,
        *,
        status: ClaimStatus | str | None = None,
        place_id: int | None = None,
        user_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[PlaceClaim], int]:
        return await self.store.list_claims(
            status=status,
            place_id=place_id,
            user_id=user_id,
            limit=limit,
            offset=offset,
        )

    async def claim_stats(self) -> dict[str, int]:
        counts = await self.store.count_by_status()
        counts["total"] = sum(counts.values())
        return counts


async def grant_place_ownership(registry: PlaceRegistry, claim: PlaceClaim) -> Business | None:
    """Return the claimant's business for a verified claim, linking the place if needed.

    Approval and code verification already link inside their own transaction,
    so for those this is a lookup. Returns None for claims that are not verified.
    """
    if claim.status is not ClaimStatus.VERIFIED:
        return None
    business = await registry.link_place_owner(claim.place_id, claim.user_id)
    logger.info("Ownership granted place=%s business=%s via claim=%s", claim.place_id, business.id, claim.id)
    return business
