"""Base contracts for notification emitters and dispatchers."""

from __future__ import annotations

import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import Any, Protocol


logger = logging.getLogger(__name__)

KIND_CLAIM_VERIFICATION_CODE = "claim_verification_code"
KIND_CLAIM_ADMIN_ALERT = "claim_admin_alert"
KIND_CLAIM_APPROVED = "claim_approved"
KIND_CLAIM_REJECTED = "claim_rejected"
KIND_LEAD_NEW = "lead_new"
KIND_LEAD_REFUND = "lead_refund"
KIND_CREDITS_INSUFFICIENT = "credits_insufficient"
KIND_BILLING_RECONCILIATION_NEEDED = "billing_reconciliation_needed"

NOTIFICATION_KINDS = {
    KIND_CLAIM_VERIFICATION_CODE,
    KIND_CLAIM_ADMIN_ALERT,
    KIND_CLAIM_APPROVED,
    KIND_CLAIM_REJECTED,
    KIND_LEAD_NEW,
    KIND_LEAD_REFUND,
    KIND_CREDITS_INSUFFICIENT,
    KIND_BILLING_RECONCILIATION_NEEDED,
}


@dataclass(frozen=True)
class Notification:
    """One event handed to a dispatcher."""

    kind: str
    payload: dict[str, Any] = field(default_factory=dict)
    job_id: int | None = None


class Notifier(Protocol):
    """Events the ledger and claim flows emit. Delivery is someone else's job."""

    async def send_verification_code(
        self,
        *,
        claim_id: int,
        place_id: int,
        channel: str,
        destination: str,
        code: str,
        expires_at: str,
    ) -> None:
        """Deliver a one-time claim code by email or phone."""

    async def notify_admins_new_claim(self, *, claim_id: int, place_id: int, user_id: str, method: str) -> None:
        """Tell admins a claim is waiting or was submitted."""

    async def notify_claim_decision(
        self,
        *,
        claim_id: int,
        place_id: int,
        user_id: str,
        approved: bool,
        reason: str | None = None,
    ) -> None:
        """Tell the claimant about an approval or rejection."""

    async def notify_new_lead(self, *, business_id: int, lead_id: str, place_id: int, charged: bool) -> None:
        """Tell the business a lead arrived."""

    async def notify_lead_refund(self, *, business_id: int, lead_id: str, amount_cents: int, reason: str) -> None:
        """Tell the business a lead was refunded."""

    async def notify_insufficient_funds(
        self,
        *,
        business_id: int,
        lead_id: str,
        balance_cents: int,
        required_cents: int,
    ) -> None:
        """Tell the business its balance did not cover a lead."""

    async def notify_billing_reconciliation_needed(self, *, business_id: int, lead_id: str, error: str) -> None:
        """Flag a lead whose charge could not be recorded."""


class EventNotifier:
    """Maps every Notifier method onto a single `emit(kind, payload)`."""

    async def emit(self, kind: str, payload: dict[str, Any]) -> None:
        raise NotImplementedError

    async def send_verification_code(
        self,
        *,
        claim_id: int,
        place_id: int,
        channel: str,
        destination: str,
        code: str,
        expires_at: str,
    ) -> None:
        await self.emit(
            KIND_CLAIM_VERIFICATION_CODE,
            {
                "claim_id": int(claim_id),
                "place_id": int(place_id),
                "channel": str(channel),
                "destination": str(destination),
                "code": str(code),
                "expires_at": str(expires_at),
            },
        )

    async def notify_admins_new_claim(self, *, claim_id: int, place_id: int, user_id: str, method: str) -> None:
        await self.emit(
            KIND_CLAIM_ADMIN_ALERT,
            {"claim_id": int(claim_id), "place_id": int(place_id), "user_id": str(user_id), "method": str(method)},
        )

    async def notify_claim_decision(
        self,
        *,
        claim_id: int,
        place_id: int,
        user_id: str,
        approved: bool,
        reason: str | None = None,
    ) -> None:
        kind = KIND_CLAIM_APPROVED if approved else KIND_CLAIM_REJECTED
        await self.emit(
            kind,
            {"claim_id": int(claim_id), "place_id": int(place_id), "user_id": str(user_id), "reason": reason},
        )

    async def notify_new_lead(self, *, business_id: int, lead_id: str, place_id: int, charged: bool) -> None:
        await self.emit(
            KIND_LEAD_NEW,
            {
                "business_id": int(business_id),
                "lead_id": str(lead_id),
                "place_id": int(place_id),
                "charged": bool(charged),
            },
        )

    async def notify_lead_refund(self, *, business_id: int, lead_id: str, amount_cents: int, reason: str) -> None:
        await self.emit(
            KIND_LEAD_REFUND,
            {
                "business_id": int(business_id),
                "lead_id": str(lead_id),
                "amount_cents": int(amount_cents),
                "reason": str(reason),
            },
        )

    async def notify_insufficient_funds(
        self,
        *,
        business_id: int,
        lead_id: str,
        balance_cents: int,
        required_cents: int,
    ) -> None:
        await self.emit(
            KIND_CREDITS_INSUFFICIENT,
            {
                "business_id": int(business_id),
                "lead_id": str(lead_id),
                "balance_cents": int(balance_cents),
                "required_cents": int(required_cents),
            },
        )

    async def notify_billing_reconciliation_needed(self, *, business_id: int, lead_id: str, error: str) -> None:
        await self.emit(
            KIND_BILLING_RECONCILIATION_NEEDED,
            {"business_id": int(business_id), "lead_id": str(lead_id), "error": str(error)},
        )


class NotificationDispatcher(Protocol):
    """Delivers one outbox notification; raising marks the job failed."""

    dispatcher_name: str

    async def dispatch(self, notification: Notification) -> None:
        """Deliver the notification."""


async def notify_quietly(call: Awaitable[None], *, what: str) -> bool:
    """Await a notifier call; log and swallow its failure."""
    try:
        await call
    except Exception:
        logger.exception("Notification failed: %s", what)
        return False
    return True
