"""Lead billing: price a lead, charge it, never lose it."""

from __future__ import annotations

import asyncio
import logging

from directory.registry import PlaceRegistry
from ledger.errors import (
    ConcurrencyConflictError,
    InsufficientFundsError,
    LeadOwnerMismatchError,
    RefundTargetNotFoundError,
)
from ledger.models import BillingOutcome, CreditTransaction, Lead
from ledger.pricing import PricingSource
from ledger.service import CreditLedger
from notifications.base import Notifier, notify_quietly


logger = logging.getLogger(__name__)

REASON_INSUFFICIENT_FUNDS = "insufficient_funds"
REASON_BILLING_ERROR = "billing_error"
REASON_NO_BUSINESS = "no_business"
REASON_NO_CHARGE = "no_charge"

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_SEC = 0.005


class LeadBillingService:
    """Charges the owning business for each inbound lead.

    Lock conflicts are retried here and nowhere else. Whatever happens to the
    charge, the lead is delivered unless `deliver_on_insufficient_funds` is
    turned off and the balance was short.
    """

    def __init__(
        self,
        ledger: CreditLedger,
        pricing: PricingSource,
        registry: PlaceRegistry,
        notifier: Notifier,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay_sec: float = DEFAULT_RETRY_DELAY_SEC,
        deliver_on_insufficient_funds: bool = True,
    ) -> None:
        self.ledger = ledger
        self.pricing = pricing
        self.registry = registry
        self.notifier = notifier
        self.max_attempts = max(1, int(max_attempts))
        self.retry_delay_sec = max(0.0, float(retry_delay_sec))
        self.deliver_on_insufficient_funds = bool(deliver_on_insufficient_funds)

    async def resolve_business_id(self, lead: Lead) -> int | None:
        """Owner of the lead's place, or None for unknown and unowned places.

        A business id sent with the lead is only checked against the owner.
        """
        place = await self.registry.get_place(lead.place_id)
        owner = place.business_id if place else None
        if lead.business_id is not None and int(lead.business_id) != owner:
            raise LeadOwnerMismatchError(lead.id, lead.place_id, int(lead.business_id))
        return owner

    async def bill_lead(self, lead: Lead) -> BillingOutcome:
        business_id = await self.resolve_business_id(lead)
        if business_id is None:
            logger.info("Lead %s for place=%s has no owning business; delivered uncharged", lead.id, lead.place_id)
            return BillingOutcome(
                lead_id=lead.id,
                business_id=None,
                delivered=True,
                charged=False,
                reason=REASON_NO_BUSINESS,
            )

        price_cents = await self.pricing.lead_price_cents(lead)
        if price_cents <= 0:
            outcome = BillingOutcome(
                lead_id=lead.id,
                business_id=business_id,
                delivered=True,
                charged=False,
                reason=REASON_NO_CHARGE,
            )
            await self._announce_lead(lead, outcome)
            return outcome

        attempt = 0
        while True:
            attempt += 1
            try:
                transaction, created = await self.ledger.charge_lead_once(
                    business_id,
                    lead.id,
                    price_cents,
                    place_id=lead.place_id,
                )
            except InsufficientFundsError as exc:
                return await self._on_insufficient_funds(lead, business_id, price_cents, exc)
            except ConcurrencyConflictError as exc:
                if attempt < self.max_attempts:
                    logger.warning(
                        "Lead %s charge conflicted (attempt %s/%s); retrying",
                        lead.id,
                        attempt,
                        self.max_attempts,
                    )
                    await asyncio.sleep(self.retry_delay_sec)
                    continue
                return await self._on_retries_exhausted(lead, business_id, price_cents, exc)

            outcome = BillingOutcome(
                lead_id=lead.id,
                business_id=business_id,
                delivered=True,
                charged=True,
                amount_cents=-transaction.amount_cents,
                transaction_id=transaction.id,
                replayed=not created,
            )
            if created:
                await self._announce_lead(lead, outcome)
            return outcome

    async def _on_insufficient_funds(
        self,
        lead: Lead,
        business_id: int,
        price_cents: int,
        exc: InsufficientFundsError,
    ) -> BillingOutcome:
        logger.info(
            "Lead %s not charged: business=%s balance=%s required=%s",
            lead.id,
            business_id,
            exc.balance_cents,
            exc.required_cents,
        )
        await notify_quietly(
            self.notifier.notify_insufficient_funds(
                business_id=business_id,
                lead_id=lead.id,
                balance_cents=exc.balance_cents,
                required_cents=exc.required_cents,
            ),
            what=f"insufficient funds business={business_id}",
        )
        outcome = BillingOutcome(
            lead_id=lead.id,
            business_id=business_id,
            delivered=self.deliver_on_insufficient_funds,
            charged=False,
            amount_cents=price_cents,
            reason=REASON_INSUFFICIENT_FUNDS,
        )
        if outcome.delivered:
            await self._announce_lead(lead, outcome)
        return outcome

    async def _on_retries_exhausted(
        self,
        lead: Lead,
        business_id: int,
        price_cents: int,
        exc: ConcurrencyConflictError,
    ) -> BillingOutcome:
        logger.error(
            "BILLING FAILED lead=%s business=%s amount=%s after %s attempts: %s; manual reconciliation required",
            lead.id,
            business_id,
            price_cents,
            self.max_attempts,
            exc,
        )
        await notify_quietly(
            self.notifier.notify_billing_reconciliation_needed(
                business_id=business_id,
                lead_id=lead.id,
                error=str(exc),
            ),
            what=f"billing reconciliation lead={lead.id}",
        )
        outcome = BillingOutcome(
            lead_id=lead.id,
            business_id=business_id,
            delivered=True,
            charged=False,
            amount_cents=price_cents,
            reason=REASON_BILLING_ERROR,
        )
        await self._announce_lead(lead, outcome)
        return outcome

    async def _announce_lead(self, lead: Lead, outcome: BillingOutcome) -> None:
        if outcome.business_id is None:
            return
        await notify_quietly(
            self.notifier.notify_new_lead(
                business_id=outcome.business_id,
                lead_id=lead.id,
                place_id=lead.place_id,
                charged=outcome.charged,
            ),
            what=f"new lead {lead.id}",
        )

    async def refund_lead(self, lead: Lead, *, reason: str = "spam") -> CreditTransaction | None:
        """Refund whatever is still refundable on the lead's charge.

        Returns None when the lead was already refunded in full.
        """
        business_id = await self.resolve_business_id(lead)
        if business_id is None:
            # Nothing was ever charged for a lead without a business.
            return None
        charge, refunded = await self.ledger.store.get_lead_charge(business_id, lead.id)
        if charge is None:
            raise RefundTargetNotFoundError(business_id, lead.id)
        remaining = -charge.amount_cents - refunded
        if remaining <= 0:
            logger.info("Lead %s already fully refunded", lead.id)
            return None

        transaction = await self.ledger.refund(business_id, lead.id, remaining, f"Lead refund ({reason})")
        logger.info(
            "LEAD_REFUND lead=%s business=%s amount=%s reason=%s tx=%s",
            lead.id,
            business_id,
            remaining,
            reason,
            transaction.id,
        )
        await notify_quietly(
            self.notifier.notify_lead_refund(
                business_id=business_id,
                lead_id=lead.id,
                amount_cents=remaining,
                reason=reason,
            ),
            what=f"lead refund {lead.id}",
        )
        return transaction
