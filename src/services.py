"""Service wiring shared by the API server, background loops and smoke scripts."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from claims import ClaimAdminGateway, ClaimStore, ClaimVerifier
from config import CFG
from directory import SqlitePlaceRegistry
from ledger import CreditLedger, LeadBillingService, LedgerStore
from ledger.pricing import PricingSource, RegistryPricingSource
from notifications import Notifier, OutboxNotifier


@dataclass(slots=True)
class AppServices:
    registry: SqlitePlaceRegistry
    ledger_store: LedgerStore
    ledger: CreditLedger
    billing: LeadBillingService
    claim_store: ClaimStore
    verifier: ClaimVerifier
    claims_admin: ClaimAdminGateway
    notifier: Notifier


def build_services(
    db_path: str | None = None,
    *,
    notifier: Notifier | None = None,
    pricing: PricingSource | None = None,
) -> AppServices:
    """Build the service graph over one SQLite file.

    Notifications go to the outbox unless a notifier is passed in.
    """
    registry = SqlitePlaceRegistry(db_path)
    notifier = notifier or OutboxNotifier(db_path)
    ledger_store = LedgerStore(db_path)
    ledger = CreditLedger(ledger_store)
    billing = LeadBillingService(
        ledger,
        pricing or RegistryPricingSource(registry),
        registry,
        notifier,
        max_attempts=CFG.billing_max_attempts,
        retry_delay_sec=CFG.billing_retry_delay_ms / 1000.0,
        deliver_on_insufficient_funds=CFG.billing_deliver_on_insufficient_funds,
    )
    claim_store = ClaimStore(db_path)
    verifier = ClaimVerifier(
        claim_store,
        registry,
        notifier,
        code_ttl=timedelta(hours=CFG.claim_code_ttl_hours),
        max_code_attempts=CFG.claim_max_code_attempts,
    )
    claims_admin = ClaimAdminGateway(claim_store, notifier)
    return AppServices(
        registry=registry,
        ledger_store=ledger_store,
        ledger=ledger,
        billing=billing,
        claim_store=claim_store,
        verifier=verifier,
        claims_admin=claims_admin,
        notifier=notifier,
    )
