"""Plan matrix, credit packages and lead pricing."""

from __future__ import annotations

from typing import Final, Protocol

from config import CFG
from directory.registry import PlaceRegistry
from ledger.models import Lead


DEFAULT_LEAD_PRICE_CENTS: Final[int] = 500

SUPPORTED_PLANS: Final[set[str]] = {"FREE", "STARTER", "PRO", "ELITE"}
PAID_PLANS: Final[set[str]] = {"STARTER", "PRO", "ELITE"}

PLAN_TITLES: Final[dict[str, str]] = {
    "FREE": "Free",
    "STARTER": "Starter",
    "PRO": "Pro",
    "ELITE": "Elite",
}

# Monthly prices in euro cents.
PLAN_MONTHLY_PRICES_CENTS: Final[dict[str, int]] = {
    "FREE": 0,
    "STARTER": 700,
    "PRO": 1900,
    "ELITE": 3900,
}

# Prepaid packages: credited cents per package key.
CREDIT_PACKAGES_CENTS: Final[dict[str, int]] = {
    "credits_10": 1000,
    "credits_25": 2500,
    "credits_50": 5000,
    "credits_100": 10000,
}


def plan_monthly_price_cents(plan_key: str) -> int:
    key = str(plan_key or "").strip().upper()
    if key not in SUPPORTED_PLANS:
        raise ValueError(f"Unknown plan: {plan_key}")
    return PLAN_MONTHLY_PRICES_CENTS[key]


def credit_package_cents(package_key: str) -> int:
    key = str(package_key or "").strip().lower()
    if key not in CREDIT_PACKAGES_CENTS:
        raise ValueError(f"Unknown credit package: {package_key}")
    return CREDIT_PACKAGES_CENTS[key]


class PricingSource(Protocol):
    """Decides what a lead costs the receiving business."""

    async def lead_price_cents(self, lead: Lead) -> int:
        """Return the price in cents; 0 means the lead is free."""


class FixedPricingSource:
    """Same price for every lead."""

    def __init__(self, price_cents: int) -> None:
        self.price_cents = max(0, int(price_cents))

    async def lead_price_cents(self, lead: Lead) -> int:
        return self.price_cents


class RegistryPricingSource:
    """Owning business override, then the place's category price, then default."""

    def __init__(
        self,
        registry: PlaceRegistry,
        *,
        category_prices_cents: dict[str, int] | None = None,
        default_price_cents: int | None = None,
    ) -> None:
        self.registry = registry
        self.category_prices_cents = {
            str(key).strip().lower(): int(value) for key, value in (category_prices_cents or {}).items()
        }
        if default_price_cents is None:
            default_price_cents = CFG.default_lead_price_cents
        self.default_price_cents = max(0, int(default_price_cents))

    async def lead_price_cents(self, lead: Lead) -> int:
        place = await self.registry.get_place(lead.place_id)
        business_id = place.business_id if place else None
        if business_id is not None:
            business = await self.registry.get_business(business_id)
            if business and business.lead_price_cents is not None:
                return max(0, int(business.lead_price_cents))

        category = ((place.category if place else None) or "").strip().lower()
        if category and category in self.category_prices_cents:
            return max(0, self.category_prices_cents[category])

        return self.default_price_cents
