import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from database import ConcurrencyConflictError, init_db
from ledger.pricing import FixedPricingSource
from notifications import LogNotifier
from services import build_services


class FakeClock:
    """Settable clock for TTL tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


async def retry_on_conflict(make_call, attempts: int = 20):
    """Re-run a ledger call that lost the write lock race."""
    for attempt in range(attempts):
        try:
            return await make_call()
        except ConcurrencyConflictError:
            if attempt == attempts - 1:
                raise
            await asyncio.sleep(0.01 * (attempt + 1))


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "listings-test.db")


@pytest_asyncio.fixture
async def notifier():
    return LogNotifier()


@pytest_asyncio.fixture
async def services(db_path, notifier):
    await init_db(db_path)
    return build_services(db_path, notifier=notifier, pricing=FixedPricingSource(500))


@pytest_asyncio.fixture
async def business(services):
    return await services.registry.add_business("owner-1", "Kavarnia Dim")


@pytest_asyncio.fixture
async def owned_place(services, business):
    return await services.registry.add_place(
        "Kavarnia Dim",
        website="https://www.kavarnia-dim.com.ua",
        phone="+380 67 123 45 67",
        category="cafe",
        business_id=business.id,
    )


@pytest_asyncio.fixture
async def unclaimed_place(services):
    return await services.registry.add_place(
        "Pekarnia Khlib",
        website="khlib.example.com",
        phone="+380 (50) 765-43-21",
        category="bakery",
    )
