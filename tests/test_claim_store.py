import sqlite3

import pytest

from claims.errors import DuplicateActiveClaimError
from claims.models import (
    ClaimStatus,
    EmailDomainVerification,
    ManualVerification,
    NewClaim,
    PendingCode,
)
from database import open_db


def _new_claim(place_id: int, user_id: str = "user-1", **kwargs) -> NewClaim:
    return NewClaim(
        place_id=place_id,
        user_id=user_id,
        status=kwargs.pop("status", ClaimStatus.PENDING),
        verification=kwargs.pop("verification", ManualVerification()),
        **kwargs,
    )


async def test_create_and_read_back(services, unclaimed_place):
    store = services.claim_store
    claim = await store.create(
        _new_claim(unclaimed_place.id, claimant_name="Olena", business_role="owner", notes="I run it")
    )

    fetched = await store.get(claim.id)
    assert fetched == claim
    assert fetched.claimant_name == "Olena"
    assert fetched.verification_attempts == 0
    assert await store.find_active_by_user_and_place("user-1", unclaimed_place.id) == claim
    assert [c.id for c in await store.list_by_user("user-1")] == [claim.id]


async def test_unique_index_backs_up_the_active_claim_rule(services, unclaimed_place, db_path):
    await services.claim_store.create(_new_claim(unclaimed_place.id))
    async with open_db(db_path) as db:
        with pytest.raises(sqlite3.IntegrityError):
            await db.execute(
                """
                INSERT INTO place_claims (place_id, user_id, status, verification_method, created_at, updated_at)
                VALUES (?, 'user-1', 'pending', 'manual', 'now', 'now')
                """,
                (unclaimed_place.id,),
            )
    with pytest.raises(DuplicateActiveClaimError):
        await services.claim_store.create(_new_claim(unclaimed_place.id))


async def test_code_column_only_lives_in_verification_sent(services, unclaimed_place, db_path):
    claim = await services.claim_store.create(
        _new_claim(
            unclaimed_place.id,
            status=ClaimStatus.VERIFICATION_SENT,
            verification=EmailDomainVerification(email="a@khlib.example.com", domain="khlib.example.com"),
            pending_code=PendingCode(code="123456", sent_at="2026-01-01", expires_at="2026-01-02"),
        )
    )
    async with open_db(db_path) as db:
        with pytest.raises(sqlite3.IntegrityError):
            await db.execute("UPDATE place_claims SET status = 'pending' WHERE id = ?", (claim.id,))

    updated = await services.claim_store.update(claim.id, {"status": ClaimStatus.EXPIRED})
    assert updated.pending_code is None


async def test_update_is_compare_and_set(services, unclaimed_place):
    store = services.claim_store
    claim = await store.create(_new_claim(unclaimed_place.id))

    assert await store.update(claim.id, {"admin_notes": "x"}, expect_status=ClaimStatus.VERIFICATION_SENT) is None
    assert await store.update(claim.id, {"admin_notes": "x"}, expect_attempts=3) is None
    updated = await store.update(
        claim.id,
        {"admin_notes": "looks fine"},
        expect_status=ClaimStatus.PENDING,
        expect_attempts=0,
        audit_action="note",
        actor_user_id="admin-1",
    )
    assert updated.admin_notes == "looks fine"
    audit = await store.list_audit(claim.id)
    assert [entry["action"] for entry in audit] == ["submitted", "note"]
    assert audit[-1]["actor_user_id"] == "admin-1"

    with pytest.raises(ValueError):
        await store.update(claim.id, {"user_id": "someone-else"})


async def test_terminal_claims_free_the_slot(services, unclaimed_place):
    store = services.claim_store
    claim = await store.create(_new_claim(unclaimed_place.id))
    await store.update(claim.id, {"status": ClaimStatus.REJECTED, "rejection_reason": "no proof"})

    assert await store.find_active_by_user_and_place("user-1", unclaimed_place.id) is None
    again = await store.create(_new_claim(unclaimed_place.id))
    assert again.id != claim.id


async def test_listing_and_counts(services, unclaimed_place):
    store = services.claim_store
    for user in ("a", "b", "c"):
        await store.create(_new_claim(unclaimed_place.id, user_id=user))
    first, _ = await store.list_claims(user_id="a")
    await store.update(first[0].id, {"status": ClaimStatus.VERIFIED})

    rows, total = await store.list_claims(status="pending", limit=1)
    assert total == 2 and len(rows) == 1
    assert rows[0].user_id == "c"

    counts = await store.count_by_status()
    assert counts["pending"] == 2
    assert counts["verified"] == 1
    assert counts["expired"] == 0
