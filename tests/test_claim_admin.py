import pytest

from claims import ClaimStatus, ClaimSubmission, grant_place_ownership
from claims.errors import (
    ClaimAlreadyFinalizedError,
    ClaimNotFoundError,
    MissingVerificationDetailError,
    PlaceAlreadyOwnedError,
)
from notifications.base import KIND_CLAIM_APPROVED, KIND_CLAIM_REJECTED


async def _manual_claim(services, place_id: int, user_id: str = "user-1"):
    return await services.verifier.submit(
        ClaimSubmission(place_id=place_id, user_id=user_id, method="manual", notes="call me")
    )


async def test_approve_pending_claim_and_link_owner(services, unclaimed_place, notifier):
    claim = await _manual_claim(services, unclaimed_place.id)
    approved = await services.claims_admin.approve(claim.id, "admin-1", admin_notes="checked by phone")

    assert approved.status is ClaimStatus.VERIFIED
    assert approved.reviewed_by == "admin-1"
    assert approved.reviewed_at is not None
    assert approved.admin_notes == "checked by phone"
    assert notifier.of_kind(KIND_CLAIM_APPROVED)[-1].payload["claim_id"] == claim.id

    business = await grant_place_ownership(services.registry, approved)
    assert business.user_id == "user-1"
    place = await services.registry.get_place(unclaimed_place.id)
    assert place.business_id == business.id
    assert (await services.registry.find_business_by_user("user-1")).id == business.id

    # Idempotent for the same owner.
    again = await grant_place_ownership(services.registry, approved)
    assert again.id == business.id


async def test_admin_can_approve_while_code_is_outstanding(services, unclaimed_place):
    claim = await services.verifier.submit(
        ClaimSubmission(
            place_id=unclaimed_place.id,
            user_id="user-1",
            method="email_domain",
            email="owner@khlib.example.com",
        )
    )
    approved = await services.claims_admin.approve(claim.id, "admin-1")
    assert approved.status is ClaimStatus.VERIFIED
    assert approved.pending_code is None


async def test_reject_needs_a_reason(services, unclaimed_place, notifier):
    claim = await _manual_claim(services, unclaimed_place.id)
    with pytest.raises(MissingVerificationDetailError):
        await services.claims_admin.reject(claim.id, "admin-1", "  ")

    rejected = await services.claims_admin.reject(claim.id, "admin-1", "not the owner")
    assert rejected.status is ClaimStatus.REJECTED
    assert rejected.rejection_reason == "not the owner"
    assert notifier.of_kind(KIND_CLAIM_REJECTED)[-1].payload["reason"] == "not the owner"
    assert await grant_place_ownership(services.registry, rejected) is None


async def test_final_claims_cannot_be_decided_again(services, unclaimed_place):
    claim = await _manual_claim(services, unclaimed_place.id)
    await services.claims_admin.reject(claim.id, "admin-1", "duplicate")

    with pytest.raises(ClaimAlreadyFinalizedError):
        await services.claims_admin.approve(claim.id, "admin-2")
    with pytest.raises(ClaimAlreadyFinalizedError):
        await services.claims_admin.reject(claim.id, "admin-2", "again")


async def test_unknown_claim(services):
    with pytest.raises(ClaimNotFoundError):
        await services.claims_admin.approve(12345, "admin-1")
    with pytest.raises(ClaimNotFoundError):
        await services.claims_admin.get_claim(12345)


async def test_approving_a_claim_on_an_owned_place_changes_nothing(services, unclaimed_place):
    first = await _manual_claim(services, unclaimed_place.id, user_id="user-1")
    second = await _manual_claim(services, unclaimed_place.id, user_id="user-2")
    approved_first = await services.claims_admin.approve(first.id, "admin-1")
    owner = await services.registry.find_business_by_user("user-1")
    assert (await services.registry.get_place(unclaimed_place.id)).business_id == owner.id

    with pytest.raises(PlaceAlreadyOwnedError):
        await services.claims_admin.approve(second.id, "admin-1")

    still_pending = await services.claims_admin.get_claim(second.id)
    assert still_pending.status is ClaimStatus.PENDING
    assert still_pending.reviewed_by is None
    assert await services.registry.find_business_by_user("user-2") is None
    assert (await services.registry.get_place(unclaimed_place.id)).business_id == owner.id
    actions = [entry["action"] for entry in await services.claim_store.list_audit(second.id)]
    assert actions == ["submitted"]
    assert (await grant_place_ownership(services.registry, approved_first)).id == owner.id


async def test_stats_and_listing(services, unclaimed_place):
    one = await _manual_claim(services, unclaimed_place.id, user_id="user-1")
    await _manual_claim(services, unclaimed_place.id, user_id="user-2")
    await services.claims_admin.approve(one.id, "admin-1")

    stats = await services.claims_admin.claim_stats()
    assert stats["pending"] == 1
    assert stats["verified"] == 1
    assert stats["total"] == 2

    rows, total = await services.claims_admin.list_claims(status=ClaimStatus.PENDING)
    assert total == 1 and rows[0].user_id == "user-2"
