import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from api_server import create_api_app
from notifications.base import KIND_CLAIM_VERIFICATION_CODE

PUBLIC = {"X-API-Key": "public-key"}
ADMIN = {"Authorization": "Bearer admin-key"}


@pytest_asyncio.fixture
async def client(services):
    app = create_api_app(services, api_key="public-key", admin_api_key="admin-key")
    async with TestClient(TestServer(app)) as test_client:
        yield test_client


async def test_health_needs_no_key(client):
    resp = await client.get("/api/v1/health")
    assert resp.status == 200
    assert (await resp.json())["status"] == "ok"


async def test_public_routes_need_the_api_key(client):
    resp = await client.get("/api/v1/claims", params={"user_id": "u"})
    assert resp.status == 401
    resp = await client.get("/api/v1/claims", params={"user_id": "u", "api_key": "public-key"})
    assert resp.status == 200


async def test_admin_routes_reject_the_public_key(client):
    resp = await client.get("/api/v1/admin/claims", headers=PUBLIC)
    assert resp.status == 401


async def test_admin_routes_disabled_without_admin_key(services):
    app = create_api_app(services, api_key="", admin_api_key="")
    async with TestClient(TestServer(app)) as test_client:
        resp = await test_client.get("/api/v1/admin/claims/stats")
        assert resp.status == 403


async def test_claim_code_flow_links_the_place(client, services, unclaimed_place, notifier):
    resp = await client.post(
        "/api/v1/claims",
        headers=PUBLIC,
        json={
            "place_id": unclaimed_place.id,
            "user_id": "user-1",
            "method": "email_domain",
            "email": "owner@khlib.example.com",
        },
    )
    assert resp.status == 201
    claim = (await resp.json())["claim"]
    assert claim["status"] == "verification_sent"
    assert "verification_code" not in claim

    resp = await client.post(f"/api/v1/claims/{claim['id']}/code", headers=PUBLIC, json={"code": "000000"})
    assert resp.status == 400
    body = await resp.json()
    assert body["error"] == "CodeMismatchError"
    assert body["attempts_remaining"] == 4

    code = notifier.of_kind(KIND_CLAIM_VERIFICATION_CODE)[-1].payload["code"]
    resp = await client.post(f"/api/v1/claims/{claim['id']}/code", headers=PUBLIC, json={"code": code})
    assert resp.status == 200
    body = await resp.json()
    assert body["claim"]["status"] == "verified"
    assert body["business"]["user_id"] == "user-1"
    place = await services.registry.get_place(unclaimed_place.id)
    assert place.business_id == body["business"]["id"]


async def test_claim_errors_map_to_statuses(client, unclaimed_place, owned_place):
    payload = {"place_id": unclaimed_place.id, "user_id": "user-1", "method": "manual"}
    assert (await client.post("/api/v1/claims", headers=PUBLIC, json=payload)).status == 201
    assert (await client.post("/api/v1/claims", headers=PUBLIC, json=payload)).status == 409

    resp = await client.post("/api/v1/claims", headers=PUBLIC, json={**payload, "place_id": 9999})
    assert resp.status == 404
    resp = await client.post("/api/v1/claims", headers=PUBLIC, json={**payload, "place_id": owned_place.id})
    assert resp.status == 409
    resp = await client.post("/api/v1/claims", headers=PUBLIC, json={**payload, "method": "carrier-pigeon"})
    assert resp.status == 400
    resp = await client.post("/api/v1/claims", headers=PUBLIC, json={"user_id": "user-1"})
    assert resp.status == 400


async def test_admin_review(client, unclaimed_place):
    resp = await client.post(
        "/api/v1/claims",
        headers=PUBLIC,
        json={"place_id": unclaimed_place.id, "user_id": "user-1", "method": "document"},
    )
    claim_id = (await resp.json())["claim"]["id"]

    resp = await client.get("/api/v1/admin/claims", headers=ADMIN, params={"status": "pending"})
    body = await resp.json()
    assert body["total"] == 1 and body["claims"][0]["id"] == claim_id

    resp = await client.post(f"/api/v1/admin/claims/{claim_id}/reject", headers=ADMIN, json={"reviewer_id": "a"})
    assert resp.status == 400

    resp = await client.post(f"/api/v1/admin/claims/{claim_id}/approve", headers=ADMIN, json={"reviewer_id": "a"})
    assert resp.status == 200
    assert (await resp.json())["business"]["user_id"] == "user-1"

    resp = await client.post(
        f"/api/v1/admin/claims/{claim_id}/reject",
        headers=ADMIN,
        json={"reviewer_id": "a", "reason": "changed my mind"},
    )
    assert resp.status == 409

    stats = (await (await client.get("/api/v1/admin/claims/stats", headers=ADMIN)).json())["stats"]
    assert stats["verified"] == 1 and stats["total"] == 1


async def test_credits_leads_and_refunds(client, business, owned_place):
    resp = await client.post(
        f"/api/v1/admin/businesses/{business.id}/credits",
        headers=ADMIN,
        json={"type": "purchase", "package": "credits_10"},
    )
    assert resp.status == 201
    assert (await resp.json())["transaction"]["balance_after_cents"] == 1000

    resp = await client.post(
        "/api/v1/leads",
        headers=PUBLIC,
        json={"id": "lead-1", "place_id": owned_place.id, "contact_name": "Ivan"},
    )
    outcome = (await resp.json())["outcome"]
    assert outcome["charged"] is True and outcome["amount_cents"] == 500

    resp = await client.post(
        "/api/v1/admin/leads/lead-1/refund",
        headers=ADMIN,
        json={"place_id": owned_place.id, "amount_cents": 900},
    )
    assert resp.status == 409

    resp = await client.post("/api/v1/admin/leads/lead-1/refund", headers=ADMIN, json={"place_id": owned_place.id})
    body = await resp.json()
    assert body["refunded"] is True and body["transaction"]["amount_cents"] == 500

    resp = await client.get(f"/api/v1/businesses/{business.id}/credits", headers=PUBLIC)
    body = await resp.json()
    assert body["balance"]["balance_cents"] == 1000
    assert body["stats"]["leads_charged"] == 1

    resp = await client.get(
        f"/api/v1/businesses/{business.id}/credits/transactions",
        headers=PUBLIC,
        params={"type": "refund"},
    )
    body = await resp.json()
    assert body["total"] == 1


async def test_premium_plan_needs_funds(client, business):
    resp = await client.post(
        f"/api/v1/admin/businesses/{business.id}/credits",
        headers=ADMIN,
        json={"type": "premium_subscription", "plan": "pro"},
    )
    assert resp.status == 402
    assert (await resp.json())["error"] == "InsufficientFundsError"

    resp = await client.post(
        f"/api/v1/admin/businesses/{business.id}/credits",
        headers=ADMIN,
        json={"type": "bonus", "amount_cents": -5},
    )
    assert resp.status == 400


async def test_reconcile_endpoint(client, business):
    await client.post(
        f"/api/v1/admin/businesses/{business.id}/credits",
        headers=ADMIN,
        json={"type": "bonus", "amount_cents": 250},
    )
    resp = await client.post(f"/api/v1/admin/businesses/{business.id}/reconcile", headers=ADMIN)
    assert await resp.json() == {"status": "ok", "balance_cents": 250, "drift_cents": 0}


async def test_free_plan_is_not_billable(client, business):
    resp = await client.post(
        f"/api/v1/admin/businesses/{business.id}/credits",
        headers=ADMIN,
        json={"type": "premium_subscription", "plan": "free"},
    )
    assert resp.status == 400


async def test_lead_is_billed_to_the_place_owner_at_its_price(client, services, business, owned_place):
    other = await services.registry.add_business("owner-2", "Other")
    await services.ledger.purchase(other.id, 5000)
    await services.ledger.purchase(business.id, 5000)

    resp = await client.post(
        "/api/v1/leads",
        headers=PUBLIC,
        json={"id": "lead-1", "place_id": owned_place.id, "business_id": other.id},
    )
    assert resp.status == 400
    assert (await resp.json())["error"] == "LeadOwnerMismatchError"
    assert await services.ledger.get_balance(other.id) == 5000

    resp = await client.post(
        "/api/v1/leads",
        headers=PUBLIC,
        json={"id": "lead-2", "place_id": owned_place.id, "price_cents": 4999, "category": "luxury"},
    )
    outcome = (await resp.json())["outcome"]
    assert outcome["business_id"] == business.id
    assert outcome["amount_cents"] == 500
    assert await services.ledger.get_balance(business.id) == 4500

    resp = await client.post("/api/v1/leads", headers=PUBLIC, json={"id": "lead-2", "place_id": owned_place.id})
    outcome = (await resp.json())["outcome"]
    assert outcome["replayed"] is True
    assert await services.ledger.get_balance(business.id) == 4500


async def test_second_approval_for_an_owned_place_is_not_committed(client, services, unclaimed_place):
    claim_ids = []
    for user_id in ("user-1", "user-2"):
        resp = await client.post(
            "/api/v1/claims",
            headers=PUBLIC,
            json={"place_id": unclaimed_place.id, "user_id": user_id, "method": "manual"},
        )
        claim_ids.append((await resp.json())["claim"]["id"])

    resp = await client.post(f"/api/v1/admin/claims/{claim_ids[0]}/approve", headers=ADMIN, json={"reviewer_id": "a"})
    assert resp.status == 200
    resp = await client.post(f"/api/v1/admin/claims/{claim_ids[1]}/approve", headers=ADMIN, json={"reviewer_id": "a"})
    assert resp.status == 409
    assert (await resp.json())["error"] == "PlaceAlreadyOwnedError"

    second = await services.claims_admin.get_claim(claim_ids[1])
    assert second.status.value == "pending"


@pytest.mark.parametrize("place_id", [None, [1], {"id": 1}, "abc"])
async def test_malformed_place_id_is_a_bad_request(client, place_id):
    resp = await client.post(
        "/api/v1/claims",
        headers=PUBLIC,
        json={"place_id": place_id, "user_id": "user-1", "method": "manual"},
    )
    assert resp.status == 400
