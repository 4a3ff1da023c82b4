"""
HTTP API for place claims, credit balances and lead billing.

Public endpoints (API_KEY when configured):
    POST /api/v1/claims                         submit a claim
    GET  /api/v1/claims?user_id=                claims of a user
    POST /api/v1/claims/{id}/code               enter a verification code
    GET  /api/v1/businesses/{id}/credits        balance summary and stats
    GET  /api/v1/businesses/{id}/credits/transactions
    POST /api/v1/leads                          bill an inbound lead

Admin endpoints (ADMIN_API_KEY, disabled when empty):
    GET  /api/v1/admin/claims, /api/v1/admin/claims/stats
    POST /api/v1/admin/claims/{id}/approve, /api/v1/admin/claims/{id}/reject
    POST /api/v1/admin/businesses/{id}/credits, /api/v1/admin/businesses/{id}/reconcile
    POST /api/v1/admin/leads/{id}/refund

Errors: {"status": "error", "error": "<ErrorName>", "message": "..."}
"""

import hmac
import logging

from aiohttp import web

from claims.admin import grant_place_ownership
from claims.errors import (
    ClaimAlreadyFinalizedError,
    ClaimError,
    ClaimNotFoundError,
    CodeMismatchError,
    DuplicateActiveClaimError,
)
from claims.models import ClaimStatus, ClaimSubmission, PlaceClaim
from config import CFG, is_api_auth_enabled
from database import ConcurrencyConflictError, utc_now_iso
from directory.errors import DirectoryError, PlaceAlreadyOwnedError, PlaceNotFoundError
from ledger.errors import (
    InsufficientFundsError,
    InvalidAmountError,
    LedgerError,
    RefundExceedsChargeError,
    RefundTargetNotFoundError,
)
from ledger.models import Lead, TransactionType
from ledger.pricing import PAID_PLANS, PLAN_TITLES, credit_package_cents, plan_monthly_price_cents
from services import AppServices


logger = logging.getLogger(__name__)

SERVICES_KEY = web.AppKey("services", AppServices)
API_KEY_KEY = web.AppKey("api_key", str)
ADMIN_API_KEY_KEY = web.AppKey("admin_api_key", str)

# Most specific first; the first isinstance match wins.
_ERROR_STATUS: tuple[tuple[type[Exception], int], ...] = (
    (ClaimNotFoundError, 404),
    (PlaceNotFoundError, 404),
    (RefundTargetNotFoundError, 404),
    (DuplicateActiveClaimError, 409),
    (ClaimAlreadyFinalizedError, 409),
    (PlaceAlreadyOwnedError, 409),
    (RefundExceedsChargeError, 409),
    (InsufficientFundsError, 402),
    (ConcurrencyConflictError, 503),
    (InvalidAmountError, 400),
    (ClaimError, 400),
    (DirectoryError, 400),
    (LedgerError, 400),
)


def _error(message: str, status: int, *, error: str = "BadRequest", **extra) -> web.Response:
    return web.json_response({"status": "error", "error": error, "message": message, **extra}, status=status)


def _error_response(exc: Exception) -> web.Response | None:
    """Map a domain error to its HTTP response, or None for unexpected errors."""
    for error_type, status in _ERROR_STATUS:
        if isinstance(exc, error_type):
            extra = {}
            if isinstance(exc, CodeMismatchError):
                extra["attempts_remaining"] = exc.attempts_remaining
            return _error(str(exc), status, error=type(exc).__name__, **extra)
    return None


def _extract_api_key_from_request(request: web.Request) -> str:
    """Extract API key from X-API-Key header, Bearer auth, or query param."""
    header_key = str(request.headers.get("X-API-Key") or "").strip()
    if header_key:
        return header_key

    auth_header = str(request.headers.get("Authorization") or "").strip()
    if auth_header.lower().startswith("bearer "):
        bearer = auth_header[7:].strip()
        if bearer:
            return bearer

    query_key = str(request.query.get("api_key") or "").strip()
    if query_key:
        return query_key

    return ""


def _check_public_key(request: web.Request) -> web.Response | None:
    expected = request.app[API_KEY_KEY]
    if not expected:
        return None
    provided = _extract_api_key_from_request(request)
    if not provided or not hmac.compare_digest(provided, expected):
        return _error("Invalid API key", 401, error="Unauthorized")
    return None


def _check_admin_key(request: web.Request) -> web.Response | None:
    expected = request.app[ADMIN_API_KEY_KEY]
    if not expected:
        return _error("Admin API disabled", 403, error="Forbidden")
    provided = _extract_api_key_from_request(request)
    if not provided or not hmac.compare_digest(provided, expected):
        logger.warning("Rejected admin API call to %s", request.path)
        return _error("Invalid admin API key", 401, error="Unauthorized")
    return None


async def _read_json(request: web.Request) -> dict | web.Response:
    try:
        data = await request.json()
    except ValueError:
        return _error("Invalid JSON", 400)
    if not isinstance(data, dict):
        return _error("JSON body must be an object", 400)
    return data


def _int_param(raw, name: str, *, default: int | None = None) -> int | None:
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be an integer") from None


def _services(request: web.Request) -> AppServices:
    return request.app[SERVICES_KEY]


async def _claim_payload(services: AppServices, claim: PlaceClaim) -> dict:
    """Claim JSON plus the ownership link for verified claims."""
    payload: dict = {"status": "ok", "claim": claim.to_dict()}
    if claim.status is ClaimStatus.VERIFIED:
        business = await grant_place_ownership(services.registry, claim)
        payload["business"] = business.to_dict() if business else None
    return payload


async def health_handler(request: web.Request) -> web.Response:
    """Health check endpoint."""
    return web.json_response({
        "status": "ok",
        "timestamp": utc_now_iso(),
        "service": "listings-api",
    })


async def submit_claim_handler(request: web.Request) -> web.Response:
    denied = _check_public_key(request)
    if denied:
        return denied
    data = await _read_json(request)
    if isinstance(data, web.Response):
        return data
    try:
        submission = ClaimSubmission.from_dict(data)
    except KeyError as exc:
        return _error(f"Missing field: {exc.args[0]}", 400)
    except (TypeError, ValueError) as exc:
        return _error(str(exc), 400)
    if not submission.user_id:
        return _error("user_id is required", 400)

    try:
        claim = await _services(request).verifier.submit(submission)
    except Exception as exc:
        response = _error_response(exc)
        if response is None:
            raise
        return response
    return web.json_response({"status": "ok", "claim": claim.to_dict()}, status=201)


async def list_user_claims_handler(request: web.Request) -> web.Response:
    denied = _check_public_key(request)
    if denied:
        return denied
    user_id = str(request.query.get("user_id") or "").strip()
    if not user_id:
        return _error("user_id is required", 400)
    claims = await _services(request).claim_store.list_by_user(user_id)
    return web.json_response({"status": "ok", "claims": [claim.to_dict() for claim in claims]})


async def submit_code_handler(request: web.Request) -> web.Response:
    denied = _check_public_key(request)
    if denied:
        return denied
    data = await _read_json(request)
    if isinstance(data, web.Response):
        return data
    code = str(data.get("code") or "").strip()
    if not code:
        return _error("code is required", 400)

    services = _services(request)
    try:
        claim_id = _int_param(request.match_info.get("claim_id"), "claim_id")
        claim = await services.verifier.submit_code(claim_id, code)
        payload = await _claim_payload(services, claim)
    except Exception as exc:
        response = _error_response(exc)
        if response is None:
            raise
        return response
    return web.json_response(payload)


async def admin_list_claims_handler(request: web.Request) -> web.Response:
    denied = _check_admin_key(request)
    if denied:
        return denied
    try:
        status = request.query.get("status") or None
        if status is not None:
            status = ClaimStatus(status)
        place_id = _int_param(request.query.get("place_id"), "place_id")
        limit = _int_param(request.query.get("limit"), "limit", default=50)
        offset = _int_param(request.query.get("offset"), "offset", default=0)
    except ValueError as exc:
        return _error(str(exc), 400)

    claims, total = await _services(request).claims_admin.list_claims(
        status=status,
        place_id=place_id,
        user_id=request.query.get("user_id") or None,
        limit=limit,
        offset=offset,
    )
    return web.json_response({
        "status": "ok",
        "total": total,
        "claims": [claim.to_dict() for claim in claims],
    })


async def admin_claim_stats_handler(request: web.Request) -> web.Response:
    denied = _check_admin_key(request)
    if denied:
        return denied
    stats = await _services(request).claims_admin.claim_stats()
    return web.json_response({"status": "ok", "stats": stats})


async def admin_claim_decision_handler(request: web.Request) -> web.Response:
    denied = _check_admin_key(request)
    if denied:
        return denied
    data = await _read_json(request)
    if isinstance(data, web.Response):
        return data
    reviewer_id = str(data.get("reviewer_id") or "").strip()
    if not reviewer_id:
        return _error("reviewer_id is required", 400)
    admin_notes = str(data.get("admin_notes") or "").strip() or None
    action = request.match_info["action"]

    services = _services(request)
    try:
        claim_id = _int_param(request.match_info.get("claim_id"), "claim_id")
        if action == "approve":
            claim = await services.claims_admin.approve(claim_id, reviewer_id, admin_notes=admin_notes)
        else:
            claim = await services.claims_admin.reject(
                claim_id,
                reviewer_id,
                str(data.get("reason") or ""),
                admin_notes=admin_notes,
            )
        payload = await _claim_payload(services, claim)
    except Exception as exc:
        response = _error_response(exc)
        if response is None:
            raise
        return response
    return web.json_response(payload)


async def business_credits_handler(request: web.Request) -> web.Response:
    denied = _check_public_key(request)
    if denied:
        return denied
    try:
        business_id = _int_param(request.match_info.get("business_id"), "business_id")
        days = _int_param(request.query.get("days"), "days", default=30)
    except ValueError as exc:
        return _error(str(exc), 400)
    ledger = _services(request).ledger
    summary = await ledger.get_balance_summary(business_id)
    stats = await ledger.get_credit_stats(business_id, days=days)
    return web.json_response({"status": "ok", "balance": summary.to_dict(), "stats": stats.to_dict()})


async def business_transactions_handler(request: web.Request) -> web.Response:
    denied = _check_public_key(request)
    if denied:
        return denied
    try:
        business_id = _int_param(request.match_info.get("business_id"), "business_id")
        limit = _int_param(request.query.get("limit"), "limit", default=50)
        offset = _int_param(request.query.get("offset"), "offset", default=0)
        tx_type = request.query.get("type") or None
        if tx_type is not None:
            tx_type = TransactionType(tx_type)
    except ValueError as exc:
        return _error(str(exc), 400)

    rows, total = await _services(request).ledger.list_transactions(
        business_id,
        limit=limit,
        offset=offset,
        type=tx_type,
        since=request.query.get("since") or None,
        until=request.query.get("until") or None,
    )
    return web.json_response({
        "status": "ok",
        "total": total,
        "transactions": [row.to_dict() for row in rows],
    })


async def admin_credit_handler(request: web.Request) -> web.Response:
    """Purchase, bonus or premium subscription entry on a business account."""
    denied = _check_admin_key(request)
    if denied:
        return denied
    data = await _read_json(request)
    if isinstance(data, web.Response):
        return data

    ledger = _services(request).ledger
    kind = str(data.get("type") or TransactionType.PURCHASE.value).strip()
    description = str(data.get("description") or "").strip() or None
    try:
        business_id = _int_param(request.match_info.get("business_id"), "business_id")
        amount = _int_param(data.get("amount_cents"), "amount_cents")
        if kind == TransactionType.PURCHASE.value:
            if amount is None and data.get("package"):
                amount = credit_package_cents(str(data["package"]))
            if amount is None:
                return _error("amount_cents or package is required", 400)
            tx = await ledger.purchase(business_id, amount, description or "Credit purchase")
        elif kind == TransactionType.BONUS.value:
            if amount is None:
                return _error("amount_cents is required", 400)
            tx = await ledger.bonus(business_id, amount, description or "Bonus credits")
        elif kind == TransactionType.PREMIUM_SUBSCRIPTION.value:
            plan = str(data.get("plan") or "").strip().upper()
            if plan and plan not in PAID_PLANS:
                return _error(f"Plan {plan} is not a paid plan", 400)
            if amount is None and plan:
                amount = plan_monthly_price_cents(plan)
            if amount is None:
                return _error("amount_cents or plan is required", 400)
            tx = await ledger.charge_premium_subscription(
                business_id,
                amount,
                description or (f"Premium subscription ({PLAN_TITLES[plan]})" if plan else "Premium subscription"),
                place_id=_int_param(data.get("place_id"), "place_id"),
            )
        else:
            return _error(f"Unsupported credit type: {kind}", 400)
    except Exception as exc:
        response = _error_response(exc)
        if response is not None:
            return response
        if isinstance(exc, ValueError):
            return _error(str(exc), 400)
        raise
    return web.json_response({"status": "ok", "transaction": tx.to_dict()}, status=201)


async def admin_reconcile_handler(request: web.Request) -> web.Response:
    denied = _check_admin_key(request)
    if denied:
        return denied
    try:
        business_id = _int_param(request.match_info.get("business_id"), "business_id")
    except ValueError as exc:
        return _error(str(exc), 400)
    balance, drift = await _services(request).ledger_store.reconcile_account(business_id)
    return web.json_response({"status": "ok", "balance_cents": balance, "drift_cents": drift})


def _lead_from_payload(data: dict, *, lead_id: str | None = None) -> Lead:
    raw_id = lead_id if lead_id is not None else data.get("id")
    lead_key = str(raw_id or "").strip()
    if not lead_key:
        raise ValueError("lead id is required")
    place_id = _int_param(data.get("place_id"), "place_id")
    if place_id is None:
        raise ValueError("place_id is required")
    return Lead(
        id=lead_key,
        place_id=place_id,
        business_id=_int_param(data.get("business_id"), "business_id"),
        contact_name=str(data.get("contact_name") or "").strip() or None,
        contact_email=str(data.get("contact_email") or "").strip() or None,
        message=str(data.get("message") or "").strip() or None,
    )


async def bill_lead_handler(request: web.Request) -> web.Response:
    denied = _check_public_key(request)
    if denied:
        return denied
    data = await _read_json(request)
    if isinstance(data, web.Response):
        return data
    try:
        lead = _lead_from_payload(data)
    except ValueError as exc:
        return _error(str(exc), 400)

    try:
        outcome = await _services(request).billing.bill_lead(lead)
    except Exception as exc:
        response = _error_response(exc)
        if response is None:
            raise
        return response
    return web.json_response({"status": "ok", "outcome": outcome.to_dict()})


async def admin_refund_lead_handler(request: web.Request) -> web.Response:
    """Full refund of what remains on a lead, or a partial one when amount_cents is given."""
    denied = _check_admin_key(request)
    if denied:
        return denied
    data = await _read_json(request)
    if isinstance(data, web.Response):
        return data
    reason = str(data.get("reason") or "spam").strip()
    services = _services(request)
    try:
        lead = _lead_from_payload(data, lead_id=request.match_info.get("lead_id"))
        amount = _int_param(data.get("amount_cents"), "amount_cents")
        if amount is None:
            tx = await services.billing.refund_lead(lead, reason=reason)
        else:
            if await services.registry.get_place(lead.place_id) is None:
                raise PlaceNotFoundError(lead.place_id)
            business_id = await services.billing.resolve_business_id(lead)
            if business_id is None:
                return _error("Place has no owning business", 400)
            tx = await services.ledger.refund(business_id, lead.id, amount, f"Lead refund ({reason})")
    except Exception as exc:
        response = _error_response(exc)
        if response is not None:
            return response
        if isinstance(exc, ValueError):
            return _error(str(exc), 400)
        raise
    return web.json_response({
        "status": "ok",
        "refunded": tx is not None,
        "transaction": tx.to_dict() if tx else None,
    })


def create_api_app(
    services: AppServices,
    *,
    api_key: str | None = None,
    admin_api_key: str | None = None,
) -> web.Application:
    """Build the aiohttp application around an already wired service graph."""
    app = web.Application()
    app[SERVICES_KEY] = services
    app[API_KEY_KEY] = CFG.api_key if api_key is None else api_key
    app[ADMIN_API_KEY_KEY] = CFG.admin_api_key if admin_api_key is None else admin_api_key

    app.router.add_get("/api/v1/health", health_handler)

    # Claims
    app.router.add_post("/api/v1/claims", submit_claim_handler)
    app.router.add_get("/api/v1/claims", list_user_claims_handler)
    app.router.add_post("/api/v1/claims/{claim_id:\\d+}/code", submit_code_handler)
    app.router.add_get("/api/v1/admin/claims", admin_list_claims_handler)
    app.router.add_get("/api/v1/admin/claims/stats", admin_claim_stats_handler)
    app.router.add_post(
        "/api/v1/admin/claims/{claim_id:\\d+}/{action:approve|reject}",
        admin_claim_decision_handler,
    )

    # Credits and leads
    app.router.add_get("/api/v1/businesses/{business_id:\\d+}/credits", business_credits_handler)
    app.router.add_get(
        "/api/v1/businesses/{business_id:\\d+}/credits/transactions",
        business_transactions_handler,
    )
    app.router.add_post("/api/v1/admin/businesses/{business_id:\\d+}/credits", admin_credit_handler)
    app.router.add_post("/api/v1/admin/businesses/{business_id:\\d+}/reconcile", admin_reconcile_handler)
    app.router.add_post("/api/v1/leads", bill_lead_handler)
    app.router.add_post("/api/v1/admin/leads/{lead_id}/refund", admin_refund_lead_handler)

    app.router.add_get("/", health_handler)
    return app


async def start_api_server(app: web.Application) -> web.AppRunner:
    """Start the API server."""
    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, CFG.api_host, CFG.api_port)
    await site.start()

    logger.info("API server started on %s:%s", CFG.api_host, CFG.api_port)
    if not is_api_auth_enabled():
        logger.warning("API_KEY is empty; public endpoints accept unauthenticated calls")

    return runner


async def stop_api_server(runner: web.AppRunner) -> None:
    """Stop the API server."""
    await runner.cleanup()
    logger.info("API server stopped")
