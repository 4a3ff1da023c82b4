#!/usr/bin/env python3
"""
Smoke test for the email-domain claim flow end to end.

What it validates:
- a claim whose email domain matches the listing website gets a code.
- the code never appears in the public claim view.
- a wrong code counts an attempt; the right code verifies.
- verification links the place to the claimant's business.
- the audit trail records submitted -> code_mismatch -> verified.

Run:
  python3 scripts/smoke_claim_code_flow.py
"""

from __future__ import annotations

import asyncio
import os
import shutil
import sys
import tempfile
from pathlib import Path


def _resolve_repo_root() -> Path:
    candidates: list[Path] = []
    try:
        candidates.append(Path(__file__).resolve().parents[1])
    except Exception:
        pass
    candidates.extend([Path.cwd(), Path("/app")])
    for root in candidates:
        if (root / "src" / "database.py").exists():
            return root
    raise FileNotFoundError("Cannot locate repo root with src/database.py")


REPO_ROOT = _resolve_repo_root()


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


async def _run_checks(db_path: str) -> None:
    from claims import ClaimStatus, ClaimSubmission, grant_place_ownership
    from claims.errors import CodeMismatchError
    from database import init_db
    from notifications import LogNotifier
    from notifications.base import KIND_CLAIM_VERIFICATION_CODE
    from services import build_services

    await init_db(db_path)
    notifier = LogNotifier()
    services = build_services(db_path, notifier=notifier)
    place = await services.registry.add_place("Smoke Bakery", website="https://www.smoke-bakery.example")

    claim = await services.verifier.submit(
        ClaimSubmission(
            place_id=place.id,
            user_id="smoke-user",
            method="email_domain",
            email="owner@smoke-bakery.example",
        )
    )
    _assert(claim.status is ClaimStatus.VERIFICATION_SENT, f"unexpected status: {claim.status}")
    _assert("verification_code" not in claim.to_dict(), "code leaked into the public claim view")

    sent = notifier.of_kind(KIND_CLAIM_VERIFICATION_CODE)
    _assert(len(sent) == 1, f"expected one code notification, got {len(sent)}")
    code = sent[0].payload["code"]

    wrong = "999999" if code != "999999" else "999998"
    try:
        await services.verifier.submit_code(claim.id, wrong)
    except CodeMismatchError as exc:
        _assert(exc.attempts_remaining == 4, f"unexpected attempts_remaining: {exc.attempts_remaining}")
    else:
        raise AssertionError("wrong code was accepted")

    verified = await services.verifier.submit_code(claim.id, code)
    _assert(verified.status is ClaimStatus.VERIFIED, f"claim not verified: {verified.status}")
    _assert(verified.verification_attempts == 1, f"attempts not kept: {verified.verification_attempts}")

    business = await grant_place_ownership(services.registry, verified)
    linked = await services.registry.get_place(place.id)
    _assert(linked.business_id == business.id, f"place not linked: {linked}")

    actions = [entry["action"] for entry in await services.claim_store.list_audit(claim.id)]
    _assert(actions == ["submitted", "code_mismatch", "verified"], f"unexpected audit trail: {actions}")


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="listings-smoke-claims-"))
    try:
        db_path = tmpdir / "state.db"
        os.environ["DB_PATH"] = str(db_path)
        sys.path.insert(0, str(REPO_ROOT / "src"))

        asyncio.run(_run_checks(str(db_path)))
        print("OK: claim code flow smoke test passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


if __name__ == "__main__":
    main()
