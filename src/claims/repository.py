"""Persistence for place claims and their audit trail."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from typing import Any

import aiosqlite

from claims.errors import DuplicateActiveClaimError, PlaceAlreadyOwnedError, PlaceNotFoundError
from claims.models import (
    ClaimStatus,
    DocumentVerification,
    EmailDomainVerification,
    ManualVerification,
    NewClaim,
    PendingCode,
    PhoneVerification,
    PlaceClaim,
    Verification,
    VerificationMethod,
)
from database import immediate_transaction, open_db, to_iso, to_json, utc_now_iso
from directory.registry import link_place_owner_in


logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 200

# Columns a transition may touch. Identity and submission fields are immutable.
_UPDATABLE_COLUMNS = {
    "status",
    "verification_code",
    "verification_code_sent_at",
    "verification_code_expires_at",
    "verification_attempts",
    "admin_notes",
    "reviewed_at",
    "reviewed_by",
    "rejection_reason",
}

_ACTIVE_STATUS_SQL = "('pending', 'verification_sent', 'verified')"


def _verification_from_row(row: aiosqlite.Row) -> Verification:
    method = VerificationMethod(row["verification_method"])
    if method is VerificationMethod.EMAIL_DOMAIN:
        return EmailDomainVerification(
            email=str(row["verification_email"] or ""),
            domain=str(row["verification_email_domain"] or ""),
        )
    if method is VerificationMethod.PHONE:
        return PhoneVerification(phone=str(row["verification_phone"] or ""))
    if method is VerificationMethod.DOCUMENT:
        return DocumentVerification(document_url=row["proof_document_url"])
    return ManualVerification()


def _claim_from_row(row: aiosqlite.Row) -> PlaceClaim:
    pending_code = None
    if row["verification_code"] is not None:
        pending_code = PendingCode(
            code=str(row["verification_code"]),
            sent_at=str(row["verification_code_sent_at"] or ""),
            expires_at=str(row["verification_code_expires_at"] or ""),
        )
    return PlaceClaim(
        id=int(row["id"]),
        place_id=int(row["place_id"]),
        user_id=str(row["user_id"]),
        status=ClaimStatus(row["status"]),
        verification=_verification_from_row(row),
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
        pending_code=pending_code,
        verification_attempts=int(row["verification_attempts"] or 0),
        business_role=row["business_role"],
        claimant_name=row["claimant_name"],
        claimant_phone=row["claimant_phone"],
        notes=row["notes"],
        admin_notes=row["admin_notes"],
        reviewed_at=row["reviewed_at"],
        reviewed_by=row["reviewed_by"],
        rejection_reason=row["rejection_reason"],
    )


def _patch_value(key: str, value: Any) -> Any:
    if isinstance(value, ClaimStatus):
        return value.value
    if isinstance(value, datetime):
        return to_iso(value)
    return value


async def _fetch_claim(db: aiosqlite.Connection, claim_id: int) -> PlaceClaim | None:
    async with db.execute("SELECT * FROM place_claims WHERE id = ?", (int(claim_id),)) as cur:
        row = await cur.fetchone()
    return _claim_from_row(row) if row else None


async def _insert_audit(
    db: aiosqlite.Connection,
    *,
    claim_id: int,
    place_id: int,
    action: str,
    actor_user_id: str | None,
    payload: dict[str, Any] | None,
    created_at: str,
) -> None:
    await db.execute(
        """
        INSERT INTO claim_audit_log (claim_id, place_id, actor_user_id, action, payload_json, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (int(claim_id), int(place_id), actor_user_id, str(action), to_json(payload or {}), created_at),
    )


class ClaimStore:
    """Durable claim rows. Only the verifier and the admin gateway write here."""

    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = db_path

    async def create(self, claim: NewClaim) -> PlaceClaim:
        """Insert a claim after checking the place and the one-active-claim rule."""
        verification = claim.verification
        now = utc_now_iso()
        try:
            async with immediate_transaction(self.db_path, where="claims.create") as db:
                async with db.execute(
                    "SELECT id, business_id FROM places WHERE id = ?",
                    (int(claim.place_id),),
                ) as cur:
                    place_row = await cur.fetchone()
                if not place_row:
                    raise PlaceNotFoundError(int(claim.place_id))
                if place_row["business_id"] is not None:
                    raise PlaceAlreadyOwnedError(int(claim.place_id), int(place_row["business_id"]))

                async with db.execute(
                    f"""
                    SELECT id FROM place_claims
                     WHERE place_id = ? AND user_id = ? AND status IN {_ACTIVE_STATUS_SQL}
                     LIMIT 1
                    """,
                    (int(claim.place_id), str(claim.user_id)),
                ) as cur:
                    if await cur.fetchone():
                        raise DuplicateActiveClaimError(int(claim.place_id), str(claim.user_id))

                pending = claim.pending_code
                cur = await db.execute(
                    """
                    INSERT INTO place_claims (
                        place_id, user_id, status, verification_method,
                        verification_email, verification_email_domain, verification_phone,
                        verification_code, verification_code_sent_at, verification_code_expires_at,
                        verification_attempts, proof_document_url,
                        business_role, claimant_name, claimant_phone, notes,
                        created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        int(claim.place_id),
                        str(claim.user_id),
                        claim.status.value,
                        verification.method.value,
                        getattr(verification, "email", None),
                        getattr(verification, "domain", None),
                        getattr(verification, "phone", None),
                        pending.code if pending else None,
                        pending.sent_at if pending else None,
                        pending.expires_at if pending else None,
                        getattr(verification, "document_url", None),
                        claim.business_role,
                        claim.claimant_name,
                        claim.claimant_phone,
                        claim.notes,
                        now,
                        now,
                    ),
                )
                claim_id = int(cur.lastrowid)
                await _insert_audit(
                    db,
                    claim_id=claim_id,
                    place_id=claim.place_id,
                    action="submitted",
                    actor_user_id=str(claim.user_id),
                    payload={"method": verification.method.value, "status": claim.status.value},
                    created_at=now,
                )
                created = await _fetch_claim(db, claim_id)
        except sqlite3.IntegrityError as exc:
            if "uq_place_claims_active" in str(exc) or "place_claims.place_id" in str(exc):
                raise DuplicateActiveClaimError(int(claim.place_id), str(claim.user_id)) from exc
            raise

        logger.info(
            "Claim created id=%s place=%s user=%s method=%s status=%s",
            claim_id,
            claim.place_id,
            claim.user_id,
            verification.method.value,
            claim.status.value,
        )
        return created

    async def get(self, claim_id: int) -> PlaceClaim | None:
        async with open_db(self.db_path) as db:
            return await _fetch_claim(db, claim_id)

    async def find_active_by_user_and_place(self, user_id: str, place_id: int) -> PlaceClaim | None:
        async with open_db(self.db_path) as db:
            async with db.execute(
                f"""
                SELECT * FROM place_claims
                 WHERE user_id = ? AND place_id = ? AND status IN {_ACTIVE_STATUS_SQL}
                 ORDER BY id DESC
                 LIMIT 1
                """,
                (str(user_id), int(place_id)),
            ) as cur:
                row = await cur.fetchone()
        return _claim_from_row(row) if row else None

    async def list_by_user(self, user_id: str) -> list[PlaceClaim]:
        async with open_db(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM place_claims WHERE user_id = ? ORDER BY id DESC",
                (str(user_id),),
            ) as cur:
                rows = await cur.fetchall()
        return [_claim_from_row(row) for row in rows]

    async def list_claims(
        self,
        *,
        status: ClaimStatus | str | None = None,
        place_id: int | None = None,
        user_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[PlaceClaim], int]:
        """Newest-first page plus the total for the filters."""
        safe_limit = max(1, min(int(limit), MAX_PAGE_SIZE))
        safe_offset = max(0, int(offset))
        conditions: list[str] = []
        params: list = []
        if status is not None:
            conditions.append("status = ?")
            params.append(ClaimStatus(status).value)
        if place_id is not None:
            conditions.append("place_id = ?")
            params.append(int(place_id))
        if user_id is not None:
            conditions.append("user_id = ?")
            params.append(str(user_id))
        where_sql = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        async with open_db(self.db_path) as db:
            async with db.execute(f"SELECT COUNT(*) FROM place_claims {where_sql}", tuple(params)) as cur:
                total_row = await cur.fetchone()
            async with db.execute(
                f"SELECT * FROM place_claims {where_sql} ORDER BY id DESC LIMIT ? OFFSET ?",
                (*params, safe_limit, safe_offset),
            ) as cur:
                rows = await cur.fetchall()
        return [_claim_from_row(row) for row in rows], int(total_row[0] if total_row else 0)

    async def count_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in ClaimStatus}
        async with open_db(self.db_path) as db:
            async with db.execute("SELECT status, COUNT(*) FROM place_claims GROUP BY status") as cur:
                rows = await cur.fetchall()
        for row in rows:
            counts[str(row[0])] = int(row[1])
        return counts

    async def update(
        self,
        claim_id: int,
        patch: dict[str, Any],
        *,
        expect_status: ClaimStatus | None = None,
        expect_attempts: int | None = None,
        audit_action: str | None = None,
        actor_user_id: str | None = None,
        audit_payload: dict[str, Any] | None = None,
        link_owner: bool = False,
    ) -> PlaceClaim | None:
        """Compare-and-set update.

        Returns the updated claim, or None when the row no longer matches
        `expect_status` / `expect_attempts` (or does not exist).

        With `link_owner`, a claim that lands in verified also links the place
        to the claimant's business in the same transaction; PlaceAlreadyOwnedError
        rolls the status change back.
        """
        unknown = set(patch) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update claim columns: {sorted(unknown)}")
        values = {key: _patch_value(key, value) for key, value in patch.items()}
        new_status = values.get("status")
        if new_status is not None and new_status != ClaimStatus.VERIFICATION_SENT.value:
            values["verification_code"] = None
        now = utc_now_iso()
        values["updated_at"] = now

        set_sql = ", ".join(f"{column} = ?" for column in values)
        conditions = ["id = ?"]
        params: list = [*values.values(), int(claim_id)]
        if expect_status is not None:
            conditions.append("status = ?")
            params.append(ClaimStatus(expect_status).value)
        if expect_attempts is not None:
            conditions.append("verification_attempts = ?")
            params.append(int(expect_attempts))

        async with immediate_transaction(self.db_path, where="claims.update") as db:
            cur = await db.execute(
                f"UPDATE place_claims SET {set_sql} WHERE {' AND '.join(conditions)}",
                tuple(params),
            )
            if cur.rowcount != 1:
                return None
            updated = await _fetch_claim(db, claim_id)
            if updated is not None and link_owner and updated.status is ClaimStatus.VERIFIED:
                business = await link_place_owner_in(db, updated.place_id, updated.user_id)
                logger.info(
                    "Place %s linked to business %s via claim=%s",
                    updated.place_id,
                    business.id,
                    updated.id,
                )
            if updated is not None and audit_action:
                await _insert_audit(
                    db,
                    claim_id=updated.id,
                    place_id=updated.place_id,
                    action=audit_action,
                    actor_user_id=actor_user_id,
                    payload=audit_payload or {"status": updated.status.value},
                    created_at=now,
                )
        return updated

    async def expire_stale(self, now: datetime) -> list[PlaceClaim]:
        """Move every verification_sent claim past its expiry to expired."""
        now_iso = to_iso(now)
        async with immediate_transaction(self.db_path, where="claims.expire_stale") as db:
            async with db.execute(
                """
                SELECT id FROM place_claims
                 WHERE status = 'verification_sent'
                   AND verification_code_expires_at IS NOT NULL
                   AND verification_code_expires_at <= ?
                 ORDER BY id
                """,
                (now_iso,),
            ) as cur:
                ids = [int(row[0]) for row in await cur.fetchall()]
            expired: list[PlaceClaim] = []
            for claim_id in ids:
                await db.execute(
                    """
                    UPDATE place_claims
                       SET status = 'expired', verification_code = NULL, updated_at = ?
                     WHERE id = ? AND status = 'verification_sent'
                    """,
                    (now_iso, claim_id),
                )
                claim = await _fetch_claim(db, claim_id)
                if claim is None:
                    continue
                await _insert_audit(
                    db,
                    claim_id=claim.id,
                    place_id=claim.place_id,
                    action="expired",
                    actor_user_id=None,
                    payload={"reason": "code expired (sweep)"},
                    created_at=now_iso,
                )
                expired.append(claim)
        return expired

    async def list_audit(self, claim_id: int) -> list[dict[str, Any]]:
        async with open_db(self.db_path) as db:
            async with db.execute(
                """
                SELECT id, claim_id, place_id, actor_user_id, action, payload_json, created_at
                  FROM claim_audit_log
                 WHERE claim_id = ?
                 ORDER BY id ASC
                """,
                (int(claim_id),),
            ) as cur:
                rows = await cur.fetchall()
        entries = []
        for row in rows:
            entry = dict(row)
            entry["payload"] = json.loads(entry.pop("payload_json") or "{}")
            entries.append(entry)
        return entries
