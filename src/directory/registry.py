"""Place/business registry backed by the shared SQLite file."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import aiosqlite

from database import immediate_transaction, open_db, utc_now_iso
from directory.errors import PlaceAlreadyOwnedError, PlaceNotFoundError


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Place:
    id: int
    name: str
    website: str | None = None
    phone: str | None = None
    category: str | None = None
    business_id: int | None = None


@dataclass(slots=True)
class Business:
    id: int
    user_id: str
    name: str
    plan_key: str = "FREE"
    lead_price_cents: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "plan_key": self.plan_key,
            "lead_price_cents": self.lead_price_cents,
        }


def _place_from_row(row: aiosqlite.Row) -> Place:
    return Place(
        id=int(row["id"]),
        name=str(row["name"]),
        website=row["website"],
        phone=row["phone"],
        category=row["category"],
        business_id=int(row["business_id"]) if row["business_id"] is not None else None,
    )


def _business_from_row(row: aiosqlite.Row) -> Business:
    return Business(
        id=int(row["id"]),
        user_id=str(row["user_id"]),
        name=str(row["name"] or ""),
        plan_key=str(row["plan_key"] or "FREE"),
        lead_price_cents=int(row["lead_price_cents"]) if row["lead_price_cents"] is not None else None,
    )


class PlaceRegistry(Protocol):
    """Directory lookups used by billing and claim verification."""

    async def get_place(self, place_id: int) -> Place | None:
        """Return the place or None."""

    async def get_business(self, business_id: int) -> Business | None:
        """Return the business or None."""

    async def link_place_owner(self, place_id: int, user_id: str) -> Business:
        """Make the user's business the owner of the place."""


class SqlitePlaceRegistry:
    """Default registry reading `places` and `businesses`."""

    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = db_path

    async def add_business(
        self,
        user_id: str,
        name: str,
        *,
        plan_key: str = "FREE",
        lead_price_cents: int | None = None,
    ) -> Business:
        async with open_db(self.db_path) as db:
            cur = await db.execute(
                """
                INSERT INTO businesses (user_id, name, plan_key, lead_price_cents, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (str(user_id), str(name), str(plan_key).upper(), lead_price_cents, utc_now_iso()),
            )
            business_id = int(cur.lastrowid)
        return Business(
            id=business_id,
            user_id=str(user_id),
            name=str(name),
            plan_key=str(plan_key).upper(),
            lead_price_cents=lead_price_cents,
        )

    async def add_place(
        self,
        name: str,
        *,
        website: str | None = None,
        phone: str | None = None,
        category: str | None = None,
        business_id: int | None = None,
    ) -> Place:
        async with open_db(self.db_path) as db:
            cur = await db.execute(
                """
                INSERT INTO places (name, website, phone, category, business_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (str(name), website, phone, category, business_id, utc_now_iso()),
            )
            place_id = int(cur.lastrowid)
        return Place(
            id=place_id,
            name=str(name),
            website=website,
            phone=phone,
            category=category,
            business_id=business_id,
        )

    async def get_place(self, place_id: int) -> Place | None:
        async with open_db(self.db_path) as db:
            async with db.execute(
                "SELECT id, name, website, phone, category, business_id FROM places WHERE id = ?",
                (int(place_id),),
            ) as cur:
                row = await cur.fetchone()
        return _place_from_row(row) if row else None

    async def get_business(self, business_id: int) -> Business | None:
        async with open_db(self.db_path) as db:
            async with db.execute(
                "SELECT id, user_id, name, plan_key, lead_price_cents FROM businesses WHERE id = ?",
                (int(business_id),),
            ) as cur:
                row = await cur.fetchone()
        return _business_from_row(row) if row else None

    async def find_business_by_user(self, user_id: str) -> Business | None:
        async with open_db(self.db_path) as db:
            async with db.execute(
                """
                SELECT id, user_id, name, plan_key, lead_price_cents
                  FROM businesses
                 WHERE user_id = ?
                 ORDER BY id ASC
                 LIMIT 1
                """,
                (str(user_id),),
            ) as cur:
                row = await cur.fetchone()
        return _business_from_row(row) if row else None

    async def link_place_owner(self, place_id: int, user_id: str) -> Business:
        """Attach the place to the user's business, creating the business if needed.

        Linking is idempotent for the same owner; a place already owned by a
        different business raises PlaceAlreadyOwnedError.
        """
        async with immediate_transaction(self.db_path, where="directory.link_place_owner") as db:
            business = await link_place_owner_in(db, place_id, user_id)
        logger.info("Place %s linked to business %s (user=%s)", place_id, business.id, user_id)
        return business


async def link_place_owner_in(db: aiosqlite.Connection, place_id: int, user_id: str) -> Business:
    """Ownership link on a connection that already holds the write lock.

    Lets a claim status change and the ownership link commit or roll back together.
    """
    async with db.execute(
        "SELECT id, name, business_id FROM places WHERE id = ?",
        (int(place_id),),
    ) as cur:
        place_row = await cur.fetchone()
    if not place_row:
        raise PlaceNotFoundError(int(place_id))

    async with db.execute(
        """
        SELECT id, user_id, name, plan_key, lead_price_cents
          FROM businesses
         WHERE user_id = ?
         ORDER BY id ASC
         LIMIT 1
        """,
        (str(user_id),),
    ) as cur:
        business_row = await cur.fetchone()

    current_owner = place_row["business_id"]
    if business_row:
        business = _business_from_row(business_row)
        if current_owner is not None and int(current_owner) != business.id:
            raise PlaceAlreadyOwnedError(int(place_id), int(current_owner))
    else:
        if current_owner is not None:
            raise PlaceAlreadyOwnedError(int(place_id), int(current_owner))
        cur = await db.execute(
            """
            INSERT INTO businesses (user_id, name, plan_key, created_at)
            VALUES (?, ?, 'FREE', ?)
            """,
            (str(user_id), str(place_row["name"]), utc_now_iso()),
        )
        business = Business(id=int(cur.lastrowid), user_id=str(user_id), name=str(place_row["name"]))
        logger.info("Created business id=%s for user=%s", business.id, user_id)

    await db.execute(
        "UPDATE places SET business_id = ? WHERE id = ?",
        (business.id, int(place_id)),
    )
    return business
