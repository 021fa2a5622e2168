"""Read-side access to accounts and stores owned by the identity subsystem."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from citycircle_api.core.settings import settings
from citycircle_api.models.account import Account, Store, StoreBlacklistEntry
from citycircle_api.services.errors import InvalidInputError, NotFoundError
from citycircle_api.services.geo import distance_miles
from citycircle_api.services.rewards import PlanTierSummary, describe_plan_tier

CUSTOMER_QR_PREFIX = "USER"


@dataclass
class NearbyStore:
    store: Store
    distance_miles: float


class AccountDirectory:
    """Lookup helpers for accounts, stores and store-level bans."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def get_account(self, account_id: int) -> Account | None:
        return await self._db.get(Account, account_id)

    async def require_account(self, account_id: int) -> Account:
        account = await self.get_account(account_id)
        if account is None:
            raise NotFoundError("Account not found")
        return account

    async def get_by_phone(self, phone: str) -> Account | None:
        result = await self._db.execute(select(Account).where(Account.phone == phone))
        return result.scalar_one_or_none()

    async def get_store(self, store_id: int) -> Store | None:
        return await self._db.get(Store, store_id)

    async def require_store(self, store_id: int) -> Store:
        store = await self.get_store(store_id)
        if store is None:
            raise NotFoundError("Store not found")
        return store

    async def blacklist_entry(self, store_id: int, account_id: int) -> StoreBlacklistEntry | None:
        stmt = select(StoreBlacklistEntry).where(
            StoreBlacklistEntry.store_id == store_id,
            StoreBlacklistEntry.account_id == account_id,
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def describe_plan_tier(self, account_id: int) -> PlanTierSummary:
        account = await self.require_account(account_id)
        return describe_plan_tier(account.plan, account.total_loops_earned)


def parse_customer_qr(qr: str) -> str:
    """Extract the phone number from ``USER:<phone>[:...]`` payloads."""

    parts = (qr or "").strip().split(":")
    if len(parts) < 2 or parts[0] != CUSTOMER_QR_PREFIX or not parts[1]:
        raise InvalidInputError("Invalid QR code format")
    return parts[1]


async def scan_customer(db_session: AsyncSession, qr: str) -> Account:
    phone = parse_customer_qr(qr)
    account = await AccountDirectory(db_session).get_by_phone(phone)
    if account is None:
        raise NotFoundError("Customer not found")
    logger.info("Resolved customer QR", account_id=account.id)
    return account


async def nearby_stores(
    db_session: AsyncSession,
    latitude: float,
    longitude: float,
    radius_miles: Optional[float] = None,
) -> list[NearbyStore]:
    """Stores with coordinates inside the radius, nearest first."""

    radius = settings.nearby_default_radius_miles if radius_miles is None else radius_miles
    if not all(isinstance(value, (int, float)) and math.isfinite(value) for value in (latitude, longitude, radius)):
        raise InvalidInputError("Latitude, longitude and radius must be finite numbers")
    if radius < 0:
        raise InvalidInputError("Radius must not be negative")

    result = await db_session.execute(
        select(Store).where(Store.latitude.is_not(None), Store.longitude.is_not(None))
    )
    matches: list[NearbyStore] = []
    for store in result.scalars().all():
        distance = distance_miles(latitude, longitude, store.latitude, store.longitude)
        if math.isnan(distance) or distance > radius:
            continue
        matches.append(NearbyStore(store=store, distance_miles=distance))
    matches.sort(key=lambda item: (item.distance_miles, item.store.id))
    return matches


__all__ = [
    "AccountDirectory",
    "NearbyStore",
    "nearby_stores",
    "parse_customer_qr",
    "scan_customer",
]
