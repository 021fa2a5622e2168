"""Seed development accounts and stores into the API database."""

from __future__ import annotations

import asyncio
import os
from typing import Optional, TypedDict

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from citycircle_api.core.settings import settings
from citycircle_api.models.account import Account, AccountPlan, Store


class SeedAccount(TypedDict):
    name: str
    phone: str
    plan: str


class SeedStore(TypedDict):
    name: str
    category: str
    zone: str
    latitude: Optional[float]
    longitude: Optional[float]


DEV_ACCOUNTS: list[SeedAccount] = [
    {
        "name": "Customer QA",
        "phone": os.getenv("DEV_SHORTCUT_CUSTOMER_PHONE", "5550000001"),
        "plan": "STARTER",
    },
    {
        "name": "Premium QA",
        "phone": os.getenv("DEV_SHORTCUT_PREMIUM_PHONE", "5550000002"),
        "plan": "PREMIUM",
    },
]

DEV_STORES: list[SeedStore] = [
    {"name": "Grove Coffee", "category": "coffee", "zone": "ZONE_A", "latitude": 40.7195, "longitude": -74.042},
    {"name": "Local Grocery", "category": "grocery", "zone": "ZONE_A", "latitude": 40.719, "longitude": -74.041},
    {"name": "Corner Liquor", "category": "liquor", "zone": "ZONE_A", "latitude": 40.7185, "longitude": -74.043},
    {
        "name": "Neighborhood Pharmacy",
        "category": "pharmacy",
        "zone": "ZONE_A",
        "latitude": 40.7188,
        "longitude": -74.0405,
    },
]


async def seed_accounts(session: AsyncSession) -> None:
    for account in DEV_ACCOUNTS:
        plan = AccountPlan(account["plan"].upper())
        with session.no_autoflush:
            existing = await session.execute(select(Account).where(Account.phone == account["phone"]))
        record = existing.scalar_one_or_none()

        if record:
            record.name = account["name"]
            record.plan = plan
        else:
            session.add(Account(name=account["name"], phone=account["phone"], plan=plan))
    await session.commit()


async def seed_stores(session: AsyncSession) -> None:
    for store in DEV_STORES:
        with session.no_autoflush:
            existing = await session.execute(select(Store).where(Store.name == store["name"]))
        if existing.scalar_one_or_none():
            continue
        session.add(Store(**store))
    await session.commit()


async def main() -> None:
    engine = create_async_engine(settings.database_url, future=True)
    session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        async with session_factory() as session:
            await seed_accounts(session)
            await seed_stores(session)
        print("Development accounts and stores ready ✅")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
