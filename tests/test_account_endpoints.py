from datetime import timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from citycircle_api.core.clock import utcnow
from citycircle_api.models.account import Account, AccountPlan, Store
from citycircle_api.models.checkin import CheckInSession, CheckInSessionStatus
from citycircle_api.models.ledger import LoopsLedgerEntry
from citycircle_api.services.ledger import LedgerService
from citycircle_api.services.settlement import PendingGrantLedger


async def _seed(session_factory, *, balance: int = 100, plan=AccountPlan.STARTER, lifetime: int = 0):
    async with session_factory() as session:
        account = Account(name="Account QA", phone="5559100001", plan=plan, total_loops_earned=lifetime)
        store = Store(name="Corner Liquor", category="liquor")
        session.add_all([account, store])
        await session.flush()
        if balance:
            await LedgerService(session).credit(account.id, balance, "seed", bump_lifetime_total=False)
        await session.commit()
        return account.id, store.id


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_plan_tier_reports_progress(app_with_db) -> None:
    app, session_factory = app_with_db
    account_id, _ = await _seed(session_factory, plan=AccountPlan.PLUS, lifetime=350)

    async with _client(app) as client:
        response = await client.get("/api/v1/accounts/me/plan-tier", headers={"X-Session-User": str(account_id)})

    assert response.status_code == 200
    body = response.json()
    assert body["plan"]["code"] == "PLUS"
    assert body["tier"]["name"] == "SILVER"
    assert body["nextTier"]["name"] == "GOLD"
    assert body["progressToNextTier"] == 50.0
    assert body["pointsNeeded"] == 150
    assert body["combinedMultiplier"] == pytest.approx(1.16)
    assert body["loopsBalance"] == 100


@pytest.mark.asyncio
async def test_redemption_spends_balance(app_with_db) -> None:
    app, session_factory = app_with_db
    account_id, store_id = await _seed(session_factory)
    headers = {"X-Session-User": str(account_id)}

    async with _client(app) as client:
        response = await client.post(
            "/api/v1/redemptions",
            json={"amount": 40, "storeId": store_id, "description": "Free coffee"},
            headers=headers,
        )
        assert response.status_code == 201
        assert response.json()["newBalance"] == 60

        ledger = await client.get("/api/v1/accounts/me/ledger", params={"limit": 1}, headers=headers)
        assert ledger.status_code == 200
        payload = ledger.json()
        assert payload["balance"] == 60
        assert len(payload["entries"]) == 1
        assert payload["entries"][0]["changeType"] == "REDEEM"
        assert payload["entries"][0]["amount"] == -40
        assert payload["entries"][0]["meta"] == f"store:{store_id}:Free coffee"


@pytest.mark.asyncio
async def test_redemption_overdraw_is_rejected(app_with_db) -> None:
    app, session_factory = app_with_db
    account_id, _ = await _seed(session_factory)

    async with _client(app) as client:
        response = await client.post(
            "/api/v1/redemptions",
            json={"amount": 150},
            headers={"X-Session-User": str(account_id)},
        )

    assert response.status_code == 400
    assert response.json() == {
        "error": "insufficient_balance",
        "detail": "Insufficient Loops. You have 100, need 150",
    }
    async with session_factory() as session:
        account = await session.get(Account, account_id)
        assert account.loops_balance == 100
        entries = (await session.execute(select(LoopsLedgerEntry))).scalars().all()
        assert len(entries) == 1


@pytest.mark.asyncio
async def test_manual_settlement_check_unlocks_once(app_with_db) -> None:
    app, session_factory = app_with_db
    account_id, store_id = await _seed(session_factory, balance=0)
    earlier = utcnow() - timedelta(hours=30)
    async with session_factory() as session:
        visits = [
            CheckInSession(
                account_id=account_id,
                store_id=store_id,
                status=CheckInSessionStatus.COMPLETED,
                checked_in_at=earlier + timedelta(hours=offset),
                expires_at=earlier + timedelta(hours=offset, minutes=30),
            )
            for offset in (0, 6)
        ]
        session.add_all(visits)
        await session.flush()
        await PendingGrantLedger(session).create(
            account_id, store_id, visits[0].id, 2500, AccountPlan.STARTER, 0, now=earlier
        )
        await session.commit()

    headers = {"X-Session-User": str(account_id)}
    async with _client(app) as client:
        first = await client.post("/api/v1/settlement/check", json={"storeId": store_id}, headers=headers)
        assert first.status_code == 200
        body = first.json()
        assert body["totalUnlocked"] == 35
        assert body["unlocked"][0]["trigger"] == "return_visit"
        assert body["unlocked"][0]["newBalance"] == 35

        second = await client.post("/api/v1/settlement/check", json={}, headers=headers)
        assert second.json() == {"unlocked": [], "totalUnlocked": 0}
