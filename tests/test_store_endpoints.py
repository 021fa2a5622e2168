import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from citycircle_api.models.account import Account, AccountPlan, Store
from citycircle_api.models.ledger import LoopsLedgerEntry, PurchaseTransaction


async def _seed(session_factory) -> dict[str, int]:
    async with session_factory() as session:
        account = Account(name="Store QA", phone="5559000001", plan=AccountPlan.STARTER)
        coffee = Store(name="Grove Coffee", category="coffee", latitude=40.7128, longitude=-74.0060)
        grocery = Store(name="Local Grocery", category="grocery", latitude=40.7158, longitude=-74.0060)
        pharmacy = Store(name="Neighborhood Pharmacy", category="pharmacy", latitude=40.7800, longitude=-74.0060)
        unmapped = Store(name="Pop-up Stand", category="coffee")
        session.add_all([account, coffee, grocery, pharmacy, unmapped])
        await session.commit()
        return {
            "account_id": account.id,
            "coffee_id": coffee.id,
            "grocery_id": grocery.id,
            "pharmacy_id": pharmacy.id,
        }


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_store_transaction_credits_customer(app_with_db) -> None:
    app, session_factory = app_with_db
    seed = await _seed(session_factory)

    async with _client(app) as client:
        response = await client.post(
            "/api/v1/stores/transactions",
            json={"accountId": seed["account_id"], "amountCents": 2500},
            headers={"X-Session-Store": str(seed["coffee_id"])},
        )
        assert response.status_code == 201
        body = response.json()
        assert body["loopsEarned"] == 35
        assert body["newBalance"] == 35
        assert body["storeId"] == seed["coffee_id"]

        by_phone = await client.post(
            "/api/v1/stores/transactions",
            json={"customerPhone": "5559000001", "amountCents": 1000},
            headers={"X-Session-Store": str(seed["coffee_id"])},
        )
        assert by_phone.status_code == 201
        assert by_phone.json()["accountId"] == seed["account_id"]
        assert by_phone.json()["newBalance"] == 35 + by_phone.json()["loopsEarned"]

    async with session_factory() as session:
        transactions = (await session.execute(select(PurchaseTransaction))).scalars().all()
        assert [row.amount_cents for row in transactions] == [2500, 1000]
        entries = (
            await session.execute(select(LoopsLedgerEntry).order_by(LoopsLedgerEntry.id))
        ).scalars().all()
        assert entries[0].amount == 35
        assert entries[0].meta == f"store:{seed['coffee_id']}"
        account = await session.get(Account, seed["account_id"])
        assert account.loops_balance == sum(entry.amount for entry in entries)


@pytest.mark.asyncio
async def test_store_transaction_rejections(app_with_db) -> None:
    app, session_factory = app_with_db
    seed = await _seed(session_factory)
    headers = {"X-Session-Store": str(seed["coffee_id"])}

    async with _client(app) as client:
        missing = await client.post(
            "/api/v1/stores/transactions",
            json={"accountId": seed["account_id"], "amountCents": 2500},
        )
        assert missing.status_code == 401

        malformed = await client.post(
            "/api/v1/stores/transactions",
            json={"accountId": seed["account_id"], "amountCents": 2500},
            headers={"X-Session-Store": "grove"},
        )
        assert malformed.status_code == 400

        unknown_customer = await client.post(
            "/api/v1/stores/transactions",
            json={"customerPhone": "5550009999", "amountCents": 2500},
            headers=headers,
        )
        assert unknown_customer.status_code == 404

        unknown_account = await client.post(
            "/api/v1/stores/transactions",
            json={"accountId": 999, "amountCents": 2500},
            headers=headers,
        )
        assert unknown_account.status_code == 404
        assert unknown_account.json() == {"error": "not_found", "detail": "Customer not found"}

        no_customer = await client.post(
            "/api/v1/stores/transactions", json={"amountCents": 2500}, headers=headers
        )
        assert no_customer.status_code == 422

        zero = await client.post(
            "/api/v1/stores/transactions",
            json={"accountId": seed["account_id"], "amountCents": 0},
            headers=headers,
        )
        assert zero.status_code == 422

    async with session_factory() as session:
        assert (await session.execute(select(PurchaseTransaction))).scalars().all() == []


@pytest.mark.asyncio
async def test_scan_customer_resolves_qr(app_with_db) -> None:
    app, session_factory = app_with_db
    seed = await _seed(session_factory)
    headers = {"X-Session-Store": str(seed["coffee_id"])}

    async with _client(app) as client:
        found = await client.post(
            "/api/v1/stores/scan-customer", json={"qrCode": "USER:5559000001:1700000000"}, headers=headers
        )
        assert found.status_code == 200
        assert found.json() == {
            "accountId": seed["account_id"],
            "name": "Store QA",
            "phone": "5559000001",
            "plan": "STARTER",
            "tier": "BRONZE",
            "loopsBalance": 0,
        }

        garbled = await client.post("/api/v1/stores/scan-customer", json={"qrCode": "5559000001"}, headers=headers)
        assert garbled.status_code == 400
        assert garbled.json()["detail"] == "Invalid QR code format"

        unknown = await client.post(
            "/api/v1/stores/scan-customer", json={"qrCode": "USER:5550009999"}, headers=headers
        )
        assert unknown.status_code == 404


@pytest.mark.asyncio
async def test_nearby_stores_sorted_by_distance(app_with_db) -> None:
    app, session_factory = app_with_db
    seed = await _seed(session_factory)

    async with _client(app) as client:
        response = await client.get(
            "/api/v1/stores/nearby", params={"lat": 40.7128, "lng": -74.0060, "radius": 1}
        )
        assert response.status_code == 200
        stores = response.json()
        assert [store["id"] for store in stores] == [seed["coffee_id"], seed["grocery_id"]]
        assert stores[0]["distanceMiles"] == 0.0
        assert 0.2 < stores[1]["distanceMiles"] < 0.21

        wide = await client.get(
            "/api/v1/stores/nearby", params={"lat": 40.7128, "lng": -74.0060, "radius": 10}
        )
        assert [store["id"] for store in wide.json()] == [
            seed["coffee_id"],
            seed["grocery_id"],
            seed["pharmacy_id"],
        ]

        negative = await client.get(
            "/api/v1/stores/nearby", params={"lat": 40.7128, "lng": -74.0060, "radius": -1}
        )
        assert negative.status_code == 422
