import pytest

from citycircle_api.models.account import Account, AccountPlan, Store
from citycircle_api.services.accounts import (
    AccountDirectory,
    nearby_stores,
    parse_customer_qr,
    scan_customer,
)
from citycircle_api.services.errors import InvalidInputError, NotFoundError


def test_parse_customer_qr_accepts_user_payloads() -> None:
    assert parse_customer_qr("USER:5550000001") == "5550000001"
    assert parse_customer_qr(" USER:5550000001:1700000000 ") == "5550000001"
    for garbled in ("", "USER:", "GIFT-CARD:GC-ABCDEFGH", "5550000001"):
        with pytest.raises(InvalidInputError):
            parse_customer_qr(garbled)


@pytest.mark.asyncio
async def test_scan_customer_and_plan_summary(session_factory) -> None:
    async with session_factory() as session:
        account = Account(name="Lookup QA", phone="5559300001", plan=AccountPlan.BASIC, total_loops_earned=1200)
        session.add(account)
        await session.commit()

        resolved = await scan_customer(session, "USER:5559300001")
        assert resolved.id == account.id
        with pytest.raises(NotFoundError):
            await scan_customer(session, "USER:5559300999")

        summary = await AccountDirectory(session).describe_plan_tier(account.id)
        assert summary.tier.name == "PLATINUM"
        with pytest.raises(NotFoundError):
            await AccountDirectory(session).require_store(42)


@pytest.mark.asyncio
async def test_nearby_stores_filters_and_sorts(session_factory) -> None:
    async with session_factory() as session:
        far = Store(name="Far", latitude=40.7300, longitude=-74.0060)
        near = Store(name="Near", latitude=40.7130, longitude=-74.0060)
        unmapped = Store(name="Unmapped")
        session.add_all([far, near, unmapped])
        await session.commit()

        default_radius = await nearby_stores(session, 40.7128, -74.0060)
        assert [item.store.name for item in default_radius] == ["Near"]

        wide = await nearby_stores(session, 40.7128, -74.0060, 5)
        assert [item.store.name for item in wide] == ["Near", "Far"]
        assert wide[0].distance_miles < wide[1].distance_miles

        with pytest.raises(InvalidInputError):
            await nearby_stores(session, float("nan"), -74.0060)
        with pytest.raises(InvalidInputError):
            await nearby_stores(session, 40.7128, -74.0060, -1)
