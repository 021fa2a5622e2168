from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from citycircle_api.core.clock import utcnow
from citycircle_api.models.account import Account, Store
from citycircle_api.models.gift_card import (
    GiftCard,
    GiftCardStatus,
    GiftCardTransaction,
    GiftCardTransactionType,
    GiftCardType,
)
from citycircle_api.models.ledger import LedgerChangeType, LoopsLedgerEntry
from citycircle_api.services.errors import (
    ExpiredError,
    InsufficientBalanceError,
    InvalidInputError,
    NotFoundError,
)
from citycircle_api.services.gift_cards import (
    GiftCardService,
    days_remaining,
    generate_code,
    parse_gift_card_qr,
)
from citycircle_api.services.ledger import LedgerService


async def _seed(session, *, balance: int = 2500):
    account = Account(name="Gift QA", phone="5557000001")
    store = Store(name="Grove Coffee", category="coffee")
    other_store = Store(name="Local Grocery", category="grocery")
    session.add_all([account, store, other_store])
    await session.flush()
    if balance:
        await LedgerService(session).credit(account.id, balance, "seed", bump_lifetime_total=True)
    await session.commit()
    return account.id, store.id, other_store.id


async def _transactions(session, card_id: int) -> list[GiftCardTransaction]:
    result = await session.execute(
        select(GiftCardTransaction)
        .where(GiftCardTransaction.gift_card_id == card_id)
        .order_by(GiftCardTransaction.id)
    )
    return list(result.scalars().all())


def test_code_and_qr_helpers() -> None:
    code = generate_code()
    assert code.startswith("GC-")
    assert len(code) == 11
    assert parse_gift_card_qr(f"GIFT-CARD:{code}") == code
    assert parse_gift_card_qr(f"  {code} ") == code
    with pytest.raises(InvalidInputError):
        parse_gift_card_qr("GIFT-CARD:")


@pytest.mark.asyncio
async def test_create_converts_loops_into_card_value(session_factory) -> None:
    async with session_factory() as session:
        account_id, _, _ = await _seed(session)
        result = await GiftCardService(session).create(account_id, 1000)

        card = result.card
        assert card.original_value == Decimal("10.00")
        assert card.current_balance == Decimal("10.00")
        assert card.loops_used == 1000
        assert card.status == GiftCardStatus.ACTIVE
        assert card.card_type == GiftCardType.DIGITAL
        assert card.issued_at is not None
        assert result.new_balance == 1500
        assert days_remaining(card) == 90

        redeems = (
            await session.execute(
                select(LoopsLedgerEntry).where(LoopsLedgerEntry.change_type == LedgerChangeType.REDEEM)
            )
        ).scalars().all()
        assert len(redeems) == 1
        assert redeems[0].amount == -1000
        assert redeems[0].meta == f"gift_card:{card.id}:{card.code}"

        rows = await _transactions(session, card.id)
        assert [row.transaction_type for row in rows] == [GiftCardTransactionType.CREATE]
        assert rows[0].loops_used == 1000


@pytest.mark.asyncio
async def test_create_rejections_leave_no_card(session_factory) -> None:
    async with session_factory() as session:
        account_id, _, _ = await _seed(session, balance=500)
        service = GiftCardService(session)

        with pytest.raises(InvalidInputError) as excinfo:
            await service.create(account_id, 999)
        assert str(excinfo.value) == "Minimum 1000 Loops required to create a gift card"
        with pytest.raises(InvalidInputError):
            await service.create(account_id, 1000, card_type="plastic")
        with pytest.raises(NotFoundError):
            await service.create(account_id, 1000, store_id=999)
        with pytest.raises(InsufficientBalanceError):
            await service.create(account_id, 1000)

        cards = (await session.execute(select(GiftCard))).scalars().all()
        assert cards == []
        assert await LedgerService(session).balance(account_id) == 500


@pytest.mark.asyncio
async def test_eligibility_reports_shortfall(session_factory) -> None:
    async with session_factory() as session:
        account_id, _, _ = await _seed(session, balance=400)
        eligibility = await GiftCardService(session).eligibility(account_id)

        assert eligibility.is_eligible is False
        assert eligibility.points_needed == 600
        assert eligibility.minimum_required == 1000
        assert eligibility.exchange_rate == 100


@pytest.mark.asyncio
async def test_use_applies_partial_then_full_balance(session_factory) -> None:
    async with session_factory() as session:
        account_id, store_id, _ = await _seed(session)
        service = GiftCardService(session)
        card_id = (await service.create(account_id, 1000)).card.id

        partial = await service.use(card_id, store_id, Decimal("4.50"))
        assert partial.discount_applied == Decimal("4.50")
        assert partial.remaining_purchase == Decimal("0.00")
        assert partial.card.current_balance == Decimal("5.50")
        assert partial.card.status == GiftCardStatus.ACTIVE

        capped = await service.use(card_id, store_id, Decimal("20.00"), amount_to_use=Decimal("2.00"))
        assert capped.discount_applied == Decimal("2.00")
        assert capped.remaining_purchase == Decimal("18.00")

        final = await service.use(card_id, store_id, Decimal("20.00"))
        assert final.discount_applied == Decimal("3.50")
        assert final.remaining_purchase == Decimal("16.50")
        assert final.card.current_balance == Decimal("0.00")
        assert final.card.status == GiftCardStatus.USED
        assert final.card.used_at is not None

        with pytest.raises(InvalidInputError):
            await service.use(card_id, store_id, Decimal("1.00"))

        usages = [row for row in await _transactions(session, card_id) if row.transaction_type == GiftCardTransactionType.USAGE]
        assert [row.amount for row in usages] == [Decimal("-4.50"), Decimal("-2.00"), Decimal("-3.50")]


@pytest.mark.asyncio
async def test_use_validates_amounts_and_store_lock(session_factory) -> None:
    async with session_factory() as session:
        account_id, store_id, other_store_id = await _seed(session)
        service = GiftCardService(session)
        card_id = (await service.create(account_id, 1000, store_id=store_id)).card.id

        with pytest.raises(InvalidInputError):
            await service.use(card_id, store_id, Decimal("0"))
        with pytest.raises(InvalidInputError):
            await service.use(card_id, store_id, "abc")
        with pytest.raises(InvalidInputError):
            await service.use(card_id, other_store_id, Decimal("5.00"))
        with pytest.raises(NotFoundError):
            await service.use(999, store_id, Decimal("5.00"))


@pytest.mark.asyncio
async def test_expired_card_is_marked_and_rejected(session_factory) -> None:
    async with session_factory() as session:
        account_id, store_id, _ = await _seed(session)
        service = GiftCardService(session)
        card = (await service.create(account_id, 1000, now=utcnow() - timedelta(days=91))).card
        card_id = card.id
        code = card.code

        with pytest.raises(ExpiredError):
            await service.use(card_id, store_id, Decimal("5.00"))

        refreshed = await session.get(GiftCard, card_id)
        await session.refresh(refreshed)
        assert refreshed.status == GiftCardStatus.EXPIRED

        scan = await service.scan(code, store_id)
        assert scan.valid is False
        assert scan.reason == "Gift card status: expired"

        expired = await service.list_for_account(account_id, status="expired")
        assert [item.id for item in expired] == [card_id]
        assert await service.list_for_account(account_id) == []


@pytest.mark.asyncio
async def test_listing_applies_lazy_expiry(session_factory) -> None:
    async with session_factory() as session:
        account_id, _, _ = await _seed(session)
        service = GiftCardService(session)
        await service.create(account_id, 1000, now=utcnow() - timedelta(days=100))
        fresh = (await service.create(account_id, 1000)).card

        active = await service.list_for_account(account_id)
        assert [card.id for card in active] == [fresh.id]

        with pytest.raises(InvalidInputError):
            await service.list_for_account(account_id, status="lost")


@pytest.mark.asyncio
async def test_top_up_adds_value_and_restarts_validity(session_factory) -> None:
    async with session_factory() as session:
        account_id, _, _ = await _seed(session)
        service = GiftCardService(session)
        card_id = (await service.create(account_id, 1000, now=utcnow() - timedelta(days=30))).card.id

        result = await service.top_up(card_id, account_id, Decimal("5.25"))

        assert result.loops_used == 525
        assert result.new_account_balance == 2500 - 1000 - 525
        assert result.card.current_balance == Decimal("15.25")
        assert days_remaining(result.card) == 90

        detail = await service.get_for_account(card_id, account_id)
        assert {row.transaction_type for row in detail.transactions} == {
            GiftCardTransactionType.CREATE,
            GiftCardTransactionType.TOPUP,
        }

        with pytest.raises(InvalidInputError):
            await service.top_up(card_id, account_id, Decimal("5.00"), payment_method="card")
        with pytest.raises(InvalidInputError):
            await service.top_up(card_id, account_id, Decimal("-1"))
        with pytest.raises(InsufficientBalanceError):
            await service.top_up(card_id, account_id, Decimal("100.00"))
        with pytest.raises(NotFoundError):
            await service.top_up(card_id, account_id + 1000, Decimal("1.00"))

        balance, ledger_sum = await LedgerService(session).reconcile(account_id)
        assert balance == ledger_sum == 975


@pytest.mark.asyncio
async def test_physical_card_must_be_issued_before_use(session_factory) -> None:
    async with session_factory() as session:
        account_id, store_id, other_store_id = await _seed(session)
        service = GiftCardService(session)
        card = (await service.create(account_id, 1000, store_id=store_id, card_type="physical")).card
        card_id = card.id
        assert card.issued_at is None

        scan = await service.scan(f"GIFT-CARD:{card.code}", store_id)
        assert scan.valid is False
        assert scan.reason == "Physical gift card has not been issued yet"
        with pytest.raises(InvalidInputError):
            await service.use(card_id, store_id, Decimal("5.00"))

        pending = await service.pending_physical(store_id)
        assert [item.card.id for item in pending] == [card_id]
        assert pending[0].customer_phone == "5557000001"
        assert await service.pending_physical(other_store_id) == []

        with pytest.raises(NotFoundError):
            await service.issue(card_id, other_store_id)
        issued = await service.issue(card_id, store_id)
        assert issued.issued_at is not None
        assert issued.issued_by_store_id == store_id
        assert issued.current_balance == Decimal("10.00")
        with pytest.raises(NotFoundError):
            await service.issue(card_id, store_id)

        scan = await service.scan(card.code, store_id)
        assert scan.valid is True
        assert scan.customer_name == "Gift QA"

        elsewhere = await service.scan(card.code, other_store_id)
        assert elsewhere.valid is False
        assert elsewhere.reason == "This gift card is only valid at a different store"

        usage = await service.use(card_id, store_id, Decimal("12.00"))
        assert usage.discount_applied == Decimal("10.00")
        assert usage.card.status == GiftCardStatus.USED


@pytest.mark.asyncio
async def test_lapsed_physical_card_is_not_issued(session_factory) -> None:
    async with session_factory() as session:
        account_id, store_id, _ = await _seed(session)
        service = GiftCardService(session)
        card_id = (
            await service.create(
                account_id, 1000, store_id=store_id, card_type="physical", now=utcnow() - timedelta(days=91)
            )
        ).card.id

        with pytest.raises(ExpiredError):
            await service.issue(card_id, store_id)

        card = await session.get(GiftCard, card_id)
        await session.refresh(card)
        assert card.status == GiftCardStatus.EXPIRED
        assert card.issued_at is None
        kinds = [tx.transaction_type for tx in await _transactions(session, card_id)]
        assert GiftCardTransactionType.ISSUE not in kinds


@pytest.mark.asyncio
async def test_get_for_account_hides_other_accounts_cards(session_factory) -> None:
    async with session_factory() as session:
        account_id, _, _ = await _seed(session)
        stranger = Account(name="Stranger", phone="5557000002")
        session.add(stranger)
        await session.commit()
        stranger_id = stranger.id
        service = GiftCardService(session)
        card_id = (await service.create(account_id, 1000)).card.id

        with pytest.raises(NotFoundError):
            await service.get_for_account(card_id, stranger_id)
        with pytest.raises(NotFoundError):
            await service.scan("GC-NOPE0000", 1)
