import json

import pytest
from sqlalchemy import func, select

from citycircle_api.models.account import Account, AccountPlan, Store
from citycircle_api.models.ledger import LedgerChangeType, LoopsLedgerEntry, PurchaseTransaction
from citycircle_api.services.errors import InsufficientBalanceError, InvalidInputError, NotFoundError
from citycircle_api.services.ledger import LedgerService
from citycircle_api.services.notifications import REDEMPTION, TRANSACTION, EventPublisher


async def _seed(session, *, plan: AccountPlan = AccountPlan.STARTER):
    account = Account(name="Ledger QA", phone="5553000001", plan=plan)
    store = Store(name="Grove Coffee", category="coffee")
    session.add_all([account, store])
    await session.commit()
    return account, store


async def _entry_count(session, account_id: int) -> int:
    return await session.scalar(
        select(func.count()).select_from(LoopsLedgerEntry).where(LoopsLedgerEntry.account_id == account_id)
    )


@pytest.mark.asyncio
async def test_purchase_credits_loops_with_store_meta(session_factory) -> None:
    publisher = EventPublisher()
    async with session_factory() as session:
        account, store = await _seed(session)
        result = await LedgerService(session, publisher=publisher).post_purchase(store.id, account.id, 2500)

        assert result.loops_earned == 35
        assert result.new_balance == 35
        assert result.entry.meta == f"store:{store.id}"
        assert result.entry.change_type == LedgerChangeType.EARN
        assert result.entry.store_id == store.id

        await session.refresh(account)
        assert account.loops_balance == 35
        assert account.total_loops_earned == 35

        transaction = await session.get(PurchaseTransaction, result.transaction.id)
        assert transaction.amount_cents == 2500
        assert transaction.loops_earned == 35

    assert [event.event for event in publisher.sent_events] == [TRANSACTION]
    event = publisher.sent_events[0]
    assert event.channel == f"user:{account.id}"
    assert event.payload["loopsEarned"] == 35
    assert event.payload["newBalance"] == 35


@pytest.mark.asyncio
async def test_purchase_rejects_bad_amounts_and_unknown_parties(session_factory) -> None:
    async with session_factory() as session:
        account, store = await _seed(session)
        service = LedgerService(session)

        for amount in (0, -100, 12.5, True):
            with pytest.raises(InvalidInputError):
                await service.post_purchase(store.id, account.id, amount)
        with pytest.raises(NotFoundError):
            await service.post_purchase(999, account.id, 1000)
        with pytest.raises(NotFoundError):
            await service.post_purchase(store.id, 999, 1000)

        assert await _entry_count(session, account.id) == 0


@pytest.mark.asyncio
async def test_overdraw_is_rejected_without_a_ledger_row(session_factory) -> None:
    async with session_factory() as session:
        account, _ = await _seed(session)
        service = LedgerService(session)
        await service.credit(account.id, 100, "seed", bump_lifetime_total=False)
        await session.commit()

        with pytest.raises(InsufficientBalanceError) as excinfo:
            await service.redeem(account.id, 150)

        assert excinfo.value.balance == 100
        assert excinfo.value.requested == 150
        assert excinfo.value.message == "Insufficient Loops. You have 100, need 150"
        assert await service.balance(account.id) == 100
        assert await _entry_count(session, account.id) == 1


@pytest.mark.asyncio
async def test_redeem_meta_variants(session_factory) -> None:
    publisher = EventPublisher()
    async with session_factory() as session:
        account, store = await _seed(session)
        service = LedgerService(session, publisher=publisher)
        await service.credit(account.id, 300, "seed", bump_lifetime_total=False)
        await session.commit()

        at_store = await service.redeem(account.id, 50, store_id=store.id, description="Free latte")
        plain_store = await service.redeem(account.id, 50, store_id=store.id)
        described = await service.redeem(account.id, 50, description="Donation")
        manual = await service.redeem(account.id, 50)

        assert at_store.entry.meta == f"store:{store.id}:Free latte"
        assert at_store.entry.store_id == store.id
        assert plain_store.entry.meta == f"store:{store.id}"
        assert described.entry.meta == "Donation"
        assert described.entry.store_id is None
        assert manual.entry.meta == "manual"
        assert manual.entry.amount == -50
        assert manual.entry.change_type == LedgerChangeType.REDEEM
        assert manual.new_balance == 100

        with pytest.raises(NotFoundError):
            await service.redeem(account.id, 10, store_id=999)

    assert [event.event for event in publisher.sent_events] == [REDEMPTION] * 4


@pytest.mark.asyncio
async def test_credit_and_debit_validate_inputs(session_factory) -> None:
    async with session_factory() as session:
        account, _ = await _seed(session)
        service = LedgerService(session)

        for amount in (0, -5, 1.5, False):
            with pytest.raises(InvalidInputError):
                await service.credit(account.id, amount, "bad", bump_lifetime_total=True)
            with pytest.raises(InvalidInputError):
                await service.debit(account.id, amount, "bad")

        with pytest.raises(NotFoundError):
            await service.credit(999, 10, "missing", bump_lifetime_total=True)
        with pytest.raises(NotFoundError):
            await service.debit(999, 10, "missing")


@pytest.mark.asyncio
async def test_lifetime_total_only_moves_on_confirmed_earnings(session_factory) -> None:
    async with session_factory() as session:
        account, _ = await _seed(session)
        service = LedgerService(session)
        await service.credit(account.id, 40, "refund", bump_lifetime_total=False)
        await service.credit(account.id, 60, json.dumps({"source": "pending_unlock"}), bump_lifetime_total=True)
        await service.debit(account.id, 30, "manual")
        await session.commit()

        await session.refresh(account)
        assert account.loops_balance == 70
        assert account.total_loops_earned == 60


@pytest.mark.asyncio
async def test_balance_equals_ledger_sum_after_mixed_operations(session_factory) -> None:
    async with session_factory() as session:
        account, store = await _seed(session, plan=AccountPlan.PLUS)
        service = LedgerService(session)

        await service.post_purchase(store.id, account.id, 2500)
        await service.post_purchase(store.id, account.id, 4999)
        await service.redeem(account.id, 20, store_id=store.id)
        with pytest.raises(InsufficientBalanceError):
            await service.redeem(account.id, 10_000)
        await service.credit(account.id, 15, "adjustment", bump_lifetime_total=False)
        await session.commit()
        await service.redeem(account.id, 5)

        balance, ledger_sum = await service.reconcile(account.id)
        assert balance == ledger_sum
        assert balance >= 0

        entries = await service.list_entries(account.id)
        assert len(entries) == 5
        assert sum(entry.amount for entry in entries) == balance
        assert all(entry.amount > 0 for entry in entries if entry.change_type == LedgerChangeType.EARN)
        assert all(entry.amount < 0 for entry in entries if entry.change_type == LedgerChangeType.REDEEM)
