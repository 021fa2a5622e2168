"""Balance movements for Loops accounts.

Every change to ``Account.loops_balance`` goes through :class:`LedgerService`
as one conditional ``UPDATE`` plus one ledger insert flushed in the caller's
transaction, so the balance always equals the sum of the account's ledger
rows and never drops below zero even with concurrent debits.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from citycircle_api.models.account import Account, Store
from citycircle_api.models.ledger import LedgerChangeType, LoopsLedgerEntry, PurchaseTransaction
from citycircle_api.services.errors import InsufficientBalanceError, InvalidInputError, NotFoundError
from citycircle_api.services.notifications import (
    REDEMPTION,
    TRANSACTION,
    EventPublisher,
    account_channel,
    get_event_publisher,
)
from citycircle_api.services.rewards import loops_for_purchase


@dataclass
class PurchaseResult:
    transaction: PurchaseTransaction
    entry: LoopsLedgerEntry
    loops_earned: int
    new_balance: int


@dataclass
class RedemptionResult:
    entry: LoopsLedgerEntry
    new_balance: int


def _require_positive_amount(amount: object) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidInputError("Amount must be a positive whole number of Loops")
    return amount


class LedgerService:
    """Single writer of account balances."""

    def __init__(self, db_session: AsyncSession, *, publisher: EventPublisher | None = None) -> None:
        self._db = db_session
        self._publisher = publisher or get_event_publisher()

    async def credit(
        self,
        account_id: int,
        amount: int,
        meta: str,
        *,
        bump_lifetime_total: bool,
        store_id: Optional[int] = None,
    ) -> LoopsLedgerEntry:
        amount = _require_positive_amount(amount)
        values: dict[str, object] = {"loops_balance": Account.loops_balance + amount}
        if bump_lifetime_total:
            values["total_loops_earned"] = Account.total_loops_earned + amount

        stmt = (
            update(Account)
            .where(Account.id == account_id)
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        result = await self._db.execute(stmt)
        if result.rowcount != 1:
            raise NotFoundError("Account not found")

        entry = LoopsLedgerEntry(
            account_id=account_id,
            change_type=LedgerChangeType.EARN,
            amount=amount,
            meta=meta,
            store_id=store_id,
        )
        self._db.add(entry)
        await self._db.flush()
        logger.info(
            "Credited Loops",
            account_id=account_id,
            amount=amount,
            store_id=store_id,
            lifetime=bump_lifetime_total,
        )
        return entry

    async def debit(
        self,
        account_id: int,
        amount: int,
        meta: str,
        *,
        store_id: Optional[int] = None,
    ) -> LoopsLedgerEntry:
        amount = _require_positive_amount(amount)
        stmt = (
            update(Account)
            .where(Account.id == account_id, Account.loops_balance >= amount)
            .values(loops_balance=Account.loops_balance - amount)
            .execution_options(synchronize_session="fetch")
        )
        result = await self._db.execute(stmt)
        if result.rowcount != 1:
            balance = await self.balance(account_id)
            logger.info("Rejected Loops debit", account_id=account_id, amount=amount, balance=balance)
            raise InsufficientBalanceError(balance=balance, requested=amount)

        entry = LoopsLedgerEntry(
            account_id=account_id,
            change_type=LedgerChangeType.REDEEM,
            amount=-amount,
            meta=meta,
            store_id=store_id,
        )
        self._db.add(entry)
        await self._db.flush()
        logger.info("Debited Loops", account_id=account_id, amount=amount, store_id=store_id)
        return entry

    async def balance(self, account_id: int) -> int:
        """Current balance; raises ``NotFoundError`` for unknown accounts."""

        value = await self._db.scalar(select(Account.loops_balance).where(Account.id == account_id))
        if value is None:
            raise NotFoundError("Account not found")
        return int(value)

    async def reconcile(self, account_id: int) -> tuple[int, int]:
        """Return ``(balance, ledger_sum)``; the two are equal for a healthy account."""

        balance = await self.balance(account_id)
        ledger_sum = await self._db.scalar(
            select(func.coalesce(func.sum(LoopsLedgerEntry.amount), 0)).where(
                LoopsLedgerEntry.account_id == account_id
            )
        )
        ledger_sum = int(ledger_sum or 0)
        if balance != ledger_sum:
            logger.warning(
                "Loops balance diverged from ledger",
                account_id=account_id,
                balance=balance,
                ledger_sum=ledger_sum,
            )
        return balance, ledger_sum

    async def list_entries(self, account_id: int, *, limit: int = 50) -> list[LoopsLedgerEntry]:
        stmt = (
            select(LoopsLedgerEntry)
            .where(LoopsLedgerEntry.account_id == account_id)
            .order_by(LoopsLedgerEntry.created_at.desc(), LoopsLedgerEntry.id.desc())
            .limit(limit)
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def post_purchase(self, store_id: int, account_id: int, amount_cents: int) -> PurchaseResult:
        """Record a sale confirmed at the point of sale and credit the earned Loops."""

        if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
            raise InvalidInputError("Purchase amount must be a positive number of cents")

        store = await self._db.get(Store, store_id)
        if store is None:
            raise NotFoundError("Store not found")
        account = await self._db.get(Account, account_id)
        if account is None:
            raise NotFoundError("Customer not found")

        loops = loops_for_purchase(amount_cents, account.plan, account.total_loops_earned)
        transaction = PurchaseTransaction(
            account_id=account_id,
            store_id=store_id,
            amount_cents=amount_cents,
            loops_earned=loops,
        )
        self._db.add(transaction)
        await self._db.flush()

        entry = await self.credit(
            account_id,
            loops,
            f"store:{store_id}",
            bump_lifetime_total=True,
            store_id=store_id,
        )
        await self._db.commit()
        new_balance = await self.balance(account_id)

        logger.info(
            "Recorded purchase",
            transaction_id=transaction.id,
            store_id=store_id,
            account_id=account_id,
            amount_cents=amount_cents,
            loops_earned=loops,
        )
        await self._publisher.publish(
            TRANSACTION,
            {
                "storeId": store_id,
                "storeName": store.name,
                "amountCents": amount_cents,
                "loopsEarned": loops,
                "newBalance": new_balance,
            },
            channel=account_channel(account_id),
        )
        return PurchaseResult(transaction=transaction, entry=entry, loops_earned=loops, new_balance=new_balance)

    async def redeem(
        self,
        account_id: int,
        amount: int,
        store_id: Optional[int] = None,
        description: Optional[str] = None,
    ) -> RedemptionResult:
        """Spend Loops directly, optionally at a store."""

        if store_id is not None:
            if await self._db.get(Store, store_id) is None:
                raise NotFoundError("Store not found")
            meta = f"store:{store_id}:{description}" if description else f"store:{store_id}"
        else:
            meta = description or "manual"

        entry = await self.debit(account_id, amount, meta, store_id=store_id)
        await self._db.commit()
        new_balance = await self.balance(account_id)

        await self._publisher.publish(
            REDEMPTION,
            {"amount": amount, "storeId": store_id, "newBalance": new_balance},
            channel=account_channel(account_id),
        )
        return RedemptionResult(entry=entry, new_balance=new_balance)


__all__ = ["LedgerService", "PurchaseResult", "RedemptionResult"]
