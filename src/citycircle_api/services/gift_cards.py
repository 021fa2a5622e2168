"""Gift cards bought with Loops and redeemed at stores.

Cards are worth ``loops / exchange_rate`` dollars, valid for a fixed number of
days, and optionally locked to one store. Physical cards only become usable
once a store hands them over (``issued_at``); digital cards are issued on
creation. Expiry is applied lazily whenever a card is read or used.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Optional

from loguru import logger
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from citycircle_api.core.clock import ensure_aware, utcnow
from citycircle_api.core.settings import settings
from citycircle_api.models.account import Account, Store
from citycircle_api.models.gift_card import (
    GiftCard,
    GiftCardStatus,
    GiftCardTransaction,
    GiftCardTransactionType,
    GiftCardType,
)
from citycircle_api.services.errors import (
    ExpiredError,
    InsufficientBalanceError,
    InvalidInputError,
    NotFoundError,
)
from citycircle_api.services.ledger import LedgerService

CODE_PREFIX = "GC-"
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 8
QR_PREFIX = "GIFT-CARD:"
POINTS_PAYMENT = "points"
CENT = Decimal("0.01")


def generate_code() -> str:
    return CODE_PREFIX + "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def parse_gift_card_qr(code_or_qr: str) -> str:
    value = (code_or_qr or "").strip()
    if value.startswith(QR_PREFIX):
        value = value[len(QR_PREFIX):]
    if not value:
        raise InvalidInputError("QR code is required")
    return value


def days_remaining(card: GiftCard, now: datetime | None = None) -> int:
    now = now or utcnow()
    seconds = (ensure_aware(card.expires_at) - now).total_seconds()
    if seconds <= 0:
        return 0
    return int(-(-seconds // 86400))


def _money(value: object, *, field: str) -> Decimal:
    if isinstance(value, bool):
        raise InvalidInputError(f"{field} must be a positive amount")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidInputError(f"{field} must be a positive amount") from None
    if not amount.is_finite() or amount <= 0:
        raise InvalidInputError(f"{field} must be a positive amount")
    return amount


@dataclass
class GiftCardEligibility:
    is_eligible: bool
    current_balance: int
    minimum_required: int
    points_needed: int
    exchange_rate: int


@dataclass
class GiftCardCreation:
    card: GiftCard
    new_balance: int


@dataclass
class GiftCardDetail:
    card: GiftCard
    transactions: list[GiftCardTransaction]


@dataclass
class GiftCardTopUp:
    card: GiftCard
    loops_used: int
    new_account_balance: int


@dataclass
class GiftCardScan:
    valid: bool
    card: GiftCard
    reason: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None


@dataclass
class PendingPhysicalCard:
    card: GiftCard
    customer_name: str
    customer_phone: str


@dataclass
class GiftCardUsage:
    card: GiftCard
    discount_applied: Decimal
    remaining_purchase: Decimal


class GiftCardService:
    """Creates, tops up, issues and redeems gift cards."""

    def __init__(self, db_session: AsyncSession, *, ledger: LedgerService | None = None) -> None:
        self._db = db_session
        self._ledger = ledger or LedgerService(db_session)

    @property
    def exchange_rate(self) -> int:
        return settings.gift_card_exchange_rate

    def loops_to_value(self, loops: int) -> Decimal:
        return (Decimal(loops) / Decimal(self.exchange_rate)).quantize(CENT)

    async def create(
        self,
        account_id: int,
        loops_amount: int,
        store_id: Optional[int] = None,
        card_type: str = GiftCardType.DIGITAL.value,
        *,
        now: datetime | None = None,
    ) -> GiftCardCreation:
        try:
            resolved_type = GiftCardType(card_type)
        except ValueError:
            raise InvalidInputError("Card type must be 'digital' or 'physical'") from None
        minimum = settings.gift_card_min_loops
        if isinstance(loops_amount, bool) or not isinstance(loops_amount, int) or loops_amount < minimum:
            raise InvalidInputError(f"Minimum {minimum} Loops required to create a gift card")
        if store_id is not None and await self._db.get(Store, store_id) is None:
            raise NotFoundError("Store not found")

        now = now or utcnow()
        value = self.loops_to_value(loops_amount)
        card = GiftCard(
            code=generate_code(),
            account_id=account_id,
            store_id=store_id,
            original_value=value,
            current_balance=value,
            loops_used=loops_amount,
            status=GiftCardStatus.ACTIVE,
            card_type=resolved_type,
            issued_at=now if resolved_type == GiftCardType.DIGITAL else None,
            expires_at=now + timedelta(days=settings.gift_card_validity_days),
            created_at=now,
        )
        try:
            self._db.add(card)
            await self._db.flush()
            await self._ledger.debit(
                account_id,
                loops_amount,
                f"gift_card:{card.id}:{card.code}",
                store_id=store_id,
            )
        except (InsufficientBalanceError, NotFoundError, IntegrityError):
            await self._db.rollback()
            raise

        self._db.add(
            GiftCardTransaction(
                gift_card_id=card.id,
                transaction_type=GiftCardTransactionType.CREATE,
                amount=value,
                payment_method=POINTS_PAYMENT,
                loops_used=loops_amount,
                description=f"Gift card created with {loops_amount} Loops",
                created_at=now,
            )
        )
        await self._db.commit()
        new_balance = await self._ledger.balance(account_id)
        logger.info(
            "Created gift card",
            gift_card_id=card.id,
            account_id=account_id,
            loops=loops_amount,
            value=str(value),
            card_type=resolved_type.value,
        )
        return GiftCardCreation(card=card, new_balance=new_balance)

    async def eligibility(self, account_id: int) -> GiftCardEligibility:
        balance = await self._ledger.balance(account_id)
        minimum = settings.gift_card_min_loops
        eligible = balance >= minimum
        return GiftCardEligibility(
            is_eligible=eligible,
            current_balance=balance,
            minimum_required=minimum,
            points_needed=0 if eligible else minimum - balance,
            exchange_rate=self.exchange_rate,
        )

    async def list_for_account(
        self,
        account_id: int,
        status: Optional[str] = None,
        *,
        now: datetime | None = None,
    ) -> list[GiftCard]:
        try:
            wanted = GiftCardStatus(status) if status else GiftCardStatus.ACTIVE
        except ValueError:
            raise InvalidInputError("Unknown gift card status") from None

        await self._expire_lapsed(GiftCard.account_id == account_id, now=now)
        stmt = (
            select(GiftCard)
            .where(GiftCard.account_id == account_id, GiftCard.status == wanted)
            .order_by(GiftCard.created_at.desc(), GiftCard.id.desc())
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def get_for_account(
        self, card_id: int, account_id: int, *, now: datetime | None = None
    ) -> GiftCardDetail:
        await self._expire_lapsed(GiftCard.id == card_id, GiftCard.account_id == account_id, now=now)
        card = await self._db.scalar(
            select(GiftCard).where(GiftCard.id == card_id, GiftCard.account_id == account_id)
        )
        if card is None:
            raise NotFoundError("Gift card not found")
        result = await self._db.execute(
            select(GiftCardTransaction)
            .where(GiftCardTransaction.gift_card_id == card.id)
            .order_by(GiftCardTransaction.created_at.desc(), GiftCardTransaction.id.desc())
        )
        return GiftCardDetail(card=card, transactions=list(result.scalars().all()))

    async def top_up(
        self,
        card_id: int,
        account_id: int,
        amount: object,
        payment_method: str = POINTS_PAYMENT,
        *,
        now: datetime | None = None,
    ) -> GiftCardTopUp:
        """Add dollar value to an owned card, paid for in Loops, and restart its validity."""

        value = _money(amount, field="Top-up amount")
        if payment_method != POINTS_PAYMENT:
            raise InvalidInputError("Only points payment is supported for top-ups")
        loops_needed = int((value * self.exchange_rate).to_integral_value(rounding=ROUND_FLOOR))
        if loops_needed <= 0:
            raise InvalidInputError("Top-up amount is too small")
        value = value.quantize(CENT)

        now = now or utcnow()
        card = await self._owned_card(card_id, account_id)
        await self._ensure_usable(card, now)

        await self._ledger.debit(account_id, loops_needed, f"gift_card_topup:{card.id}")
        stmt = (
            update(GiftCard)
            .where(GiftCard.id == card.id, GiftCard.status == GiftCardStatus.ACTIVE)
            .values(
                current_balance=GiftCard.current_balance + value,
                expires_at=now + timedelta(days=settings.gift_card_validity_days),
            )
            .execution_options(synchronize_session="fetch")
        )
        result = await self._db.execute(stmt)
        if result.rowcount != 1:
            await self._db.rollback()
            raise InvalidInputError("Gift card is not active")

        self._db.add(
            GiftCardTransaction(
                gift_card_id=card.id,
                transaction_type=GiftCardTransactionType.TOPUP,
                amount=value,
                payment_method=POINTS_PAYMENT,
                loops_used=loops_needed,
                description=f"Topped up with {loops_needed} Loops",
                created_at=now,
            )
        )
        await self._db.commit()
        await self._db.refresh(card)
        new_balance = await self._ledger.balance(account_id)
        logger.info("Topped up gift card", gift_card_id=card.id, value=str(value), loops=loops_needed)
        return GiftCardTopUp(card=card, loops_used=loops_needed, new_account_balance=new_balance)

    async def scan(self, code_or_qr: str, store_id: int, *, now: datetime | None = None) -> GiftCardScan:
        """Validate a presented card for use at the store."""

        code = parse_gift_card_qr(code_or_qr)
        now = now or utcnow()
        row = (
            await self._db.execute(
                select(GiftCard, Account.name, Account.phone)
                .join(Account, Account.id == GiftCard.account_id)
                .where(GiftCard.code == code)
            )
        ).first()
        if row is None:
            raise NotFoundError("Gift card not found")
        card, customer_name, customer_phone = row

        if card.status != GiftCardStatus.ACTIVE:
            return GiftCardScan(valid=False, card=card, reason=f"Gift card status: {card.status.value}")
        if ensure_aware(card.expires_at) <= now:
            await self._mark_expired(card)
            await self._db.commit()
            await self._db.refresh(card)
            return GiftCardScan(valid=False, card=card, reason="Gift card has expired")
        if card.store_id is not None and card.store_id != store_id:
            return GiftCardScan(
                valid=False,
                card=card,
                reason="This gift card is only valid at a different store",
            )
        if card.card_type == GiftCardType.PHYSICAL and card.issued_at is None:
            return GiftCardScan(
                valid=False,
                card=card,
                reason="Physical gift card has not been issued yet",
            )
        return GiftCardScan(
            valid=True,
            card=card,
            customer_name=customer_name,
            customer_phone=customer_phone,
        )

    async def pending_physical(self, store_id: int) -> list[PendingPhysicalCard]:
        now = utcnow()
        stmt = (
            select(GiftCard, Account.name, Account.phone)
            .join(Account, Account.id == GiftCard.account_id)
            .where(
                GiftCard.card_type == GiftCardType.PHYSICAL,
                GiftCard.status == GiftCardStatus.ACTIVE,
                GiftCard.expires_at > now,
                GiftCard.issued_at.is_(None),
                or_(GiftCard.store_id == store_id, GiftCard.store_id.is_(None)),
            )
            .order_by(GiftCard.created_at.desc(), GiftCard.id.desc())
        )
        result = await self._db.execute(stmt)
        return [
            PendingPhysicalCard(card=card, customer_name=name, customer_phone=phone)
            for card, name, phone in result.all()
        ]

    async def issue(self, card_id: int, store_id: int, *, now: datetime | None = None) -> GiftCard:
        """Hand a physical card over at the counter. Balance is untouched."""

        now = now or utcnow()
        stmt = (
            update(GiftCard)
            .where(
                GiftCard.id == card_id,
                GiftCard.card_type == GiftCardType.PHYSICAL,
                GiftCard.status == GiftCardStatus.ACTIVE,
                GiftCard.issued_at.is_(None),
                GiftCard.expires_at > now,
                or_(GiftCard.store_id == store_id, GiftCard.store_id.is_(None)),
            )
            .values(issued_at=now, issued_by_store_id=store_id)
            .execution_options(synchronize_session="fetch")
        )
        result = await self._db.execute(stmt)
        if result.rowcount != 1:
            if await self._expire_lapsed(GiftCard.id == card_id, now=now):
                raise ExpiredError("Gift card has expired")
            raise NotFoundError("Physical gift card not found or already issued")

        card = await self._db.get(GiftCard, card_id)
        await self._db.refresh(card)
        self._db.add(
            GiftCardTransaction(
                gift_card_id=card_id,
                transaction_type=GiftCardTransactionType.ISSUE,
                amount=card.current_balance,
                payment_method=POINTS_PAYMENT,
                store_id=store_id,
                description="Physical gift card issued at store",
                created_at=now,
            )
        )
        await self._db.commit()
        logger.info("Issued physical gift card", gift_card_id=card_id, store_id=store_id)
        return card

    async def use(
        self,
        card_id: int,
        store_id: int,
        purchase_amount: object,
        amount_to_use: object = None,
        *,
        now: datetime | None = None,
    ) -> GiftCardUsage:
        """Apply card value against a purchase at the store."""

        purchase = _money(purchase_amount, field="Purchase amount")
        requested = _money(amount_to_use, field="Amount to use") if amount_to_use is not None else None

        now = now or utcnow()
        card = await self._db.get(GiftCard, card_id)
        if card is None:
            raise NotFoundError("Gift card not found")
        await self._db.refresh(card)
        await self._ensure_usable(card, now)
        if card.store_id is not None and card.store_id != store_id:
            raise InvalidInputError("This gift card is only valid at a different store")
        if card.card_type == GiftCardType.PHYSICAL and card.issued_at is None:
            raise InvalidInputError("Physical gift card has not been issued yet")

        balance = Decimal(card.current_balance)
        candidates = [balance, purchase]
        if requested is not None:
            candidates.append(requested)
        applied = min(candidates).quantize(CENT, rounding=ROUND_FLOOR)
        if applied <= 0:
            raise InvalidInputError("Cannot use gift card. Balance too low or purchase amount too small")

        remaining = balance - applied
        values: dict[str, object] = {"current_balance": remaining}
        if remaining <= 0:
            values.update(current_balance=Decimal("0.00"), status=GiftCardStatus.USED, used_at=now)
        stmt = (
            update(GiftCard)
            .where(
                GiftCard.id == card.id,
                GiftCard.status == GiftCardStatus.ACTIVE,
                GiftCard.current_balance == balance,
            )
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        result = await self._db.execute(stmt)
        if result.rowcount != 1:
            await self._db.rollback()
            raise InvalidInputError("Gift card changed during use; scan it again")

        self._db.add(
            GiftCardTransaction(
                gift_card_id=card.id,
                transaction_type=GiftCardTransactionType.USAGE,
                amount=-applied,
                store_id=store_id,
                description=f"Used at purchase of ${purchase.quantize(CENT)}",
                created_at=now,
            )
        )
        await self._db.commit()
        await self._db.refresh(card)
        logger.info(
            "Applied gift card",
            gift_card_id=card.id,
            store_id=store_id,
            discount=str(applied),
            remaining=str(card.current_balance),
        )
        return GiftCardUsage(card=card, discount_applied=applied, remaining_purchase=purchase - applied)

    async def _owned_card(self, card_id: int, account_id: int) -> GiftCard:
        card = await self._db.scalar(
            select(GiftCard).where(GiftCard.id == card_id, GiftCard.account_id == account_id)
        )
        if card is None:
            raise NotFoundError("Gift card not found")
        return card

    async def _ensure_usable(self, card: GiftCard, now: datetime) -> None:
        if card.status != GiftCardStatus.ACTIVE:
            raise InvalidInputError(f"Gift card is {card.status.value}")
        if ensure_aware(card.expires_at) <= now:
            await self._mark_expired(card)
            await self._db.commit()
            raise ExpiredError("Gift card has expired")

    async def _mark_expired(self, card: GiftCard) -> None:
        await self._db.execute(
            update(GiftCard)
            .where(GiftCard.id == card.id, GiftCard.status == GiftCardStatus.ACTIVE)
            .values(status=GiftCardStatus.EXPIRED)
            .execution_options(synchronize_session="fetch")
        )
        logger.info("Gift card expired", gift_card_id=card.id)

    async def _expire_lapsed(self, *criteria, now: datetime | None = None) -> int:
        now = now or utcnow()
        result = await self._db.execute(
            update(GiftCard)
            .where(GiftCard.status == GiftCardStatus.ACTIVE, GiftCard.expires_at <= now, *criteria)
            .values(status=GiftCardStatus.EXPIRED)
            .execution_options(synchronize_session="fetch")
        )
        count = int(result.rowcount or 0)
        if count:
            await self._db.commit()
            logger.info("Expired lapsed gift cards", count=count)
        return count


__all__ = [
    "GiftCardCreation",
    "GiftCardDetail",
    "GiftCardEligibility",
    "GiftCardScan",
    "GiftCardService",
    "GiftCardTopUp",
    "GiftCardUsage",
    "PendingPhysicalCard",
    "days_remaining",
    "generate_code",
    "parse_gift_card_qr",
]
