"""Gift cards purchased with Loops and their transaction history."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    func,
)

from citycircle_api.core.clock import utcnow
from citycircle_api.db.base import Base


class GiftCardStatus(str, Enum):
    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"


class GiftCardType(str, Enum):
    DIGITAL = "digital"
    PHYSICAL = "physical"


class GiftCardTransactionType(str, Enum):
    CREATE = "create"
    TOPUP = "topup"
    USAGE = "usage"
    ISSUE = "issue"


class GiftCard(Base):
    """Redeemable dollar value carved out of an account's Loops balance."""

    __tablename__ = "gift_cards"
    __table_args__ = (
        CheckConstraint("current_balance >= 0", name="ck_gift_cards_balance_non_negative"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(16), nullable=False, unique=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    store_id = Column(Integer, ForeignKey("stores.id", ondelete="SET NULL"), nullable=True)
    original_value = Column(Numeric(12, 2), nullable=False)
    current_balance = Column(Numeric(12, 2), nullable=False)
    loops_used = Column(Integer, nullable=False)
    status = Column(
        SqlEnum(GiftCardStatus, name="gift_card_status"),
        nullable=False,
        default=GiftCardStatus.ACTIVE,
        server_default=GiftCardStatus.ACTIVE.name,
    )
    card_type = Column(
        SqlEnum(GiftCardType, name="gift_card_type"),
        nullable=False,
        default=GiftCardType.DIGITAL,
        server_default=GiftCardType.DIGITAL.name,
    )
    issued_at = Column(DateTime(timezone=True), nullable=True)
    issued_by_store_id = Column(Integer, ForeignKey("stores.id", ondelete="SET NULL"), nullable=True)
    used_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


class GiftCardTransaction(Base):
    """Immutable record of every state-affecting gift card event."""

    __tablename__ = "gift_card_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    gift_card_id = Column(Integer, ForeignKey("gift_cards.id", ondelete="CASCADE"), nullable=False, index=True)
    transaction_type = Column(
        SqlEnum(GiftCardTransactionType, name="gift_card_transaction_type"),
        nullable=False,
    )
    amount = Column(Numeric(12, 2), nullable=False)
    payment_method = Column(String(16), nullable=True)
    loops_used = Column(Integer, nullable=True)
    store_id = Column(Integer, ForeignKey("stores.id", ondelete="SET NULL"), nullable=True)
    description = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
