"""Account and store records shared with the identity subsystem."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)

from citycircle_api.core.clock import utcnow
from citycircle_api.db.base import Base


class AccountPlan(str, Enum):
    """Subscription plans; each carries its own earning multiplier."""

    STARTER = "STARTER"
    BASIC = "BASIC"
    PLUS = "PLUS"
    PREMIUM = "PREMIUM"


class Account(Base):
    """Customer account. Balance columns are written only by the ledger service."""

    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("loops_balance >= 0", name="ck_accounts_balance_non_negative"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    phone = Column(String(32), nullable=False, unique=True, index=True)
    email = Column(String, nullable=True)
    plan = Column(
        SqlEnum(AccountPlan, name="account_plan"),
        nullable=False,
        default=AccountPlan.STARTER,
        server_default=AccountPlan.STARTER.value,
    )
    loops_balance = Column(Integer, nullable=False, default=0, server_default="0")
    total_loops_earned = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


class Store(Base):
    """Participating store. Coordinates are optional until the store sets a location."""

    __tablename__ = "stores"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    category = Column(String, nullable=True, index=True)
    zone = Column(String, nullable=True)
    phone = Column(String(32), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


class StoreBlacklistEntry(Base):
    """Store-level ban preventing an account from checking in."""

    __tablename__ = "store_customer_blacklist"
    __table_args__ = (
        UniqueConstraint("store_id", "account_id", name="uq_store_customer_blacklist_pair"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    store_id = Column(Integer, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False)
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
