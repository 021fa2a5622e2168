"""Loops ledger and confirmed point-of-sale transactions."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import Column, DateTime, Enum as SqlEnum, ForeignKey, Index, Integer, String, func

from citycircle_api.core.clock import utcnow
from citycircle_api.db.base import Base


class LedgerChangeType(str, Enum):
    """EARN rows are positive, REDEEM rows are stored negative."""

    EARN = "EARN"
    REDEEM = "REDEEM"


class LoopsLedgerEntry(Base):
    """Immutable balance movement. The account balance is a projection of these rows."""

    __tablename__ = "loops_ledger"
    __table_args__ = (
        Index("ix_loops_ledger_account_type_created", "account_id", "change_type", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    change_type = Column(SqlEnum(LedgerChangeType, name="loops_ledger_change_type"), nullable=False)
    amount = Column(Integer, nullable=False)
    meta = Column(String, nullable=True)
    store_id = Column(Integer, ForeignKey("stores.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


class PurchaseTransaction(Base):
    """Sale confirmed by a store at the point of sale."""

    __tablename__ = "transactions"
    __table_args__ = (
        Index("ix_transactions_account_store_created", "account_id", "store_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    store_id = Column(Integer, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False)
    amount_cents = Column(Integer, nullable=False)
    loops_earned = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
