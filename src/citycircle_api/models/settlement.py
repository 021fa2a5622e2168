"""Deferred verification settlement: pending grants, trigger audit rows and sweep runs."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum as SqlEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)

from citycircle_api.core.clock import utcnow
from citycircle_api.db.base import Base


class PendingGrantStatus(str, Enum):
    """Lifecycle of a provisional grant. ``unlocked`` and ``expired`` are terminal."""

    PENDING = "pending"
    UNLOCKED = "unlocked"
    EXPIRED = "expired"


class SettlementTriggerType(str, Enum):
    """Behavioral evidence accepted for promoting a pending grant, in priority order."""

    RETURN_VISIT = "return_visit"
    REWARD_REDEMPTION = "reward_redemption"
    ANOTHER_PURCHASE = "another_purchase"
    RELATED_VISIT = "related_visit"


class PendingGrant(Base):
    """Provisional Loops awarded at check-in, not yet part of the balance."""

    __tablename__ = "pending_grants"
    __table_args__ = (
        Index("ix_pending_grants_account_status_expiry", "account_id", "status", "expires_at"),
        Index("ix_pending_grants_store_status", "store_id", "status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    store_id = Column(Integer, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False)
    session_id = Column(
        Integer,
        ForeignKey("check_in_sessions.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )
    transaction_id = Column(Integer, ForeignKey("transactions.id", ondelete="SET NULL"), nullable=True)
    loops_original = Column(Integer, nullable=False)
    loops_pending = Column(Integer, nullable=False)
    civ_score = Column(Float, nullable=False, default=0.5, server_default="0.5")
    civ_adjusted_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(
        SqlEnum(PendingGrantStatus, name="pending_grant_status"),
        nullable=False,
        default=PendingGrantStatus.PENDING,
        server_default=PendingGrantStatus.PENDING.name,
    )
    unlock_trigger = Column(SqlEnum(SettlementTriggerType, name="settlement_trigger_type"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    unlocked_at = Column(DateTime(timezone=True), nullable=True)
    expired_at = Column(DateTime(timezone=True), nullable=True)


class SettlementTriggerRecord(Base):
    """Audit row written once per successful unlock."""

    __tablename__ = "settlement_triggers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    pending_grant_id = Column(Integer, ForeignKey("pending_grants.id", ondelete="CASCADE"), nullable=False, index=True)
    trigger_type = Column(SqlEnum(SettlementTriggerType, name="settlement_trigger_type"), nullable=False)
    trigger_data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


class SettlementSweepRun(Base):
    """Bookkeeping for periodic and manual settlement sweeps."""

    __tablename__ = "settlement_sweep_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    triggered_by = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False, default="running", server_default="running")
    sessions_expired = Column(Integer, nullable=False, default=0, server_default="0")
    grants_expired = Column(Integer, nullable=False, default=0, server_default="0")
    pairs_checked = Column(Integer, nullable=False, default=0, server_default="0")
    grants_unlocked = Column(Integer, nullable=False, default=0, server_default="0")
    error_message = Column(Text, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    started_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
