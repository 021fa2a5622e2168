"""Check-in sessions and the location trail collected while they are active."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import Column, DateTime, Enum as SqlEnum, Float, ForeignKey, Index, Integer, func, text

from citycircle_api.core.clock import utcnow
from citycircle_api.db.base import Base


class CheckInSessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"


class CheckInSession(Base):
    """One (account, store, time-window) presence record."""

    __tablename__ = "check_in_sessions"
    __table_args__ = (
        Index("ix_check_in_sessions_account_store_status", "account_id", "store_id", "status"),
        Index("ix_check_in_sessions_store_status_expiry", "store_id", "status", "expires_at"),
        # At most one active session per (account, store).
        Index(
            "uq_check_in_sessions_active_pair",
            "account_id",
            "store_id",
            unique=True,
            sqlite_where=text("status = 'ACTIVE'"),
            postgresql_where=text("status = 'ACTIVE'"),
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    store_id = Column(Integer, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False)
    status = Column(
        SqlEnum(CheckInSessionStatus, name="check_in_session_status"),
        nullable=False,
        default=CheckInSessionStatus.ACTIVE,
        server_default=CheckInSessionStatus.ACTIVE.name,
    )
    checked_in_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)


class LocationSample(Base):
    """Append-only location fix; arrival order is the primary key order."""

    __tablename__ = "location_samples"
    __table_args__ = (
        Index("ix_location_samples_session", "session_id", "id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey("check_in_sessions.id", ondelete="CASCADE"), nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    accuracy = Column(Float, nullable=True)
    recorded_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
