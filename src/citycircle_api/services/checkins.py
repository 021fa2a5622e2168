"""Check-in sessions: opening, location collection and completion."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from citycircle_api.core.clock import ensure_aware, utcnow
from citycircle_api.core.settings import settings
from citycircle_api.models.checkin import CheckInSession, CheckInSessionStatus, LocationSample
from citycircle_api.models.settlement import PendingGrant
from citycircle_api.services.accounts import AccountDirectory
from citycircle_api.services.civ import CivScorer
from citycircle_api.services.errors import (
    AlreadyFinalizedError,
    BlockedError,
    ExpiredError,
    InvalidInputError,
    NotFoundError,
)
from citycircle_api.services.rewards import estimate_purchase_amount
from citycircle_api.services.settlement.pending_grants import PendingGrantLedger


@dataclass
class CheckInResult:
    session: CheckInSession
    grant: Optional[PendingGrant]
    created: bool


@dataclass
class CompletionResult:
    session: CheckInSession
    civ_score: float
    sample_count: int
    grant: Optional[PendingGrant]


def _validate_coordinates(latitude: object, longitude: object) -> tuple[float, float]:
    for value in (latitude, longitude):
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            raise InvalidInputError("Latitude and longitude must be finite numbers")
    if not -90 <= latitude <= 90 or not -180 <= longitude <= 180:
        raise InvalidInputError("Latitude or longitude out of range")
    return float(latitude), float(longitude)


class CheckInService:
    """Manages presence sessions and the pending grant each one opens."""

    def __init__(self, db_session: AsyncSession, *, scorer: CivScorer | None = None) -> None:
        self._db = db_session
        self._directory = AccountDirectory(db_session)
        self._grants = PendingGrantLedger(db_session)
        self._scorer = scorer or CivScorer(db_session)

    async def check_in(
        self,
        account_id: int,
        store_id: int,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        *,
        now: datetime | None = None,
    ) -> CheckInResult:
        """Open a session at the store or return the account's live one.

        New sessions get a pending grant sized from the expected purchase. The
        caller is responsible for scheduling the follow-up settlement check.
        """

        now = now or utcnow()
        has_location = latitude is not None and longitude is not None
        if has_location:
            latitude, longitude = _validate_coordinates(latitude, longitude)

        ban = await self._directory.blacklist_entry(store_id, account_id)
        if ban is not None:
            logger.info("Rejected check-in from blacklisted account", account_id=account_id, store_id=store_id)
            raise BlockedError("You have been blocked from checking in at this store", reason=ban.reason)

        await self._directory.require_store(store_id)
        account = await self._directory.require_account(account_id)

        existing = await self._live_session(account_id, store_id, now)
        if existing is not None:
            return await self._reuse(existing, account_id)

        # Lapsed rows still marked active would collide with the new session.
        await self._expire_lapsed_pair(account_id, store_id, now)

        session = CheckInSession(
            account_id=account_id,
            store_id=store_id,
            status=CheckInSessionStatus.ACTIVE,
            checked_in_at=now,
            expires_at=now + timedelta(minutes=settings.checkin_session_ttl_minutes),
        )
        self._db.add(session)
        try:
            await self._db.flush()
        except IntegrityError:
            await self._db.rollback()
            winner = await self._live_session(account_id, store_id, now)
            if winner is None:
                raise
            logger.info(
                "Concurrent check-in lost the race; returning live session",
                session_id=winner.id,
                account_id=account_id,
                store_id=store_id,
            )
            return await self._reuse(winner, account_id)

        if has_location:
            self._db.add(
                LocationSample(session_id=session.id, latitude=latitude, longitude=longitude, recorded_at=now)
            )

        estimate = await estimate_purchase_amount(self._db, account_id, store_id)
        grant = await self._grants.create(
            account_id,
            store_id,
            session.id,
            estimate,
            account.plan,
            account.total_loops_earned,
            now=now,
        )
        await self._db.commit()

        logger.info(
            "Opened check-in session",
            session_id=session.id,
            account_id=account_id,
            store_id=store_id,
            grant_id=grant.id,
            loops_pending=grant.loops_pending,
        )
        return CheckInResult(session=session, grant=grant, created=True)

    async def record_location(
        self,
        session_id: int,
        account_id: int,
        latitude: float,
        longitude: float,
        accuracy: Optional[float] = None,
        *,
        now: datetime | None = None,
    ) -> LocationSample:
        latitude, longitude = _validate_coordinates(latitude, longitude)
        if accuracy is not None:
            if isinstance(accuracy, bool) or not isinstance(accuracy, (int, float)) or not math.isfinite(accuracy):
                raise InvalidInputError("Accuracy must be a finite number")
            if accuracy < 0:
                raise InvalidInputError("Accuracy must not be negative")

        now = now or utcnow()
        session = await self._owned_session(session_id, account_id)
        if session is None or session.status != CheckInSessionStatus.ACTIVE:
            raise NotFoundError("Active session not found")

        if ensure_aware(session.expires_at) <= now:
            await self._expire(session.id, now)
            await self._db.commit()
            raise ExpiredError("Check-in session has expired")

        sample = LocationSample(
            session_id=session.id,
            latitude=latitude,
            longitude=longitude,
            accuracy=accuracy,
            recorded_at=now,
        )
        self._db.add(sample)
        await self._db.commit()
        logger.debug("Recorded location sample", session_id=session.id, sample_id=sample.id)
        return sample

    async def complete(
        self,
        session_id: int,
        account_id: int,
        *,
        now: datetime | None = None,
    ) -> CompletionResult:
        """Score the trail, rescale the pending grant and close the session."""

        now = now or utcnow()
        session = await self._owned_session(session_id, account_id)
        if session is None:
            raise NotFoundError("Session not found")
        if session.status != CheckInSessionStatus.ACTIVE:
            raise AlreadyFinalizedError("Session is no longer active")

        assessment = await self._scorer.score(session)

        stmt = (
            update(CheckInSession)
            .where(CheckInSession.id == session.id, CheckInSession.status == CheckInSessionStatus.ACTIVE)
            .values(status=CheckInSessionStatus.COMPLETED, completed_at=now)
            .execution_options(synchronize_session="fetch")
        )
        result = await self._db.execute(stmt)
        if result.rowcount != 1:
            await self._db.rollback()
            raise AlreadyFinalizedError("Session is no longer active")

        grant = await self._grants.apply_civ_adjustment(
            session.id,
            assessment.score,
            has_evidence=assessment.sample_count > 0,
            now=now,
        )
        await self._db.commit()
        await self._db.refresh(session)

        logger.info(
            "Completed check-in session",
            session_id=session.id,
            account_id=account_id,
            civ_score=assessment.score,
            sample_count=assessment.sample_count,
            loops_pending=grant.loops_pending if grant is not None else None,
        )
        return CompletionResult(
            session=session,
            civ_score=assessment.score,
            sample_count=assessment.sample_count,
            grant=grant,
        )

    async def expire_stale_sessions(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        stmt = (
            update(CheckInSession)
            .where(CheckInSession.status == CheckInSessionStatus.ACTIVE, CheckInSession.expires_at <= now)
            .values(status=CheckInSessionStatus.EXPIRED)
            .execution_options(synchronize_session="fetch")
        )
        result = await self._db.execute(stmt)
        count = int(result.rowcount or 0)
        if count:
            logger.info("Expired stale check-in sessions", count=count)
        return count

    async def _owned_session(self, session_id: int, account_id: int) -> CheckInSession | None:
        result = await self._db.execute(
            select(CheckInSession).where(CheckInSession.id == session_id, CheckInSession.account_id == account_id)
        )
        return result.scalar_one_or_none()

    async def _live_session(self, account_id: int, store_id: int, now: datetime) -> CheckInSession | None:
        stmt = (
            select(CheckInSession)
            .where(
                CheckInSession.account_id == account_id,
                CheckInSession.store_id == store_id,
                CheckInSession.status == CheckInSessionStatus.ACTIVE,
                CheckInSession.expires_at > now,
            )
            .order_by(CheckInSession.checked_in_at.desc(), CheckInSession.id.desc())
            .limit(1)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def _reuse(self, existing: CheckInSession, account_id: int) -> CheckInResult:
        grant = await self._grants.get_for_session(existing.id)
        logger.debug("Reusing live check-in session", session_id=existing.id, account_id=account_id)
        return CheckInResult(session=existing, grant=grant, created=False)

    async def _expire_lapsed_pair(self, account_id: int, store_id: int, now: datetime) -> None:
        await self._db.execute(
            update(CheckInSession)
            .where(
                CheckInSession.account_id == account_id,
                CheckInSession.store_id == store_id,
                CheckInSession.status == CheckInSessionStatus.ACTIVE,
                CheckInSession.expires_at <= now,
            )
            .values(status=CheckInSessionStatus.EXPIRED)
            .execution_options(synchronize_session="fetch")
        )

    async def _expire(self, session_id: int, now: datetime) -> None:
        await self._db.execute(
            update(CheckInSession)
            .where(CheckInSession.id == session_id, CheckInSession.status == CheckInSessionStatus.ACTIVE)
            .values(status=CheckInSessionStatus.EXPIRED)
            .execution_options(synchronize_session="fetch")
        )
        logger.info("Expired check-in session on write", session_id=session_id, at=now.isoformat())


__all__ = ["CheckInResult", "CheckInService", "CompletionResult"]
