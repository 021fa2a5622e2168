"""Provisional Loops awarded at check-in and their terminal transitions.

A grant leaves ``pending`` exactly once. Both exits, unlock and expiry, are
conditional updates keyed on ``status = pending``, so whichever commits first
wins and the other affects zero rows.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_FLOOR, Decimal
from typing import Optional

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from citycircle_api.core.clock import utcnow
from citycircle_api.core.settings import settings
from citycircle_api.models.account import AccountPlan, Store
from citycircle_api.models.settlement import PendingGrant, PendingGrantStatus, SettlementTriggerType
from citycircle_api.services.rewards import loops_for_purchase

HIGH_CONFIDENCE = 0.8
MEDIUM_CONFIDENCE = 0.6

FULL_RATIO = Decimal("1")
MEDIUM_RATIO = Decimal("0.7")
LOW_RATIO = Decimal("0.3")


def confidence_ratio(civ_score: float) -> Decimal:
    """Share of the original grant kept for a CIV score."""

    if civ_score >= HIGH_CONFIDENCE:
        return FULL_RATIO
    if civ_score >= MEDIUM_CONFIDENCE:
        return MEDIUM_RATIO
    return LOW_RATIO


def adjusted_loops(loops_original: int, ratio: Decimal) -> int:
    return int((Decimal(loops_original) * ratio).to_integral_value(rounding=ROUND_FLOOR))


@dataclass
class OutstandingGrant:
    grant: PendingGrant
    store_name: str
    store_category: Optional[str]


class PendingGrantLedger:
    """Creates, adjusts and finalizes pending grants."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def create(
        self,
        account_id: int,
        store_id: int,
        session_id: Optional[int],
        estimated_amount_cents: int,
        plan: AccountPlan | str | None,
        total_loops_earned: int,
        *,
        now: datetime | None = None,
    ) -> PendingGrant:
        now = now or utcnow()
        loops = loops_for_purchase(estimated_amount_cents, plan, total_loops_earned)
        grant = PendingGrant(
            account_id=account_id,
            store_id=store_id,
            session_id=session_id,
            loops_original=loops,
            loops_pending=loops,
            civ_score=settings.civ_baseline,
            status=PendingGrantStatus.PENDING,
            created_at=now,
            expires_at=now + timedelta(days=settings.pending_grant_ttl_days),
        )
        self._db.add(grant)
        await self._db.flush()
        logger.info(
            "Created pending grant",
            grant_id=grant.id,
            account_id=account_id,
            store_id=store_id,
            session_id=session_id,
            loops=loops,
            estimated_amount_cents=estimated_amount_cents,
        )
        return grant

    async def get_for_session(self, session_id: int) -> PendingGrant | None:
        result = await self._db.execute(select(PendingGrant).where(PendingGrant.session_id == session_id))
        return result.scalar_one_or_none()

    async def apply_civ_adjustment(
        self,
        session_id: int,
        civ_score: float,
        *,
        has_evidence: bool = True,
        now: datetime | None = None,
    ) -> PendingGrant | None:
        """Rescale the session's pending grant by its confidence band, at most once.

        A trail without any samples carries no evidence either way and keeps
        the medium band.
        """

        grant = await self.get_for_session(session_id)
        if grant is None or grant.status != PendingGrantStatus.PENDING:
            return None

        ratio = confidence_ratio(civ_score) if has_evidence else MEDIUM_RATIO
        loops = adjusted_loops(grant.loops_original, ratio)
        stmt = (
            update(PendingGrant)
            .where(
                PendingGrant.id == grant.id,
                PendingGrant.status == PendingGrantStatus.PENDING,
                PendingGrant.civ_adjusted_at.is_(None),
            )
            .values(loops_pending=loops, civ_score=civ_score, civ_adjusted_at=now or utcnow())
            .execution_options(synchronize_session="fetch")
        )
        result = await self._db.execute(stmt)
        await self._db.refresh(grant)
        if result.rowcount != 1:
            logger.info("Skipped CIV adjustment for finalized grant", grant_id=grant.id, session_id=session_id)
            return grant

        logger.info(
            "Applied CIV adjustment",
            grant_id=grant.id,
            session_id=session_id,
            civ_score=civ_score,
            ratio=str(ratio),
            loops_original=grant.loops_original,
            loops_pending=loops,
        )
        return grant

    async def mark_unlocked(
        self,
        grant_id: int,
        trigger_type: SettlementTriggerType,
        now: datetime | None = None,
    ) -> bool:
        """Claim the grant for unlocking; ``True`` only for the single winner."""

        now = now or utcnow()
        stmt = (
            update(PendingGrant)
            .where(
                PendingGrant.id == grant_id,
                PendingGrant.status == PendingGrantStatus.PENDING,
                PendingGrant.expires_at > now,
            )
            .values(status=PendingGrantStatus.UNLOCKED, unlock_trigger=trigger_type, unlocked_at=now)
            .execution_options(synchronize_session="fetch")
        )
        result = await self._db.execute(stmt)
        return result.rowcount == 1

    async def expire_due(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        stmt = (
            update(PendingGrant)
            .where(PendingGrant.status == PendingGrantStatus.PENDING, PendingGrant.expires_at <= now)
            .values(status=PendingGrantStatus.EXPIRED, expired_at=now)
            .execution_options(synchronize_session="fetch")
        )
        result = await self._db.execute(stmt)
        count = int(result.rowcount or 0)
        if count:
            logger.info("Expired pending grants", count=count)
        return count

    async def list_pending_for_pair(
        self, account_id: int, store_id: int, now: datetime | None = None
    ) -> list[PendingGrant]:
        now = now or utcnow()
        stmt = (
            select(PendingGrant)
            .where(
                PendingGrant.account_id == account_id,
                PendingGrant.store_id == store_id,
                PendingGrant.status == PendingGrantStatus.PENDING,
                PendingGrant.expires_at > now,
            )
            .order_by(PendingGrant.created_at.asc(), PendingGrant.id.asc())
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def list_outstanding(self, account_id: int, now: datetime | None = None) -> list[OutstandingGrant]:
        now = now or utcnow()
        stmt = (
            select(PendingGrant, Store.name, Store.category)
            .join(Store, Store.id == PendingGrant.store_id)
            .where(
                PendingGrant.account_id == account_id,
                PendingGrant.status == PendingGrantStatus.PENDING,
                PendingGrant.expires_at > now,
            )
            .order_by(PendingGrant.created_at.desc(), PendingGrant.id.desc())
        )
        result = await self._db.execute(stmt)
        return [
            OutstandingGrant(grant=grant, store_name=name, store_category=category)
            for grant, name, category in result.all()
        ]

    async def outstanding_stores(self, account_id: int, now: datetime | None = None) -> list[int]:
        now = now or utcnow()
        stmt = (
            select(PendingGrant.store_id)
            .where(
                PendingGrant.account_id == account_id,
                PendingGrant.status == PendingGrantStatus.PENDING,
                PendingGrant.expires_at > now,
            )
            .distinct()
            .order_by(PendingGrant.store_id)
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def outstanding_pairs(self, now: datetime | None = None) -> list[tuple[int, int]]:
        now = now or utcnow()
        stmt = (
            select(PendingGrant.account_id, PendingGrant.store_id)
            .where(PendingGrant.status == PendingGrantStatus.PENDING, PendingGrant.expires_at > now)
            .distinct()
            .order_by(PendingGrant.account_id, PendingGrant.store_id)
        )
        result = await self._db.execute(stmt)
        return [(account_id, store_id) for account_id, store_id in result.all()]


__all__ = [
    "OutstandingGrant",
    "PendingGrantLedger",
    "adjusted_loops",
    "confidence_ratio",
]
