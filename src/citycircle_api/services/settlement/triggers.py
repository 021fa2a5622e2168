"""Detect behavioral evidence that settles pending grants.

For each pending grant of an (account, store) pair the detector looks inside
``(grant.created_at, grant.created_at + lookback]`` for, in priority order:

1. ``return_visit``: another check-in at the same store
2. ``reward_redemption``: a REDEEM ledger entry tagged with the store
3. ``another_purchase``: a confirmed transaction at the store other than the
   one the grant was created for
4. ``related_visit``: a check-in at a different store of the same category

The first match unlocks the grant. Checks run from request paths and from the
periodic sweep; unlocking is idempotent so overlapping runs are harmless.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from citycircle_api.core.clock import ensure_aware, utcnow
from citycircle_api.core.settings import settings
from citycircle_api.models.account import Store
from citycircle_api.models.checkin import CheckInSession
from citycircle_api.models.ledger import LedgerChangeType, LoopsLedgerEntry, PurchaseTransaction
from citycircle_api.models.settlement import (
    PendingGrant,
    PendingGrantStatus,
    SettlementTriggerRecord,
    SettlementTriggerType,
)
from citycircle_api.observability.settlement import get_settlement_store
from citycircle_api.services.ledger import LedgerService
from citycircle_api.services.notifications import (
    POINTS_UNLOCKED,
    EventPublisher,
    account_channel,
    get_event_publisher,
)
from citycircle_api.services.settlement.pending_grants import PendingGrantLedger


@dataclass
class SettlementOutcome:
    grant_id: int
    account_id: int
    store_id: int
    trigger: SettlementTriggerType
    loops_unlocked: int
    new_balance: int
    trigger_data: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "pendingGrantId": self.grant_id,
            "storeId": self.store_id,
            "trigger": self.trigger.value,
            "loopsUnlocked": self.loops_unlocked,
            "newBalance": self.new_balance,
        }


@dataclass
class SweepSummary:
    sessions_expired: int = 0
    grants_expired: int = 0
    pairs_checked: int = 0
    grants_unlocked: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "sessions_expired": self.sessions_expired,
            "grants_expired": self.grants_expired,
            "pairs_checked": self.pairs_checked,
            "grants_unlocked": self.grants_unlocked,
        }


def _iso(value: datetime | None) -> str | None:
    return ensure_aware(value).isoformat() if value is not None else None


class SettlementTriggerDetector:
    """Evaluates trigger rules and promotes pending grants into the balance."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        publisher: EventPublisher | None = None,
        lookback: timedelta | None = None,
    ) -> None:
        self._db = db_session
        self._publisher = publisher or get_event_publisher()
        self._grants = PendingGrantLedger(db_session)
        self._ledger = LedgerService(db_session, publisher=self._publisher)
        self._lookback = lookback or timedelta(days=settings.settlement_lookback_days)
        self._metrics = get_settlement_store()

    async def check(
        self,
        account_id: int,
        store_id: int,
        now: datetime | None = None,
    ) -> list[SettlementOutcome]:
        """Evaluate every live pending grant of the pair; failures are logged and skipped."""

        now = now or utcnow()
        grant_ids = [grant.id for grant in await self._grants.list_pending_for_pair(account_id, store_id, now)]
        outcomes: list[SettlementOutcome] = []
        for grant_id in grant_ids:
            try:
                grant = await self._db.get(PendingGrant, grant_id)
                if grant is None or grant.status != PendingGrantStatus.PENDING:
                    continue
                detected = await self.detect(grant)
                if detected is None:
                    continue
                trigger_type, trigger_data = detected
                outcome = await self.unlock(grant, trigger_type, trigger_data, now=now)
            except Exception as exc:
                await self._db.rollback()
                self._metrics.record_failure("check")
                logger.exception(
                    "Settlement check failed for pending grant",
                    grant_id=grant_id,
                    account_id=account_id,
                    store_id=store_id,
                    error=str(exc),
                )
                continue
            if outcome is not None:
                outcomes.append(outcome)
        return outcomes

    async def check_all_for_account(
        self, account_id: int, now: datetime | None = None
    ) -> list[SettlementOutcome]:
        now = now or utcnow()
        outcomes: list[SettlementOutcome] = []
        for store_id in await self._grants.outstanding_stores(account_id, now):
            outcomes.extend(await self.check(account_id, store_id, now))
        return outcomes

    async def detect(self, grant: PendingGrant) -> Optional[tuple[SettlementTriggerType, dict[str, Any]]]:
        """Return the highest-priority trigger observed for the grant, if any."""

        window_start = ensure_aware(grant.created_at)
        window_end = window_start + self._lookback

        visit_stmt = (
            select(CheckInSession.id, CheckInSession.checked_in_at)
            .where(
                CheckInSession.account_id == grant.account_id,
                CheckInSession.store_id == grant.store_id,
                CheckInSession.checked_in_at > window_start,
                CheckInSession.checked_in_at <= window_end,
            )
            .order_by(CheckInSession.checked_in_at.asc(), CheckInSession.id.asc())
            .limit(1)
        )
        if grant.session_id is not None:
            visit_stmt = visit_stmt.where(CheckInSession.id != grant.session_id)
        visit = (await self._db.execute(visit_stmt)).first()
        if visit is not None:
            return SettlementTriggerType.RETURN_VISIT, {
                "session_id": visit.id,
                "checked_in_at": _iso(visit.checked_in_at),
            }

        redemption_stmt = (
            select(LoopsLedgerEntry.id, LoopsLedgerEntry.amount, LoopsLedgerEntry.created_at)
            .where(
                LoopsLedgerEntry.account_id == grant.account_id,
                LoopsLedgerEntry.change_type == LedgerChangeType.REDEEM,
                LoopsLedgerEntry.store_id == grant.store_id,
                LoopsLedgerEntry.created_at > window_start,
                LoopsLedgerEntry.created_at <= window_end,
            )
            .order_by(LoopsLedgerEntry.created_at.asc(), LoopsLedgerEntry.id.asc())
            .limit(1)
        )
        redemption = (await self._db.execute(redemption_stmt)).first()
        if redemption is not None:
            return SettlementTriggerType.REWARD_REDEMPTION, {
                "ledger_entry_id": redemption.id,
                "amount": redemption.amount,
                "redeemed_at": _iso(redemption.created_at),
            }

        purchase_stmt = (
            select(PurchaseTransaction.id, PurchaseTransaction.amount_cents, PurchaseTransaction.created_at)
            .where(
                PurchaseTransaction.account_id == grant.account_id,
                PurchaseTransaction.store_id == grant.store_id,
                PurchaseTransaction.created_at > window_start,
                PurchaseTransaction.created_at <= window_end,
            )
            .order_by(PurchaseTransaction.created_at.asc(), PurchaseTransaction.id.asc())
            .limit(1)
        )
        if grant.transaction_id is not None:
            purchase_stmt = purchase_stmt.where(PurchaseTransaction.id != grant.transaction_id)
        purchase = (await self._db.execute(purchase_stmt)).first()
        if purchase is not None:
            return SettlementTriggerType.ANOTHER_PURCHASE, {
                "transaction_id": purchase.id,
                "amount_cents": purchase.amount_cents,
                "purchased_at": _iso(purchase.created_at),
            }

        category = await self._db.scalar(select(Store.category).where(Store.id == grant.store_id))
        if category:
            related_stmt = (
                select(CheckInSession.id, CheckInSession.store_id, CheckInSession.checked_in_at)
                .join(Store, Store.id == CheckInSession.store_id)
                .where(
                    CheckInSession.account_id == grant.account_id,
                    CheckInSession.store_id != grant.store_id,
                    Store.category == category,
                    CheckInSession.checked_in_at > window_start,
                    CheckInSession.checked_in_at <= window_end,
                )
                .order_by(CheckInSession.checked_in_at.asc(), CheckInSession.id.asc())
                .limit(1)
            )
            related = (await self._db.execute(related_stmt)).first()
            if related is not None:
                return SettlementTriggerType.RELATED_VISIT, {
                    "session_id": related.id,
                    "store_id": related.store_id,
                    "category": category,
                    "checked_in_at": _iso(related.checked_in_at),
                }

        return None

    async def unlock(
        self,
        grant: PendingGrant,
        trigger_type: SettlementTriggerType,
        trigger_data: dict[str, Any] | None = None,
        *,
        now: datetime | None = None,
    ) -> SettlementOutcome | None:
        """Promote the grant into the balance; ``None`` when another path finalized it first."""

        now = now or utcnow()
        grant_id = grant.id
        account_id = grant.account_id
        store_id = grant.store_id
        won = await self._grants.mark_unlocked(grant_id, trigger_type, now)
        if not won:
            logger.info("Pending grant already finalized", grant_id=grant_id, trigger=trigger_type.value)
            return None

        await self._db.refresh(grant)
        loops = int(grant.loops_pending or 0)
        self._db.add(
            SettlementTriggerRecord(
                pending_grant_id=grant_id,
                trigger_type=trigger_type,
                trigger_data=trigger_data or {},
                created_at=now,
            )
        )
        if loops > 0:
            meta = json.dumps(
                {
                    "source": "pending_unlock",
                    "trigger": trigger_type.value,
                    "store_id": store_id,
                    "pending_grant_id": grant_id,
                }
            )
            await self._ledger.credit(account_id, loops, meta, bump_lifetime_total=True, store_id=store_id)
        await self._db.commit()
        new_balance = await self._ledger.balance(account_id)

        self._metrics.record_unlock(trigger_type.value)
        logger.info(
            "Unlocked pending grant",
            grant_id=grant_id,
            account_id=account_id,
            store_id=store_id,
            trigger=trigger_type.value,
            loops=loops,
        )
        outcome = SettlementOutcome(
            grant_id=grant_id,
            account_id=account_id,
            store_id=store_id,
            trigger=trigger_type,
            loops_unlocked=loops,
            new_balance=new_balance,
            trigger_data=trigger_data or {},
        )
        await self._publisher.publish(
            POINTS_UNLOCKED,
            {
                "pendingGrantId": grant_id,
                "storeId": store_id,
                "loopsUnlocked": loops,
                "trigger": trigger_type.value,
                "newBalance": new_balance,
            },
            channel=account_channel(account_id),
        )
        return outcome

    async def run_sweep(self, now: datetime | None = None) -> SweepSummary:
        """Expire stale sessions and grants, then re-check every outstanding pair."""

        from citycircle_api.services.checkins import CheckInService  # avoid circular import

        now = now or utcnow()
        summary = SweepSummary()

        summary.sessions_expired = await CheckInService(self._db).expire_stale_sessions(now)
        summary.grants_expired = await self._grants.expire_due(now)
        await self._db.commit()
        self._metrics.record_expirations("sessions", summary.sessions_expired)
        self._metrics.record_expirations("grants", summary.grants_expired)

        pairs = await self._grants.outstanding_pairs(now)
        summary.pairs_checked = len(pairs)
        for account_id, store_id in pairs:
            outcomes = await self.check(account_id, store_id, now)
            summary.grants_unlocked += len(outcomes)

        logger.info("Settlement sweep finished", **summary.as_dict())
        return summary


__all__ = ["SettlementOutcome", "SettlementTriggerDetector", "SweepSummary"]
