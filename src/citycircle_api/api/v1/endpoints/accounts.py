"""Account self-service reads: plan/tier standing and ledger history."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from citycircle_api.api.dependencies.session import require_account
from citycircle_api.core.clock import ensure_aware
from citycircle_api.db.session import get_session
from citycircle_api.models.account import Account
from citycircle_api.services.ledger import LedgerService
from citycircle_api.services.rewards import describe_plan_tier


router = APIRouter(prefix="/accounts", tags=["accounts"])


class PlanResponse(BaseModel):
    code: str
    name: str
    multiplier: float
    description: str


class TierResponse(BaseModel):
    name: str
    minimum: int
    multiplier: float
    description: str


class PlanTierResponse(BaseModel):
    plan: PlanResponse
    tier: TierResponse
    nextTier: Optional[TierResponse]
    totalEarned: int
    progressToNextTier: float
    pointsNeeded: int
    combinedMultiplier: float
    loopsBalance: int


class LedgerEntryResponse(BaseModel):
    id: int
    changeType: str
    amount: int
    meta: Optional[str]
    storeId: Optional[int]
    createdAt: datetime


class LedgerResponse(BaseModel):
    balance: int
    entries: List[LedgerEntryResponse]


def _tier_payload(tier) -> TierResponse:
    return TierResponse(
        name=tier.name,
        minimum=tier.minimum,
        multiplier=float(tier.multiplier),
        description=tier.description,
    )


@router.get("/me/plan-tier", response_model=PlanTierResponse)
async def plan_tier(account: Account = Depends(require_account)) -> PlanTierResponse:
    summary = describe_plan_tier(account.plan, account.total_loops_earned)
    return PlanTierResponse(
        plan=PlanResponse(
            code=summary.plan.value,
            name=summary.plan_details.name,
            multiplier=float(summary.plan_details.multiplier),
            description=summary.plan_details.description,
        ),
        tier=_tier_payload(summary.tier),
        nextTier=_tier_payload(summary.next_tier) if summary.next_tier else None,
        totalEarned=summary.total_earned,
        progressToNextTier=float(summary.progress),
        pointsNeeded=summary.points_needed,
        combinedMultiplier=float(summary.combined_multiplier),
        loopsBalance=account.loops_balance,
    )


@router.get("/me/ledger", response_model=LedgerResponse)
async def ledger_history(
    limit: int = Query(50, ge=1, le=200),
    account: Account = Depends(require_account),
    db: AsyncSession = Depends(get_session),
) -> LedgerResponse:
    ledger = LedgerService(db)
    entries = await ledger.list_entries(account.id, limit=limit)
    return LedgerResponse(
        balance=await ledger.balance(account.id),
        entries=[
            LedgerEntryResponse(
                id=entry.id,
                changeType=entry.change_type.value,
                amount=entry.amount,
                meta=entry.meta,
                storeId=entry.store_id,
                createdAt=ensure_aware(entry.created_at),
            )
            for entry in entries
        ],
    )
