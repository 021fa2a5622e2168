from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from citycircle_api.api.dependencies.session import require_account
from citycircle_api.db.session import get_session
from citycircle_api.models.account import Account
from citycircle_api.services.settlement import SettlementTriggerDetector


router = APIRouter(prefix="/settlement", tags=["settlement"])


class SettlementCheckRequest(BaseModel):
    storeId: Optional[int] = Field(None, gt=0, description="Limit the check to one store")


class UnlockedGrantResponse(BaseModel):
    pendingGrantId: int
    storeId: int
    trigger: str
    loopsUnlocked: int
    newBalance: int


class SettlementCheckResponse(BaseModel):
    unlocked: List[UnlockedGrantResponse]
    totalUnlocked: int


@router.post("/check", response_model=SettlementCheckResponse)
async def check_settlement(
    payload: SettlementCheckRequest | None = None,
    account: Account = Depends(require_account),
    db: AsyncSession = Depends(get_session),
) -> SettlementCheckResponse:
    """Run trigger detection now instead of waiting for the sweep."""

    account_id = account.id
    detector = SettlementTriggerDetector(db)
    if payload is not None and payload.storeId is not None:
        outcomes = await detector.check(account_id, payload.storeId)
    else:
        outcomes = await detector.check_all_for_account(account_id)

    unlocked = [UnlockedGrantResponse(**outcome.as_dict()) for outcome in outcomes]
    return SettlementCheckResponse(
        unlocked=unlocked,
        totalUnlocked=sum(item.loopsUnlocked for item in unlocked),
    )
