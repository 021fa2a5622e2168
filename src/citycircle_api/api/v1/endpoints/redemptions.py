from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from citycircle_api.api.dependencies.session import require_account
from citycircle_api.db.session import get_session, get_session_factory
from citycircle_api.models.account import Account
from citycircle_api.services.ledger import LedgerService
from citycircle_api.services.settlement import run_settlement_check


router = APIRouter(prefix="/redemptions", tags=["redemptions"])


class RedemptionRequest(BaseModel):
    amount: int = Field(..., gt=0, description="Loops to spend")
    storeId: Optional[int] = Field(None, gt=0)
    description: Optional[str] = Field(None, max_length=200)


class RedemptionResponse(BaseModel):
    ledgerEntryId: int
    amount: int
    storeId: Optional[int]
    newBalance: int


@router.post("", response_model=RedemptionResponse, status_code=status.HTTP_201_CREATED)
async def redeem_loops(
    payload: RedemptionRequest,
    background_tasks: BackgroundTasks,
    account: Account = Depends(require_account),
    db: AsyncSession = Depends(get_session),
    session_factory=Depends(get_session_factory),
) -> RedemptionResponse:
    result = await LedgerService(db).redeem(
        account.id,
        payload.amount,
        store_id=payload.storeId,
        description=payload.description,
    )
    if payload.storeId is not None:
        background_tasks.add_task(
            run_settlement_check,
            account.id,
            payload.storeId,
            session_factory=session_factory,
        )
    return RedemptionResponse(
        ledgerEntryId=result.entry.id,
        amount=payload.amount,
        storeId=payload.storeId,
        newBalance=result.new_balance,
    )
