"""Customer check-in endpoints: open, track, complete, and pending Loops."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from citycircle_api.api.dependencies.session import require_account
from citycircle_api.core.clock import ensure_aware
from citycircle_api.db.session import get_session, get_session_factory
from citycircle_api.models.account import Account
from citycircle_api.models.settlement import PendingGrant
from citycircle_api.services.checkins import CheckInService
from citycircle_api.services.settlement import PendingGrantLedger, run_settlement_check


router = APIRouter(prefix="/checkins", tags=["checkins"])


class CheckInRequest(BaseModel):
    storeId: int = Field(..., gt=0)
    latitude: Optional[float] = Field(None, description="Optional location hint recorded as the first sample")
    longitude: Optional[float] = None


class LocationRequest(BaseModel):
    latitude: float
    longitude: float
    accuracy: Optional[float] = Field(None, description="Reported accuracy in meters")


class PendingGrantResponse(BaseModel):
    id: int
    storeId: int
    loopsOriginal: int
    loopsPending: int
    civScore: float
    status: str
    createdAt: datetime
    expiresAt: datetime


class CheckInResponse(BaseModel):
    sessionId: int
    storeId: int
    status: str
    created: bool
    checkedInAt: datetime
    expiresAt: datetime
    pendingGrant: Optional[PendingGrantResponse]


class LocationResponse(BaseModel):
    sampleId: int
    sessionId: int
    recordedAt: datetime


class CompletionResponse(BaseModel):
    sessionId: int
    status: str
    civScore: float
    sampleCount: int
    pendingGrant: Optional[PendingGrantResponse]


class PendingPointsItem(PendingGrantResponse):
    storeName: str
    storeCategory: Optional[str]


class PendingPointsResponse(BaseModel):
    pendingPoints: List[PendingPointsItem]
    totalPending: int


def _grant_payload(grant: PendingGrant | None) -> PendingGrantResponse | None:
    if grant is None:
        return None
    return PendingGrantResponse(
        id=grant.id,
        storeId=grant.store_id,
        loopsOriginal=grant.loops_original,
        loopsPending=grant.loops_pending,
        civScore=grant.civ_score,
        status=grant.status.value,
        createdAt=ensure_aware(grant.created_at),
        expiresAt=ensure_aware(grant.expires_at),
    )


@router.post("", response_model=CheckInResponse)
async def check_in(
    payload: CheckInRequest,
    response: Response,
    background_tasks: BackgroundTasks,
    account: Account = Depends(require_account),
    db: AsyncSession = Depends(get_session),
    session_factory=Depends(get_session_factory),
) -> CheckInResponse:
    result = await CheckInService(db).check_in(
        account.id,
        payload.storeId,
        latitude=payload.latitude,
        longitude=payload.longitude,
    )
    if result.created:
        response.status_code = status.HTTP_201_CREATED
        background_tasks.add_task(
            run_settlement_check,
            account.id,
            payload.storeId,
            session_factory=session_factory,
        )

    session = result.session
    return CheckInResponse(
        sessionId=session.id,
        storeId=session.store_id,
        status=session.status.value,
        created=result.created,
        checkedInAt=ensure_aware(session.checked_in_at),
        expiresAt=ensure_aware(session.expires_at),
        pendingGrant=_grant_payload(result.grant),
    )


@router.get("/pending-points", response_model=PendingPointsResponse)
async def pending_points(
    account: Account = Depends(require_account),
    db: AsyncSession = Depends(get_session),
) -> PendingPointsResponse:
    outstanding = await PendingGrantLedger(db).list_outstanding(account.id)
    items = [
        PendingPointsItem(
            **_grant_payload(item.grant).model_dump(),
            storeName=item.store_name,
            storeCategory=item.store_category,
        )
        for item in outstanding
    ]
    return PendingPointsResponse(
        pendingPoints=items,
        totalPending=sum(item.loopsPending for item in items),
    )


@router.post("/{session_id}/locations", response_model=LocationResponse, status_code=status.HTTP_201_CREATED)
async def record_location(
    session_id: int,
    payload: LocationRequest,
    account: Account = Depends(require_account),
    db: AsyncSession = Depends(get_session),
) -> LocationResponse:
    sample = await CheckInService(db).record_location(
        session_id,
        account.id,
        payload.latitude,
        payload.longitude,
        accuracy=payload.accuracy,
    )
    return LocationResponse(
        sampleId=sample.id,
        sessionId=sample.session_id,
        recordedAt=ensure_aware(sample.recorded_at),
    )


@router.post("/{session_id}/complete", response_model=CompletionResponse)
async def complete_check_in(
    session_id: int,
    account: Account = Depends(require_account),
    db: AsyncSession = Depends(get_session),
) -> CompletionResponse:
    result = await CheckInService(db).complete(session_id, account.id)
    return CompletionResponse(
        sessionId=result.session.id,
        status=result.session.status.value,
        civScore=result.civ_score,
        sampleCount=result.sample_count,
        pendingGrant=_grant_payload(result.grant),
    )
