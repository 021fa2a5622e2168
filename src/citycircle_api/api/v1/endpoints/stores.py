"""Store terminal endpoints: confirmed sales, customer lookup and the store map."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from citycircle_api.api.dependencies.session import require_store
from citycircle_api.db.session import get_session, get_session_factory
from citycircle_api.models.account import Store
from citycircle_api.services.accounts import AccountDirectory, nearby_stores, scan_customer
from citycircle_api.services.ledger import LedgerService
from citycircle_api.services.rewards import describe_plan_tier
from citycircle_api.services.settlement import run_settlement_check


router = APIRouter(prefix="/stores", tags=["stores"])


class TransactionRequest(BaseModel):
    accountId: Optional[int] = Field(None, gt=0)
    customerPhone: Optional[str] = Field(None, description="Alternative to accountId")
    amountCents: int = Field(..., gt=0, description="Sale total in cents")

    @model_validator(mode="after")
    def _require_customer(self) -> "TransactionRequest":
        if self.accountId is None and not self.customerPhone:
            raise ValueError("accountId or customerPhone is required")
        return self


class TransactionResponse(BaseModel):
    transactionId: int
    accountId: int
    storeId: int
    amountCents: int
    loopsEarned: int
    newBalance: int


class ScanCustomerRequest(BaseModel):
    qrCode: str = Field(..., min_length=1)


class CustomerResponse(BaseModel):
    accountId: int
    name: str
    phone: str
    plan: str
    tier: str
    loopsBalance: int


class NearbyStoreResponse(BaseModel):
    id: int
    name: str
    category: Optional[str]
    zone: Optional[str]
    phone: Optional[str]
    latitude: float
    longitude: float
    distanceMiles: float


@router.post("/transactions", response_model=TransactionResponse, status_code=status.HTTP_201_CREATED)
async def record_transaction(
    payload: TransactionRequest,
    background_tasks: BackgroundTasks,
    store: Store = Depends(require_store),
    db: AsyncSession = Depends(get_session),
    session_factory=Depends(get_session_factory),
) -> TransactionResponse:
    account_id = payload.accountId
    if account_id is None:
        account = await AccountDirectory(db).get_by_phone(payload.customerPhone or "")
        if account is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Customer not found")
        account_id = account.id

    result = await LedgerService(db).post_purchase(store.id, account_id, payload.amountCents)
    background_tasks.add_task(run_settlement_check, account_id, store.id, session_factory=session_factory)
    return TransactionResponse(
        transactionId=result.transaction.id,
        accountId=account_id,
        storeId=store.id,
        amountCents=result.transaction.amount_cents,
        loopsEarned=result.loops_earned,
        newBalance=result.new_balance,
    )


@router.post("/scan-customer", response_model=CustomerResponse)
async def scan_customer_qr(
    payload: ScanCustomerRequest,
    store: Store = Depends(require_store),
    db: AsyncSession = Depends(get_session),
) -> CustomerResponse:
    account = await scan_customer(db, payload.qrCode)
    summary = describe_plan_tier(account.plan, account.total_loops_earned)
    return CustomerResponse(
        accountId=account.id,
        name=account.name,
        phone=account.phone,
        plan=summary.plan.value,
        tier=summary.tier.name,
        loopsBalance=account.loops_balance,
    )


@router.get("/nearby", response_model=List[NearbyStoreResponse])
async def list_nearby_stores(
    lat: float = Query(..., description="Caller latitude"),
    lng: float = Query(..., description="Caller longitude"),
    radius: Optional[float] = Query(None, ge=0, description="Radius in miles"),
    db: AsyncSession = Depends(get_session),
) -> List[NearbyStoreResponse]:
    matches = await nearby_stores(db, lat, lng, radius)
    return [
        NearbyStoreResponse(
            id=item.store.id,
            name=item.store.name,
            category=item.store.category,
            zone=item.store.zone,
            phone=item.store.phone,
            latitude=item.store.latitude,
            longitude=item.store.longitude,
            distanceMiles=round(item.distance_miles, 4),
        )
        for item in matches
    ]
