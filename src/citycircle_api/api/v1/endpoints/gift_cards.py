"""Gift card endpoints for customers and store terminals."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from citycircle_api.api.dependencies.session import require_account, require_store
from citycircle_api.core.clock import ensure_aware
from citycircle_api.db.session import get_session, get_session_factory
from citycircle_api.models.account import Account, Store
from citycircle_api.models.gift_card import GiftCard, GiftCardStatus, GiftCardTransaction
from citycircle_api.services.gift_cards import GiftCardService, days_remaining
from citycircle_api.services.settlement import run_settlement_check


router = APIRouter(tags=["gift-cards"])


class GiftCardCreateRequest(BaseModel):
    loopsAmount: int = Field(..., gt=0, description="Loops to convert into card value")
    storeId: Optional[int] = Field(None, gt=0, description="Lock the card to one store")
    cardType: Literal["digital", "physical"] = "digital"


class GiftCardResponse(BaseModel):
    id: int
    code: str
    storeId: Optional[int]
    originalValue: Decimal
    currentBalance: Decimal
    loopsUsed: int
    status: str
    cardType: str
    issuedAt: Optional[datetime]
    usedAt: Optional[datetime]
    expiresAt: datetime
    createdAt: datetime
    daysRemaining: int
    isExpired: bool


class GiftCardCreateResponse(BaseModel):
    giftCard: GiftCardResponse
    newBalance: int


class GiftCardListResponse(BaseModel):
    giftCards: List[GiftCardResponse]


class EligibilityResponse(BaseModel):
    isEligible: bool
    currentBalance: int
    minimumRequired: int
    pointsNeeded: int
    exchangeRate: int


class GiftCardTransactionResponse(BaseModel):
    id: int
    transactionType: str
    amount: Decimal
    paymentMethod: Optional[str]
    loopsUsed: Optional[int]
    storeId: Optional[int]
    description: Optional[str]
    createdAt: datetime


class GiftCardDetailResponse(BaseModel):
    giftCard: GiftCardResponse
    transactions: List[GiftCardTransactionResponse]


class TopUpRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, description="Dollar value to add")
    paymentMethod: str = "points"


class TopUpResponse(BaseModel):
    giftCard: GiftCardResponse
    loopsUsed: int
    newUserBalance: int


class ScanRequest(BaseModel):
    qrCode: str = Field(..., min_length=1)


class ScanResponse(BaseModel):
    valid: bool
    reason: Optional[str]
    giftCard: GiftCardResponse
    customerName: Optional[str]
    customerPhone: Optional[str]


class PendingPhysicalItem(GiftCardResponse):
    customerName: str
    customerPhone: str


class PendingPhysicalResponse(BaseModel):
    giftCards: List[PendingPhysicalItem]
    count: int


class UseRequest(BaseModel):
    giftCardId: int = Field(..., gt=0)
    purchaseAmount: Decimal = Field(..., gt=0)
    amountToUse: Optional[Decimal] = Field(None, gt=0)


class UseResponse(BaseModel):
    giftCard: GiftCardResponse
    discountApplied: Decimal
    remainingPurchase: Decimal


def _card_payload(card: GiftCard) -> GiftCardResponse:
    remaining = days_remaining(card)
    return GiftCardResponse(
        id=card.id,
        code=card.code,
        storeId=card.store_id,
        originalValue=card.original_value,
        currentBalance=card.current_balance,
        loopsUsed=card.loops_used,
        status=card.status.value,
        cardType=card.card_type.value,
        issuedAt=ensure_aware(card.issued_at) if card.issued_at else None,
        usedAt=ensure_aware(card.used_at) if card.used_at else None,
        expiresAt=ensure_aware(card.expires_at),
        createdAt=ensure_aware(card.created_at),
        daysRemaining=remaining,
        isExpired=card.status == GiftCardStatus.EXPIRED
        or (remaining == 0 and card.status == GiftCardStatus.ACTIVE),
    )


def _transaction_payload(row: GiftCardTransaction) -> GiftCardTransactionResponse:
    return GiftCardTransactionResponse(
        id=row.id,
        transactionType=row.transaction_type.value,
        amount=row.amount,
        paymentMethod=row.payment_method,
        loopsUsed=row.loops_used,
        storeId=row.store_id,
        description=row.description,
        createdAt=ensure_aware(row.created_at),
    )


@router.post("/gift-cards", response_model=GiftCardCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_gift_card(
    payload: GiftCardCreateRequest,
    background_tasks: BackgroundTasks,
    account: Account = Depends(require_account),
    db: AsyncSession = Depends(get_session),
    session_factory=Depends(get_session_factory),
) -> GiftCardCreateResponse:
    result = await GiftCardService(db).create(
        account.id,
        payload.loopsAmount,
        store_id=payload.storeId,
        card_type=payload.cardType,
    )
    if payload.storeId is not None:
        background_tasks.add_task(
            run_settlement_check,
            account.id,
            payload.storeId,
            session_factory=session_factory,
        )
    return GiftCardCreateResponse(giftCard=_card_payload(result.card), newBalance=result.new_balance)


@router.get("/gift-cards", response_model=GiftCardListResponse)
async def list_gift_cards(
    status_filter: Optional[str] = Query(None, alias="status"),
    account: Account = Depends(require_account),
    db: AsyncSession = Depends(get_session),
) -> GiftCardListResponse:
    cards = await GiftCardService(db).list_for_account(account.id, status=status_filter)
    return GiftCardListResponse(giftCards=[_card_payload(card) for card in cards])


@router.get("/gift-cards/eligibility", response_model=EligibilityResponse)
async def gift_card_eligibility(
    account: Account = Depends(require_account),
    db: AsyncSession = Depends(get_session),
) -> EligibilityResponse:
    result = await GiftCardService(db).eligibility(account.id)
    return EligibilityResponse(
        isEligible=result.is_eligible,
        currentBalance=result.current_balance,
        minimumRequired=result.minimum_required,
        pointsNeeded=result.points_needed,
        exchangeRate=result.exchange_rate,
    )


@router.get("/gift-cards/{card_id}", response_model=GiftCardDetailResponse)
async def get_gift_card(
    card_id: int,
    account: Account = Depends(require_account),
    db: AsyncSession = Depends(get_session),
) -> GiftCardDetailResponse:
    detail = await GiftCardService(db).get_for_account(card_id, account.id)
    return GiftCardDetailResponse(
        giftCard=_card_payload(detail.card),
        transactions=[_transaction_payload(row) for row in detail.transactions],
    )


@router.post("/gift-cards/{card_id}/top-up", response_model=TopUpResponse)
async def top_up_gift_card(
    card_id: int,
    payload: TopUpRequest,
    account: Account = Depends(require_account),
    db: AsyncSession = Depends(get_session),
) -> TopUpResponse:
    result = await GiftCardService(db).top_up(
        card_id,
        account.id,
        payload.amount,
        payment_method=payload.paymentMethod,
    )
    return TopUpResponse(
        giftCard=_card_payload(result.card),
        loopsUsed=result.loops_used,
        newUserBalance=result.new_account_balance,
    )


@router.post("/stores/gift-cards/scan", response_model=ScanResponse)
async def scan_gift_card(
    payload: ScanRequest,
    store: Store = Depends(require_store),
    db: AsyncSession = Depends(get_session),
) -> ScanResponse:
    result = await GiftCardService(db).scan(payload.qrCode, store.id)
    return ScanResponse(
        valid=result.valid,
        reason=result.reason,
        giftCard=_card_payload(result.card),
        customerName=result.customer_name,
        customerPhone=result.customer_phone,
    )


@router.get("/stores/gift-cards/pending-physical", response_model=PendingPhysicalResponse)
async def pending_physical_gift_cards(
    store: Store = Depends(require_store),
    db: AsyncSession = Depends(get_session),
) -> PendingPhysicalResponse:
    pending = await GiftCardService(db).pending_physical(store.id)
    items = [
        PendingPhysicalItem(
            **_card_payload(item.card).model_dump(),
            customerName=item.customer_name,
            customerPhone=item.customer_phone,
        )
        for item in pending
    ]
    return PendingPhysicalResponse(giftCards=items, count=len(items))


@router.post("/stores/gift-cards/use", response_model=UseResponse)
async def use_gift_card(
    payload: UseRequest,
    store: Store = Depends(require_store),
    db: AsyncSession = Depends(get_session),
) -> UseResponse:
    result = await GiftCardService(db).use(
        payload.giftCardId,
        store.id,
        payload.purchaseAmount,
        amount_to_use=payload.amountToUse,
    )
    return UseResponse(
        giftCard=_card_payload(result.card),
        discountApplied=result.discount_applied,
        remainingPurchase=result.remaining_purchase,
    )


@router.post("/stores/gift-cards/{card_id}/issue", response_model=GiftCardResponse)
async def issue_gift_card(
    card_id: int,
    store: Store = Depends(require_store),
    db: AsyncSession = Depends(get_session),
) -> GiftCardResponse:
    card = await GiftCardService(db).issue(card_id, store.id)
    return _card_payload(card)
