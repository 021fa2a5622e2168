from fastapi import APIRouter

from .endpoints import (
    accounts,
    checkins,
    gift_cards,
    health,
    redemptions,
    settlement,
    stores,
)

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(checkins.router)
router.include_router(stores.router)
router.include_router(gift_cards.router)
router.include_router(redemptions.router)
router.include_router(accounts.router)
router.include_router(settlement.router)
