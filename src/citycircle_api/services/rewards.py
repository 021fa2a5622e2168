"""Loops sizing for confirmed purchases and provisional check-in grants."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from citycircle_api.core.settings import settings
from citycircle_api.models.account import AccountPlan
from citycircle_api.models.ledger import PurchaseTransaction

VISIT_BONUS = 10
CENTS_PER_LOOP = 100


@dataclass(frozen=True)
class TierBand:
    name: str
    minimum: int
    multiplier: Decimal
    description: str


@dataclass(frozen=True)
class PlanDetails:
    name: str
    multiplier: Decimal
    description: str


PLANS: dict[AccountPlan, PlanDetails] = {
    AccountPlan.STARTER: PlanDetails("Starter", Decimal("1.00"), "Basic plan"),
    AccountPlan.BASIC: PlanDetails("Basic", Decimal("1.05"), "5% bonus on all purchases"),
    AccountPlan.PLUS: PlanDetails("Plus", Decimal("1.10"), "10% bonus on all purchases"),
    AccountPlan.PREMIUM: PlanDetails("Premium", Decimal("1.20"), "20% bonus on all purchases"),
}

# Ordered by threshold; lifetime earnings pick the highest band reached.
TIERS: tuple[TierBand, ...] = (
    TierBand("BRONZE", 0, Decimal("1.00"), "Starting tier"),
    TierBand("SILVER", 200, Decimal("1.05"), "5% bonus - Earn 200+ total Loops"),
    TierBand("GOLD", 500, Decimal("1.10"), "10% bonus - Earn 500+ total Loops"),
    TierBand("PLATINUM", 1000, Decimal("1.20"), "20% bonus - Earn 1000+ total Loops"),
)


@dataclass
class PlanTierSummary:
    """Plan and tier standing for an account."""

    plan: AccountPlan
    plan_details: PlanDetails
    tier: TierBand
    next_tier: Optional[TierBand]
    total_earned: int
    progress: Decimal
    points_needed: int

    @property
    def combined_multiplier(self) -> Decimal:
        return (self.plan_details.multiplier * self.tier.multiplier).quantize(Decimal("0.01"))


def _coerce_plan(plan: AccountPlan | str | None) -> AccountPlan:
    if isinstance(plan, AccountPlan):
        return plan
    try:
        return AccountPlan(str(plan))
    except ValueError:
        return AccountPlan.STARTER


def plan_multiplier(plan: AccountPlan | str | None) -> Decimal:
    return PLANS[_coerce_plan(plan)].multiplier


def tier_for(total_loops_earned: int) -> TierBand:
    current = TIERS[0]
    for band in TIERS:
        if total_loops_earned >= band.minimum:
            current = band
    return current


def next_tier_for(total_loops_earned: int) -> Optional[TierBand]:
    for band in TIERS:
        if total_loops_earned < band.minimum:
            return band
    return None


def loops_for_purchase(amount_cents: int, plan: AccountPlan | str | None, total_loops_earned: int) -> int:
    """Points for a sale: one per whole currency unit plus the visit bonus, scaled by plan and tier.

    Both confirmed transactions and pending check-in grants are sized here so the
    rounding and tier thresholds can never diverge between the two paths.
    """

    base = max(int(amount_cents), 0) // CENTS_PER_LOOP + VISIT_BONUS
    scaled = Decimal(base) * plan_multiplier(plan) * tier_for(int(total_loops_earned or 0)).multiplier
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def describe_plan_tier(plan: AccountPlan | str | None, total_loops_earned: int) -> PlanTierSummary:
    resolved = _coerce_plan(plan)
    total = int(total_loops_earned or 0)
    tier = tier_for(total)
    upcoming = next_tier_for(total)

    if upcoming is None:
        progress = Decimal("100")
        points_needed = 0
    else:
        span = Decimal(upcoming.minimum - tier.minimum)
        progress = min(Decimal("100"), Decimal(total - tier.minimum) / span * 100)
        points_needed = max(0, upcoming.minimum - total)

    return PlanTierSummary(
        plan=resolved,
        plan_details=PLANS[resolved],
        tier=tier,
        next_tier=upcoming,
        total_earned=total,
        progress=progress.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP),
        points_needed=points_needed,
    )


async def estimate_purchase_amount(session: AsyncSession, account_id: int, store_id: int) -> int:
    """Best guess of a sale that has not happened yet, in cents.

    Prefers the account's own average at the store, then the store-wide average,
    then the configured default.
    """

    account_avg = await session.scalar(
        select(func.avg(PurchaseTransaction.amount_cents)).where(
            PurchaseTransaction.account_id == account_id,
            PurchaseTransaction.store_id == store_id,
        )
    )
    if account_avg:
        return _round_cents(account_avg)

    store_avg = await session.scalar(
        select(func.avg(PurchaseTransaction.amount_cents)).where(PurchaseTransaction.store_id == store_id)
    )
    if store_avg:
        return _round_cents(store_avg)

    return settings.default_estimate_cents


def _round_cents(value: object) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


__all__ = [
    "CENTS_PER_LOOP",
    "PLANS",
    "PlanDetails",
    "PlanTierSummary",
    "TIERS",
    "TierBand",
    "VISIT_BONUS",
    "describe_plan_tier",
    "estimate_purchase_amount",
    "loops_for_purchase",
    "next_tier_for",
    "plan_multiplier",
    "tier_for",
]
