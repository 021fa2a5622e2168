from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from citycircle_api.core.settings import settings
from citycircle_api.db.session import get_session
from citycircle_api.observability.settlement import get_settlement_store


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "starting", "disabled", "error", "degraded"]
    detail: str | None = Field(default=None, description="Human readable status detail")
    metrics: Dict[str, object] | None = Field(default=None, description="Component counters")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
        components["database"] = ComponentStatus(status="ready")
    except SQLAlchemyError as exc:
        logger.warning("Readiness database probe failed", error=str(exc))
        components["database"] = ComponentStatus(status="error", detail="Database unreachable")
        status = "error"

    snapshot = get_settlement_store().snapshot()
    sweep_worker = getattr(request.app.state, "settlement_sweep_worker", None)
    if settings.settlement_sweep_enabled and sweep_worker is not None:
        running = bool(getattr(sweep_worker, "is_running", False))
        sweep_status: Literal["ready", "starting", "disabled", "error", "degraded"] = "ready" if running else "starting"
        detail = None if running else "Settlement sweep worker not running"
        if snapshot.last_sweep_status == "failed":
            sweep_status = "degraded"
            detail = "Last settlement sweep failed"
        if sweep_status != "ready" and status == "ready":
            status = "degraded"
        components["settlement_sweep"] = ComponentStatus(
            status=sweep_status,
            detail=detail,
            metrics=snapshot.as_dict(),
        )
    else:
        components["settlement_sweep"] = ComponentStatus(
            status="disabled",
            detail="Settlement sweep worker disabled via settings",
            metrics=snapshot.as_dict(),
        )

    return ReadinessPayload(status=status, components=components)
