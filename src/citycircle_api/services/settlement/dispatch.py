"""Fire-and-forget settlement checks scheduled after request handling."""

from __future__ import annotations

from typing import Awaitable, Callable, Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from citycircle_api.observability.settlement import get_settlement_store

from .triggers import SettlementOutcome, SettlementTriggerDetector

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]


async def _ensure_session(session_factory: SessionFactory) -> AsyncSession:
    maybe_session = session_factory()
    if isinstance(maybe_session, AsyncSession):
        return maybe_session
    return await maybe_session


async def run_settlement_check(
    account_id: int,
    store_id: Optional[int] = None,
    *,
    session_factory: SessionFactory,
) -> list[SettlementOutcome]:
    """Run a settlement check in its own session; errors are logged, never raised."""

    try:
        session = await _ensure_session(session_factory)
        async with session as managed_session:
            detector = SettlementTriggerDetector(managed_session)
            if store_id is None:
                outcomes = await detector.check_all_for_account(account_id)
            else:
                outcomes = await detector.check(account_id, store_id)
    except Exception as exc:
        get_settlement_store().record_failure("dispatch")
        logger.exception(
            "Background settlement check failed",
            account_id=account_id,
            store_id=store_id,
            error=str(exc),
        )
        return []

    if outcomes:
        logger.info(
            "Background settlement check unlocked grants",
            account_id=account_id,
            store_id=store_id,
            unlocked=len(outcomes),
        )
    return outcomes


__all__ = ["SessionFactory", "run_settlement_check"]
