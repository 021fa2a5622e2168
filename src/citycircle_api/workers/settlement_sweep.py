"""Worker wiring for periodic deferred-settlement sweeps."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from citycircle_api.core.settings import settings
from citycircle_api.models.settlement import SettlementSweepRun
from citycircle_api.observability.settlement import get_settlement_store
from citycircle_api.observability.tracing import settlement_span
from citycircle_api.services.settlement import SettlementTriggerDetector

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]


class SettlementSweepWorker:
    """Periodically expires stale state and re-checks outstanding pending grants."""

    # meta: worker: settlement-sweep

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        interval_seconds: int | None = None,
        trigger_label: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.interval_seconds = interval_seconds or settings.settlement_sweep_interval_seconds
        self._trigger_label = trigger_label or settings.settlement_sweep_trigger_label
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info("Settlement sweep worker started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Settlement sweep worker stopped")

    async def run_once(self, *, triggered_by: str | None = None) -> Dict[str, int]:
        """Execute a single sweep and persist a run record."""

        trigger = triggered_by or self._trigger_label
        metrics = get_settlement_store()
        summary: Dict[str, int] = {}

        session = await self._ensure_session()
        async with session as managed_session:
            run = SettlementSweepRun(triggered_by=trigger)
            managed_session.add(run)
            await managed_session.commit()
            await managed_session.refresh(run)
            run_id = run.id

            try:
                with settlement_span("sweep", run_id=run_id, trigger=trigger):
                    result = await SettlementTriggerDetector(managed_session).run_sweep()
                summary = result.as_dict()
                run = await managed_session.get(SettlementSweepRun, run_id)
                run.status = "completed"
                run.completed_at = datetime.now(timezone.utc)
                run.sessions_expired = result.sessions_expired
                run.grants_expired = result.grants_expired
                run.pairs_checked = result.pairs_checked
                run.grants_unlocked = result.grants_unlocked
                run.metadata_json = self._build_run_metadata(trigger)
                await managed_session.commit()
                metrics.record_sweep("completed")
                logger.info("Settlement sweep completed", run_id=run_id, trigger=trigger, **summary)
            except Exception as exc:
                await managed_session.rollback()
                failed = await managed_session.get(SettlementSweepRun, run_id)
                if failed is not None:
                    failed.status = "failed"
                    failed.completed_at = datetime.now(timezone.utc)
                    failed.error_message = str(exc)
                    failed.metadata_json = self._build_run_metadata(trigger, error=str(exc))
                    await managed_session.commit()
                metrics.record_sweep("failed")
                logger.exception("Settlement sweep failed", run_id=run_id, error=str(exc))
                raise

        return summary

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover - logged in run_once
                logger.exception("Settlement sweep iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def _ensure_session(self) -> AsyncSession:
        maybe_session = self._session_factory()
        if isinstance(maybe_session, AsyncSession):
            return maybe_session
        return await maybe_session

    def _build_run_metadata(self, trigger: str, *, error: str | None = None) -> Dict[str, object | None]:
        metadata: Dict[str, object | None] = {
            "triggered_by": trigger,
            "interval_seconds": self.interval_seconds,
            "lookback_days": settings.settlement_lookback_days,
        }
        if error:
            metadata["error"] = error
        return metadata
