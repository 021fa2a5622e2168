"""Consumption-intent verification (CIV) scoring.

A check-in's location trail is rated in ``[0, 1]`` by adding independent
signal contributions to a neutral baseline and clamping the sum. Signals with
insufficient or malformed data simply contribute nothing, so scoring never
raises for a bad trail. Weights come from settings and default to:

* browsing dwell (3+ samples): +0.30 for >= 3 minutes with > 5 m of movement
  between consecutive fixes, else +0.15 for >= 1 minute
* store proximity (store coordinates known): +0.20 under 50 m from the trail
  centroid, +0.10 under 100 m
* plausible duration (2+ samples): +0.20 within 3-60 minutes, else +0.10 for
  >= 1 minute
* stops (5+ samples): +0.10 for three or more consecutive fixes < 2 m apart
* return probability: fixed +0.10 placeholder, not yet driven by visit data
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Sequence

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from citycircle_api.core.clock import ensure_aware
from citycircle_api.core.settings import settings
from citycircle_api.models.account import Store
from citycircle_api.models.checkin import CheckInSession, LocationSample
from citycircle_api.services.errors import NotFoundError
from citycircle_api.services.geo import distance_meters

BROWSING_MIN_MINUTES = 3.0
DWELL_MIN_MINUTES = 1.0
BROWSING_MIN_MOVEMENT_METERS = 5.0
PROXIMITY_NEAR_METERS = 50.0
PROXIMITY_FAR_METERS = 100.0
PLAUSIBLE_MAX_MINUTES = 60.0
STOP_MAX_METERS = 2.0
MIN_STOPS = 3


@dataclass(frozen=True)
class CivWeights:
    baseline: float = 0.5
    browsing: float = 0.3
    dwell: float = 0.15
    proximity_near: float = 0.2
    proximity_far: float = 0.1
    duration: float = 0.2
    short_duration: float = 0.1
    stops: float = 0.1
    return_probability: float = 0.1

    @classmethod
    def from_settings(cls) -> "CivWeights":
        return cls(
            baseline=settings.civ_baseline,
            browsing=settings.civ_browsing_weight,
            dwell=settings.civ_dwell_weight,
            proximity_near=settings.civ_proximity_near_weight,
            proximity_far=settings.civ_proximity_far_weight,
            duration=settings.civ_duration_weight,
            short_duration=settings.civ_short_duration_weight,
            stops=settings.civ_stop_weight,
            return_probability=settings.civ_return_probability_weight,
        )


@dataclass
class CivAssessment:
    score: float
    sample_count: int
    signals: dict[str, float]


def _coordinate(sample: Any, name: str) -> float:
    value = getattr(sample, name, None)
    if isinstance(value, (int, float)) and math.isfinite(value):
        return float(value)
    return math.nan


def _timestamp(sample: Any) -> Optional[datetime]:
    value = getattr(sample, "recorded_at", None)
    return ensure_aware(value) if isinstance(value, datetime) else None


def _duration_minutes(samples: Sequence[Any]) -> Optional[float]:
    first, last = _timestamp(samples[0]), _timestamp(samples[-1])
    if first is None or last is None:
        return None
    return (last - first).total_seconds() / 60


def _consecutive_distances(samples: Sequence[Any]) -> list[float]:
    return [
        distance_meters(
            _coordinate(previous, "latitude"),
            _coordinate(previous, "longitude"),
            _coordinate(current, "latitude"),
            _coordinate(current, "longitude"),
        )
        for previous, current in zip(samples, samples[1:])
    ]


def assess_samples(
    samples: Sequence[Any],
    store_latitude: Optional[float],
    store_longitude: Optional[float],
    *,
    weights: Optional[CivWeights] = None,
) -> CivAssessment:
    """Score an ordered trail of objects exposing ``latitude``, ``longitude`` and ``recorded_at``."""

    weights = weights or CivWeights.from_settings()
    samples = list(samples or [])
    if not samples:
        return CivAssessment(score=weights.baseline, sample_count=0, signals={})

    signals: dict[str, float] = {}
    duration = _duration_minutes(samples)
    distances = _consecutive_distances(samples)
    finite_distances = [value for value in distances if not math.isnan(value)]

    if len(samples) >= 3 and duration is not None:
        max_movement = max(finite_distances, default=0.0)
        if duration >= BROWSING_MIN_MINUTES and max_movement > BROWSING_MIN_MOVEMENT_METERS:
            signals["browsing"] = weights.browsing
        elif duration >= DWELL_MIN_MINUTES:
            signals["browsing"] = weights.dwell

    if store_latitude is not None and store_longitude is not None:
        points = [
            (_coordinate(sample, "latitude"), _coordinate(sample, "longitude"))
            for sample in samples
        ]
        points = [(lat, lon) for lat, lon in points if not (math.isnan(lat) or math.isnan(lon))]
        if points:
            centroid_lat = sum(lat for lat, _ in points) / len(points)
            centroid_lon = sum(lon for _, lon in points) / len(points)
            distance = distance_meters(centroid_lat, centroid_lon, store_latitude, store_longitude)
            if distance < PROXIMITY_NEAR_METERS:
                signals["proximity"] = weights.proximity_near
            elif distance < PROXIMITY_FAR_METERS:
                signals["proximity"] = weights.proximity_far

    if len(samples) >= 2 and duration is not None:
        if BROWSING_MIN_MINUTES <= duration <= PLAUSIBLE_MAX_MINUTES:
            signals["duration"] = weights.duration
        elif duration >= DWELL_MIN_MINUTES:
            signals["duration"] = weights.short_duration

    if len(samples) >= 5:
        stops = sum(1 for value in finite_distances if value < STOP_MAX_METERS)
        if stops >= MIN_STOPS:
            signals["stops"] = weights.stops

    signals["return_probability"] = weights.return_probability

    total = weights.baseline
    for contribution in signals.values():
        total += contribution
    score = min(1.0, max(0.0, total))
    return CivAssessment(score=score, sample_count=len(samples), signals=signals)


def score_samples(
    samples: Sequence[Any],
    store_latitude: Optional[float],
    store_longitude: Optional[float],
    *,
    weights: Optional[CivWeights] = None,
) -> float:
    return assess_samples(samples, store_latitude, store_longitude, weights=weights).score


class CivScorer:
    """Loads a session's trail and store coordinates, then scores them."""

    def __init__(self, db_session: AsyncSession, *, weights: CivWeights | None = None) -> None:
        self._db = db_session
        self._weights = weights

    async def load_samples(self, session_id: int) -> list[LocationSample]:
        stmt = (
            select(LocationSample)
            .where(LocationSample.session_id == session_id)
            .order_by(LocationSample.id.asc())
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def score(self, checkin: CheckInSession) -> CivAssessment:
        samples = await self.load_samples(checkin.id)
        store = await self._db.get(Store, checkin.store_id)
        store_latitude = store.latitude if store is not None else None
        store_longitude = store.longitude if store is not None else None

        assessment = assess_samples(samples, store_latitude, store_longitude, weights=self._weights)
        logger.debug(
            "Scored check-in session",
            session_id=checkin.id,
            civ_score=assessment.score,
            sample_count=assessment.sample_count,
            signals=assessment.signals,
        )
        return assessment

    async def score_session(self, session_id: int) -> CivAssessment:
        checkin = await self._db.get(CheckInSession, session_id)
        if checkin is None:
            raise NotFoundError("Session not found")
        return await self.score(checkin)


__all__ = ["CivAssessment", "CivScorer", "CivWeights", "assess_samples", "score_samples"]
