import math
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from citycircle_api.models.account import Account, Store
from citycircle_api.models.checkin import CheckInSession, CheckInSessionStatus, LocationSample
from citycircle_api.services.civ import CivScorer, CivWeights, assess_samples, score_samples
from citycircle_api.services.errors import NotFoundError

STORE_LAT = 40.7195
STORE_LON = -74.042
START = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


def _trail(offsets, *, minutes_apart: float = 2.0):
    return [
        SimpleNamespace(
            latitude=STORE_LAT + lat_offset,
            longitude=STORE_LON,
            recorded_at=START + timedelta(minutes=index * minutes_apart),
        )
        for index, lat_offset in enumerate(offsets)
    ]


def test_empty_trail_scores_baseline() -> None:
    assessment = assess_samples([], STORE_LAT, STORE_LON)
    assert assessment.score == 0.5
    assert assessment.sample_count == 0
    assert assessment.signals == {}


def test_single_sample_without_store_location_only_gets_return_signal() -> None:
    assert score_samples(_trail([0.0]), None, None) == pytest.approx(0.6)


def test_single_sample_at_the_store_gets_proximity() -> None:
    assessment = assess_samples(_trail([0.0]), STORE_LAT, STORE_LON)
    assert assessment.signals["proximity"] == pytest.approx(0.2)
    assert assessment.score == pytest.approx(0.8)


def test_engaged_visit_is_clamped_to_one() -> None:
    # ten minutes, one 11 m move, four near-stationary steps, centroid ~5 m from the store
    samples = _trail([0.0, 0.0, 0.0, 0.0001, 0.0001, 0.0001])
    assessment = assess_samples(samples, STORE_LAT, STORE_LON)

    assert assessment.signals["browsing"] == pytest.approx(0.3)
    assert assessment.signals["proximity"] == pytest.approx(0.2)
    assert assessment.signals["duration"] == pytest.approx(0.2)
    assert assessment.signals["stops"] == pytest.approx(0.1)
    assert assessment.score == 1.0
    assert assessment.sample_count == 6


def test_short_stationary_visit_gets_partial_credit() -> None:
    samples = _trail([0.0, 0.0, 0.0], minutes_apart=1.0)
    assessment = assess_samples(samples, None, None)

    assert assessment.signals["browsing"] == pytest.approx(0.15)
    assert assessment.signals["duration"] == pytest.approx(0.1)
    assert "stops" not in assessment.signals
    assert assessment.score == pytest.approx(0.85)


def test_far_away_trail_gets_no_proximity() -> None:
    samples = _trail([0.01, 0.01])
    assessment = assess_samples(samples, STORE_LAT, STORE_LON)
    assert "proximity" not in assessment.signals


def test_malformed_samples_forfeit_signals_instead_of_raising() -> None:
    samples = [
        SimpleNamespace(latitude=math.nan, longitude=STORE_LON, recorded_at=None),
        SimpleNamespace(latitude=STORE_LAT, longitude=math.inf, recorded_at="yesterday"),
        SimpleNamespace(latitude=None, longitude=None, recorded_at=None),
    ]
    assessment = assess_samples(samples, STORE_LAT, STORE_LON)
    assert assessment.signals == {"return_probability": pytest.approx(0.1)}
    assert assessment.score == pytest.approx(0.6)


def test_scoring_is_deterministic() -> None:
    samples = _trail([0.0, 0.00002, 0.0001, 0.0001, 0.00011])
    scores = {score_samples(samples, STORE_LAT, STORE_LON) for _ in range(5)}
    assert len(scores) == 1


def test_custom_weights_override_defaults() -> None:
    weights = CivWeights(baseline=0.2, return_probability=0.0)
    assert score_samples([], None, None, weights=weights) == 0.2
    assert score_samples(_trail([0.0]), None, None, weights=weights) == 0.2


@pytest.mark.asyncio
async def test_scorer_loads_trail_in_arrival_order(session_factory) -> None:
    async with session_factory() as session:
        account = Account(name="Scorer", phone="5551000001")
        store = Store(name="Grove Coffee", category="coffee", latitude=STORE_LAT, longitude=STORE_LON)
        session.add_all([account, store])
        await session.flush()
        checkin = CheckInSession(
            account_id=account.id,
            store_id=store.id,
            status=CheckInSessionStatus.ACTIVE,
            checked_in_at=START,
            expires_at=START + timedelta(minutes=30),
        )
        session.add(checkin)
        await session.flush()
        for sample in _trail([0.0, 0.0, 0.0, 0.0001, 0.0001, 0.0001]):
            session.add(
                LocationSample(
                    session_id=checkin.id,
                    latitude=sample.latitude,
                    longitude=sample.longitude,
                    recorded_at=sample.recorded_at,
                )
            )
        await session.commit()

        scorer = CivScorer(session)
        loaded = await scorer.load_samples(checkin.id)
        assert [row.id for row in loaded] == sorted(row.id for row in loaded)

        assessment = await scorer.score_session(checkin.id)
        assert assessment.sample_count == 6
        assert assessment.score == 1.0


@pytest.mark.asyncio
async def test_scoring_unknown_session_raises_not_found(session_factory) -> None:
    async with session_factory() as session:
        with pytest.raises(NotFoundError):
            await CivScorer(session).score_session(999)
