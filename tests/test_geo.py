import math

import pytest

from citycircle_api.services.geo import distance_meters, distance_miles


def test_distance_is_zero_for_identical_points() -> None:
    assert distance_meters(40.7195, -74.042, 40.7195, -74.042) == 0
    assert distance_miles(40.7195, -74.042, 40.7195, -74.042) == 0


def test_distance_matches_known_great_circle() -> None:
    # one degree of latitude is roughly 111.2 km everywhere
    assert distance_meters(0.0, 0.0, 1.0, 0.0) == pytest.approx(111_195, rel=1e-3)
    assert distance_miles(0.0, 0.0, 1.0, 0.0) == pytest.approx(69.09, rel=1e-3)


def test_distance_is_symmetric() -> None:
    forward = distance_meters(40.719, -74.041, 40.7185, -74.043)
    backward = distance_meters(40.7185, -74.043, 40.719, -74.041)
    assert forward == pytest.approx(backward)


def test_antipodal_points_stay_finite() -> None:
    value = distance_miles(0.0, 0.0, 0.0, 180.0)
    assert math.isfinite(value)
    assert value == pytest.approx(math.pi * 3958.8, rel=1e-6)


@pytest.mark.parametrize(
    "coords",
    [
        (math.nan, 0.0, 0.0, 0.0),
        (0.0, math.inf, 0.0, 0.0),
        (0.0, 0.0, None, 0.0),
    ],
)
def test_non_finite_input_yields_nan(coords) -> None:
    assert math.isnan(distance_meters(*coords))
    assert math.isnan(distance_miles(*coords))
