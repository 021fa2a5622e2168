"""Great-circle distance helpers."""

from __future__ import annotations

import math

EARTH_RADIUS_KM = 6371.0
EARTH_RADIUS_MILES = 3958.8


def _haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    # float error can push ``a`` marginally past 1 for antipodal points
    a = min(1.0, max(0.0, a))
    return 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def _is_finite(*values: float) -> bool:
    return all(isinstance(value, (int, float)) and math.isfinite(value) for value in values)


def distance_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    if not _is_finite(lat1, lon1, lat2, lon2):
        return math.nan
    return EARTH_RADIUS_KM * _haversine(lat1, lon1, lat2, lon2) * 1000


def distance_miles(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    if not _is_finite(lat1, lon1, lat2, lon2):
        return math.nan
    return EARTH_RADIUS_MILES * _haversine(lat1, lon1, lat2, lon2)


__all__ = ["distance_meters", "distance_miles", "EARTH_RADIUS_KM", "EARTH_RADIUS_MILES"]
