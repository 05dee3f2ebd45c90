from __future__ import annotations
from dataclasses import dataclass
from math import asin, cos, radians, sin, sqrt

"""
Geospatial helpers.

A tiny geometry layer so tiling, grid generation and scoring can do distance
calculations without pulling in heavier GIS dependencies.
"""

EARTH_RADIUS_M = 6_371_000
METERS_PER_DEGREE_LAT = 111_320.0


@dataclass(frozen=True)
class GeoPoint:
    """A latitude/longitude pair in decimal degrees."""

    lat: float
    lng: float


def haversine_m(a: GeoPoint, b: GeoPoint) -> float:
    """Compute great-circle distance in meters between two points."""
    lat1 = radians(a.lat)
    lng1 = radians(a.lng)
    lat2 = radians(b.lat)
    lng2 = radians(b.lng)

    dlat = lat2 - lat1
    dlng = lng2 - lng1

    h = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlng / 2) ** 2
    return 2 * EARTH_RADIUS_M * asin(sqrt(min(1.0, h)))


def meters_per_degree_lng(lat: float) -> float:
    """Length of one degree of longitude at `lat`, floored near the poles."""
    return max(METERS_PER_DEGREE_LAT * cos(radians(lat)), 1.0)


def coord_key(lat: float, lng: float) -> str:
    """Stable coordinate identity used for merging and de-duplication (6 decimals)."""
    return f"{lat:.6f}:{lng:.6f}"
