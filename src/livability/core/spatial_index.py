"""
Lightweight spatial indexing (grid bucket) for lat/lng points.

Used by the score engine to avoid O(N) scans per grid sample when a tile's
POI buffer holds thousands of points.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

from livability.core.geo import METERS_PER_DEGREE_LAT, GeoPoint, haversine_m

T = TypeVar("T")


def _to_xy_m(lat: float, lng: float, *, lat0_deg: float) -> tuple[float, float]:
    # Equirectangular projection around a reference latitude (fine at city scale).
    lat0 = math.radians(float(lat0_deg))
    x = float(lng) * METERS_PER_DEGREE_LAT * math.cos(lat0)
    y = float(lat) * METERS_PER_DEGREE_LAT
    return x, y


@dataclass(frozen=True)
class _Entry(Generic[T]):
    item: T
    lat: float
    lng: float
    x_m: float
    y_m: float


class SpatialGridIndex(Generic[T]):
    def __init__(
        self,
        items: list[T],
        *,
        get_latlng: Callable[[T], tuple[float, float]],
        cell_size_m: float = 500.0,
        lat0_deg: float | None = None,
    ):
        if float(cell_size_m) <= 0:
            raise ValueError("cell_size_m must be > 0")
        self._cell_size_m = float(cell_size_m)
        coords = [get_latlng(it) for it in items]
        if lat0_deg is None:
            lat0_deg = sum(lat for lat, _ in coords) / len(coords) if coords else 0.0
        self._lat0_deg = float(lat0_deg)
        # Widen the x window by 1/cos(lat0) so latitude drift away from lat0 stays covered.
        self._x_scale = max(math.cos(math.radians(self._lat0_deg)), 0.05)
        self._cells: dict[tuple[int, int], list[_Entry[T]]] = {}

        for it, (lat, lng) in zip(items, coords):
            x_m, y_m = _to_xy_m(lat, lng, lat0_deg=self._lat0_deg)
            e = _Entry(item=it, lat=float(lat), lng=float(lng), x_m=x_m, y_m=y_m)
            self._cells.setdefault(self._cell_key_xy(x_m, y_m), []).append(e)

    def __len__(self) -> int:
        return sum(len(c) for c in self._cells.values())

    def _cell_key_xy(self, x_m: float, y_m: float) -> tuple[int, int]:
        return (int(math.floor(x_m / self._cell_size_m)), int(math.floor(y_m / self._cell_size_m)))

    def _candidates(self, lat: float, lng: float, radius_m: float):
        x0, y0 = _to_xy_m(float(lat), float(lng), lat0_deg=self._lat0_deg)
        cx, cy = self._cell_key_xy(x0, y0)
        steps_y = int(math.ceil(radius_m / self._cell_size_m)) + 1
        steps_x = int(math.ceil(radius_m / (self._cell_size_m * self._x_scale))) + 1
        for dx in range(-steps_x, steps_x + 1):
            for dy in range(-steps_y, steps_y + 1):
                cell = self._cells.get((cx + dx, cy + dy))
                if cell:
                    yield from cell

    def query_within(self, *, lat: float, lng: float, radius_m: float) -> list[T]:
        r = float(radius_m)
        if r <= 0:
            return []
        origin = GeoPoint(lat=float(lat), lng=float(lng))
        return [
            e.item
            for e in self._candidates(lat, lng, r)
            if haversine_m(origin, GeoPoint(lat=e.lat, lng=e.lng)) <= r
        ]

    def nearest_within(self, *, lat: float, lng: float, radius_m: float) -> tuple[T, float] | None:
        """Return `(item, distance_m)` of the nearest item within `radius_m`, or None."""
        r = float(radius_m)
        if r <= 0:
            return None
        origin = GeoPoint(lat=float(lat), lng=float(lng))
        best: tuple[T, float] | None = None
        for e in self._candidates(lat, lng, r):
            d = haversine_m(origin, GeoPoint(lat=e.lat, lng=e.lng))
            if d <= r and (best is None or d < best[1]):
                best = (e.item, d)
        return best
