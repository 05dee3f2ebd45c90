"""
Sample grid generation.

Grid points are aligned to a global (0, 0) reference, so neighbouring tiles
produce identical points along their shared edge and stitch without seams.
"""

from __future__ import annotations

import math

from livability.core.geo import GeoPoint, METERS_PER_DEGREE_LAT, meters_per_degree_lng
from livability.domain.models import Bounds

# A tile is split into quadrants when sizing its grid cells.
TILE_GRID_DIVISOR = 4

# Longitude steps use the tile's latitude snapped to this band (degrees), so
# vertically adjacent tiles inside one band share grid columns.
LNG_STEP_LAT_BAND = 0.25


def tile_cell_size_m(
    tile_size_m: float,
    *,
    target_points: int = 5000,
    min_cell_m: float = 100,
    max_cell_m: float = 300,
) -> float:
    """Grid cell size for one tile, clamped to `[min_cell_m, max_cell_m]`."""
    raw = tile_size_m / math.sqrt(target_points / TILE_GRID_DIVISOR)
    return max(min_cell_m, min(max_cell_m, raw))


def generate_grid(bounds: Bounds, cell_size_m: float) -> list[GeoPoint]:
    """Globally aligned sample points inside `bounds` (edges inclusive)."""
    if cell_size_m <= 0:
        raise ValueError("cell_size_m must be > 0")
    center_lat, _ = bounds.center
    band_lat = round(center_lat / LNG_STEP_LAT_BAND) * LNG_STEP_LAT_BAND
    lat_step = cell_size_m / METERS_PER_DEGREE_LAT
    lng_step = cell_size_m / meters_per_degree_lng(band_lat)

    # Integer indices keep points exact multiples of the step (no float drift).
    i0 = math.ceil(bounds.south / lat_step)
    i1 = math.floor(bounds.north / lat_step)
    j0 = math.ceil(bounds.west / lng_step)
    j1 = math.floor(bounds.east / lng_step)

    return [
        GeoPoint(lat=i * lat_step, lng=j * lng_step)
        for i in range(i0, i1 + 1)
        for j in range(j0, j1 + 1)
    ]
