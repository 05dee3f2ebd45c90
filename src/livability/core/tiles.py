"""
Tile indexing (Web-Mercator slippy tiles).

All heatmap work is partitioned into fixed-zoom tiles so results can be cached
per tile and only the missing tiles are requested when the viewport moves.

Helpers here are pure; they only raise `ValueError` on invariant violations
(e.g. mixing zoom levels in one tile set).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable

from livability.domain.models import Bounds, TileCoord

MAX_MERCATOR_LAT = 85.05112878


@dataclass(frozen=True)
class TilePlan:
    """Tiles to request for a viewport, after caps are applied."""

    viewport_tiles: list[TileCoord]
    tiles: list[TileCoord]
    radius: int
    too_large: bool = False


def lat_lng_to_tile(lat: float, lng: float, zoom: int) -> TileCoord:
    """Convert a WGS84 lat/lng to the slippy tile containing it."""
    n = 1 << int(zoom)
    lat = max(-MAX_MERCATOR_LAT, min(MAX_MERCATOR_LAT, float(lat)))
    lat_rad = math.radians(lat)

    x = int(math.floor((float(lng) + 180.0) / 360.0 * n))
    y = int(math.floor((1.0 - math.log(math.tan(lat_rad) + 1.0 / math.cos(lat_rad)) / math.pi) / 2.0 * n))
    x = max(0, min(n - 1, x))
    y = max(0, min(n - 1, y))
    return TileCoord(z=int(zoom), x=x, y=y)


def _lat_from_tile_y(y: int, n: int) -> float:
    t = math.pi * (1.0 - 2.0 * y / n)
    return math.degrees(math.atan(math.sinh(t)))


def tile_bounds(tile: TileCoord) -> Bounds:
    """Geographic extent of a tile."""
    n = 1 << tile.z
    return Bounds(
        north=_lat_from_tile_y(tile.y, n),
        south=_lat_from_tile_y(tile.y + 1, n),
        west=tile.x / n * 360.0 - 180.0,
        east=(tile.x + 1) / n * 360.0 - 180.0,
    )


def tiles_bounds(tiles: Iterable[TileCoord]) -> Bounds | None:
    """Union of the extents of `tiles` (None for an empty set)."""
    extents = [tile_bounds(t) for t in tiles]
    if not extents:
        return None
    return Bounds(
        north=max(b.north for b in extents),
        south=min(b.south for b in extents),
        east=max(b.east for b in extents),
        west=min(b.west for b in extents),
    )


def tiles_for_bounds(bounds: Bounds, zoom: int) -> list[TileCoord]:
    """Every tile at `zoom` whose extent intersects `bounds`."""
    top_left = lat_lng_to_tile(bounds.north, bounds.west, zoom)
    bottom_right = lat_lng_to_tile(bounds.south, bounds.east, zoom)
    return [
        TileCoord(z=int(zoom), x=x, y=y)
        for x in range(top_left.x, bottom_right.x + 1)
        for y in range(top_left.y, bottom_right.y + 1)
    ]


def _single_zoom(tiles: list[TileCoord]) -> int:
    zooms = {t.z for t in tiles}
    if len(zooms) != 1:
        raise ValueError(f"tile set must use a single zoom level, got {sorted(zooms)}")
    return zooms.pop()


def expand_ring(tiles: list[TileCoord], radius: int) -> list[TileCoord]:
    """Union of `tiles` and every tile within Chebyshev distance `radius` of one of them.

    Output is deduplicated, clamped to the valid tile range, and ordered with the
    input tiles first followed by the ring in (x, y) order.
    """
    if radius < 0:
        raise ValueError("radius must be >= 0")
    if not tiles:
        return []
    z = _single_zoom(tiles)
    max_index = (1 << z) - 1

    seen: set[tuple[int, int]] = set()
    out: list[TileCoord] = []
    for t in tiles:
        if (t.x, t.y) not in seen:
            seen.add((t.x, t.y))
            out.append(t)
    if radius == 0:
        return out

    ring: set[tuple[int, int]] = set()
    for t in out:
        for x in range(max(0, t.x - radius), min(max_index, t.x + radius) + 1):
            for y in range(max(0, t.y - radius), min(max_index, t.y + radius) + 1):
                if (x, y) not in seen:
                    ring.add((x, y))
    out.extend(TileCoord(z=z, x=x, y=y) for x, y in sorted(ring))
    return out


def delta(want: Iterable[TileCoord], have: Iterable[TileCoord]) -> list[TileCoord]:
    """Tiles in `want` that are absent from `have` (order of `want` preserved)."""
    held = {key_of(t) for t in have}
    out: list[TileCoord] = []
    for t in want:
        k = key_of(t)
        if k not in held:
            held.add(k)
            out.append(t)
    return out


def key_of(tile: TileCoord) -> str:
    return tile.key


def key_of_set(tiles: Iterable[TileCoord]) -> str:
    """Order-independent key for a tile set."""
    return ",".join(sorted({key_of(t) for t in tiles}))


def overlap_ratio(a: Iterable[TileCoord], b: Iterable[TileCoord]) -> float:
    """|a ∩ b| / max(|a|, |b|); 0 when either set is empty."""
    ka = {key_of(t) for t in a}
    kb = {key_of(t) for t in b}
    if not ka or not kb:
        return 0.0
    return len(ka & kb) / max(len(ka), len(kb))


def plan_viewport(
    bounds: Bounds,
    *,
    zoom: int,
    radius: int,
    max_viewport_tiles: int,
    max_total_tiles: int,
) -> TilePlan:
    """Tiles for `bounds` expanded by `radius`, honoring both tile caps.

    A viewport above `max_viewport_tiles` is reported as too large without any
    ring expansion. Otherwise the radius is decremented until the expanded set
    fits `max_total_tiles`.
    """
    viewport = tiles_for_bounds(bounds, zoom)
    if len(viewport) > max_viewport_tiles:
        return TilePlan(viewport_tiles=viewport, tiles=[], radius=0, too_large=True)

    r = max(0, int(radius))
    while True:
        expanded = expand_ring(viewport, r)
        if len(expanded) <= max_total_tiles or r == 0:
            return TilePlan(viewport_tiles=viewport, tiles=expanded, radius=r)
        r -= 1


def poi_tile_radius(
    max_distance_m: float,
    buffer_scale: float,
    *,
    tile_size_m: float = 2400,
    max_radius: int = 10,
) -> int:
    """Ring radius (in tiles) needed to load POIs up to `max_distance * buffer_scale` away."""
    radius = math.ceil(max_distance_m * buffer_scale / tile_size_m)
    return max(0, min(int(radius), max_radius))


def poi_tiles_for(
    tiles: list[TileCoord],
    max_distance_m: float,
    buffer_scale: float,
    *,
    tile_size_m: float = 2400,
    max_radius: int = 10,
) -> list[TileCoord]:
    """Tiles whose POIs can influence scores inside `tiles`."""
    radius = poi_tile_radius(max_distance_m, buffer_scale, tile_size_m=tile_size_m, max_radius=max_radius)
    return expand_ring(tiles, radius)
