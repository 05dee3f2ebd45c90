import pytest

from livability.core.geo import METERS_PER_DEGREE_LAT
from livability.core.grid import generate_grid, tile_cell_size_m
from livability.core.tiles import (
    delta,
    expand_ring,
    key_of_set,
    lat_lng_to_tile,
    overlap_ratio,
    plan_viewport,
    poi_tile_radius,
    tile_bounds,
    tiles_bounds,
    tiles_for_bounds,
)
from livability.domain.models import Bounds, TileCoord


def _block(origin: TileCoord, w: int, h: int) -> list[TileCoord]:
    return [TileCoord(z=origin.z, x=origin.x + dx, y=origin.y + dy) for dx in range(w) for dy in range(h)]


def _inner(bounds: Bounds, eps: float = 1e-5) -> Bounds:
    return Bounds(north=bounds.north - eps, south=bounds.south + eps, east=bounds.east - eps, west=bounds.west + eps)


ORIGIN = lat_lng_to_tile(52.23, 21.01, 13)


def test_tile_roundtrip_contains_point():
    b = tile_bounds(ORIGIN)
    assert b.contains(52.23, 21.01)
    assert ORIGIN.key == f"13:{ORIGIN.x}:{ORIGIN.y}"
    assert TileCoord.from_key(ORIGIN.key) == ORIGIN


def test_tiles_for_bounds_covers_block():
    block = _block(ORIGIN, 2, 2)
    got = tiles_for_bounds(_inner(tiles_bounds(block)), 13)
    assert key_of_set(got) == key_of_set(block)


def test_delta_and_keys():
    a = _block(ORIGIN, 2, 1)
    b = _block(ORIGIN, 1, 1)
    assert delta(a, b) == [a[1]]
    assert delta(a, a) == []
    assert key_of_set(list(reversed(a))) == key_of_set(a)


def test_overlap_ratio_edges():
    a = _block(ORIGIN, 2, 2)
    assert overlap_ratio(a, a) == 1.0
    assert overlap_ratio(a, []) == 0.0
    assert overlap_ratio(a, _block(ORIGIN, 1, 2)) == 0.5


def test_expand_ring_is_chebyshev_union():
    ring = expand_ring([ORIGIN], 1)
    assert len(ring) == 9
    assert ring[0] == ORIGIN

    # An L-shaped set does not fill its bounding box.
    shape = [ORIGIN, TileCoord(z=13, x=ORIGIN.x + 3, y=ORIGIN.y + 3)]
    assert len(expand_ring(shape, 1)) == 18

    with pytest.raises(ValueError):
        expand_ring([ORIGIN, TileCoord(z=12, x=1, y=1)], 1)


def test_expand_ring_clamps_at_world_edge():
    corner = TileCoord(z=13, x=0, y=0)
    assert len(expand_ring([corner], 1)) == 4


def test_plan_viewport_too_large_and_radius_decrement():
    six = _inner(tiles_bounds(_block(ORIGIN, 6, 6)))
    plan = plan_viewport(six, zoom=13, radius=2, max_viewport_tiles=36, max_total_tiles=64)
    assert not plan.too_large
    assert plan.radius == 1
    assert len(plan.tiles) == 64

    seven = _inner(tiles_bounds(_block(ORIGIN, 7, 6)))
    big = plan_viewport(seven, zoom=13, radius=0, max_viewport_tiles=36, max_total_tiles=64)
    assert big.too_large
    assert big.tiles == []


def test_poi_tile_radius_is_capped():
    assert poi_tile_radius(1000, 2.0) == 1
    assert poi_tile_radius(3000, 2.0) == 3
    assert poi_tile_radius(50_000, 2.0, max_radius=10) == 10


def test_cell_size_is_clamped():
    assert tile_cell_size_m(2400) == 100
    assert tile_cell_size_m(50_000) == 300


def test_grid_points_of_neighbouring_tiles_share_an_alignment():
    left = ORIGIN
    right = TileCoord(z=13, x=ORIGIN.x + 1, y=ORIGIN.y)
    a = generate_grid(tile_bounds(left), 100)
    b = generate_grid(tile_bounds(right), 100)
    assert a and b
    assert all(tile_bounds(left).contains(p.lat, p.lng) for p in a)

    lat_step = 100 / METERS_PER_DEGREE_LAT
    rows_a = {round(p.lat / lat_step) for p in a}
    rows_b = {round(p.lat / lat_step) for p in b}
    assert rows_a == rows_b

    # Columns continue across the seam with the same spacing.
    cols = sorted({p.lng for p in a + b})
    gaps = [y - x for x, y in zip(cols, cols[1:])]
    assert max(gaps) == pytest.approx(min(gaps), rel=1e-6)
