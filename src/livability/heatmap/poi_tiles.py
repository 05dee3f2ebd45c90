"""
Tile-aligned POI cache.

POIs are cached per `(tile, source, factor)` so neighbouring requests share
fetches. All uncached pairs of one request are served by a single source fetch
over the union bounds of their tiles; results are split back into tiles by
position. Empty results are not cached.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from livability.core.cache import TwoLevelCache
from livability.core.geo import coord_key
from livability.core.tiles import lat_lng_to_tile, tiles_bounds
from livability.domain.models import POI, DataSource, Factor, TileCoord
from livability.ingestion.poi_service import POIService

logger = logging.getLogger(__name__)


def poi_tile_key(tile: TileCoord, source: DataSource, factor_id: str) -> str:
    return f"poi-tile:{tile.z}:{tile.x}:{tile.y}:{source}:{factor_id}"


def dedupe_pois(pois: list[POI]) -> list[POI]:
    """Drop POIs sharing a coordinate (first one wins)."""
    seen: set[str] = set()
    out: list[POI] = []
    for p in pois:
        k = coord_key(p.lat, p.lng)
        if k in seen:
            continue
        seen.add(k)
        out.append(p)
    return out


@dataclass
class PoiTileResult:
    pois: dict[str, list[POI]]
    data_source: DataSource
    tile_count: int
    cached_pairs: int = 0
    fetched_pairs: int = 0
    counts: dict[str, int] = field(default_factory=dict)


class PoiTileCache:
    def __init__(self, cache: TwoLevelCache, service: POIService):
        self._cache = cache
        self._service = service

    def get(self, tiles: list[TileCoord], factors: list[Factor], preferred: DataSource) -> PoiTileResult:
        """POIs of `factors` inside `tiles`, keyed by factor id (deduplicated)."""
        collected: dict[str, list[POI]] = {f.id: [] for f in factors}
        missing: set[tuple[str, str]] = set()
        missing_tiles: dict[str, TileCoord] = {}
        missing_factors: dict[str, Factor] = {}
        cached_pairs = 0

        for tile in tiles:
            for f in factors:
                raw = self._cache.get(poi_tile_key(tile, preferred, f.id))
                if raw is not None:
                    collected[f.id].extend(POI.model_validate(p) for p in raw)
                    cached_pairs += 1
                    continue
                missing.add((tile.key, f.id))
                missing_tiles[tile.key] = tile
                missing_factors[f.id] = f

        source: DataSource = preferred
        if missing:
            bounds = tiles_bounds(missing_tiles.values())
            fetched, source = self._service.fetch(bounds, list(missing_factors.values()), preferred)
            zoom = next(iter(missing_tiles.values())).z

            buckets: dict[tuple[str, str], list[POI]] = {}
            for factor_id, pois in fetched.items():
                for p in pois:
                    pair = (lat_lng_to_tile(p.lat, p.lng, zoom).key, factor_id)
                    if pair in missing:
                        buckets.setdefault(pair, []).append(p)

            for (tile_key, factor_id), pois in buckets.items():
                self._cache.set(
                    poi_tile_key(missing_tiles[tile_key], source, factor_id),
                    [p.model_dump(mode="json") for p in pois],
                )
                collected[factor_id].extend(pois)
            logger.debug(
                "Fetched POIs for %d tile/factor pairs from %s (%d non-empty)",
                len(missing),
                source,
                len(buckets),
            )

        out = {fid: dedupe_pois(pois) for fid, pois in collected.items()}
        return PoiTileResult(
            pois=out,
            data_source=source,
            tile_count=len(tiles),
            cached_pairs=cached_pairs,
            fetched_pairs=len(missing),
            counts={fid: len(pois) for fid, pois in out.items()},
        )
