"""
Batch tile service.

Given a list of tiles and a scoring configuration, return per-tile score points
and the POIs used, consulting the score cache first and computing only the
missing tiles.

Flow for one request:
1. validate (single zoom, tile cap, at least one active factor)
2. score-cache lookup per tile, keyed by `(tile, config hash)`
3. POI tiles (buffer ring) for the uncached tiles, or for all tiles when
   everything was cached (the POIs are still returned for display)
4. compute uncached tiles, write them back through both cache levels
5. optional per-batch normalization, then POIs filtered to the viewport

Cached values are always the raw natural-scale scores; normalization is applied
after assembly so it never leaks into the cache.
"""

from __future__ import annotations

import logging
import time

from livability.config.settings import Settings
from livability.core.cache import BoundedCache, SharedStore, TwoLevelCache, record_cache_stats
from livability.core.grid import generate_grid, tile_cell_size_m
from livability.core.ingestion_meta import capture_ingestion_meta
from livability.core.tiles import lat_lng_to_tile, poi_tiles_for, tile_bounds
from livability.domain.models import (
    BatchMetadata,
    BatchTileRequest,
    BatchTileResponse,
    BreakdownRequest,
    BreakdownResult,
    DataSource,
    Factor,
    ScorePoint,
    TileCoord,
    TileResult,
)
from livability.heatmap.poi_tiles import PoiTileCache, PoiTileResult
from livability.ingestion.errors import POIFetchError
from livability.ingestion.overpass_client import OverpassClient
from livability.ingestion.poi_catalog import PoiCatalog
from livability.ingestion.poi_service import POIService, POISource
from livability.scoring.engine import ScoreEngine, config_hash, normalize_batch

logger = logging.getLogger(__name__)


def score_tile_key(tile: TileCoord, cfg_hash: str) -> str:
    return f"score-tile:{tile.z}:{tile.x}:{tile.y}:{cfg_hash}"


def _encode_points(points: list[ScorePoint]) -> list[list[float]]:
    return [[p.lat, p.lng, p.value] for p in points]


def _decode_points(raw: list[list[float]]) -> list[ScorePoint]:
    return [ScorePoint(lat=lat, lng=lng, value=value) for lat, lng, value in raw]


class BatchTileService:
    def __init__(
        self,
        settings: Settings,
        *,
        score_cache: TwoLevelCache,
        poi_cache: TwoLevelCache,
        poi_service: POIService,
        store: SharedStore,
        engine: ScoreEngine | None = None,
    ):
        self._settings = settings
        self._score_cache = score_cache
        self._poi_cache = poi_cache
        self._poi_tiles = PoiTileCache(poi_cache, poi_service)
        self._store = store
        self._engine = engine or ScoreEngine(magnitude_floor=settings.scoring.magnitude_floor)

    @property
    def store(self) -> SharedStore:
        return self._store

    def cache_stats(self) -> dict[str, dict[str, int]]:
        return {"score": self._score_cache.stats(), "poi": self._poi_cache.stats()}

    def cache_status(self) -> dict:
        """Shared store status plus per-kind L1 statistics."""
        return {
            "cache": self._store.status(),
            "l1": {
                "score": {**self._score_cache.stats(), "ttl_seconds": int(self._score_cache.ttl_seconds)},
                "poi": {**self._poi_cache.stats(), "ttl_seconds": int(self._poi_cache.ttl_seconds)},
            },
        }

    def _validate_tiles(self, tiles: list[TileCoord]) -> list[TileCoord]:
        zooms = {t.z for t in tiles}
        if len(zooms) != 1:
            raise ValueError(f"All tiles must share one zoom level, got {sorted(zooms)}")
        unique: dict[str, TileCoord] = {}
        for t in tiles:
            unique.setdefault(t.key, t)
        cap = self._settings.tiles.max_total_tiles
        if len(unique) > cap:
            raise ValueError(f"Too many tiles requested ({len(unique)} > {cap})")
        return list(unique.values())

    def _cell_size_m(self) -> float:
        grid = self._settings.grid
        return tile_cell_size_m(
            self._settings.tiles.poi_tile_size_m,
            target_points=grid.target_points,
            min_cell_m=grid.min_cell_m,
            max_cell_m=grid.max_cell_m,
        )

    def _fetch_pois(
        self, tiles: list[TileCoord], factors: list[Factor], preferred: DataSource, buffer_scale: float
    ) -> PoiTileResult:
        tiles_cfg = self._settings.tiles
        max_distance = max(f.max_distance for f in factors)
        ring = poi_tiles_for(
            tiles,
            max_distance,
            buffer_scale,
            tile_size_m=tiles_cfg.poi_tile_size_m,
            max_radius=tiles_cfg.max_poi_tile_radius,
        )
        return self._poi_tiles.get(ring, factors, preferred)

    def run(self, request: BatchTileRequest) -> BatchTileResponse:
        """Serve one batch request.

        Raises:
            ValueError: Invalid tiles or no active factor.
            POIFetchError: No POI source could serve tiles that need computing.
        """
        started = time.perf_counter()
        tiles = self._validate_tiles(request.tiles)
        active = request.active_factors()
        if not active:
            raise ValueError("At least one enabled factor with a non-zero weight is required")

        cfg_hash = config_hash(request)
        buffer_scale = request.poi_buffer_scale or self._settings.tiles.default_poi_buffer_scale

        with record_cache_stats() as req_stats, capture_ingestion_meta() as ing:
            results: dict[str, TileResult] = {}
            uncached: list[TileCoord] = []
            for tile in tiles:
                raw = self._score_cache.get(score_tile_key(tile, cfg_hash))
                if raw is None:
                    uncached.append(tile)
                else:
                    results[tile.key] = TileResult(points=_decode_points(raw), cached=True)

            try:
                poi_result = self._fetch_pois(uncached or tiles, active, request.data_source, buffer_scale)
            except POIFetchError:
                if uncached:
                    raise
                # Every tile was cached; POIs are only needed for display.
                logger.warning("POI sources unavailable; returning cached tiles without POIs")
                poi_result = PoiTileResult(pois={}, data_source=request.data_source, tile_count=0)

            if uncached:
                indexes = self._engine.build_indexes(active, poi_result.pois)
                cell = self._cell_size_m()
                for tile in uncached:
                    grid = generate_grid(tile_bounds(tile), cell)
                    points = self._engine.score_points(
                        grid,
                        indexes,
                        curve=request.distance_curve,
                        sensitivity=request.sensitivity,
                        lam=request.aggregation_lambda,
                    )
                    self._score_cache.set(score_tile_key(tile, cfg_hash), _encode_points(points))
                    results[tile.key] = TileResult(points=points, cached=False)

        ordered = {t.key: results[t.key] for t in tiles}
        if request.normalize_to_viewport:
            ordered = self._normalize(ordered)

        pois = poi_result.pois
        if request.viewport_bounds is not None:
            view = request.viewport_bounds.buffered(self._settings.poi.viewport_buffer_deg)
            pois = {fid: [p for p in items if view.contains(p.lat, p.lng)] for fid, items in pois.items()}

        metadata = BatchMetadata(
            total_tiles=len(tiles),
            cached_tiles=len(tiles) - len(uncached),
            computed_tiles=len(uncached),
            total_points=sum(len(r.points) for r in ordered.values()),
            compute_time_ms=int((time.perf_counter() - started) * 1000),
            poi_tile_count=poi_result.tile_count,
            poi_counts={fid: len(items) for fid, items in pois.items()},
            data_source=poi_result.data_source,
            config_hash=cfg_hash,
            cache_stats=self.cache_stats(),
            request_cache=req_stats.as_dict(),
        )
        logger.info(
            "Batch served tiles=%d cached=%d computed=%d source=%s fallbacks=%d in %dms",
            metadata.total_tiles,
            metadata.cached_tiles,
            metadata.computed_tiles,
            metadata.data_source,
            len(ing.fallbacks),
            metadata.compute_time_ms,
        )
        return BatchTileResponse(tiles=ordered, pois=pois, metadata=metadata)

    @staticmethod
    def _normalize(results: dict[str, TileResult]) -> dict[str, TileResult]:
        keys = list(results)
        flat: list[ScorePoint] = []
        sizes: list[int] = []
        for k in keys:
            flat.extend(results[k].points)
            sizes.append(len(results[k].points))
        scaled = normalize_batch(flat)
        out: dict[str, TileResult] = {}
        offset = 0
        for k, n in zip(keys, sizes):
            out[k] = TileResult(points=scaled[offset : offset + n], cached=results[k].cached)
            offset += n
        return out

    def breakdown(self, request: BreakdownRequest) -> BreakdownResult:
        """Per-factor explanation of the score at one location."""
        active = request.active_factors()
        if not active:
            raise ValueError("At least one enabled factor with a non-zero weight is required")
        tile = lat_lng_to_tile(request.lat, request.lng, self._settings.tiles.zoom)
        with capture_ingestion_meta() as ing:
            poi_result = self._fetch_pois(
                [tile], active, request.data_source, self._settings.tiles.default_poi_buffer_scale
            )
        indexes = self._engine.build_indexes(active, poi_result.pois)
        value, rows = self._engine.breakdown(
            request.lat,
            request.lng,
            indexes,
            curve=request.distance_curve,
            sensitivity=request.sensitivity,
            lam=request.aggregation_lambda,
        )
        return BreakdownResult(
            lat=request.lat,
            lng=request.lng,
            value=value,
            data_source=poi_result.data_source,
            breakdown=rows,
            meta={"config_hash": config_hash(request), "sources": ing.sources},
        )


def build_service(
    settings: Settings,
    *,
    store: SharedStore | None = None,
    primary: POISource | None = None,
    fallback: POISource | None = None,
) -> BatchTileService:
    """Wire caches, POI sources and the engine from settings."""
    cache_cfg = settings.cache
    if store is None:
        store = SharedStore(
            cache_cfg.redis_url,
            key_prefix=cache_cfg.key_prefix,
            memory_max_size=cache_cfg.memory_max_size,
            eviction_ratio=cache_cfg.eviction_ratio,
            reconnect_after_seconds=cache_cfg.reconnect_after_seconds,
        )
    score_cache = TwoLevelCache(
        "score",
        BoundedCache(cache_cfg.score_l1_max, cache_cfg.score_ttl_seconds),
        store,
        ttl_seconds=cache_cfg.score_ttl_seconds,
    )
    poi_cache = TwoLevelCache(
        "poi",
        BoundedCache(cache_cfg.poi_l1_max, cache_cfg.poi_ttl_seconds),
        store,
        ttl_seconds=cache_cfg.poi_ttl_seconds,
    )
    poi_service = POIService(
        primary or PoiCatalog(settings.poi.catalog_path),
        fallback or OverpassClient(settings),
    )
    return BatchTileService(
        settings,
        score_cache=score_cache,
        poi_cache=poi_cache,
        poi_service=poi_service,
        store=store,
    )
