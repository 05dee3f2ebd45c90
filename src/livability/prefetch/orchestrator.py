"""
Progressive viewport prefetch.

The orchestrator turns a viewport + scoring configuration into a sequence of
batch tile requests (viewport first, then outward rings) and keeps an
accumulated point store the map can render at any time.

Only the newest generation may write state. A newer `fetch` (or `abort`)
cancels the previous generation's token; results that arrive afterwards are
discarded without touching the store.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Literal

from livability.config.settings import PrefetchSettings, TileSettings
from livability.core.geo import coord_key
from livability.core.tiles import delta, expand_ring, overlap_ratio, plan_viewport, tiles_bounds
from livability.domain.models import (
    POI,
    BatchMetadata,
    BatchTileRequest,
    BatchTileResponse,
    Bounds,
    DataSource,
    DistanceCurve,
    Factor,
    PrefetchMode,
    ScorePoint,
    ScoringParams,
    TileCoord,
)
from livability.prefetch.cancel import CancelToken
from livability.prefetch.client import BatchClient, FetchCancelled, FetchFailed
from livability.scoring.engine import config_hash

logger = logging.getLogger(__name__)

Status = Literal["idle", "loading", "done", "aborted", "too_large", "failed"]


@dataclass
class ViewportRequest:
    bounds: Bounds
    factors: list[Factor]
    distance_curve: DistanceCurve = "log"
    sensitivity: float = 1.0
    aggregation_lambda: float = 1.0
    normalize_to_viewport: bool = False
    data_source: DataSource = "primary"
    tile_radius: int = 0
    poi_buffer_scale: float | None = None
    mode: PrefetchMode = "progressive"

    def scoring_params(self) -> ScoringParams:
        return ScoringParams(
            factors=self.factors,
            distance_curve=self.distance_curve,
            sensitivity=self.sensitivity,
            aggregation_lambda=self.aggregation_lambda,
        )


@dataclass(frozen=True)
class FetchOutcome:
    status: Status
    generation: int
    phases_completed: int = 0
    requests_sent: int = 0
    error: str | None = None


@dataclass
class OrchestratorState:
    generation: int = 0
    status: Status = "idle"
    phase: int | None = None
    blocking: bool = False
    error: str | None = None
    too_large: bool = False
    used_fallback: bool = False
    point_count: int = 0
    covered_tiles: list[str] = field(default_factory=list)
    last_metadata: BatchMetadata | None = None


class PrefetchOrchestrator:
    def __init__(
        self,
        client: BatchClient,
        *,
        tiles: TileSettings,
        prefetch: PrefetchSettings,
        on_update: Callable[[OrchestratorState], None] | None = None,
    ):
        self._client = client
        self._tiles = tiles
        self._prefetch = prefetch
        self._on_update = on_update

        self._state = OrchestratorState()
        self._token: CancelToken | None = None
        self._points: dict[str, ScorePoint] = {}
        self._pois: dict[str, dict[str, POI]] = {}
        self._covered: list[TileCoord] = []
        self._held: dict[str, TileCoord] = {}
        self._config_hash: str | None = None
        self._last_viewport: list[TileCoord] = []

    # -- read side -------------------------------------------------------

    def points(self) -> list[ScorePoint]:
        return list(self._points.values())

    def pois(self) -> dict[str, list[POI]]:
        return {fid: list(items.values()) for fid, items in self._pois.items()}

    def snapshot(self) -> OrchestratorState:
        return replace(self._state, covered_tiles=list(self._state.covered_tiles))

    def _notify(self) -> None:
        self._state.point_count = len(self._points)
        self._state.covered_tiles = sorted(t.key for t in self._covered)
        if self._on_update is not None:
            self._on_update(self.snapshot())

    # -- control ---------------------------------------------------------

    def abort(self) -> None:
        """Cancel the in-flight generation; accumulated points are kept."""
        if self._token is not None:
            self._token.cancel("aborted")
        if self._state.status == "loading":
            self._state.status = "aborted"
            self._state.phase = None
            self._state.blocking = False
            self._notify()

    def _clear(self) -> None:
        self._points.clear()
        self._pois.clear()
        self._covered = []
        self._held.clear()

    async def refresh(self, request: ViewportRequest | None = None) -> FetchOutcome | None:
        """Drop all accumulated state, then optionally refetch `request`."""
        self.abort()
        self._clear()
        self._config_hash = None
        self._last_viewport = []
        self._state = OrchestratorState(generation=self._state.generation)
        self._notify()
        if request is None:
            return None
        return await self.fetch(request)

    # -- write side ------------------------------------------------------

    def _merge(self, response: BatchTileResponse) -> None:
        for result in response.tiles.values():
            for p in result.points:
                self._points[coord_key(p.lat, p.lng)] = p
        for fid, items in response.pois.items():
            bucket = self._pois.setdefault(fid, {})
            for poi in items:
                bucket.setdefault(coord_key(poi.lat, poi.lng), poi)

    def _prune(self) -> None:
        bounds = tiles_bounds(self._covered)
        if bounds is None:
            return
        self._points = {k: p for k, p in self._points.items() if bounds.contains(p.lat, p.lng)}
        self._pois = {
            fid: {k: poi for k, poi in items.items() if bounds.contains(poi.lat, poi.lng)}
            for fid, items in self._pois.items()
        }

    def _adopt(self, ring: list[TileCoord]) -> None:
        have = {t.key for t in self._covered}
        self._covered = self._covered + [t for t in ring if t.key not in have]

    def _finish(self, gen: int, status: Status, *, phases: int, sent: int, error: str | None = None) -> FetchOutcome:
        if gen == self._state.generation:
            self._state.status = status
            self._state.phase = None
            self._state.blocking = False
            self._state.error = error
            self._notify()
        return FetchOutcome(status=status, generation=gen, phases_completed=phases, requests_sent=sent, error=error)

    def _stale(self, gen: int, token: CancelToken) -> bool:
        return gen != self._state.generation or token.cancelled

    async def fetch(self, request: ViewportRequest, cancel: CancelToken | None = None) -> FetchOutcome:
        """Load the viewport (and its rings) into the accumulated store."""
        if self._token is not None:
            self._token.cancel("superseded")
        own = CancelToken()
        self._token = own
        if cancel is None:
            return await self._run(request, own)
        token = CancelToken.any_of(own, cancel)
        try:
            return await self._run(request, token)
        finally:
            token.detach(own, cancel)

    async def _run(self, request: ViewportRequest, token: CancelToken) -> FetchOutcome:
        gen = self._state.generation + 1
        self._state.generation = gen
        self._state.error = None
        self._state.too_large = False
        self._state.used_fallback = False

        plan = plan_viewport(
            request.bounds,
            zoom=self._tiles.zoom,
            radius=min(request.tile_radius, self._tiles.max_radius),
            max_viewport_tiles=self._tiles.max_viewport_tiles,
            max_total_tiles=self._tiles.max_total_tiles,
        )
        if plan.too_large:
            self._state.too_large = True
            logger.info("Viewport too large (%d tiles); nothing requested", len(plan.viewport_tiles))
            return self._finish(gen, "too_large", phases=0, sent=0)

        params = request.scoring_params()
        if not params.active_factors():
            return self._finish(gen, "idle", phases=0, sent=0)

        cfg_hash = config_hash(params)
        if self._config_hash is not None and cfg_hash != self._config_hash:
            logger.debug("Scoring configuration changed; clearing accumulated points")
            self._clear()
        elif self._last_viewport and overlap_ratio(plan.viewport_tiles, self._last_viewport) < (
            self._prefetch.zoom_overlap_threshold
        ):
            logger.debug("Viewport moved beyond overlap threshold; clearing accumulated points")
            self._clear()
        self._config_hash = cfg_hash
        self._last_viewport = plan.viewport_tiles
        # Held tiles inside the new plan stay covered; the rest age out on prune.
        wanted = {t.key for t in plan.tiles}
        self._covered = [t for t in self._held.values() if t.key in wanted]
        self._held = {t.key: t for t in self._covered}

        phases = list(range(plan.radius + 1)) if request.mode == "progressive" else [plan.radius]
        sent = 0
        done_phases = 0

        for i, phase in enumerate(phases):
            if self._stale(gen, token):
                return self._finish(gen, "aborted", phases=done_phases, sent=sent)
            if i > 0:
                await asyncio.sleep(self._prefetch.phase_yield_seconds)
                if self._stale(gen, token):
                    return self._finish(gen, "aborted", phases=done_phases, sent=sent)

            self._state.status = "loading"
            self._state.phase = phase
            self._state.blocking = i == 0
            self._notify()

            ring = expand_ring(plan.viewport_tiles, phase)
            missing = delta(ring, self._held.values())
            if missing:
                batch = BatchTileRequest(
                    tiles=missing,
                    factors=request.factors,
                    distance_curve=request.distance_curve,
                    sensitivity=request.sensitivity,
                    aggregation_lambda=request.aggregation_lambda,
                    normalize_to_viewport=request.normalize_to_viewport,
                    data_source=request.data_source,
                    poi_buffer_scale=request.poi_buffer_scale,
                    viewport_bounds=request.bounds,
                )
                sent += 1
                try:
                    response = await self._client.fetch(batch, token)
                except FetchCancelled:
                    return self._finish(gen, "aborted", phases=done_phases, sent=sent)
                except FetchFailed as exc:
                    if self._stale(gen, token):
                        return self._finish(gen, "aborted", phases=done_phases, sent=sent)
                    logger.warning("Prefetch phase %d failed: %s", phase, exc)
                    return self._finish(gen, "failed", phases=done_phases, sent=sent, error=str(exc))
                if self._stale(gen, token):
                    return self._finish(gen, "aborted", phases=done_phases, sent=sent)

                self._merge(response)
                self._held.update((t.key, t) for t in missing)
                self._state.last_metadata = response.metadata
                if response.metadata.data_source != request.data_source:
                    self._state.used_fallback = True

            self._adopt(ring)
            self._prune()
            done_phases += 1
            self._notify()

        return self._finish(gen, "done", phases=done_phases, sent=sent)
