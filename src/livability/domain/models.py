"""
Domain models (Pydantic).

These types are the stable contract between layers:
- tile addressing (`TileCoord`, `Bounds`)
- scoring inputs (`Factor`, `POI`) and outputs (`ScorePoint`)
- the batch endpoint request/response (`BatchTileRequest`, `BatchTileResponse`)

Keeping them in one place gives consistent validation and JSON output across
the API, the CLI and the prefetch client.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

DistanceCurve = Literal["linear", "log", "exp", "power"]
DataSource = Literal["primary", "fallback"]
PrefetchMode = Literal["progressive", "batch"]


class TileCoord(BaseModel):
    """A slippy-map tile address."""

    model_config = ConfigDict(frozen=True)

    z: int = Field(..., ge=0, le=22)
    x: int = Field(..., ge=0)
    y: int = Field(..., ge=0)

    @model_validator(mode="after")
    def _validate_range(self) -> "TileCoord":
        n = 1 << self.z
        if self.x >= n or self.y >= n:
            raise ValueError(f"tile {self.z}:{self.x}:{self.y} is outside the zoom {self.z} range")
        return self

    @property
    def key(self) -> str:
        return f"{self.z}:{self.x}:{self.y}"

    @classmethod
    def from_key(cls, key: str) -> "TileCoord":
        parts = key.split(":")
        if len(parts) != 3:
            raise ValueError(f"Invalid tile key '{key}', expected z:x:y")
        z, x, y = (int(p) for p in parts)
        return cls(z=z, x=x, y=y)


class Bounds(BaseModel):
    """A lat/lng rectangle in decimal degrees (no antimeridian crossing)."""

    model_config = ConfigDict(frozen=True)

    north: float = Field(..., ge=-90, le=90)
    south: float = Field(..., ge=-90, le=90)
    east: float = Field(..., ge=-180, le=180)
    west: float = Field(..., ge=-180, le=180)

    @model_validator(mode="after")
    def _validate_order(self) -> "Bounds":
        if self.north <= self.south:
            raise ValueError("bounds.north must be greater than bounds.south")
        if self.east <= self.west:
            raise ValueError("bounds.east must be greater than bounds.west")
        return self

    def contains(self, lat: float, lng: float) -> bool:
        return self.south <= lat <= self.north and self.west <= lng <= self.east

    def buffered(self, degrees: float) -> "Bounds":
        return Bounds(
            north=min(90.0, self.north + degrees),
            south=max(-90.0, self.south - degrees),
            east=min(180.0, self.east + degrees),
            west=max(-180.0, self.west - degrees),
        )

    @property
    def center(self) -> tuple[float, float]:
        return (self.north + self.south) / 2, (self.east + self.west) / 2


class Factor(BaseModel):
    """A weighted POI category. Negative weight means "avoid"."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    name: str = ""
    weight: float = Field(..., ge=-100, le=100)
    max_distance: float = Field(..., gt=0)
    enabled: bool = True
    osm_tags: list[str] = Field(default_factory=list)

    @property
    def active(self) -> bool:
        return self.enabled and self.weight != 0


class POI(BaseModel):
    """A categorized point of interest; `category` is the factor id."""

    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    category: str
    id: str | None = None
    name: str | None = None


class ScorePoint(BaseModel):
    lat: float
    lng: float
    value: float


class ScoringParams(BaseModel):
    """Everything that determines a score besides tiles and POIs."""

    factors: list[Factor]
    distance_curve: DistanceCurve = "log"
    sensitivity: float = Field(1.0, ge=0.5, le=3)
    aggregation_lambda: float = Field(1.0, ge=-5, le=5)

    def active_factors(self) -> list[Factor]:
        return [f for f in self.factors if f.active]


class BatchTileRequest(ScoringParams):
    """Request body for the batch tile endpoint."""

    tiles: list[TileCoord] = Field(..., min_length=1)
    normalize_to_viewport: bool = False
    data_source: DataSource = "primary"
    poi_buffer_scale: float | None = Field(default=None, ge=1, le=2)
    viewport_bounds: Bounds | None = None


class TileResult(BaseModel):
    points: list[ScorePoint]
    cached: bool


class BatchMetadata(BaseModel):
    total_tiles: int
    cached_tiles: int
    computed_tiles: int
    total_points: int
    compute_time_ms: int
    poi_tile_count: int = 0
    poi_counts: dict[str, int] = Field(default_factory=dict)
    data_source: DataSource
    config_hash: str
    cache_stats: dict[str, dict[str, int]] = Field(default_factory=dict)
    request_cache: dict[str, int] = Field(default_factory=dict)


class BatchTileResponse(BaseModel):
    tiles: dict[str, TileResult]
    pois: dict[str, list[POI]]
    metadata: BatchMetadata


class BreakdownRequest(ScoringParams):
    """Request body for a single-location factor breakdown."""

    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    data_source: DataSource = "primary"


class FactorBreakdown(BaseModel):
    factor_id: str
    factor_name: str
    weight: float
    max_distance: float
    distance_m: float | None
    proximity: float
    contribution: float
    nearby_count: int


class BreakdownResult(BaseModel):
    lat: float
    lng: float
    value: float
    data_source: DataSource
    breakdown: list[FactorBreakdown]
    meta: dict[str, Any] = Field(default_factory=dict)
