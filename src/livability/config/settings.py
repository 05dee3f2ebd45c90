"""
Application settings (Pydantic).

Settings are loaded from `src/livability/config/defaults.yaml`, then optionally overridden by:
- environment variables (e.g., `LIVABILITY_REDIS_URL`, `LIVABILITY_LOG_LEVEL`)
- an external YAML file via `LIVABILITY_CONFIG_PATH`

Design rule:
- Tuning knobs (tile caps, TTLs, thresholds, factor defaults) live in YAML, not in business logic.
"""

from __future__ import annotations

import os
from functools import lru_cache
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator

from livability.core.env import load_dotenv_if_present
from livability.domain.models import DistanceCurve, Factor, PrefetchMode


def _read_package_yaml(filename: str) -> dict[str, Any]:
    """Read a YAML file packaged inside `livability.config`."""
    text = resources.files("livability.config").joinpath(filename).read_text(encoding="utf-8")
    data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid YAML root object for {filename}; expected a mapping.")
    return data


def _read_yaml_file(path: str | Path) -> dict[str, Any]:
    """Read a YAML file from disk and return its mapping root."""
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid YAML root object for {path}; expected a mapping.")
    return data


class AppSettings(BaseModel):
    name: str = "Livability"
    log_level: str = "INFO"


class TileSettings(BaseModel):
    zoom: int = Field(13, ge=1, le=18)
    max_viewport_tiles: int = Field(36, ge=1)
    max_total_tiles: int = Field(64, ge=1)
    default_radius: int = Field(0, ge=0)
    max_radius: int = Field(2, ge=0)
    poi_tile_size_m: float = Field(2400, gt=0)
    max_poi_tile_radius: int = Field(10, ge=0)
    default_poi_buffer_scale: float = 2.0
    min_poi_buffer_scale: float = 1.0
    max_poi_buffer_scale: float = 2.0

    @model_validator(mode="after")
    def _validate_caps(self) -> "TileSettings":
        if self.max_total_tiles < self.max_viewport_tiles:
            raise ValueError("tiles.max_total_tiles must be >= tiles.max_viewport_tiles")
        if not self.min_poi_buffer_scale <= self.default_poi_buffer_scale <= self.max_poi_buffer_scale:
            raise ValueError("tiles.default_poi_buffer_scale must lie within the min/max buffer scale")
        return self


class GridSettings(BaseModel):
    target_points: int = Field(5000, ge=4)
    min_cell_m: float = Field(100, gt=0)
    max_cell_m: float = Field(300, gt=0)


class ScoringSettings(BaseModel):
    default_curve: DistanceCurve = "log"
    default_sensitivity: float = 1.0
    default_lambda: float = 1.0
    magnitude_floor: float = 1e-10


class CacheSettings(BaseModel):
    redis_url: str | None = None
    key_prefix: str = "livability:"
    score_ttl_seconds: int = 60 * 60 * 24
    poi_ttl_seconds: int = 60 * 60 * 24
    score_l1_max: int = Field(10_000, ge=1)
    poi_l1_max: int = Field(1000, ge=1)
    memory_max_size: int = Field(10_000, ge=1)
    eviction_ratio: float = Field(0.1, gt=0, le=1)
    reconnect_after_seconds: float = 30


class RetrySettings(BaseModel):
    max_attempts: int = Field(2, ge=0)
    base_delay_seconds: float = Field(1.0, ge=0)
    max_delay_seconds: float = Field(8.0, ge=0)


class PoiSettings(BaseModel):
    catalog_path: str = "data/pois.sample.json"
    overpass_url: str = "https://overpass-api.de/api/interpreter"
    overpass_timeout_seconds: float = 60
    viewport_buffer_deg: float = 0.001
    overpass_retry: RetrySettings = Field(default_factory=RetrySettings)


class PrefetchSettings(BaseModel):
    batch_url: str = "http://127.0.0.1:8000/api/heatmap/batch"
    fetch_timeout_seconds: float = Field(30, gt=0)
    zoom_overlap_threshold: float = Field(0.5, ge=0, le=1)
    phase_yield_seconds: float = Field(0.05, ge=0)
    mode: PrefetchMode = "progressive"
    binary: bool = True


class FactorOverride(BaseModel):
    weight: float | None = Field(default=None, ge=-100, le=100)
    max_distance: float | None = Field(default=None, gt=0)
    enabled: bool | None = None


class ProfileDefinition(BaseModel):
    description: str = ""
    overrides: dict[str, FactorOverride] = Field(default_factory=dict)


class Settings(BaseModel):
    app: AppSettings = Field(default_factory=AppSettings)
    tiles: TileSettings = Field(default_factory=TileSettings)
    grid: GridSettings = Field(default_factory=GridSettings)
    scoring: ScoringSettings = Field(default_factory=ScoringSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    poi: PoiSettings = Field(default_factory=PoiSettings)
    prefetch: PrefetchSettings = Field(default_factory=PrefetchSettings)
    factors: list[Factor] = Field(default_factory=list)
    profiles: dict[str, ProfileDefinition] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _validate_profiles(self) -> "Settings":
        known = {f.id for f in self.factors}
        for name, profile in self.profiles.items():
            unknown = sorted(set(profile.overrides) - known)
            if unknown:
                raise ValueError(f"profiles.{name} overrides unknown factors: {', '.join(unknown)}")
        return self


def apply_profile(factors: list[Factor], profile: ProfileDefinition) -> list[Factor]:
    """Return a new factor list with the profile's overrides applied."""
    out: list[Factor] = []
    for factor in factors:
        override = profile.overrides.get(factor.id)
        if override is None:
            out.append(factor)
            continue
        out.append(factor.model_copy(update=override.model_dump(exclude_none=True)))
    return out


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Overlay selected environment variables onto raw settings payload.

    Note: We intentionally keep this whitelist small.
    """
    load_dotenv_if_present()
    data = dict(data)

    log_level = os.getenv("LIVABILITY_LOG_LEVEL")
    if log_level:
        data.setdefault("app", {})["log_level"] = log_level

    redis_url = os.getenv("LIVABILITY_REDIS_URL")
    if redis_url:
        data.setdefault("cache", {})["redis_url"] = redis_url

    catalog = os.getenv("LIVABILITY_POI_CATALOG")
    if catalog:
        data.setdefault("poi", {})["catalog_path"] = catalog

    overpass = os.getenv("LIVABILITY_OVERPASS_URL")
    if overpass:
        data.setdefault("poi", {})["overpass_url"] = overpass

    batch_url = os.getenv("LIVABILITY_BATCH_URL")
    if batch_url:
        data.setdefault("prefetch", {})["batch_url"] = batch_url

    return data


@lru_cache
def get_settings() -> Settings:
    """Load and validate settings (cached)."""
    load_dotenv_if_present()
    config_path = os.getenv("LIVABILITY_CONFIG_PATH")
    raw = _read_yaml_file(config_path) if config_path else _read_package_yaml("defaults.yaml")
    raw = _apply_env_overrides(raw)
    return Settings.model_validate(raw)


@lru_cache
def get_logging_config() -> dict[str, Any]:
    """Load logging configuration (cached)."""
    return _read_package_yaml("logging.yaml")
