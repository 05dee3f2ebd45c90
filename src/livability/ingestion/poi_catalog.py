"""
Primary POI source: a local JSON catalog.

The catalog (default: `data/pois.sample.json`) is a list of POIs with coordinates
and a `category` equal to a factor id. It is validated into typed models once per
file modification time, then served from memory.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from livability.core.env import resolve_project_path
from livability.domain.models import POI, Bounds, Factor
from livability.ingestion.errors import POIFetchError

logger = logging.getLogger(__name__)

_POIS_ADAPTER = TypeAdapter(list[POI])


def load_pois(path: str | Path) -> list[POI]:
    """Load and validate a POI catalog JSON file."""
    resolved = resolve_project_path(path)
    payload = json.loads(resolved.read_text(encoding="utf-8"))
    return _POIS_ADAPTER.validate_python(payload)


class PoiCatalog:
    """POI source backed by a local catalog file."""

    name = "primary"

    def __init__(self, path: str | Path):
        self._path = resolve_project_path(path)
        self._lock = threading.Lock()
        self._loaded_mtime: float | None = None
        self._by_category: dict[str, list[POI]] = {}

    def _ensure_loaded(self) -> dict[str, list[POI]]:
        try:
            mtime = self._path.stat().st_mtime
        except OSError as e:
            raise POIFetchError(f"POI catalog not found: {self._path}") from e
        with self._lock:
            if self._loaded_mtime != mtime:
                try:
                    pois = load_pois(self._path)
                except (OSError, ValueError, ValidationError) as e:
                    raise POIFetchError(f"POI catalog unreadable: {self._path}: {e}") from e
                by_category: dict[str, list[POI]] = {}
                for p in pois:
                    by_category.setdefault(p.category, []).append(p)
                self._by_category = by_category
                self._loaded_mtime = mtime
                logger.info("Loaded %d POIs from %s", len(pois), self._path)
            return self._by_category

    def fetch(self, bounds: Bounds, factors: list[Factor]) -> dict[str, list[POI]]:
        """POIs inside `bounds` for each factor (keyed by factor id)."""
        by_category = self._ensure_loaded()
        return {
            f.id: [p for p in by_category.get(f.id, []) if bounds.contains(p.lat, p.lng)]
            for f in factors
        }
