"""
POI fetching with transparent source fallback.

The preferred source is tried first; if it raises `POIFetchError` the other
source answers instead and the actual source is reported back to the caller.
"""

from __future__ import annotations

import logging
from typing import Protocol

from livability.core.ingestion_meta import record_fallback, record_ingestion_source
from livability.domain.models import POI, Bounds, DataSource, Factor
from livability.ingestion.errors import POIFetchError

logger = logging.getLogger(__name__)


class POISource(Protocol):
    name: str

    def fetch(self, bounds: Bounds, factors: list[Factor]) -> dict[str, list[POI]]: ...


class POIService:
    def __init__(self, primary: POISource, fallback: POISource):
        self._sources: dict[DataSource, POISource] = {"primary": primary, "fallback": fallback}

    def fetch(
        self, bounds: Bounds, factors: list[Factor], preferred: DataSource = "primary"
    ) -> tuple[dict[str, list[POI]], DataSource]:
        """Return `(pois_by_factor, actual_source)`.

        Raises:
            POIFetchError: When neither source can answer.
        """
        other: DataSource = "fallback" if preferred == "primary" else "primary"
        try:
            pois = self._sources[preferred].fetch(bounds, factors)
            source = preferred
        except POIFetchError as exc:
            logger.warning("POI source '%s' unavailable, falling back to '%s': %s", preferred, other, exc)
            record_fallback(f"{preferred}: {exc}")
            try:
                pois = self._sources[other].fetch(bounds, factors)
            except POIFetchError as exc2:
                raise POIFetchError(f"All POI sources failed ({preferred}: {exc}; {other}: {exc2})") from exc2
            source = other

        for f in factors:
            record_ingestion_source(f"poi:{f.id}", {"mode": "live", "source": source, "count": len(pois.get(f.id, []))})
        return pois, source
