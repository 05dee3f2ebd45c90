"""
Fallback POI source: the OpenStreetMap Overpass API.

This module is responsible only for:
- building one combined Overpass QL query for the requested factors and bounds,
- POSTing it with retry/backoff for 429/transient errors,
- categorizing returned elements into factors by their `key=value` tags.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from livability.config.settings import Settings
from livability.core.http import post_form
from livability.domain.models import POI, Bounds, Factor
from livability.ingestion.errors import POIFetchError

logger = logging.getLogger(__name__)


def _parse_tag(tag: str) -> tuple[str, str]:
    key, _, value = tag.partition("=")
    return key, value


def build_query(factors: list[Factor], bounds: Bounds, *, timeout_seconds: int) -> str:
    """Combined node/way query for every tag of every factor, with element centers."""
    bbox = f"{bounds.south},{bounds.west},{bounds.north},{bounds.east}"
    parts: list[str] = []
    for tag in sorted({t for f in factors for t in f.osm_tags}):
        key, value = _parse_tag(tag)
        parts.append(f'node["{key}"="{value}"]({bbox});')
        parts.append(f'way["{key}"="{value}"]({bbox});')
    return f"[out:json][timeout:{int(timeout_seconds)}];({''.join(parts)});out center;"


def parse_elements(payload: Any, factors: list[Factor]) -> dict[str, list[POI]]:
    """Assign Overpass elements to every factor whose tags they match."""
    if not isinstance(payload, dict) or not isinstance(payload.get("elements"), list):
        raise ValueError("Overpass response has no 'elements' list")

    wanted = {f.id: [_parse_tag(t) for t in f.osm_tags] for f in factors}
    out: dict[str, list[POI]] = {f.id: [] for f in factors}
    for el in payload["elements"]:
        if not isinstance(el, dict):
            continue
        center = el.get("center") or {}
        lat = center.get("lat", el.get("lat"))
        lng = center.get("lon", el.get("lon"))
        if lat is None or lng is None:
            continue
        tags = el.get("tags") or {}
        for factor_id, pairs in wanted.items():
            if any(tags.get(k) == v for k, v in pairs):
                out[factor_id].append(
                    POI(
                        lat=float(lat),
                        lng=float(lng),
                        category=factor_id,
                        id=f"osm:{el.get('type', 'node')}:{el.get('id')}",
                        name=tags.get("name"),
                    )
                )
    return out


class OverpassClient:
    """Fetches POIs from Overpass; raises `POIFetchError` when it cannot."""

    name = "fallback"

    def __init__(self, settings: Settings):
        self._settings = settings

    def _post_query(self, query: str) -> Any:
        poi = self._settings.poi
        retry = poi.overpass_retry
        max_attempts = int(retry.max_attempts)

        for attempt in range(max_attempts + 1):
            try:
                return post_form(
                    poi.overpass_url,
                    data={"data": query},
                    timeout_seconds=poi.overpass_timeout_seconds,
                )
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                if status not in {429, 500, 502, 503, 504} or attempt >= max_attempts:
                    raise
                delay = min(retry.max_delay_seconds, retry.base_delay_seconds * (2**attempt))
                logger.warning(
                    "Overpass request failed with status=%s; retrying in %.2fs (attempt %s/%s)",
                    status,
                    delay,
                    attempt + 1,
                    max_attempts,
                )
                time.sleep(delay)
            except httpx.TransportError:
                if attempt >= max_attempts:
                    raise
                delay = min(retry.max_delay_seconds, retry.base_delay_seconds * (2**attempt))
                logger.warning(
                    "Overpass transport error; retrying in %.2fs (attempt %s/%s)",
                    delay,
                    attempt + 1,
                    max_attempts,
                )
                time.sleep(delay)
        raise RuntimeError("Overpass request failed without an exception (unexpected).")

    def fetch(self, bounds: Bounds, factors: list[Factor]) -> dict[str, list[POI]]:
        tagged = [f for f in factors if f.osm_tags]
        if not tagged:
            return {f.id: [] for f in factors}
        query = build_query(tagged, bounds, timeout_seconds=int(self._settings.poi.overpass_timeout_seconds))
        try:
            payload = self._post_query(query)
            found = parse_elements(payload, tagged)
        except (httpx.HTTPError, ValueError) as exc:
            raise POIFetchError(f"Overpass fetch failed: {exc}") from exc
        return {f.id: found.get(f.id, []) for f in factors}
