"""
Per-request POI source metadata capture.

A contextvar-backed recorder used by POI sources to report, per factor:
- which source answered (primary/fallback) and whether it came from the tile cache
- fetch errors that triggered a fallback

The batch service logs the fallbacks; breakdown results report the sources.
"""

from __future__ import annotations

import contextvars
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any


@dataclass
class IngestionMeta:
    sources: dict[str, dict[str, Any]] = field(default_factory=dict)
    fallbacks: list[str] = field(default_factory=list)

    def record(self, name: str, payload: dict[str, Any]) -> None:
        if not name:
            return
        self.sources[name] = dict(payload)


_ingestion_meta_var: contextvars.ContextVar[IngestionMeta | None] = contextvars.ContextVar(
    "livability_ingestion_meta", default=None
)


def record_ingestion_source(name: str, payload: dict[str, Any]) -> None:
    meta = _ingestion_meta_var.get()
    if not meta:
        return
    meta.record(name, payload)


def record_fallback(reason: str) -> None:
    meta = _ingestion_meta_var.get()
    if not meta:
        return
    meta.fallbacks.append(reason)


@contextmanager
def capture_ingestion_meta() -> IngestionMeta:
    meta = IngestionMeta()
    token = _ingestion_meta_var.set(meta)
    try:
        yield meta
    finally:
        _ingestion_meta_var.reset(token)
