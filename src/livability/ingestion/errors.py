from __future__ import annotations


class POIFetchError(RuntimeError):
    """A POI source could not answer (unreachable, bad payload, missing catalog)."""
