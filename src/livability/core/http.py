"""
HTTP helpers.

Centralizes the minimal synchronous HTTP logic used by POI sources.

Design goals:
- Small surface area (POST form, decode JSON).
- Deterministic defaults (timeout + User-Agent).
- Raise on non-2xx so callers can decide how to fail (the POI service falls back).
"""

from __future__ import annotations

from typing import Any

import httpx


DEFAULT_USER_AGENT = "livability/0.1.0 (+https://local)"


def post_form(
    url: str,
    *,
    data: dict[str, Any],
    headers: dict[str, str] | None = None,
    timeout_seconds: float = 30,
) -> Any:
    """POST `data` as form-encoded body and return the decoded JSON response.

    Used by the Overpass client (`data=<query>`).

    Raises:
        httpx.HTTPError: On transport errors or non-2xx status codes.
        ValueError: If the response body is not valid JSON.
    """
    request_headers = {"User-Agent": DEFAULT_USER_AGENT}
    if headers:
        request_headers.update(headers)

    with httpx.Client(timeout=timeout_seconds) as client:
        resp = client.post(url, data=data, headers=request_headers)
        resp.raise_for_status()
        return resp.json()
