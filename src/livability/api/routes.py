"""
API routes.

Endpoints:
- POST `/api/heatmap/batch`: score tiles (JSON, or MessagePack with `Accept: application/msgpack`).
- POST `/api/heatmap/breakdown`: per-factor explanation of one location.
- GET  `/api/cache/status`: shared store + L1 statistics.
- GET  `/api/factors`: default factors and configured profiles.
"""

from __future__ import annotations

import json
from functools import lru_cache
from hashlib import sha256

import msgpack
from fastapi import APIRouter, HTTPException, Request, Response

from livability.config.settings import apply_profile, get_settings
from livability.domain.models import BatchTileRequest, BatchTileResponse, BreakdownRequest, BreakdownResult
from livability.heatmap.batch import BatchTileService, build_service
from livability.ingestion.errors import POIFetchError

router = APIRouter()

MSGPACK_MEDIA_TYPE = "application/msgpack"


@lru_cache
def _service() -> BatchTileService:
    return build_service(get_settings())


def _wants_msgpack(request: Request) -> bool:
    return MSGPACK_MEDIA_TYPE in request.headers.get("accept", "")


def _error(status_code: int, code: str, exc: Exception) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": str(exc)})


@router.post("/api/heatmap/batch", response_model=BatchTileResponse)
def post_heatmap_batch(payload: BatchTileRequest, request: Request):
    """Score a batch of tiles, serving cached tiles without recomputation."""
    try:
        result = _service().run(payload)
    except ValueError as e:
        raise _error(400, "VALIDATION_ERROR", e) from e
    except POIFetchError as e:
        raise _error(503, "SOURCE_UNAVAILABLE", e) from e
    except Exception as e:
        raise _error(500, "INTERNAL_ERROR", e) from e

    if _wants_msgpack(request):
        body = msgpack.packb(result.model_dump(mode="json"), use_bin_type=True)
        return Response(content=body, media_type=MSGPACK_MEDIA_TYPE)
    return result


@router.post("/api/heatmap/breakdown", response_model=BreakdownResult)
def post_heatmap_breakdown(payload: BreakdownRequest) -> BreakdownResult:
    """Explain the score at one location factor by factor."""
    try:
        return _service().breakdown(payload)
    except ValueError as e:
        raise _error(400, "VALIDATION_ERROR", e) from e
    except POIFetchError as e:
        raise _error(503, "SOURCE_UNAVAILABLE", e) from e
    except Exception as e:
        raise _error(500, "INTERNAL_ERROR", e) from e


@router.get("/api/cache/status")
def get_cache_status() -> dict:
    return _service().cache_status()


@router.get("/api/factors")
def get_factors() -> dict:
    """Return default factors and every profile with its resolved factor list."""
    settings = get_settings()
    profiles = []
    for name, profile in settings.profiles.items():
        payload = profile.model_dump(mode="json", exclude_none=True)
        version = sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()[:12]
        profiles.append(
            {
                "name": name,
                "version": version,
                "description": profile.description,
                "factors": [f.model_dump(mode="json") for f in apply_profile(settings.factors, profile)],
            }
        )
    profiles.sort(key=lambda p: p["name"])
    return {
        "factors": [f.model_dump(mode="json") for f in settings.factors],
        "profiles": profiles,
        "scoring": settings.scoring.model_dump(mode="json"),
    }
