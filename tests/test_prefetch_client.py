import asyncio
import json

import httpx
import msgpack
import pytest

from livability.domain.models import BatchTileRequest, Factor, TileCoord
from livability.prefetch.cancel import CancelToken
from livability.prefetch.client import FetchFailed, HttpBatchClient

URL = "http://testserver/api/heatmap/batch"

PAYLOAD = {
    "tiles": {
        "13:4574:2692": {"points": [{"lat": 52.23, "lng": 21.01, "value": 42.0}], "cached": True},
    },
    "pois": {"grocery": [{"lat": 52.23, "lng": 21.01, "category": "grocery"}]},
    "metadata": {
        "total_tiles": 1,
        "cached_tiles": 1,
        "computed_tiles": 0,
        "total_points": 1,
        "compute_time_ms": 3,
        "data_source": "primary",
        "config_hash": "abc",
    },
}


def _request() -> BatchTileRequest:
    return BatchTileRequest(
        tiles=[TileCoord(z=13, x=4574, y=2692)],
        factors=[Factor(id="grocery", weight=80, max_distance=1000)],
    )


def _fetch(handler, *, binary=True, timeout_seconds=5):
    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = HttpBatchClient(URL, timeout_seconds=timeout_seconds, binary=binary, client=http)
            return await client.fetch(_request(), CancelToken())

    return asyncio.run(go())


def test_msgpack_response_is_decoded():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["accept"] = request.headers["accept"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200, content=msgpack.packb(PAYLOAD, use_bin_type=True), headers={"content-type": "application/msgpack"}
        )

    resp = _fetch(handler)
    assert seen["accept"] == "application/msgpack"
    assert seen["body"]["tiles"] == [{"z": 13, "x": 4574, "y": 2692}]
    assert resp.tiles["13:4574:2692"].points[0].value == 42.0
    assert resp.metadata.config_hash == "abc"


def test_json_response_is_decoded():
    resp = _fetch(lambda request: httpx.Response(200, json=PAYLOAD), binary=False)
    assert resp.pois["grocery"][0].category == "grocery"


def test_http_error_status_is_a_fetch_failure():
    with pytest.raises(FetchFailed, match="503"):
        _fetch(lambda request: httpx.Response(503, json={"detail": "down"}))


def test_undecodable_payload_is_a_fetch_failure():
    with pytest.raises(FetchFailed, match="decoded"):
        _fetch(lambda request: httpx.Response(200, json={"tiles": "nope"}), binary=False)
