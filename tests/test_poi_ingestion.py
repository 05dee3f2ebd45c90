import json

import httpx
import pytest

from livability.config.settings import get_settings
from livability.core.cache import BoundedCache, SharedStore, TwoLevelCache
from livability.core.ingestion_meta import capture_ingestion_meta
from livability.core.tiles import lat_lng_to_tile
from livability.domain.models import POI, Bounds, Factor, TileCoord
from livability.heatmap.poi_tiles import PoiTileCache, dedupe_pois, poi_tile_key
from livability.ingestion.errors import POIFetchError
from livability.ingestion.overpass_client import OverpassClient, build_query, parse_elements
from livability.ingestion.poi_catalog import PoiCatalog
from livability.ingestion.poi_service import POIService

BOUNDS = Bounds(north=52.26, south=52.20, east=21.06, west=20.98)
GROCERY = Factor(id="grocery", weight=80, max_distance=2000, osm_tags=["shop=supermarket", "shop=convenience"])
PARKS = Factor(id="parks", weight=60, max_distance=1500, osm_tags=["leisure=park"])


def test_build_query_covers_nodes_and_ways_with_centers():
    q = build_query([GROCERY, PARKS], BOUNDS, timeout_seconds=25)
    assert q.startswith("[out:json][timeout:25];(")
    assert 'node["shop"="supermarket"](52.2,20.98,52.26,21.06);' in q
    assert 'way["leisure"="park"](52.2,20.98,52.26,21.06);' in q
    assert q.endswith(");out center;")


def test_parse_elements_assigns_factors_by_tag():
    payload = {
        "elements": [
            {"type": "node", "id": 1, "lat": 52.23, "lon": 21.01, "tags": {"shop": "supermarket", "name": "A"}},
            {"type": "way", "id": 2, "center": {"lat": 52.24, "lon": 21.02}, "tags": {"leisure": "park"}},
            {"type": "way", "id": 3, "tags": {"leisure": "park"}},
            {"type": "node", "id": 4, "lat": 52.25, "lon": 21.03, "tags": {"amenity": "bench"}},
        ]
    }
    out = parse_elements(payload, [GROCERY, PARKS])
    assert [p.name for p in out["grocery"]] == ["A"]
    assert out["parks"][0].id == "osm:way:2"
    assert out["parks"][0].lat == 52.24
    with pytest.raises(ValueError):
        parse_elements({"remark": "timeout"}, [GROCERY])


def test_overpass_retries_then_wraps_errors(monkeypatch):
    settings = get_settings()
    retry = settings.poi.overpass_retry.model_copy(update={"base_delay_seconds": 0.0, "max_delay_seconds": 0.0})
    settings = settings.model_copy(update={"poi": settings.poi.model_copy(update={"overpass_retry": retry})})
    monkeypatch.setattr("livability.ingestion.overpass_client.time.sleep", lambda _s: None)

    calls = []

    def fake_post_form(url, *, data, headers=None, timeout_seconds=30):  # noqa: ARG001
        calls.append(data["data"])
        if len(calls) == 1:
            request = httpx.Request("POST", url)
            response = httpx.Response(429, request=request)
            raise httpx.HTTPStatusError("429", request=request, response=response)
        return {"elements": [{"type": "node", "id": 9, "lat": 52.23, "lon": 21.01, "tags": {"leisure": "park"}}]}

    monkeypatch.setattr("livability.ingestion.overpass_client.post_form", fake_post_form)
    out = OverpassClient(settings).fetch(BOUNDS, [PARKS])
    assert len(calls) == 2
    assert len(out["parks"]) == 1

    def always_down(url, **_kwargs):
        raise httpx.ConnectError("no route")

    monkeypatch.setattr("livability.ingestion.overpass_client.post_form", always_down)
    with pytest.raises(POIFetchError):
        OverpassClient(settings).fetch(BOUNDS, [PARKS])


def test_catalog_filters_by_bounds_and_reports_missing_file(tmp_path):
    path = tmp_path / "pois.json"
    path.write_text(
        json.dumps(
            [
                {"lat": 52.23, "lng": 21.01, "category": "grocery"},
                {"lat": 53.00, "lng": 21.01, "category": "grocery"},
                {"lat": 52.24, "lng": 21.02, "category": "parks"},
            ]
        ),
        encoding="utf-8",
    )
    out = PoiCatalog(path).fetch(BOUNDS, [GROCERY, PARKS])
    assert len(out["grocery"]) == 1
    assert len(out["parks"]) == 1

    with pytest.raises(POIFetchError, match="not found"):
        PoiCatalog(tmp_path / "missing.json").fetch(BOUNDS, [GROCERY])


def test_sample_catalog_is_valid():
    settings = get_settings()
    out = PoiCatalog(settings.poi.catalog_path).fetch(BOUNDS, settings.factors)
    assert out["grocery"]
    assert out["transit"]


class _Source:
    def __init__(self, name, pois=None, fail=False):
        self.name = name
        self.pois = pois or []
        self.fail = fail
        self.calls = 0

    def fetch(self, bounds, factors):
        self.calls += 1
        if self.fail:
            raise POIFetchError(f"{self.name} down")
        return {f.id: [p for p in self.pois if p.category == f.id and bounds.contains(p.lat, p.lng)] for f in factors}


def test_service_falls_back_in_both_directions():
    poi = POI(lat=52.23, lng=21.01, category="grocery")
    service = POIService(_Source("primary", fail=True), _Source("fallback", [poi]))
    with capture_ingestion_meta() as meta:
        pois, source = service.fetch(BOUNDS, [GROCERY], "primary")
    assert source == "fallback"
    assert pois["grocery"] == [poi]
    assert meta.fallbacks and meta.sources["poi:grocery"]["source"] == "fallback"

    service = POIService(_Source("primary", [poi]), _Source("fallback", fail=True))
    assert service.fetch(BOUNDS, [GROCERY], "fallback")[1] == "primary"


def test_poi_tile_cache_reuses_non_empty_tiles_only():
    tile = lat_lng_to_tile(52.23, 21.01, 13)
    poi = POI(lat=52.23, lng=21.01, category="grocery")
    primary = _Source("primary", [poi])
    cache = TwoLevelCache("poi", BoundedCache(100, 60), SharedStore(None), ttl_seconds=60)
    tiles = PoiTileCache(cache, POIService(primary, _Source("fallback")))

    first = tiles.get([tile], [GROCERY, PARKS], "primary")
    assert first.pois["grocery"] == [poi]
    assert first.fetched_pairs == 2
    assert cache.get(poi_tile_key(tile, "primary", "grocery")) is not None
    assert cache.get(poi_tile_key(tile, "primary", "parks")) is None

    second = tiles.get([tile], [GROCERY], "primary")
    assert second.cached_pairs == 1
    assert second.fetched_pairs == 0
    assert primary.calls == 1


def test_dedupe_pois_by_coordinate():
    a = POI(lat=1.0, lng=2.0, category="x", id="a")
    b = POI(lat=1.0, lng=2.0, category="x", id="b")
    c = POI(lat=1.5, lng=2.0, category="x", id="c")
    assert [p.id for p in dedupe_pois([a, b, c])] == ["a", "c"]


def test_poi_tile_key_shape():
    assert poi_tile_key(TileCoord(z=13, x=1, y=2), "fallback", "parks") == "poi-tile:13:1:2:fallback:parks"
