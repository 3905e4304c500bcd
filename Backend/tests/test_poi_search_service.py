from __future__ import annotations

import asyncio
from typing import List

import httpx
import pytest

from app.models.poi import PopularArea
from services.cache_service import CacheService, InMemoryCacheBackend, area_key
from tests.fixtures import (
    OVERPASS_SERVERS,
    RecordingSleep,
    build_search_service,
    make_nominatim_item,
    make_overpass_node,
    make_poi,
    make_settings,
)

EIFFEL = (48.8584, 2.2945)

OVERPASS_ELEMENTS = [
    make_overpass_node(101, 48.8584, 2.2945, name="Tour Eiffel", historic="monument", wikipedia="fr:Tour Eiffel"),
    make_overpass_node(102, 48.8606, 2.2970, name="Monument A", historic="memorial"),
    make_overpass_node(103, 48.8560, 2.2980, name="Monument B", historic="monument"),
]
NOMINATIM_ITEMS = [
    make_nominatim_item(201, 48.85842, 2.29452, "Eiffel Tower"),
    make_nominatim_item(202, 48.8620, 2.2886, "Trocadéro"),
]


def _is_overpass(request: httpx.Request) -> bool:
    return str(request.url) in OVERPASS_SERVERS


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class BrokenBackend:
    name = "broken"

    async def get(self, key):
        raise ConnectionError("cache down")

    async def set(self, key, value, ttl_s):
        raise ConnectionError("cache down")

    async def delete(self, key):
        raise ConnectionError("cache down")

    async def clear(self):
        raise ConnectionError("cache down")


def _happy_handler(calls: List[httpx.Request]):
    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if _is_overpass(request):
            return httpx.Response(200, json={"elements": OVERPASS_ELEMENTS})
        return httpx.Response(200, json=NOMINATIM_ITEMS)

    return handler


@pytest.mark.asyncio
async def test_eiffel_search_merges_and_dedupes_sources():
    calls: List[httpx.Request] = []
    searcher = build_search_service(_happy_handler(calls))

    result = await searcher.search_pois(*EIFFEL, 2)

    assert len(result.data) == 4
    assert result.sources.overpass == 3
    assert result.sources.nominatim == 1
    assert result.sources.cached == 0
    ids = [p.id for p in result.data]
    assert "nominatim-201" not in ids
    assert "nominatim-202" in ids
    assert ids[0] == "overpass-node-101"
    assert result.execution_time_ms >= 0


@pytest.mark.asyncio
async def test_repeated_search_is_served_from_cache():
    calls: List[httpx.Request] = []
    searcher = build_search_service(_happy_handler(calls))

    first = await searcher.search_pois(*EIFFEL, 2)
    request_count = len(calls)
    second = await searcher.search_pois(48.85841, 2.29451, 2)

    assert len(calls) == request_count
    assert [p.id for p in second.data] == [p.id for p in first.data]


@pytest.mark.asyncio
async def test_large_radius_returns_grid_clusters_without_http():
    calls: List[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(500)

    searcher = build_search_service(handler)
    result = await searcher.search_pois(46.0, 2.0, 80)

    assert calls == []
    assert len(result.data) == 8
    assert all(p.type == "area_cluster" for p in result.data)
    assert all(p.id.startswith("grid-") for p in result.data)
    assert result.sources.overpass == 8


@pytest.mark.asyncio
async def test_count_only_when_virtual_clusters_disabled():
    settings = make_settings()
    settings.search.virtual_clusters_enabled = False

    async def handler(request: httpx.Request) -> httpx.Response:
        assert _is_overpass(request)
        return httpx.Response(200, json={"elements": [{"type": "count", "id": 0, "tags": {"total": "1200"}}]})

    searcher = build_search_service(handler, settings)
    result = await searcher.search_pois(46.0, 2.0, 80)

    assert [p.type for p in result.data] == ["count_indicator"]
    assert result.data[0].tags["count"] == "1200"


@pytest.mark.asyncio
async def test_rate_limited_overpass_degrades_to_empty_contribution():
    overpass_calls: List[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        if _is_overpass(request):
            overpass_calls.append(request)
            return httpx.Response(429, text="rate limited")
        return httpx.Response(200, json=[])

    sleep = RecordingSleep()
    settings = make_settings()
    searcher = build_search_service(handler, settings, sleep=sleep)

    result = await searcher.search_pois(*EIFFEL, 2)

    assert len(overpass_calls) == settings.retry.max_attempts
    assert len(sleep.delays) == settings.retry.max_attempts - 1
    assert all(a < b for a, b in zip(sleep.delays, sleep.delays[1:]))
    assert result.data == []
    assert result.sources.overpass == 0
    assert result.sources.nominatim == 0


@pytest.mark.asyncio
async def test_nominatim_failure_keeps_overpass_results():
    async def handler(request: httpx.Request) -> httpx.Response:
        if _is_overpass(request):
            return httpx.Response(200, json={"elements": OVERPASS_ELEMENTS})
        raise httpx.ConnectError("nominatim unreachable", request=request)

    searcher = build_search_service(handler)
    result = await searcher.search_pois(*EIFFEL, 2)

    assert result.sources.overpass == 3
    assert result.sources.nominatim == 0


@pytest.mark.asyncio
async def test_nearby_area_cache_short_circuits_network():
    calls: List[httpx.Request] = []
    searcher = build_search_service(_happy_handler(calls))
    await searcher.cache.set(area_key(*EIFFEL, 2), [make_poi("overpass-node-9").model_dump()], 60)

    result = await searcher.search_pois(48.8590, 2.2950, 2)

    assert calls == []
    assert [p.id for p in result.data] == ["overpass-node-9"]
    assert result.sources.cached == 1
    assert result.sources.overpass == 0


@pytest.mark.asyncio
async def test_stale_result_served_when_live_search_fails(monkeypatch):
    clock = FakeClock()
    settings = make_settings()
    cache = CacheService(InMemoryCacheBackend(clock=clock), settings.cache_ttl)
    searcher = build_search_service(_happy_handler([]), settings, cache=cache)

    fresh = await searcher.search_pois(*EIFFEL, 2)
    clock.now += settings.cache_ttl.search_s + 1

    async def broken(*args, **kwargs):
        raise RuntimeError("both sources exploded")

    monkeypatch.setattr(searcher, "multi_source_search", broken)
    stale = await searcher.search_pois(*EIFFEL, 2)

    assert [p.id for p in stale.data] == [p.id for p in fresh.data]


@pytest.mark.asyncio
async def test_live_failure_without_stale_copy_propagates(monkeypatch):
    searcher = build_search_service(_happy_handler([]))

    async def broken(*args, **kwargs):
        raise RuntimeError("both sources exploded")

    monkeypatch.setattr(searcher, "multi_source_search", broken)
    with pytest.raises(RuntimeError):
        await searcher.search_pois(*EIFFEL, 2)


@pytest.mark.asyncio
async def test_search_works_with_unavailable_cache():
    settings = make_settings()
    cache = CacheService(BrokenBackend(), settings.cache_ttl)
    searcher = build_search_service(_happy_handler([]), settings, cache=cache)

    result = await searcher.search_pois(*EIFFEL, 2)
    assert len(result.data) == 4


@pytest.mark.asyncio
async def test_results_are_truncated():
    settings = make_settings()
    settings.search.max_results = 2
    searcher = build_search_service(_happy_handler([]), settings)

    result = await searcher.search_pois(*EIFFEL, 2)
    assert len(result.data) == 2


@pytest.mark.asyncio
async def test_preload_area_stores_area_key_once():
    calls: List[httpx.Request] = []
    searcher = build_search_service(_happy_handler(calls))

    assert await searcher.preload_area(*EIFFEL, 2) is True
    stored = await searcher.cache.get(area_key(*EIFFEL, 2))
    assert len(stored) == 4

    request_count = len(calls)
    assert await searcher.preload_area(*EIFFEL, 2) is False
    assert len(calls) == request_count


@pytest.mark.asyncio
async def test_preload_popular_areas_paces_between_areas():
    sleep = RecordingSleep()
    searcher = build_search_service(_happy_handler([]), sleep=sleep)
    areas = [
        PopularArea(name="Louvre", lat=48.8606, lon=2.3376, radius_km=2),
        PopularArea(name="Pont Neuf", lat=48.8566, lon=2.3415, radius_km=0.5),
    ]

    assert await searcher.preload_popular_areas(areas, pacing_s=2.0) == 2
    assert sleep.delays == [2.0]


@pytest.mark.asyncio
async def test_preload_popular_areas_honours_stop_event():
    calls: List[httpx.Request] = []
    searcher = build_search_service(_happy_handler(calls))
    stop = asyncio.Event()
    stop.set()

    assert await searcher.preload_popular_areas(stop_event=stop) == 0
    assert calls == []


@pytest.mark.asyncio
async def test_get_metrics_reports_servers_and_cache():
    searcher = build_search_service(_happy_handler([]))
    await searcher.search_pois(*EIFFEL, 2)

    metrics = searcher.get_metrics()
    assert metrics["overpass"]["global"]["success"] >= 1
    assert metrics["cache"]["type"] == "memory"


@pytest.mark.asyncio
async def test_outage_after_expiry_keeps_serving_last_good_result():
    clock = FakeClock()
    settings = make_settings()
    cache = CacheService(InMemoryCacheBackend(clock=clock), settings.cache_ttl)
    outage = False

    async def handler(request: httpx.Request) -> httpx.Response:
        if outage:
            raise httpx.ConnectError("upstream unreachable", request=request)
        if _is_overpass(request):
            return httpx.Response(200, json={"elements": OVERPASS_ELEMENTS})
        return httpx.Response(200, json=NOMINATIM_ITEMS)

    searcher = build_search_service(handler, settings, cache=cache)
    good = await searcher.search_pois(*EIFFEL, 2)
    assert len(good.data) == 4

    # Past both the search and the per-category Nominatim TTLs
    clock.now += max(settings.cache_ttl.search_s, settings.cache_ttl.nominatim_s) + 1
    outage = True

    during = await searcher.search_pois(*EIFFEL, 2)
    again = await searcher.search_pois(*EIFFEL, 2)

    assert [p.id for p in during.data] == [p.id for p in good.data]
    assert [p.id for p in again.data] == [p.id for p in good.data]


@pytest.mark.asyncio
async def test_empty_result_is_not_cached():
    overpass_calls: List[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        if _is_overpass(request):
            overpass_calls.append(request)
            return httpx.Response(200, json={"elements": []})
        return httpx.Response(200, json=[])

    searcher = build_search_service(handler)
    first = await searcher.search_pois(*EIFFEL, 2)
    calls_after_first = len(overpass_calls)
    second = await searcher.search_pois(*EIFFEL, 2)

    assert first.data == [] and second.data == []
    assert len(overpass_calls) == 2 * calls_after_first


@pytest.mark.asyncio
async def test_search_with_photos_enriches_the_first_results():
    async def handler(request: httpx.Request) -> httpx.Response:
        if _is_overpass(request):
            return httpx.Response(200, json={"elements": OVERPASS_ELEMENTS})
        if request.url.host == "commons.test":
            return httpx.Response(200, json={"query": {"pages": {"1": {"imageinfo": [
                {"url": "https://upload.test/full.jpg", "thumburl": "https://upload.test/thumb.jpg", "thumbwidth": 800, "thumbheight": 600}
            ]}}}})
        return httpx.Response(200, json=NOMINATIM_ITEMS)

    searcher = build_search_service(handler)
    result = await searcher.search_with_photos(*EIFFEL, 2, limit=2)

    assert len(result.data) == 2
    assert result.sources.overpass + result.sources.nominatim == 4
    assert all(p.photos and p.photos[0].url == "https://upload.test/thumb.jpg" for p in result.data)


@pytest.mark.asyncio
async def test_cluster_pois_groups_search_results():
    searcher = build_search_service(_happy_handler([]))

    street = await searcher.cluster_pois(*EIFFEL, 2, zoom=16)
    country = await searcher.cluster_pois(*EIFFEL, 2, zoom=5)

    assert sum(c.poi_count for c in street) == 4
    assert sum(c.poi_count for c in country) == 4
    assert len(street) == 4
