from __future__ import annotations

from typing import List

import httpx
import pytest

from app.core.config import PhotoSettings
from services.cache_service import CacheService, InMemoryCacheBackend, photo_key
from services.photo_enrichment_service import (
    PhotoEnrichmentService,
    generate_search_terms,
    placeholder_photos,
    type_keywords,
)
from tests.fixtures import COMMONS_URL, UNSPLASH_URL, RecordingSleep, make_poi


def _commons_page(url: str, thumb: str = None) -> dict:
    info = {"url": url, "width": 4000, "height": 3000}
    if thumb:
        info.update(thumburl=thumb, thumbwidth=800, thumbheight=600)
    return {"imageinfo": [info]}


def _service(handler, **overrides) -> PhotoEnrichmentService:
    settings = PhotoSettings(commons_api_url=COMMONS_URL, unsplash_url=UNSPLASH_URL, **overrides)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PhotoEnrichmentService(CacheService(InMemoryCacheBackend()), settings, client=client, sleep=RecordingSleep())


def test_search_terms_and_keywords():
    poi = make_poi(name="Sacré-Cœur", type_="cathedral", **{"name:en": "Sacred Heart", "addr:city": "Paris"})
    assert generate_search_terms(poi) == [
        "Sacré-Cœur",
        "Sacred Heart",
        "Sacré-Cœur Paris",
        "Sacré-Cœur cathedral church gothic architecture",
    ]
    assert type_keywords("other", {"natural": "beach"}) == "beach sea ocean coast shore"
    assert type_keywords("other", {}) == "photography tourist attraction landmark"


def test_placeholders_are_stable_per_type():
    photos = placeholder_photos("Tour Eiffel", "monument")
    assert [p.url for p in photos] == [
        "https://picsum.photos/seed/1051/800/600",
        "https://picsum.photos/seed/10512/800/600",
    ]
    assert all(p.source == "placeholder" for p in photos)
    assert placeholder_photos("abc", "other")[0].url == f"https://picsum.photos/seed/{ord('a') + ord('b') + ord('c')}/800/600"


@pytest.mark.asyncio
async def test_commons_tag_is_resolved_to_thumbnail():
    titles: List[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        titles.append(request.url.params["titles"])
        return httpx.Response(200, json={"query": {"pages": {"7": _commons_page("https://upload.test/a.jpg", "https://upload.test/a_800.jpg")}}})

    service = _service(handler)
    enriched = await service.enrich_poi(make_poi(wikimedia_commons="File:Tour Eiffel.jpg"))

    assert titles == ["File:Tour_Eiffel.jpg"]
    assert [p.url for p in enriched.photos] == ["https://upload.test/a_800.jpg"]
    assert enriched.photos[0].source == "wikimedia"
    assert enriched.photo_search_terms[0] == "Test POI"


@pytest.mark.asyncio
async def test_image_tag_needs_no_request():
    async def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no HTTP expected")

    enriched = await _service(handler).enrich_poi(make_poi(image="https://img.test/x.jpg"))
    assert [(p.url, p.attribution) for p in enriched.photos] == [("https://img.test/x.jpg", "OpenStreetMap")]


@pytest.mark.asyncio
async def test_geosearch_is_capped_and_cached():
    requests: List[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        pages = {str(i): _commons_page(f"https://upload.test/{i}.jpg") for i in range(5)}
        return httpx.Response(200, json={"query": {"pages": pages}})

    service = _service(handler)
    poi = make_poi(lat=48.8584, lon=2.2945)
    first = await service.enrich_poi(poi)
    second = await service.enrich_poi(poi)

    assert len(first.photos) == 3
    assert [p.url for p in second.photos] == [p.url for p in first.photos]
    assert len(requests) == 1
    params = requests[0].url.params
    assert params["generator"] == "geosearch"
    assert params["ggscoord"] == "48.8584|2.2945"
    assert params["ggsradius"] == "500"
    assert await service.cache.get(photo_key(poi.id, 800)) is not None


@pytest.mark.asyncio
async def test_unsplash_used_when_wikimedia_is_empty_and_key_is_set():
    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "unsplash.test":
            assert request.headers["authorization"] == "Client-ID secret"
            return httpx.Response(200, json={"results": [
                {"urls": {"regular": "https://unsplash.test/p.jpg"}, "user": {"name": "Ana"}, "width": 1200, "height": 800}
            ]})
        return httpx.Response(200, json={"batchcomplete": ""})

    enriched = await _service(handler, unsplash_access_key="secret").enrich_poi(make_poi(type_="viewpoint"))
    assert [(p.url, p.source, p.attribution) for p in enriched.photos] == [
        ("https://unsplash.test/p.jpg", "unsplash", "Photo by Ana on Unsplash")
    ]


@pytest.mark.asyncio
async def test_failures_fall_back_to_uncached_placeholders():
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    service = _service(handler)
    poi = make_poi(type_="park")
    enriched = await service.enrich_poi(poi)

    assert [p.source for p in enriched.photos] == ["placeholder", "placeholder"]
    assert await service.cache.get(photo_key(poi.id, 800)) is None


@pytest.mark.asyncio
async def test_enrich_pois_batches_and_keeps_order():
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"query": {"pages": {"1": _commons_page("https://upload.test/1.jpg")}}})

    sleep = RecordingSleep()
    service = _service(handler, batch_size=2, batch_delay_s=0.1)
    service._sleep = sleep
    pois = [make_poi(f"overpass-node-{i}") for i in range(5)]

    enriched = await service.enrich_pois(pois)

    assert [p.id for p in enriched] == [p.id for p in pois]
    assert sleep.delays == [0.1, 0.1]
