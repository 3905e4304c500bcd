# Backend/tests/fixtures/__init__.py
"""
Test fixtures for the POI search tests.

Factory functions:
- make_settings()
- make_overpass_node() / make_overpass_way()
- make_nominatim_item()
- make_poi()
- build_search_service() (all HTTP, photos included, through one httpx.MockTransport handler)
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from app.core.config import (
    NominatimSettings,
    OverpassSettings,
    PhotoSettings,
    RetrySettings,
    Settings,
    WarmingSettings,
)
from app.models.poi import Poi
from services.cache_service import CacheService, InMemoryCacheBackend
from services.nominatim_service import NominatimService
from services.overpass_monitor_service import OverpassMonitor
from services.overpass_query_builder import OverpassQueryBuilder
from services.overpass_service import OverpassService
from services.photo_enrichment_service import PhotoEnrichmentService
from services.poi_search_service import PoiSearchService

OVERPASS_SERVERS = [
    "https://overpass-a.test/api/interpreter",
    "https://overpass-b.test/api/interpreter",
    "https://overpass-c.test/api/interpreter",
]
NOMINATIM_URL = "https://nominatim.test/search"
COMMONS_URL = "https://commons.test/w/api.php"
UNSPLASH_URL = "https://unsplash.test/search/photos"


class RecordingSleep:
    """Async stand-in for asyncio.sleep that only records the requested delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "overpass": OverpassSettings(servers=list(OVERPASS_SERVERS), global_timeout_s=5.0),
        "retry": RetrySettings(max_attempts=3, base_delay_s=5.0, backoff_multiplier=2.0, timeout_delay_s=2.0),
        "nominatim": NominatimSettings(url=NOMINATIM_URL, live_call_delay_s=0.1),
        "photos": PhotoSettings(commons_api_url=COMMONS_URL, unsplash_url=UNSPLASH_URL, batch_delay_s=0.0),
        "warming": WarmingSettings(pacing_s=0.0, initial_delay_s=0.0),
    }
    values.update(overrides)
    return Settings(**values)


def make_overpass_node(osm_id: int, lat: float, lon: float, **tags: str) -> Dict[str, Any]:
    return {"type": "node", "id": osm_id, "lat": lat, "lon": lon, "tags": tags}


def make_overpass_way(osm_id: int, lat: float, lon: float, **tags: str) -> Dict[str, Any]:
    return {"type": "way", "id": osm_id, "center": {"lat": lat, "lon": lon}, "tags": tags}


def make_nominatim_item(osm_id: int, lat: float, lon: float, name: str, type_: str = "attraction") -> Dict[str, Any]:
    return {
        "osm_id": osm_id,
        "lat": str(lat),
        "lon": str(lon),
        "display_name": f"{name}, Paris, France",
        "type": type_,
        "extratags": {"tourism": type_},
    }


def make_poi(
    poi_id: str = "overpass-node-1",
    name: str = "Test POI",
    type_: str = "other",
    lat: float = 48.8584,
    lon: float = 2.2945,
    source: str = "overpass",
    tags: Optional[Dict[str, str]] = None,
    **extra_tags: str,
) -> Poi:
    merged = dict(tags or {})
    merged.update(extra_tags)
    return Poi(id=poi_id, name=name, type=type_, lat=lat, lon=lon, tags=merged, source=source)


Handler = Callable[[httpx.Request], Awaitable[httpx.Response]]


def build_search_service(
    handler: Handler,
    settings: Optional[Settings] = None,
    *,
    sleep: Optional[RecordingSleep] = None,
    cache: Optional[CacheService] = None,
) -> PoiSearchService:
    """Wire the full search stack with one mocked HTTP client; retries use `sleep`."""
    settings = settings or make_settings()
    sleep = sleep or RecordingSleep()
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    cache = cache or CacheService(InMemoryCacheBackend(), settings.cache_ttl)
    monitor = OverpassMonitor()
    builder = OverpassQueryBuilder(settings.overpass, settings.radius)
    overpass = OverpassService(
        settings.overpass,
        settings.retry,
        monitor=monitor,
        query_builder=builder,
        client=client,
        sleep=sleep,
    )
    nominatim = NominatimService(cache, settings.nominatim, settings.cache_ttl, client=client, sleep=RecordingSleep())
    photos = PhotoEnrichmentService(cache, settings.photos, settings.cache_ttl, client=client, sleep=RecordingSleep())
    return PoiSearchService(settings, cache, overpass, nominatim, photos=photos, sleep=sleep)
