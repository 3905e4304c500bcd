# -*- coding: utf-8 -*-
"""
PoiSearchService: multi-source POI search (Overpass + Nominatim)
- Nearby-area cache lookup, then exact key with stale-on-error fallback
- Radius-adaptive Overpass strategy, virtual clusters for huge areas
- Overpass and Nominatim run concurrently; each source fails to []
- Proximity dedup (Overpass wins), relevance sort, truncation
- Area pre-loading and cache warming over popular landmarks
- Photo enrichment and zoom-level clustering on top of a search
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Optional, Sequence

from app.core.config import Settings
from app.core.logging import get_logger
from app.core.request_id import with_run_id
from app.models.poi import (
    EnrichedSearchResult,
    Poi,
    PoiCluster,
    PoiSearchResult,
    PopularArea,
    SearchSources,
    pois_from_payload,
)
from services.cache_service import CacheService, area_key, build_cache_backend, search_key
from services.nominatim_service import NominatimService
from services.overpass_monitor_service import OverpassMonitor
from services.overpass_query_builder import OverpassQueryBuilder, QueryStrategy, virtual_clusters
from services.overpass_service import OverpassService
from services.photo_enrichment_service import PhotoEnrichmentService
from services.poi_cluster_service import create_clusters
from services.poi_relevance import dedupe_by_proximity, sort_by_relevance

logger = get_logger()


POPULAR_AREAS: List[PopularArea] = [
    PopularArea(name=name, lat=lat, lon=lon, radius_km=radius)
    for name, lat, lon, radius in (
        # Landmarks
        ("Tour Eiffel", 48.8584, 2.2945, 2),
        ("Louvre", 48.8606, 2.3376, 2),
        ("Notre-Dame", 48.8530, 2.3499, 2),
        ("Arc de Triomphe", 48.8738, 2.2950, 1.5),
        ("Sacré-Cœur", 48.8867, 2.3431, 1.5),
        # Neighbourhoods
        ("Montmartre", 48.8867, 2.3431, 2),
        ("Champs-Élysées", 48.8698, 2.3078, 2),
        ("Quartier Latin", 48.8463, 2.3461, 1.5),
        ("Marais", 48.8566, 2.3613, 1.5),
        ("Trocadéro", 48.8620, 2.2886, 1),
        # Panoramas
        ("Panthéon", 48.8462, 2.3464, 1),
        ("Tour Montparnasse", 48.8421, 2.3220, 1),
        ("Buttes Chaumont", 48.8789, 2.3830, 1.5),
        ("Parc de Belleville", 48.8701, 2.3843, 1),
        # Bridges
        ("Pont Alexandre III", 48.8638, 2.3135, 0.5),
        ("Pont Neuf", 48.8566, 2.3415, 0.5),
        ("Pont des Arts", 48.8583, 2.3375, 0.5),
        # Castles
        ("Château de Versailles", 48.8049, 2.1204, 3),
        ("Château de Vincennes", 48.8433, 2.4378, 2),
        # Parks
        ("Luxembourg", 48.8462, 2.3372, 1.5),
        ("Tuileries", 48.8634, 2.3275, 1),
        ("Parc Monceau", 48.8797, 2.3088, 1),
        # Modern
        ("La Défense", 48.8906, 2.2419, 2),
        ("Fondation Louis Vuitton", 48.8766, 2.2633, 1),
    )
]


def _result_payload(result: PoiSearchResult) -> Dict[str, Any]:
    return {
        "data": [p.model_dump() for p in result.data],
        "sources": result.sources.model_dump(),
    }


def _has_results(payload: Any) -> bool:
    return isinstance(payload, dict) and bool(payload.get("data"))


def _count_sources(pois: Sequence[Poi]) -> SearchSources:
    sources = SearchSources()
    for poi in pois:
        setattr(sources, poi.source, getattr(sources, poi.source) + 1)
    return sources


class PoiSearchService:
    def __init__(
        self,
        settings: Settings,
        cache: CacheService,
        overpass: OverpassService,
        nominatim: NominatimService,
        *,
        photos: Optional[PhotoEnrichmentService] = None,
        sleep=asyncio.sleep,
    ):
        self.settings = settings
        self.cache = cache
        self.overpass = overpass
        self.nominatim = nominatim
        self.photos = photos or PhotoEnrichmentService(cache, settings.photos, settings.cache_ttl)
        self.query_builder: OverpassQueryBuilder = overpass.query_builder
        self.monitor: OverpassMonitor = overpass.monitor
        self._sleep = sleep

    async def aclose(self) -> None:
        await self.overpass.aclose()
        await self.nominatim.aclose()
        await self.photos.aclose()

    async def search_pois(
        self,
        lat: float,
        lon: float,
        radius_km: float,
        categories: Optional[Sequence[str]] = None,
    ) -> PoiSearchResult:
        started = time.perf_counter()

        # Nearby lookup ignores small centre offsets (up to ~1.5 km); accepted approximation
        nearby_key = await self.cache.has_nearby_cache(lat, lon, radius_km)
        if nearby_key:
            cached = pois_from_payload(await self.cache.get(nearby_key))
            if cached:
                logger.info("poi_search_nearby_cache_hit", key=nearby_key, count=len(cached))
                return PoiSearchResult(
                    data=cached,
                    sources=SearchSources(cached=len(cached)),
                    execution_time_ms=int((time.perf_counter() - started) * 1000),
                )

        key = search_key(lat, lon, radius_km, categories)

        async def _search() -> Dict[str, Any]:
            return _result_payload(await self.multi_source_search(lat, lon, radius_km, categories))

        payload = await self.cache.get_or_set_with_freshness(
            key,
            _search,
            ttl_s=self.settings.cache_ttl.search_s,
            fallback_on_error=True,
            cache_if=_has_results,
        )
        data = pois_from_payload(payload.get("data") if isinstance(payload, dict) else None)
        raw_sources = payload.get("sources") if isinstance(payload, dict) else None
        sources = SearchSources.model_validate(raw_sources) if isinstance(raw_sources, dict) else _count_sources(data)

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "poi_search_done",
            lat=lat,
            lon=lon,
            radius_km=radius_km,
            count=len(data),
            overpass=sources.overpass,
            nominatim=sources.nominatim,
            cached=sources.cached,
            execution_time_ms=elapsed_ms,
        )
        return PoiSearchResult(data=data, sources=sources, execution_time_ms=elapsed_ms)

    async def multi_source_search(
        self,
        lat: float,
        lon: float,
        radius_km: float,
        categories: Optional[Sequence[str]] = None,
    ) -> PoiSearchResult:
        """The uncached search: Overpass and Nominatim merged, ranked and truncated."""
        search_cfg = self.settings.search
        strategy = self.query_builder.select_strategy(
            radius_km, virtual_clusters_enabled=search_cfg.virtual_clusters_enabled
        )

        if strategy is QueryStrategy.VIRTUAL_CLUSTERS:
            clusters = virtual_clusters(lat, lon, radius_km)
            logger.info("poi_search_virtual_clusters", radius_km=radius_km, count=len(clusters))
            return PoiSearchResult(data=clusters, sources=_count_sources(clusters))

        if strategy is QueryStrategy.COUNT:
            indicator = await self._overpass_source(strategy, lat, lon, radius_km, categories)
            return PoiSearchResult(data=indicator, sources=_count_sources(indicator))

        effective_km = self.query_builder.effective_radius(radius_km)
        nominatim_km = min(effective_km, self.settings.radius.max_nominatim_km)
        logger.info(
            "poi_search_start",
            lat=lat,
            lon=lon,
            radius_km=radius_km,
            strategy=strategy.value,
            effective_km=effective_km,
            nominatim_km=nominatim_km,
        )

        overpass_pois, nominatim_pois = await asyncio.gather(
            self._overpass_source(strategy, lat, lon, effective_km, categories),
            self._nominatim_source(lat, lon, nominatim_km),
        )

        merged = list(overpass_pois)
        merged.extend(dedupe_by_proximity(merged, nominatim_pois, search_cfg.dedup_threshold_m))
        ranked = sort_by_relevance(merged, lat, lon)[: search_cfg.max_results]
        return PoiSearchResult(data=ranked, sources=_count_sources(ranked))

    async def _overpass_source(
        self,
        strategy: QueryStrategy,
        lat: float,
        lon: float,
        radius_km: float,
        categories: Optional[Sequence[str]],
    ) -> List[Poi]:
        try:
            return await self.overpass.search(strategy, lat, lon, radius_km, categories)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("overpass_source_failed", strategy=strategy.value, error=str(e)[:200])
            return []

    async def _nominatim_source(self, lat: float, lon: float, radius_km: float) -> List[Poi]:
        try:
            return await self.nominatim.search_nearby(lat, lon, radius_km)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("nominatim_source_failed", error=str(e)[:200])
            return []

    async def search_with_photos(
        self,
        lat: float,
        lon: float,
        radius_km: float,
        categories: Optional[Sequence[str]] = None,
        *,
        limit: Optional[int] = None,
    ) -> EnrichedSearchResult:
        """Search, then attach photos to the first `limit` results (the rest are dropped)."""
        result = await self.search_pois(lat, lon, radius_km, categories)
        limit = self.settings.photos.enrich_limit if limit is None else limit
        enriched = await self.photos.enrich_pois(result.data[:limit])
        return EnrichedSearchResult(
            data=enriched,
            sources=result.sources,
            execution_time_ms=result.execution_time_ms,
        )

    async def cluster_pois(
        self,
        lat: float,
        lon: float,
        radius_km: float,
        zoom: int,
        categories: Optional[Sequence[str]] = None,
    ) -> List[PoiCluster]:
        result = await self.search_pois(lat, lon, radius_km, categories)
        clusters = create_clusters(result.data, zoom)
        logger.info("poi_search_clustered", zoom=zoom, pois=len(result.data), clusters=len(clusters))
        return clusters

    # -------- Pre-loading ---------------------------------------------------

    async def preload_area(self, lat: float, lon: float, radius_km: float) -> bool:
        """Cache one area under its area key. Returns True when a fresh search was stored."""
        key = area_key(lat, lon, radius_km)
        try:
            if await self.cache.get(key) is not None:
                logger.debug("preload_area_already_cached", key=key)
                return False
            result = await self.multi_source_search(lat, lon, radius_km)
            await self.cache.set(key, [p.model_dump() for p in result.data], self.settings.cache_ttl.area_s)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("preload_area_failed", key=key, error=str(e)[:200])
            return False
        logger.info("preload_area_done", key=key, count=len(result.data))
        return True

    async def preload_popular_areas(
        self,
        areas: Optional[Sequence[PopularArea]] = None,
        *,
        pacing_s: Optional[float] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> int:
        areas = POPULAR_AREAS if areas is None else areas
        pacing_s = self.settings.warming.pacing_s if pacing_s is None else pacing_s
        preloaded = 0

        for index, area in enumerate(areas):
            if stop_event is not None and stop_event.is_set():
                logger.info("preload_popular_areas_stopped", done=index, total=len(areas))
                break
            logger.info("preload_popular_area", area=area.name)
            if await self.preload_area(area.lat, area.lon, area.radius_km):
                preloaded += 1
            if index == len(areas) - 1:
                break
            if stop_event is None:
                await self._sleep(pacing_s)
            else:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=pacing_s)
                except asyncio.TimeoutError:
                    pass

        return preloaded

    async def warm_cache(self, *, stop_event: Optional[asyncio.Event] = None) -> int:
        with with_run_id():
            logger.info("cache_warming_started")
            try:
                preloaded = await self.preload_popular_areas(stop_event=stop_event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("cache_warming_failed", error=str(e)[:200])
                return 0
            logger.info("cache_warming_done", preloaded=preloaded)
            return preloaded

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "overpass": self.monitor.get_all_metrics(),
            "cache": self.cache.get_metrics(),
        }


def build_poi_search_service(settings: Optional[Settings] = None) -> PoiSearchService:
    settings = settings or Settings()
    cache = CacheService(build_cache_backend(settings.cache), settings.cache_ttl)
    monitor = OverpassMonitor()
    builder = OverpassQueryBuilder(settings.overpass, settings.radius)
    overpass = OverpassService(settings.overpass, settings.retry, monitor=monitor, query_builder=builder)
    nominatim = NominatimService(
        cache,
        settings.nominatim,
        settings.cache_ttl,
        user_agent=settings.overpass.user_agent,
    )
    photos = PhotoEnrichmentService(
        cache,
        settings.photos,
        settings.cache_ttl,
        user_agent=settings.overpass.user_agent,
    )
    return PoiSearchService(settings, cache, overpass, nominatim, photos=photos)
