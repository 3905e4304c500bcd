# -*- coding: utf-8 -*-
"""
NominatimService: OSM Nominatim keyword search around a point
- One request per category, run sequentially (Nominatim usage policy)
- Each category result is cached on its own (rounded bounding-box key)
- Fixed delay only between live, non-cached calls
- Normalizes results to Poi objects (id `nominatim-<osm_id>`)
"""

from __future__ import annotations

import asyncio
import math
from typing import Any, Dict, List, Optional, Sequence

import httpx

from app.core.config import CacheTtlSettings, NominatimSettings
from app.core.logging import get_logger
from app.models.poi import Poi, pois_from_payload
from services.cache_service import CacheService, nominatim_key
from services.geo_math import BoundingBox, bounding_box

logger = get_logger()

DEFAULT_USER_AGENT = "SnapyBara-Backend/1.0"


def _short_name(display_name: str) -> str:
    return display_name.split(",")[0].strip()


def parse_nominatim_results(items: Any) -> List[Poi]:
    if not isinstance(items, list):
        return []
    pois: List[Poi] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        display_name = item.get("display_name")
        if not display_name or item.get("osm_id") is None:
            continue
        try:
            lat = float(item.get("lat"))
            lon = float(item.get("lon"))
        except (TypeError, ValueError):
            continue
        if not (math.isfinite(lat) and math.isfinite(lon)):
            continue
        name = _short_name(str(display_name))
        if not name:
            continue
        extratags = item.get("extratags") or {}
        tags = {str(k): str(v) for k, v in extratags.items() if v is not None}
        pois.append(
            Poi(
                id=f"nominatim-{item['osm_id']}",
                name=name,
                type=str(item.get("type") or "unknown"),
                lat=lat,
                lon=lon,
                tags=tags,
                source="nominatim",
            )
        )
    return pois


class NominatimService:
    def __init__(
        self,
        cache: CacheService,
        settings: Optional[NominatimSettings] = None,
        ttl: Optional[CacheTtlSettings] = None,
        *,
        user_agent: str = DEFAULT_USER_AGENT,
        client: Optional[httpx.AsyncClient] = None,
        sleep=asyncio.sleep,
    ):
        self.cache = cache
        self.settings = settings or NominatimSettings()
        self.ttl = ttl or cache.ttl
        self.user_agent = user_agent
        self._sleep = sleep
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.timeout_s),
            headers={"User-Agent": user_agent},
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "NominatimService":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def fetch_category(self, category: str, box: BoundingBox) -> List[Dict[str, Any]]:
        """Live request for one category; raises httpx errors to the caller."""
        params = {
            "q": category,
            "format": "json",
            "limit": self.settings.limit,
            "viewbox": f"{box.west},{box.north},{box.east},{box.south}",
            "bounded": 1,
            "extratags": 1,
        }
        response = await self._client.get(
            self.settings.url,
            params=params,
            headers={"User-Agent": self.user_agent},
            timeout=self.settings.timeout_s,
        )
        response.raise_for_status()
        return [poi.model_dump() for poi in parse_nominatim_results(response.json())]

    async def search_nearby(
        self,
        lat: float,
        lon: float,
        radius_km: float,
        categories: Optional[Sequence[str]] = None,
    ) -> List[Poi]:
        box = bounding_box(lat, lon, radius_km)
        categories = list(categories or self.settings.categories)
        results: List[Poi] = []
        seen_ids = set()
        live_calls = 0

        for category in categories:
            key = nominatim_key(category, box.south, box.west, box.north, box.east)
            live = False

            async def _fetch() -> List[Dict[str, Any]]:
                nonlocal live, live_calls
                # Delay sits between two live requests only
                if live_calls:
                    await self._sleep(self.settings.live_call_delay_s)
                live_calls += 1
                live = True
                return await self.fetch_category(category, box)

            try:
                items = await self.cache.get_or_set(key, _fetch, self.ttl.nominatim_s)
            except (httpx.HTTPError, ValueError) as e:
                logger.warning("nominatim_category_failed", category=category, error=str(e)[:200])
                items = []

            added = 0
            for poi in pois_from_payload(items):
                if poi.id in seen_ids:
                    continue
                seen_ids.add(poi.id)
                results.append(poi)
                added += 1
            logger.debug("nominatim_category_done", category=category, added=added, live=live)

        return results

