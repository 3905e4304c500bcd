# -*- coding: utf-8 -*-
"""
PhotoEnrichmentService: attach photo URLs to POIs
- Wikimedia first: `wikimedia_commons` tag (resolved to a thumbnail), then the `image` tag,
  then a Commons geosearch around the POI
- Unsplash keyword search when an access key is configured
- Placeholder images when nothing was found (never cached)
- Found photos are cached per POI; batches of POIs are enriched concurrently
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Sequence

import httpx
from pydantic import ValidationError

from app.core.config import CacheTtlSettings, PhotoSettings
from app.core.logging import get_logger
from app.models.poi import EnrichedPoi, Poi, PoiPhoto
from services.cache_service import CacheService, photo_key

logger = get_logger()

DEFAULT_USER_AGENT = "SnapyBara-Backend/1.0"

TYPE_KEYWORDS: Dict[str, str] = {
    "viewpoint": "panorama landscape view vista",
    "monument": "monument memorial historical",
    "castle": "castle fortress medieval chateau",
    "church": "church cathedral religious architecture",
    "cathedral": "cathedral church gothic architecture",
    "museum": "museum art gallery exhibition",
    "fountain": "fountain water square plaza",
    "park": "park garden nature green",
    "garden": "garden botanical plants flowers",
    "bridge": "bridge architecture river crossing",
    "tower": "tower architecture skyline tall",
    "artwork": "art sculpture statue public art",
    "square": "square plaza place public space",
    "beach": "beach sea ocean coast shore",
    "waterfall": "waterfall cascade water nature",
    "mountain": "mountain peak summit landscape",
    "lake": "lake water nature landscape",
}
DEFAULT_KEYWORDS = "photography tourist attraction landmark"

# Stable picsum seeds per POI type
_PLACEHOLDER_SEEDS = {
    "viewpoint": "1015",
    "landscape": "1015",
    "architecture": "1065",
    "historical": "1051",
    "beach": "1001",
    "mountain": "1036",
    "park": "1019",
    "garden": "1019",
    "church": "1065",
    "cathedral": "1065",
    "monument": "1051",
    "museum": "1053",
}


def type_keywords(type_: str, tags: Dict[str, str]) -> str:
    for candidate in (type_, tags.get("tourism"), tags.get("historic"), tags.get("natural")):
        if candidate and candidate in TYPE_KEYWORDS:
            return TYPE_KEYWORDS[candidate]
    return DEFAULT_KEYWORDS


def generate_search_terms(poi: Poi) -> List[str]:
    terms = [poi.name]
    if poi.tags.get("name:en"):
        terms.append(poi.tags["name:en"])
    if poi.tags.get("addr:city"):
        terms.append(f"{poi.name} {poi.tags['addr:city']}")
    terms.append(f"{poi.name} {type_keywords(poi.type, poi.tags)}")
    return terms


def placeholder_photos(name: str, type_: str) -> List[PoiPhoto]:
    seed = _PLACEHOLDER_SEEDS.get(type_) or str(sum(ord(ch) for ch in name))
    return [
        PoiPhoto(
            url=f"https://picsum.photos/seed/{seed}{suffix}/800/600",
            source="placeholder",
            attribution="Lorem Picsum",
            width=800,
            height=600,
        )
        for suffix in ("", "2")
    ]


def _commons_title(filename: str) -> str:
    clean = filename.replace("File:", "").replace("Image:", "").strip().replace(" ", "_")
    return f"File:{clean}"


def _imageinfo_pages(payload: Any) -> List[Dict[str, Any]]:
    if not isinstance(payload, dict):
        return []
    pages = (payload.get("query") or {}).get("pages") or {}
    infos = []
    for page in pages.values():
        info = (page or {}).get("imageinfo") or []
        if info and isinstance(info[0], dict):
            infos.append(info[0])
    return infos


class PhotoEnrichmentService:
    def __init__(
        self,
        cache: CacheService,
        settings: Optional[PhotoSettings] = None,
        ttl: Optional[CacheTtlSettings] = None,
        *,
        user_agent: str = DEFAULT_USER_AGENT,
        client: Optional[httpx.AsyncClient] = None,
        sleep=asyncio.sleep,
    ):
        self.cache = cache
        self.settings = settings or PhotoSettings()
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

    async def _commons_query(self, params: Dict[str, Any]) -> Any:
        response = await self._client.get(
            self.settings.commons_api_url,
            params={"action": "query", "format": "json", **params},
            headers={"User-Agent": self.user_agent},
            timeout=self.settings.timeout_s,
        )
        response.raise_for_status()
        return response.json()

    async def resolve_commons_file(self, filename: str) -> Optional[str]:
        """Thumbnail URL for a Commons file name (`File:` prefix optional)."""
        payload = await self._commons_query({
            "titles": _commons_title(filename),
            "prop": "imageinfo",
            "iiprop": "url|size",
            "iiurlwidth": self.settings.thumb_width,
        })
        for info in _imageinfo_pages(payload):
            url = info.get("thumburl") or info.get("url")
            if url:
                return url
        return None

    async def _geosearch(self, lat: float, lon: float) -> List[PoiPhoto]:
        payload = await self._commons_query({
            "generator": "geosearch",
            "ggsprimary": "all",
            "ggsnamespace": 6,
            "ggsradius": self.settings.geosearch_radius_m,
            "ggscoord": f"{lat}|{lon}",
            "ggslimit": self.settings.geosearch_limit,
            "prop": "imageinfo",
            "iiprop": "url|size|extmetadata",
            "iiurlwidth": self.settings.thumb_width,
        })
        photos: List[PoiPhoto] = []
        for info in _imageinfo_pages(payload):
            url = info.get("thumburl") or info.get("url")
            if not url:
                continue
            photos.append(PoiPhoto(
                url=url,
                source="wikimedia",
                attribution="Wikimedia Commons",
                width=info.get("thumbwidth") or info.get("width"),
                height=info.get("thumbheight") or info.get("height"),
            ))
        return photos[: self.settings.max_photos]

    async def wikimedia_photos(self, poi: Poi) -> List[PoiPhoto]:
        try:
            commons_file = poi.tags.get("wikimedia_commons")
            if commons_file:
                url = await self.resolve_commons_file(commons_file)
                if url:
                    return [PoiPhoto(url=url, source="wikimedia", attribution="Wikimedia Commons")]
            if poi.tags.get("image"):
                return [PoiPhoto(url=poi.tags["image"], source="wikimedia", attribution="OpenStreetMap")]
            return await self._geosearch(poi.lat, poi.lon)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("photo_wikimedia_failed", poi_id=poi.id, error=str(e)[:200])
            return []

    async def unsplash_photos(self, poi: Poi, search_terms: Sequence[str]) -> List[PoiPhoto]:
        key = self.settings.unsplash_access_key
        if not key:
            return []
        try:
            response = await self._client.get(
                self.settings.unsplash_url,
                params={"query": search_terms[0] if search_terms else poi.name, "per_page": 3, "orientation": "landscape"},
                headers={"Authorization": f"Client-ID {key}", "Accept-Version": "v1"},
                timeout=self.settings.timeout_s,
            )
            response.raise_for_status()
            results = response.json().get("results") or []
            return [
                PoiPhoto(
                    url=item["urls"]["regular"],
                    source="unsplash",
                    attribution=f"Photo by {(item.get('user') or {}).get('name', 'unknown')} on Unsplash",
                    width=item.get("width"),
                    height=item.get("height"),
                )
                for item in results
                if (item.get("urls") or {}).get("regular")
            ]
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.warning("photo_unsplash_failed", poi_id=poi.id, error=str(e)[:200])
            return []

    async def _cached_photos(self, key: str) -> Optional[List[PoiPhoto]]:
        cached = await self.cache.get(key)
        if not isinstance(cached, list):
            return None
        try:
            return [PoiPhoto.model_validate(item) for item in cached]
        except ValidationError:
            return None

    async def enrich_poi(self, poi: Poi) -> EnrichedPoi:
        terms = generate_search_terms(poi)
        key = photo_key(poi.id, self.settings.thumb_width)

        photos = await self._cached_photos(key)
        if photos is None:
            photos = await self.wikimedia_photos(poi)
            if not photos:
                photos = await self.unsplash_photos(poi, terms)
            if photos:
                await self.cache.set(key, [p.model_dump() for p in photos], self.ttl.photos_s)
            else:
                photos = placeholder_photos(poi.name, poi.type)
            logger.debug("photo_enrichment_done", poi_id=poi.id, count=len(photos), source=photos[0].source)

        return EnrichedPoi(**poi.model_dump(), photos=photos, photo_search_terms=terms)

    async def enrich_pois(self, pois: Sequence[Poi]) -> List[EnrichedPoi]:
        """Enrich in concurrent batches of `batch_size`, pausing between batches."""
        size = max(1, self.settings.batch_size)
        enriched: List[EnrichedPoi] = []
        for start in range(0, len(pois), size):
            batch = pois[start:start + size]
            enriched.extend(await asyncio.gather(*(self.enrich_poi(p) for p in batch)))
            if start + size < len(pois):
                await self._sleep(self.settings.batch_delay_s)
        return enriched
