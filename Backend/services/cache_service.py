# -*- coding: utf-8 -*-
"""
CacheService: TTL cache in front of the POI search pipeline
- Pluggable backends: in-process map (default) or Redis (redis.asyncio)
- Values are stored as JSON so every read returns a fresh copy
- Backend failures are logged and degrade to miss / no-op
- get_or_set / get_or_set_with_freshness (stale-on-error fallback)
- Deterministic, locality-grouping key helpers and a nearby-key lookup
"""

from __future__ import annotations

import json
import re
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Protocol

import redis.asyncio as aioredis

from app.core.config import CacheSettings, CacheTtlSettings
from app.core.logging import get_logger
from services.geo_math import KM_PER_DEGREE

logger = get_logger()

_MISS = object()


class CacheBackend(Protocol):
    name: str

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_s: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def clear(self) -> None: ...


class InMemoryCacheBackend:
    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Dict[str, Any]] = {}

    async def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= float(entry["expires_at"]):
            self._entries.pop(key, None)
            return None
        return entry["payload"]

    async def set(self, key: str, value: str, ttl_s: int) -> None:
        self._entries[key] = {"expires_at": self._clock() + ttl_s, "payload": value}

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def clear(self) -> None:
        self._entries.clear()


class RedisCacheBackend:
    name = "redis"

    def __init__(self, url: str, namespace: str = "poi:"):
        self._client = aioredis.from_url(url, decode_responses=True)
        self.namespace = namespace

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(self.namespace + key)

    async def set(self, key: str, value: str, ttl_s: int) -> None:
        await self._client.set(self.namespace + key, value, ex=int(ttl_s))

    async def delete(self, key: str) -> None:
        await self._client.delete(self.namespace + key)

    async def clear(self) -> None:
        async for key in self._client.scan_iter(match=f"{self.namespace}*"):
            await self._client.delete(key)

    async def aclose(self) -> None:
        await self._client.aclose()


def build_cache_backend(settings: CacheSettings) -> CacheBackend:
    if settings.backend == "redis":
        if not settings.redis_url:
            raise ValueError("POI_CACHE__REDIS_URL is required for the redis cache backend")
        return RedisCacheBackend(settings.redis_url)
    return InMemoryCacheBackend()


# -------- Key helpers --------------------------------------------------------

def _fmt_number(value: float) -> str:
    value = float(value)
    if value.is_integer():
        return str(int(value))
    return repr(value)


def _round3(value: float) -> str:
    return _fmt_number(round(float(value), 3))


def _normalize_text(text: str) -> str:
    return re.sub(r"\s+", "_", text.strip().lower())


def _categories_part(categories: Optional[Iterable[str]]) -> str:
    if not categories:
        return ""
    return ":" + ",".join(sorted(c.strip().lower() for c in categories if c and c.strip()))


def search_key(lat: float, lon: float, radius: float, categories: Optional[Iterable[str]] = None) -> str:
    """`overpass:search:48.857,2.352,1000:amenity,tourism` (3-decimal coords, sorted categories)."""
    return f"overpass:search:{_round3(lat)},{_round3(lon)},{_fmt_number(radius)}{_categories_part(categories)}"


def area_key(lat: float, lon: float, radius_km: float) -> str:
    return f"overpass:area:{lat:.2f},{lon:.2f},{_fmt_number(radius_km)}"


def nominatim_key(category: str, south: float, west: float, north: float, east: float) -> str:
    return f"overpass:nominatim:{_normalize_text(category)}:{south:.2f},{west:.2f},{north:.2f},{east:.2f}"


def text_search_key(query: str, lat: float, lon: float, radius: float) -> str:
    return f"places:search:text:{_normalize_text(query)}:{_round3(lat)},{_round3(lon)}:{_fmt_number(radius)}"


def autocomplete_key(text: str, lat: Optional[float] = None, lon: Optional[float] = None) -> str:
    key = f"places:autocomplete:{_normalize_text(text)}"
    if lat is not None and lon is not None:
        key += f":{lat:.2f},{lon:.2f}"
    return key


def place_details_key(place_id: str) -> str:
    return f"places:details:{place_id}"


def photo_key(photo_ref: str, max_width: int) -> str:
    return f"places:photos:{photo_ref}:{int(max_width)}"


def _stale_key(key: str) -> str:
    return f"stale:{key}"


# -------- Service ------------------------------------------------------------

class CacheService:
    def __init__(self, backend: Optional[CacheBackend] = None, ttl: Optional[CacheTtlSettings] = None):
        self.backend = backend or InMemoryCacheBackend()
        self.ttl = ttl or CacheTtlSettings()
        self.hits = 0
        self.misses = 0

    async def _read(self, key: str) -> Any:
        try:
            raw = await self.backend.get(key)
        except Exception as e:
            logger.warning("cache_get_failed", key=key, error=str(e))
            return _MISS
        if raw is None:
            return _MISS
        try:
            return json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning("cache_decode_failed", key=key, error=str(e))
            return _MISS

    async def get(self, key: str) -> Optional[Any]:
        value = await self._read(key)
        if value is _MISS:
            self.misses += 1
            logger.debug("cache_miss", key=key)
            return None
        self.hits += 1
        logger.debug("cache_hit", key=key)
        return value

    async def set(self, key: str, value: Any, ttl_s: Optional[int] = None) -> None:
        ttl_s = self.ttl.search_s if ttl_s is None else ttl_s
        try:
            await self.backend.set(key, json.dumps(value), ttl_s)
        except Exception as e:
            logger.warning("cache_set_failed", key=key, ttl_s=ttl_s, error=str(e))

    async def delete(self, key: str) -> None:
        try:
            await self.backend.delete(key)
        except Exception as e:
            logger.warning("cache_delete_failed", key=key, error=str(e))

    async def clear(self) -> None:
        try:
            await self.backend.clear()
        except Exception as e:
            logger.warning("cache_clear_failed", error=str(e))
        self.hits = 0
        self.misses = 0

    async def get_or_set(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
        ttl_s: Optional[int] = None,
    ) -> Any:
        cached = await self.get(key)
        if cached is not None:
            return cached
        value = await factory()
        await self.set(key, value, ttl_s)
        return value

    async def get_or_set_with_freshness(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
        ttl_s: Optional[int] = None,
        fallback_on_error: bool = False,
        cache_if: Optional[Callable[[Any], bool]] = None,
    ) -> Any:
        """
        Like get_or_set, but when the factory raises and `fallback_on_error` is set the
        last stored value is served instead. Besides the regular entry, every fresh
        value is kept under a shadow key for `ttl.stale_s` seconds so that an expired
        entry can still be served. Without a stale value the factory error propagates.

        Values rejected by `cache_if` (e.g. an empty result during an upstream outage)
        are neither stored nor allowed to replace the stale copy; with
        `fallback_on_error` the stale copy is served in their place when one exists.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached

        try:
            value = await factory()
        except Exception as e:
            if not fallback_on_error:
                raise
            stale = await self._read(key)
            if stale is _MISS:
                stale = await self._read(_stale_key(key))
            if stale is _MISS:
                logger.warning("cache_stale_fallback_unavailable", key=key, error=str(e))
                raise
            logger.warning("cache_stale_fallback_served", key=key, error=str(e))
            return stale

        if cache_if is not None and not cache_if(value):
            if fallback_on_error:
                stale = await self._read(_stale_key(key))
                if stale is not _MISS:
                    logger.warning("cache_stale_served_for_degraded_value", key=key)
                    return stale
            logger.info("cache_store_skipped", key=key)
            return value

        await self.set(key, value, ttl_s)
        await self.set(_stale_key(key), value, self.ttl.stale_s)
        return value

    async def has_nearby_cache(
        self,
        lat: float,
        lon: float,
        radius_km: float,
        margin_km: float = 1.0,
    ) -> Optional[str]:
        """
        Check the 3x3 grid of area keys around (lat, lon), `margin_km` apart, exact
        point first. Returns the first populated key or None. Approximate by nature:
        neighbouring cells can hold results centred up to ~1.5 km away.
        """
        step = margin_km / KM_PER_DEGREE
        offsets = [(0, 0)] + [(i, j) for i in (-1, 0, 1) for j in (-1, 0, 1) if (i, j) != (0, 0)]
        for i, j in offsets:
            key = area_key(lat + i * step, lon + j * step, radius_km)
            if await self._read(key) is not _MISS:
                logger.debug("cache_nearby_hit", key=key)
                return key
        return None

    def get_stats(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / total, 4) if total else 0.0,
        }

    def get_metrics(self) -> Dict[str, Any]:
        return {"type": self.backend.name, "status": "active", **self.get_stats()}
