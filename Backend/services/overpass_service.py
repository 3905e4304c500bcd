# -*- coding: utf-8 -*-
"""
OverpassService: executes Overpass QL against a rotating server pool
- Picks the healthiest server per attempt via OverpassMonitor.best_server
- Retries through RetryPolicy (rate-limit backoff, timeout / error delays)
- Category-split fan-out settled per group, merged in priority order
- Minimal fallback query when the primary strategy returns nothing
- Whole stage bounded by a global timeout (timeout => empty result)
- Normalizes nodes / ways / relations and count replies into Poi objects
"""

from __future__ import annotations

import asyncio
import math
from typing import Any, Dict, List, Optional, Sequence, Set

import httpx

from app.core.config import OverpassSettings, RetrySettings
from app.core.logging import get_logger
from app.models.poi import Poi
from services.overpass_monitor_service import OverpassMonitor
from services.overpass_query_builder import OverpassQuery, OverpassQueryBuilder, QueryGroup, QueryStrategy
from services.retry_policy import ErrorKind, RetryPolicy, classify_error

logger = get_logger()


class OverpassError(RuntimeError):
    retry_kind = ErrorKind.OTHER


class OverpassRateLimitError(OverpassError):
    retry_kind = ErrorKind.RATE_LIMIT


class OverpassTimeoutError(OverpassError):
    retry_kind = ErrorKind.TIMEOUT


_HISTORIC_TYPES = {
    "monument", "memorial", "castle", "ruins", "archaeological_site",
    "manor", "palace", "fort", "tower", "city_gate",
}
_NATURAL_TYPES = {"peak", "volcano", "rock", "cliff", "beach", "waterfall"}
_WORSHIP_BUILDINGS = {"cathedral", "church", "mosque", "synagogue", "temple"}

_AREA_NAMES = (
    ("leisure", "park", "Park"),
    ("leisure", "garden", "Garden"),
    ("leisure", "nature_reserve", "Nature reserve"),
    ("natural", "wood", "Woods"),
    ("landuse", "forest", "Woods"),
    ("natural", "water", "Lake"),
    ("natural", "beach", "Beach"),
    ("place", "square", "Square"),
    ("amenity", "fountain", "Fountain"),
)


def determine_type(tags: Dict[str, str]) -> str:
    tourism = tags.get("tourism")
    if tourism in ("viewpoint", "artwork", "attraction"):
        return tourism
    historic = tags.get("historic")
    if historic in _HISTORIC_TYPES:
        return historic
    natural = tags.get("natural")
    if natural in _NATURAL_TYPES:
        return natural

    if tags.get("man_made") == "lighthouse":
        return "lighthouse"
    if tags.get("man_made") == "bridge" and tags.get("bridge") != "no":
        return "bridge"
    if tags.get("amenity") == "fountain":
        return "fountain"
    if tags.get("amenity") == "place_of_worship":
        building = tags.get("building")
        return building if building in _WORSHIP_BUILDINGS else "religious_building"
    if tags.get("leisure") in ("park", "garden", "nature_reserve"):
        return tags["leisure"]

    if tourism:
        return tourism
    if historic:
        return historic
    if tags.get("building") in ("cathedral", "church"):
        return tags["building"]
    if natural:
        return natural
    if tags.get("photo"):
        return "photo_spot"
    return "other"


def area_name(tags: Dict[str, str], osm_type: str) -> str:
    """Readable fallback name for unnamed areas."""
    for key, value, label in _AREA_NAMES:
        if tags.get(key) == value:
            return label
    building = tags.get("building")
    if building and building != "yes":
        return building.replace("_", " ")
    if tags.get("description"):
        return tags["description"]
    for key in ("leisure", "natural", "tourism", "historic"):
        if tags.get(key):
            return tags[key].replace("_", " ").capitalize()
    return f"Area {osm_type}"


def _is_important_area(element: Dict[str, Any], tags: Dict[str, str]) -> bool:
    if element.get("type") not in ("way", "relation"):
        return False
    return bool(tags.get("leisure") or tags.get("natural") or tags.get("landuse") == "grass" or tags.get("place"))


def _element_coords(element: Dict[str, Any]) -> Optional[tuple]:
    etype = element.get("type")
    if etype == "node":
        return element.get("lat"), element.get("lon")
    if etype not in ("way", "relation"):
        return None
    center = element.get("center")
    if isinstance(center, dict):
        return center.get("lat"), center.get("lon")
    geometry = element.get("geometry")
    if etype == "way" and isinstance(geometry, list):
        points = [p for p in geometry if isinstance(p, dict) and p.get("lat") is not None and p.get("lon") is not None]
        if points:
            return (
                sum(float(p["lat"]) for p in points) / len(points),
                sum(float(p["lon"]) for p in points) / len(points),
            )
    bounds = element.get("bounds")
    if isinstance(bounds, dict):
        try:
            return (
                (float(bounds["minlat"]) + float(bounds["maxlat"])) / 2,
                (float(bounds["minlon"]) + float(bounds["maxlon"])) / 2,
            )
        except (KeyError, TypeError, ValueError):
            return None
    return None


def parse_overpass_response(data: Dict[str, Any]) -> List[Poi]:
    elements = data.get("elements") or []
    if not isinstance(elements, list):
        return []

    # `out count` replies carry a single element with a `total` tag
    if len(elements) == 1 and isinstance(elements[0], dict) and (elements[0].get("tags") or {}).get("total"):
        try:
            count = int(elements[0]["tags"]["total"])
        except (TypeError, ValueError):
            count = 0
        logger.info("overpass_count_result", count=count)
        if count <= 0:
            return []
        return [
            Poi(
                id="overpass-count-indicator",
                name=f"Area too large: {count} points",
                type="count_indicator",
                lat=0.0,
                lon=0.0,
                tags={"count": str(count)},
                source="overpass",
            )
        ]

    pois: List[Poi] = []
    for element in elements:
        if not isinstance(element, dict) or element.get("id") is None:
            continue
        tags = {str(k): str(v) for k, v in (element.get("tags") or {}).items()}
        name = tags.get("name") or tags.get("name:en") or tags.get("name:fr")
        if not name and not _is_important_area(element, tags):
            continue

        coords = _element_coords(element)
        if coords is None:
            continue
        try:
            lat, lon = float(coords[0]), float(coords[1])
        except (TypeError, ValueError):
            continue
        if not (math.isfinite(lat) and math.isfinite(lon)):
            continue

        etype = element["type"]
        tags["osm_type"] = etype
        tags["osm_id"] = str(element["id"])
        pois.append(
            Poi(
                id=f"overpass-{etype}-{element['id']}",
                name=name or area_name(tags, etype),
                type=determine_type(tags),
                lat=lat,
                lon=lon,
                tags=tags,
                source="overpass",
            )
        )
    return pois


def _remark_error(remark: str) -> Optional[OverpassError]:
    text = remark.lower()
    if "rate_limited" in text or "too many requests" in text:
        return OverpassRateLimitError(f"RATE_LIMIT: {remark[:200]}")
    if "timed out" in text or "timeout" in text:
        return OverpassTimeoutError(f"TIMEOUT: {remark[:200]}")
    if "runtime error" in text:
        return OverpassError(f"ERROR: {remark[:200]}")
    return None


class OverpassService:
    def __init__(
        self,
        settings: Optional[OverpassSettings] = None,
        retry: Optional[RetrySettings] = None,
        *,
        monitor: Optional[OverpassMonitor] = None,
        query_builder: Optional[OverpassQueryBuilder] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep=asyncio.sleep,
    ):
        self.settings = settings or OverpassSettings()
        retry = retry or RetrySettings()
        if not self.settings.servers:
            raise ValueError("at least one Overpass server is required")
        self.servers = list(self.settings.servers)
        self.monitor = monitor or OverpassMonitor()
        self.query_builder = query_builder or OverpassQueryBuilder(self.settings)
        self.retry_policy = RetryPolicy(
            max_attempts=retry.max_attempts,
            base_delay_s=retry.base_delay_s,
            multiplier=retry.backoff_multiplier,
            timeout_delay_s=retry.timeout_delay_s,
            sleep=sleep,
        )
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(headers={"User-Agent": self.settings.user_agent})

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "OverpassService":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def _post(self, server: str, query: OverpassQuery) -> Dict[str, Any]:
        started = self.monitor.record_start(server)
        try:
            response = await self._client.post(
                server,
                data={"data": query.text},
                headers={"User-Agent": self.settings.user_agent},
                timeout=query.timeout_s,
            )
            status = response.status_code
            if status == 429:
                raise OverpassRateLimitError("RATE_LIMIT: HTTP 429")
            if status == 504:
                raise OverpassTimeoutError("TIMEOUT: HTTP 504")
            if status >= 500:
                raise OverpassError(f"SERVER_5XX: HTTP {status}")
            if status >= 400:
                raise OverpassError(f"HTTP_ERROR: HTTP {status}")
            try:
                data = response.json()
            except ValueError:
                raise OverpassError(f"JSON decode failed (status={status}): {(response.text or '')[:200]!r}")
            if not isinstance(data, dict):
                raise OverpassError("unexpected Overpass payload")
            remark = data.get("remark")
            if remark and not data.get("elements"):
                remark_error = _remark_error(str(remark))
                if remark_error is not None:
                    raise remark_error
        except httpx.TimeoutException as e:
            self.monitor.record_failure(server, f"TIMEOUT: {e}", started, is_timeout=True)
            raise OverpassTimeoutError(f"TIMEOUT: {e}") from e
        except httpx.HTTPError as e:
            self.monitor.record_failure(server, f"NETWORK_ERROR: {e}", started)
            raise OverpassError(f"NETWORK_ERROR: {str(e)[:200]}") from e
        except OverpassError as e:
            kind = classify_error(e)
            self.monitor.record_failure(
                server,
                e,
                started,
                is_rate_limit=kind is ErrorKind.RATE_LIMIT,
                is_timeout=kind is ErrorKind.TIMEOUT,
            )
            raise

        self.monitor.record_success(server, started, len(data.get("elements") or []))
        return data

    async def query_with_retry(self, query: OverpassQuery, policy: Optional[RetryPolicy] = None) -> List[Poi]:
        """Run one query, moving to a not-yet-tried server on every attempt."""
        policy = policy or self.retry_policy
        tried: Set[str] = set()

        async def _attempt(attempt: int) -> List[Poi]:
            candidates = [s for s in self.servers if s not in tried] or self.servers
            server = self.monitor.best_server(candidates)
            tried.add(server)
            logger.debug("overpass_query_attempt", label=query.label, server=server, attempt=attempt + 1)
            data = await self._post(server, query)
            return parse_overpass_response(data)

        return await policy.run(_attempt, label=f"overpass_{query.label}")

    async def query_split(
        self,
        groups: Sequence[QueryGroup],
        lat: float,
        lon: float,
        radius_km: float,
    ) -> List[Poi]:
        queries = [self.query_builder.group_query(g, lat, lon, radius_km) for g in groups]
        settled = await asyncio.gather(*(self.query_with_retry(q) for q in queries), return_exceptions=True)

        merged: List[Poi] = []
        seen_ids: Set[str] = set()
        failures: List[BaseException] = []
        # `groups` is already in priority order; merge in that order, not completion order
        for group, outcome in zip(groups, settled):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                failures.append(outcome)
                logger.warning("overpass_group_failed", group=group.name, error=str(outcome)[:200])
                continue
            added = 0
            for poi in outcome:
                if poi.id in seen_ids:
                    continue
                seen_ids.add(poi.id)
                merged.append(poi)
                added += 1
            logger.debug("overpass_group_done", group=group.name, added=added)

        if failures and len(failures) == len(queries):
            raise failures[0]
        return merged

    async def run_strategy(
        self,
        strategy: QueryStrategy,
        lat: float,
        lon: float,
        radius_km: float,
        categories: Optional[Sequence[str]] = None,
    ) -> List[Poi]:
        if strategy is QueryStrategy.VIRTUAL_CLUSTERS:
            raise ValueError("virtual clusters are not an Overpass query")
        if strategy is QueryStrategy.SPLIT:
            pois = await self.query_split(self.query_builder.groups_for(categories), lat, lon, radius_km)
        else:
            pois = await self.query_with_retry(self.query_builder.single_query(strategy, lat, lon, radius_km))

        if pois or strategy is QueryStrategy.COUNT:
            return pois

        logger.info("overpass_minimal_fallback", strategy=strategy.value, radius_km=radius_km)
        minimal = self.query_builder.minimal_query(lat, lon, radius_km)
        try:
            return await self.query_with_retry(minimal, self.retry_policy.with_attempts(1))
        except OverpassError as e:
            logger.warning("overpass_minimal_fallback_failed", error=str(e)[:200])
            return []

    async def search(
        self,
        strategy: QueryStrategy,
        lat: float,
        lon: float,
        radius_km: float,
        categories: Optional[Sequence[str]] = None,
    ) -> List[Poi]:
        """The whole Overpass stage, bounded by the global timeout (timeout => [])."""
        try:
            return await asyncio.wait_for(
                self.run_strategy(strategy, lat, lon, radius_km, categories),
                timeout=self.settings.global_timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "overpass_global_timeout",
                strategy=strategy.value,
                timeout_s=self.settings.global_timeout_s,
            )
            return []
