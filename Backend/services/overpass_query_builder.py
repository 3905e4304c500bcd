# -*- coding: utf-8 -*-
"""
OverpassQueryBuilder: radius-adaptive Overpass QL for photo-relevant POIs
- Strategy tiers: full / medium / limited / split-by-group / count / virtual clusters
- Every query carries its own [timeout:N] sized to its complexity
- Bounding boxes come from geo_math.bounding_box
- Virtual clusters stand in for real queries on very large areas
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple

from app.core.config import OverpassSettings, RadiusThresholds
from app.models.poi import Poi
from services.geo_math import bounding_box, distance_km


class QueryStrategy(str, Enum):
    FULL = "full"
    MEDIUM = "medium"
    LIMITED = "limited"
    SPLIT = "split"
    COUNT = "count"
    VIRTUAL_CLUSTERS = "virtual_clusters"


@dataclass(frozen=True)
class OverpassQuery:
    label: str
    text: str
    timeout_s: int


@dataclass(frozen=True)
class QueryGroup:
    name: str
    priority: int
    # Overpass statements without the bbox, e.g. 'node["tourism"="viewpoint"]'
    selectors: Tuple[str, ...]


QUERY_GROUPS: Tuple[QueryGroup, ...] = (
    QueryGroup(
        name="historic",
        priority=1,
        selectors=(
            'node["historic"~"^(monument|memorial|castle|ruins|palace|archaeological_site|manor|fort)$"]',
            'way["historic"~"^(monument|memorial|castle|ruins|palace|archaeological_site|manor|fort)$"]',
        ),
    ),
    QueryGroup(
        name="tourism",
        priority=2,
        selectors=(
            'node["tourism"~"^(viewpoint|attraction|museum|artwork|gallery)$"]',
            'way["tourism"~"^(attraction|museum)$"]["name"]',
        ),
    ),
    QueryGroup(
        name="leisure",
        priority=3,
        selectors=(
            'way["leisure"~"^(park|garden|nature_reserve)$"]',
            'relation["leisure"~"^(park|nature_reserve)$"]',
            'way["place"="square"]["name"]',
        ),
    ),
    QueryGroup(
        name="infrastructure",
        priority=4,
        selectors=(
            'node["amenity"="place_of_worship"]["name"]',
            'way["amenity"="place_of_worship"]["name"]',
            'way["man_made"="bridge"]["name"]',
            'node["man_made"="lighthouse"]',
            'node["amenity"="fountain"]',
        ),
    ),
    QueryGroup(
        name="natural",
        priority=5,
        selectors=(
            'node["natural"~"^(peak|cliff|waterfall|beach|volcano|rock)$"]',
            'way["natural"~"^(cliff|beach)$"]["name"]',
        ),
    ),
)

# Full-detail selector set for small areas (no output cap)
_FULL_SELECTORS: Tuple[str, ...] = (
    'node["tourism"~"^(viewpoint|attraction|artwork|museum|gallery)$"]',
    'way["tourism"~"^(attraction|museum)$"]',
    'node["historic"]["name"]',
    'way["historic"]["name"]',
    'way["leisure"~"^(park|garden|nature_reserve)$"]',
    'relation["leisure"="park"]',
    'node["amenity"="place_of_worship"]["name"]',
    'way["amenity"="place_of_worship"]["name"]',
    'node["natural"~"^(peak|cliff|waterfall|beach|volcano|rock)$"]',
    'node["man_made"="lighthouse"]',
    'way["man_made"="bridge"]["name"]',
    'node["amenity"="fountain"]',
    'way["place"="square"]["name"]',
    'node["tourism:type"="photo_spot"]',
    'node["photo"]',
    'node["scenic"="yes"]',
)

_MEDIUM_SELECTORS: Tuple[str, ...] = (
    'node["tourism"~"^(viewpoint|museum|attraction|artwork)$"]["name"]',
    'way["tourism"="museum"]["name"]',
    'node["historic"~"^(monument|castle|memorial)$"]["name"]',
    'way["historic"~"^(castle|monument)$"]["name"]',
    'way["leisure"="park"]',
    'way["leisure"="garden"]["access"!="private"]',
    'node["amenity"="place_of_worship"]["building"="cathedral"]',
    'node["natural"="peak"]["name"]',
    'node["amenity"="fountain"]',
    'way["place"="square"]["name"]',
)

_LIMITED_SELECTORS: Tuple[str, ...] = (
    'node["tourism"~"^(viewpoint|attraction)$"]["name"]',
    'node["historic"~"^(monument|castle)$"]["name"]',
    'way["leisure"="park"]["name"]',
)

_MINIMAL_SELECTORS: Tuple[str, ...] = (
    'node["tourism"~"^(viewpoint|attraction)$"]["name"]',
    'node["historic"="monument"]["name"]',
)

_COUNT_SELECTORS: Tuple[str, ...] = (
    'node["tourism"~"^(viewpoint|museum|attraction)$"]',
    'node["historic"~"^(monument|castle)$"]',
    'way["leisure"="park"]',
)


# name, lat, lon, importance
KNOWN_AREAS: Tuple[Tuple[str, float, float, int], ...] = (
    ("Paris", 48.8566, 2.3522, 10),
    ("Lyon", 45.7640, 4.8357, 8),
    ("Marseille", 43.2965, 5.3698, 8),
    ("Toulouse", 43.6047, 1.4442, 7),
    ("Nice", 43.7102, 7.2620, 7),
    ("Montpellier", 43.6108, 3.8767, 6),
    ("Bordeaux", 44.8378, -0.5792, 7),
    ("Strasbourg", 48.5734, 7.7521, 6),
)

_POINTS_PER_IMPORTANCE = 50
_MAX_GRID_STEP_KM = 50.0


def _render(selectors: Iterable[str], bbox: str, timeout_s: int, out: str) -> str:
    body = "\n".join(f"  {selector}({bbox});" for selector in selectors)
    return f"[out:json][timeout:{timeout_s}];\n(\n{body}\n);\n{out};"


class OverpassQueryBuilder:
    def __init__(self, settings: Optional[OverpassSettings] = None, thresholds: Optional[RadiusThresholds] = None):
        self.settings = settings or OverpassSettings()
        self.thresholds = thresholds or RadiusThresholds()

    def effective_radius(self, radius_km: float) -> float:
        return min(radius_km, self.thresholds.max_overpass_km)

    def select_strategy(self, radius_km: float, *, virtual_clusters_enabled: bool = True) -> QueryStrategy:
        t = self.thresholds
        if radius_km > t.virtual_cluster_km:
            return QueryStrategy.VIRTUAL_CLUSTERS if virtual_clusters_enabled else QueryStrategy.COUNT
        radius_km = self.effective_radius(radius_km)
        if radius_km > t.split_km:
            return QueryStrategy.SPLIT
        if radius_km > t.limited_km:
            return QueryStrategy.LIMITED
        if radius_km > t.medium_km:
            return QueryStrategy.MEDIUM
        return QueryStrategy.FULL

    def _bbox(self, lat: float, lon: float, radius_km: float) -> str:
        return bounding_box(lat, lon, radius_km).as_overpass()

    def full_query(self, lat: float, lon: float, radius_km: float) -> OverpassQuery:
        t = self.settings.full_timeout_s
        return OverpassQuery("full", _render(_FULL_SELECTORS, self._bbox(lat, lon, radius_km), t, "out center"), t)

    def medium_query(self, lat: float, lon: float, radius_km: float) -> OverpassQuery:
        t = self.settings.medium_timeout_s
        out = f"out center {self.settings.medium_result_cap}"
        return OverpassQuery("medium", _render(_MEDIUM_SELECTORS, self._bbox(lat, lon, radius_km), t, out), t)

    def limited_query(self, lat: float, lon: float, radius_km: float) -> OverpassQuery:
        t = self.settings.limited_timeout_s
        out = f"out center {self.settings.limited_result_cap}"
        return OverpassQuery("limited", _render(_LIMITED_SELECTORS, self._bbox(lat, lon, radius_km), t, out), t)

    def count_query(self, lat: float, lon: float, radius_km: float) -> OverpassQuery:
        t = self.settings.count_timeout_s
        return OverpassQuery("count", _render(_COUNT_SELECTORS, self._bbox(lat, lon, radius_km), t, "out count"), t)

    def minimal_query(self, lat: float, lon: float, radius_km: float) -> OverpassQuery:
        t = self.settings.minimal_timeout_s
        out = f"out center {self.settings.minimal_result_cap}"
        return OverpassQuery("minimal", _render(_MINIMAL_SELECTORS, self._bbox(lat, lon, radius_km), t, out), t)

    def groups_for(self, categories: Optional[Sequence[str]] = None) -> List[QueryGroup]:
        """Groups named in `categories` (all groups when none match), by priority."""
        groups = sorted(QUERY_GROUPS, key=lambda g: g.priority)
        if categories:
            wanted = {c.strip().lower() for c in categories}
            selected = [g for g in groups if g.name in wanted]
            if selected:
                return selected
        return groups

    def group_query(self, group: QueryGroup, lat: float, lon: float, radius_km: float) -> OverpassQuery:
        t = self.settings.group_timeout_s
        out = f"out center {self.settings.group_result_cap}"
        return OverpassQuery(group.name, _render(group.selectors, self._bbox(lat, lon, radius_km), t, out), t)

    def single_query(self, strategy: QueryStrategy, lat: float, lon: float, radius_km: float) -> OverpassQuery:
        if strategy is QueryStrategy.FULL:
            return self.full_query(lat, lon, radius_km)
        if strategy is QueryStrategy.MEDIUM:
            return self.medium_query(lat, lon, radius_km)
        if strategy is QueryStrategy.LIMITED:
            return self.limited_query(lat, lon, radius_km)
        if strategy is QueryStrategy.COUNT:
            return self.count_query(lat, lon, radius_km)
        raise ValueError(f"strategy {strategy.value} has no single query")


def virtual_clusters(lat: float, lon: float, radius_km: float) -> List[Poi]:
    """
    Synthetic `area_cluster` POIs for areas too large to query: known dense city
    centres within range, or a 3x3 grid around the centre (centre excluded) when
    none is in range.
    """
    clusters: List[Poi] = []
    for name, a_lat, a_lon, importance in KNOWN_AREAS:
        if distance_km(lat, lon, a_lat, a_lon) > radius_km:
            continue
        clusters.append(
            Poi(
                id=f"cluster-{name.lower()}",
                name=f"Zone {name}",
                type="area_cluster",
                lat=a_lat,
                lon=a_lon,
                tags={
                    "cluster": "true",
                    "estimated_points": str(importance * _POINTS_PER_IMPORTANCE),
                    "city": name,
                },
                source="overpass",
            )
        )
    if clusters:
        return clusters

    step_km = min(radius_km / 4, _MAX_GRID_STEP_KM)
    cos_lat = max(abs(math.cos(math.radians(lat))), 1e-6)
    for i in (-1, 0, 1):
        for j in (-1, 0, 1):
            if i == 0 and j == 0:
                continue
            clusters.append(
                Poi(
                    id=f"grid-{i}-{j}",
                    name=f"Zone {len(clusters) + 1}",
                    type="area_cluster",
                    lat=lat + i * step_km / 111.0,
                    lon=lon + j * step_km / (111.0 * cos_lat),
                    tags={"cluster": "true", "estimated_points": "?"},
                    source="overpass",
                )
            )
    return clusters
