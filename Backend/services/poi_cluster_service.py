# -*- coding: utf-8 -*-
"""
Zoom-level display clustering for POI results
- Cluster radius follows the map zoom (50 m street level .. 5 km country level)
- Density-based grouping: a POI with fewer than MIN_CLUSTER_SIZE neighbours stays alone
- Each cluster carries bounds, type distribution, top POIs and an importance score
- merge_clusters folds clusters whose centroids are close (greedy, via geo_math)
"""

from __future__ import annotations

from collections import deque
from typing import Dict, List, Sequence

from app.core.logging import get_logger
from app.models.poi import ClusterBounds, Poi, PoiCluster
from services.geo_math import center_point, cluster_by_distance, distance_meters
from services.poi_relevance import calculate_relevance_score

logger = get_logger()

MIN_CLUSTER_SIZE = 5
MAX_REPRESENTATIVES = 5

# (minimum zoom, radius in meters), highest zoom first
_ZOOM_RADII = ((16, 50.0), (14, 200.0), (12, 500.0), (10, 2000.0))
_COUNTRY_RADIUS_M = 5000.0


def cluster_radius_for_zoom(zoom: int) -> float:
    for min_zoom, radius_m in _ZOOM_RADII:
        if zoom >= min_zoom:
            return radius_m
    return _COUNTRY_RADIUS_M


def _neighbours(center: Poi, pois: Sequence[Poi], radius_m: float) -> List[Poi]:
    return [
        p for p in pois
        if p.id != center.id and distance_meters(center.lat, center.lon, p.lat, p.lon) <= radius_m
    ]


def _group_by_density(pois: Sequence[Poi], radius_m: float) -> List[List[Poi]]:
    groups: List[List[Poi]] = []
    visited = set()

    for poi in pois:
        if poi.id in visited:
            continue
        if len(_neighbours(poi, pois, radius_m)) < MIN_CLUSTER_SIZE:
            visited.add(poi.id)
            groups.append([poi])
            continue

        group: List[Poi] = []
        queue = deque([poi])
        while queue:
            current = queue.popleft()
            if current.id in visited:
                continue
            visited.add(current.id)
            group.append(current)
            queue.extend(n for n in _neighbours(current, pois, radius_m) if n.id not in visited)
        groups.append(group)

    return groups


def _top_pois(pois: Sequence[Poi]) -> List[Poi]:
    unique: Dict[str, Poi] = {}
    for poi in sorted(pois, key=calculate_relevance_score, reverse=True):
        unique.setdefault(poi.id, poi)
    return list(unique.values())[:MAX_REPRESENTATIVES]


def cluster_importance(pois: Sequence[Poi], types: Dict[str, int]) -> int:
    """0..10: size, type diversity and the number of notable POIs."""
    importance = 0

    size = len(pois)
    if size > 50:
        importance += 3
    elif size > 20:
        importance += 2
    elif size > 10:
        importance += 1

    if len(types) > 5:
        importance += 2
    elif len(types) > 3:
        importance += 1

    notable = sum(
        1 for p in pois
        if p.tags.get("heritage") or p.tags.get("wikipedia") or p.type == "viewpoint"
    )
    if notable > 10:
        importance += 3
    elif notable > 5:
        importance += 2
    elif notable > 2:
        importance += 1

    return min(importance, 10)


def _build_cluster(cluster_id: str, pois: Sequence[Poi]) -> PoiCluster:
    lat, lon = center_point(pois)
    types: Dict[str, int] = {}
    for poi in pois:
        types[poi.type] = types.get(poi.type, 0) + 1

    return PoiCluster(
        id=cluster_id,
        lat=lat,
        lon=lon,
        bounds=ClusterBounds(
            min_lat=min(p.lat for p in pois),
            max_lat=max(p.lat for p in pois),
            min_lon=min(p.lon for p in pois),
            max_lon=max(p.lon for p in pois),
        ),
        poi_count=len(pois),
        representative_pois=_top_pois(pois),
        types=types,
        importance=cluster_importance(pois, types),
        radius_m=max(distance_meters(lat, lon, p.lat, p.lon) for p in pois),
    )


def create_clusters(pois: Sequence[Poi], zoom: int) -> List[PoiCluster]:
    if not pois:
        return []
    radius_m = cluster_radius_for_zoom(zoom)
    groups = _group_by_density(pois, radius_m)
    logger.debug("poi_clusters_created", zoom=zoom, radius_m=radius_m, pois=len(pois), clusters=len(groups))
    return [_build_cluster(f"cluster-{index}", group) for index, group in enumerate(groups)]


def _merge_group(clusters: Sequence[PoiCluster]) -> PoiCluster:
    total = sum(c.poi_count for c in clusters)
    lat = sum(c.lat * c.poi_count for c in clusters) / total
    lon = sum(c.lon * c.poi_count for c in clusters) / total
    bounds = ClusterBounds(
        min_lat=min(c.bounds.min_lat for c in clusters),
        max_lat=max(c.bounds.max_lat for c in clusters),
        min_lon=min(c.bounds.min_lon for c in clusters),
        max_lon=max(c.bounds.max_lon for c in clusters),
    )
    types: Dict[str, int] = {}
    for cluster in clusters:
        for type_, count in cluster.types.items():
            types[type_] = types.get(type_, 0) + count

    return PoiCluster(
        id=f"merged-{clusters[0].id}",
        lat=lat,
        lon=lon,
        bounds=bounds,
        poi_count=total,
        representative_pois=_top_pois([p for c in clusters for p in c.representative_pois]),
        types=types,
        importance=max(c.importance for c in clusters),
        radius_m=max(
            distance_meters(lat, lon, bounds.min_lat, bounds.min_lon),
            distance_meters(lat, lon, bounds.max_lat, bounds.max_lon),
        ),
    )


def merge_clusters(clusters: Sequence[PoiCluster], max_distance_m: float) -> List[PoiCluster]:
    merged: List[PoiCluster] = []
    for group in cluster_by_distance(list(clusters), max_distance_m / 1000.0):
        members = group.points
        merged.append(members[0] if len(members) == 1 else _merge_group(members))
    return merged
