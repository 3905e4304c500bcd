# -*- coding: utf-8 -*-
"""
Geo helpers on WGS84 degree coordinates (spherical earth)
- Haversine distances in km (rounded) and meters (raw)
- Bounding boxes derived from the 111.32 km/degree approximation
- Bearings, cardinal directions and greedy distance clustering
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

EARTH_RADIUS_KM = 6371.0
EARTH_RADIUS_M = 6371000.0
KM_PER_DEGREE = 111.32

# cos(lat) floor so longitude deltas stay finite at the poles
_MIN_COS_LAT = 1e-6

_CARDINALS = ["N", "NE", "E", "SE", "S", "SW", "W", "NW"]


@dataclass(frozen=True)
class BoundingBox:
    north: float
    south: float
    east: float
    west: float

    def as_overpass(self) -> str:
        """Overpass bbox filter order: south,west,north,east."""
        return f"{self.south:.6f},{self.west:.6f},{self.north:.6f},{self.east:.6f}"


@dataclass
class GeoCluster:
    lat: float
    lon: float
    points: List[Any] = field(default_factory=list)


def _coords(point: Any) -> Tuple[float, float]:
    if isinstance(point, dict):
        return float(point["lat"]), float(point["lon"])
    return float(point.lat), float(point.lon)


def distance_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters using the haversine formula."""
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    dlat = lat2_rad - lat1_rad
    dlon = math.radians(lon2 - lon1)
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2) ** 2
    c = 2 * math.asin(min(1.0, math.sqrt(a)))
    return EARTH_RADIUS_M * c


def distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine distance in kilometers, rounded to 2 decimals."""
    return round(distance_meters(lat1, lon1, lat2, lon2) / 1000.0, 2)


def format_distance(km: float) -> str:
    if km < 1:
        return f"{round(km * 1000)}m"
    return f"{km:.1f}km"


def bounding_box(lat: float, lon: float, radius_km: float) -> BoundingBox:
    lat_delta = radius_km / KM_PER_DEGREE
    cos_lat = max(abs(math.cos(math.radians(lat))), _MIN_COS_LAT)
    lon_delta = min(radius_km / (KM_PER_DEGREE * cos_lat), 180.0)
    return BoundingBox(
        north=min(lat + lat_delta, 90.0),
        south=max(lat - lat_delta, -90.0),
        east=lon + lon_delta,
        west=lon - lon_delta,
    )


def is_point_in_bounding_box(lat: float, lon: float, box: BoundingBox) -> bool:
    return box.south <= lat <= box.north and box.west <= lon <= box.east


def center_point(points: Sequence[Any]) -> Optional[Tuple[float, float]]:
    if not points:
        return None
    coords = [_coords(p) for p in points]
    return (
        sum(c[0] for c in coords) / len(coords),
        sum(c[1] for c in coords) / len(coords),
    )


def validate_coordinates(lat: Any, lon: Any) -> bool:
    try:
        lat_f = float(lat)
        lon_f = float(lon)
    except (TypeError, ValueError):
        return False
    if not (math.isfinite(lat_f) and math.isfinite(lon_f)):
        return False
    return -90.0 <= lat_f <= 90.0 and -180.0 <= lon_f <= 180.0


def find_nearest_points(
    lat: float,
    lon: float,
    points: Sequence[Any],
    max_results: int = 10,
    max_distance_km: Optional[float] = None,
) -> List[Dict[str, Any]]:
    """Return `{"point", "distance_km"}` entries sorted by distance from (lat, lon)."""
    ranked: List[Dict[str, Any]] = []
    for point in points:
        p_lat, p_lon = _coords(point)
        d = distance_km(lat, lon, p_lat, p_lon)
        if max_distance_km is not None and d > max_distance_km:
            continue
        ranked.append({"point": point, "distance_km": d})
    ranked.sort(key=lambda item: item["distance_km"])
    return ranked[:max_results]


def bearing(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Initial bearing from point 1 to point 2, in degrees [0, 360)."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dlon = math.radians(lon2 - lon1)
    y = math.sin(dlon) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(dlon)
    return (math.degrees(math.atan2(y, x)) + 360.0) % 360.0


def bearing_to_cardinal(degrees: float) -> str:
    return _CARDINALS[int(round((degrees % 360) / 45.0)) % 8]


def cluster_by_distance(points: Sequence[Any], max_distance_km: float) -> List[GeoCluster]:
    """
    Greedy single-pass clustering: every unvisited point seeds a cluster that absorbs
    all unvisited points within `max_distance_km` of the seed. The centroid is the
    arithmetic mean of the members. Good enough for display density, not for exact
    neighbour queries.
    """
    visited = [False] * len(points)
    clusters: List[GeoCluster] = []

    for i, seed in enumerate(points):
        if visited[i]:
            continue
        visited[i] = True
        seed_lat, seed_lon = _coords(seed)
        members = [seed]

        for j in range(i + 1, len(points)):
            if visited[j]:
                continue
            lat_j, lon_j = _coords(points[j])
            if distance_km(seed_lat, seed_lon, lat_j, lon_j) <= max_distance_km:
                visited[j] = True
                members.append(points[j])

        c_lat, c_lon = center_point(members)
        clusters.append(GeoCluster(lat=c_lat, lon=c_lon, points=members))

    return clusters
