# -*- coding: utf-8 -*-
"""
POI ranking helpers
- Additive tag-based relevance score (photo-oriented heuristic)
- Proximity dedup across sources (first seen wins)
- Sort by score desc, then distance asc
"""

from __future__ import annotations

from typing import Iterable, List

from app.models.poi import Poi
from services.geo_math import distance_meters

PREMIUM_TYPES = frozenset({
    "viewpoint", "monument", "castle", "ruins", "lighthouse",
    "fountain", "cathedral", "palace", "archaeological_site",
    "memorial", "artwork", "bridge", "waterfall", "cliff",
    "park", "garden",
})
PHOTO_NATURAL = frozenset({"peak", "cliff", "waterfall", "beach"})


def _area_size(tags) -> float:
    try:
        return float(tags.get("area", 0) or 0)
    except ValueError:
        return 0.0


def calculate_relevance_score(poi: Poi) -> int:
    tags = poi.tags
    score = 0

    if tags.get("wikipedia") or tags.get("wikidata"):
        score += 10
    if tags.get("heritage"):
        score += 15
    if tags.get("tourism"):
        score += 8
    if tags.get("website"):
        score += 3
    if tags.get("opening_hours"):
        score += 2
    if tags.get("image") or tags.get("wikimedia_commons"):
        score += 10
    if tags.get("photo"):
        score += 12

    if poi.type in PREMIUM_TYPES:
        score += 10

    if tags.get("leisure") in ("park", "garden"):
        score += 5
        if tags.get("name"):
            score += 3

    if tags.get("historic"):
        score += 8
    if tags.get("tourism:type") == "photo_spot":
        score += 15
    if tags.get("scenic") == "yes":
        score += 10
    if tags.get("instagram:ref"):
        score += 5

    if tags.get("natural") in PHOTO_NATURAL:
        score += 8
    if tags.get("place") == "square":
        score += 6

    # Unnamed features only count when they are a notable area
    important_area = bool(tags.get("leisure") or tags.get("place") == "square" or tags.get("natural"))
    if not poi.name.strip() and not important_area:
        score -= 10

    if _area_size(tags) > 10000:
        score += 3

    return score


def dedupe_by_proximity(existing: Iterable[Poi], candidates: Iterable[Poi], threshold_m: float) -> List[Poi]:
    """Candidates farther than `threshold_m` from every POI in `existing`."""
    existing = list(existing)
    return [
        candidate for candidate in candidates
        if all(distance_meters(candidate.lat, candidate.lon, p.lat, p.lon) >= threshold_m for p in existing)
    ]


def sort_by_relevance(pois: Iterable[Poi], lat: float, lon: float) -> List[Poi]:
    scored = [
        (calculate_relevance_score(p), distance_meters(lat, lon, p.lat, p.lon), index, p)
        for index, p in enumerate(pois)
    ]
    scored.sort(key=lambda item: (-item[0], item[1], item[2]))
    return [item[3] for item in scored]
