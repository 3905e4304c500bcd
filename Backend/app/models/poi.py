from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError


PoiSource = Literal["overpass", "nominatim", "cached"]


class Poi(BaseModel):
    """Unified point of interest returned by every search source."""
    id: str
    name: str = Field(min_length=1)
    type: str
    lat: float = Field(allow_inf_nan=False)
    lon: float = Field(allow_inf_nan=False)
    tags: Dict[str, str] = Field(default_factory=dict)
    source: PoiSource


class SearchSources(BaseModel):
    cached: int = 0
    overpass: int = 0
    nominatim: int = 0


class PoiSearchResult(BaseModel):
    data: List[Poi] = Field(default_factory=list)
    sources: SearchSources = Field(default_factory=SearchSources)
    execution_time_ms: int = 0


PhotoSource = Literal["wikimedia", "unsplash", "placeholder"]


class PoiPhoto(BaseModel):
    url: str
    source: PhotoSource
    attribution: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None


class EnrichedPoi(Poi):
    photos: List[PoiPhoto] = Field(default_factory=list)
    photo_search_terms: List[str] = Field(default_factory=list)


class EnrichedSearchResult(BaseModel):
    data: List[EnrichedPoi] = Field(default_factory=list)
    sources: SearchSources = Field(default_factory=SearchSources)
    execution_time_ms: int = 0


class ClusterBounds(BaseModel):
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float


class PoiCluster(BaseModel):
    """Display cluster of nearby POIs for a given map zoom level."""
    id: str
    lat: float
    lon: float
    bounds: ClusterBounds
    poi_count: int
    representative_pois: List[Poi] = Field(default_factory=list)
    types: Dict[str, int] = Field(default_factory=dict)
    importance: int = 0
    radius_m: float = 0.0


class PopularArea(BaseModel):
    name: str
    lat: float
    lon: float
    radius_km: float


def pois_from_payload(items: Any) -> List[Poi]:
    """Rebuild Poi objects from cached dicts, skipping malformed entries."""
    pois: List[Poi] = []
    if not isinstance(items, list):
        return pois
    for item in items:
        try:
            pois.append(Poi.model_validate(item))
        except ValidationError:
            continue
    return pois
