from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from app.core.logging import get_logger
from app.models.poi import EnrichedSearchResult, Poi, PoiCluster, PoiPhoto, PoiSearchResult
from services.poi_search_service import PoiSearchService

logger = get_logger()

router = APIRouter(
    prefix="/pois",
    tags=["pois"],
)


class PreloadRequest(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    radius_km: float = Field(gt=0, le=50)


class PreloadResponse(BaseModel):
    ok: bool
    preloaded: int


class EnrichPoiRequest(BaseModel):
    id: str
    name: str = Field(min_length=1)
    type: str
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    tags: Dict[str, str] = Field(default_factory=dict)


class EnrichPoiResponse(BaseModel):
    id: str
    photos: List[PoiPhoto]
    photo_search_terms: List[str]
    has_photos: bool
    fetch_time_ms: int


class ClusterResponse(BaseModel):
    zoom: int
    total_pois: int
    clusters: List[PoiCluster]


def get_poi_search_service(request: Request) -> PoiSearchService:
    searcher = getattr(request.app.state, "poi_search", None)
    if searcher is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="POI search not ready")
    return searcher


@router.get("/search", response_model=PoiSearchResult)
async def search_pois(
    lat: float = Query(..., ge=-90, le=90),
    lon: float = Query(..., ge=-180, le=180),
    radius_km: float = Query(2.0, gt=0, le=500),
    categories: Optional[List[str]] = Query(None),
    searcher: PoiSearchService = Depends(get_poi_search_service),
) -> PoiSearchResult:
    try:
        return await searcher.search_pois(lat, lon, radius_km, categories)
    except Exception as e:
        # Only reachable when the live search failed and no stale copy existed
        logger.error("poi_search_unavailable", error=str(e)[:200])
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="POI search unavailable")


@router.get("/search-with-photos", response_model=EnrichedSearchResult)
async def search_pois_with_photos(
    lat: float = Query(..., ge=-90, le=90),
    lon: float = Query(..., ge=-180, le=180),
    radius_km: float = Query(3.0, gt=0, le=500),
    categories: Optional[List[str]] = Query(None),
    include_photos: bool = Query(True),
    searcher: PoiSearchService = Depends(get_poi_search_service),
) -> Any:
    try:
        if not include_photos:
            return await searcher.search_pois(lat, lon, radius_km, categories)
        return await searcher.search_with_photos(lat, lon, radius_km, categories)
    except Exception as e:
        logger.error("poi_search_unavailable", error=str(e)[:200])
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="POI search unavailable")


@router.post("/enrich", response_model=EnrichPoiResponse)
async def enrich_poi(
    body: EnrichPoiRequest,
    searcher: PoiSearchService = Depends(get_poi_search_service),
) -> EnrichPoiResponse:
    started = time.perf_counter()
    poi = Poi(**body.model_dump(), source="overpass")
    enriched = await searcher.photos.enrich_poi(poi)
    return EnrichPoiResponse(
        id=poi.id,
        photos=enriched.photos,
        photo_search_terms=enriched.photo_search_terms,
        has_photos=bool(enriched.photos),
        fetch_time_ms=int((time.perf_counter() - started) * 1000),
    )


@router.get("/clusters", response_model=ClusterResponse)
async def cluster_pois(
    lat: float = Query(..., ge=-90, le=90),
    lon: float = Query(..., ge=-180, le=180),
    radius_km: float = Query(2.0, gt=0, le=500),
    zoom: int = Query(14, ge=0, le=22),
    categories: Optional[List[str]] = Query(None),
    searcher: PoiSearchService = Depends(get_poi_search_service),
) -> ClusterResponse:
    try:
        clusters = await searcher.cluster_pois(lat, lon, radius_km, zoom, categories)
    except Exception as e:
        logger.error("poi_search_unavailable", error=str(e)[:200])
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="POI search unavailable")
    return ClusterResponse(zoom=zoom, total_pois=sum(c.poi_count for c in clusters), clusters=clusters)


@router.post("/preload", response_model=PreloadResponse)
async def preload_area(
    body: PreloadRequest,
    searcher: PoiSearchService = Depends(get_poi_search_service),
) -> PreloadResponse:
    stored = await searcher.preload_area(body.lat, body.lon, body.radius_km)
    return PreloadResponse(ok=True, preloaded=1 if stored else 0)


@router.post("/preload-popular", response_model=PreloadResponse)
async def preload_popular(searcher: PoiSearchService = Depends(get_poi_search_service)) -> PreloadResponse:
    return PreloadResponse(ok=True, preloaded=await searcher.preload_popular_areas())


@router.post("/warm-cache", response_model=PreloadResponse)
async def warm_cache(searcher: PoiSearchService = Depends(get_poi_search_service)) -> PreloadResponse:
    return PreloadResponse(ok=True, preloaded=await searcher.warm_cache())


@router.get("/metrics")
async def get_metrics(searcher: PoiSearchService = Depends(get_poi_search_service)) -> Dict[str, Any]:
    return searcher.get_metrics()


@router.post("/metrics/reset")
async def reset_metrics(searcher: PoiSearchService = Depends(get_poi_search_service)) -> Dict[str, Any]:
    searcher.monitor.reset()
    return {"ok": True}


@router.post("/cache/clear")
async def clear_cache(searcher: PoiSearchService = Depends(get_poi_search_service)) -> Dict[str, Any]:
    await searcher.cache.clear()
    logger.info("poi_cache_cleared")
    return {"ok": True}
