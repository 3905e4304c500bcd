# Backend/app/core/config.py
from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_OVERPASS_SERVERS = [
    "https://overpass-api.de/api/interpreter",
    "https://overpass.kumi.systems/api/interpreter",
    "https://overpass.openstreetmap.ru/api/interpreter",
]


class OverpassSettings(BaseModel):
    servers: List[str] = Field(default_factory=lambda: list(DEFAULT_OVERPASS_SERVERS))
    user_agent: str = "SnapyBara-Backend/1.0"

    # Query timeouts per strategy tier (seconds, also used as HTTP timeout)
    full_timeout_s: int = 25
    medium_timeout_s: int = 15
    limited_timeout_s: int = 10
    group_timeout_s: int = 10
    count_timeout_s: int = 10
    minimal_timeout_s: int = 5

    # Hard ceiling for the whole Overpass stage of one search
    global_timeout_s: float = 20.0

    medium_result_cap: int = 150
    limited_result_cap: int = 100
    group_result_cap: int = 30
    minimal_result_cap: int = 10


class RetrySettings(BaseModel):
    max_attempts: int = 3
    base_delay_s: float = 5.0
    backoff_multiplier: float = 2.0
    timeout_delay_s: float = 2.0


class RadiusThresholds(BaseModel):
    # All values in kilometers
    medium_km: float = 1.0
    limited_km: float = 3.0
    split_km: float = 5.0
    max_overpass_km: float = 10.0
    max_nominatim_km: float = 2.0
    virtual_cluster_km: float = 50.0


class NominatimSettings(BaseModel):
    url: str = "https://nominatim.openstreetmap.org/search"
    categories: List[str] = Field(default_factory=lambda: ["tourism", "historic", "museum", "viewpoint"])
    limit: int = 20
    timeout_s: float = 5.0
    live_call_delay_s: float = 1.0


class PhotoSettings(BaseModel):
    commons_api_url: str = "https://commons.wikimedia.org/w/api.php"
    unsplash_url: str = "https://api.unsplash.com/search/photos"
    # Unsplash is only queried when a key is configured
    unsplash_access_key: Optional[str] = None
    geosearch_radius_m: int = 500
    geosearch_limit: int = 5
    max_photos: int = 3
    thumb_width: int = 800
    timeout_s: float = 5.0
    batch_size: int = 5
    batch_delay_s: float = 0.1
    # POIs enriched per search-with-photos request
    enrich_limit: int = 20


class CacheTtlSettings(BaseModel):
    search_s: int = 3600
    details_s: int = 86400
    photos_s: int = 604800
    autocomplete_s: int = 1800
    area_s: int = 604800
    nominatim_s: int = 86400
    # Shadow copies used when a live refresh fails
    stale_s: int = 604800


class CacheSettings(BaseModel):
    backend: Literal["memory", "redis"] = "memory"
    redis_url: Optional[str] = None


class SearchSettings(BaseModel):
    dedup_threshold_m: float = 50.0
    max_results: int = 100
    virtual_clusters_enabled: bool = True


class WarmingSettings(BaseModel):
    enabled: bool = False
    interval_s: float = 6 * 3600.0
    pacing_s: float = 2.0
    initial_delay_s: float = 30.0


class Settings(BaseSettings):
    APP_VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"

    overpass: OverpassSettings = Field(default_factory=OverpassSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    radius: RadiusThresholds = Field(default_factory=RadiusThresholds)
    nominatim: NominatimSettings = Field(default_factory=NominatimSettings)
    photos: PhotoSettings = Field(default_factory=PhotoSettings)
    cache_ttl: CacheTtlSettings = Field(default_factory=CacheTtlSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    search: SearchSettings = Field(default_factory=SearchSettings)
    warming: WarmingSettings = Field(default_factory=WarmingSettings)

    # Pydantic v2 settings
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="POI_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


def get_settings() -> Settings:
    return Settings()
