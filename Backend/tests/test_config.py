from __future__ import annotations

import pytest

from app.core.config import CacheSettings, Settings
from services.cache_service import InMemoryCacheBackend, RedisCacheBackend, build_cache_backend


def test_defaults():
    s = Settings(_env_file=None)
    assert len(s.overpass.servers) == 3
    assert s.retry.max_attempts == 3
    assert s.radius.virtual_cluster_km == 50
    assert s.nominatim.categories == ["tourism", "historic", "museum", "viewpoint"]
    assert s.search.dedup_threshold_m == 50
    assert s.cache.backend == "memory"
    assert s.warming.enabled is False


def test_nested_env_overrides(monkeypatch):
    monkeypatch.setenv("POI_RETRY__MAX_ATTEMPTS", "5")
    monkeypatch.setenv("POI_SEARCH__VIRTUAL_CLUSTERS_ENABLED", "false")
    monkeypatch.setenv("POI_CACHE__BACKEND", "redis")
    monkeypatch.setenv("POI_CACHE__REDIS_URL", "redis://localhost:6379/0")
    monkeypatch.setenv("POI_LOG_LEVEL", "debug")

    s = Settings(_env_file=None)

    assert s.retry.max_attempts == 5
    assert s.search.virtual_clusters_enabled is False
    assert s.cache.redis_url == "redis://localhost:6379/0"
    assert s.LOG_LEVEL == "debug"


def test_cache_backend_factory():
    assert isinstance(build_cache_backend(CacheSettings()), InMemoryCacheBackend)
    assert isinstance(
        build_cache_backend(CacheSettings(backend="redis", redis_url="redis://localhost:6379/0")),
        RedisCacheBackend,
    )
    with pytest.raises(ValueError):
        build_cache_backend(CacheSettings(backend="redis"))


def test_warming_intervals_accept_fractions():
    s = Settings(_env_file=None, warming={"interval_s": 0.01, "initial_delay_s": 0})
    assert s.warming.interval_s == 0.01
