from dataclasses import dataclass
from typing import Any, Dict, Optional

import redis

from flightfinder.cache.bounded_cache import BoundedCache
from flightfinder.cache.storage import JsonFileStorage, KeyValueStore, MemoryStorage, RedisStorage, StorageError
from flightfinder.config import Settings, settings as default_settings
from flightfinder.obs.logger import log_event

RESULTS_PREFIX = "flight-finder-results-"
QUERIES_PREFIX = "flight-finder-queries-"
AIRPORTS_PREFIX = "flight-finder-airports-"


@dataclass
class FlightCaches:
    """The named caches one process works with, all sharing one store."""
    results: BoundedCache
    queries: BoundedCache
    airports: BoundedCache

    def by_name(self, name: str) -> Optional[BoundedCache]:
        return {"results": self.results, "queries": self.queries, "airports": self.airports}.get(name)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "results": self.results.get_stats(),
            "queries": self.queries.get_stats(),
            "airports": self.airports.get_stats(),
        }


def create_storage(cfg: Optional[Settings] = None) -> KeyValueStore:
    """Pick the persistent store named by CACHE_BACKEND.

    Falls back to in-memory storage when the file or Redis backend is
    unavailable at startup.
    """
    cfg = cfg or default_settings
    try:
        if cfg.CACHE_BACKEND == "file":
            return JsonFileStorage(cfg.CACHE_FILE_PATH, quota_bytes=cfg.CACHE_STORAGE_QUOTA_BYTES)
        if cfg.CACHE_BACKEND == "redis":
            storage = RedisStorage.from_url(cfg.REDIS_URL)
            storage.client.ping()
            return storage
    except (StorageError, OSError, redis.RedisError) as e:
        log_event("cache_storage_fallback", level="WARNING", backend=cfg.CACHE_BACKEND, error=e)
    return MemoryStorage(quota_bytes=cfg.CACHE_STORAGE_QUOTA_BYTES)


def build_caches(storage: KeyValueStore, cfg: Optional[Settings] = None, **cache_kwargs: Any) -> FlightCaches:
    cfg = cfg or default_settings
    return FlightCaches(
        results=BoundedCache(
            storage,
            max_size=cfg.RESULTS_CACHE_MAX_SIZE,
            ttl_seconds=cfg.RESULTS_CACHE_TTL_SECONDS,
            prefix=RESULTS_PREFIX,
            name="results",
            **cache_kwargs,
        ),
        queries=BoundedCache(
            storage,
            max_size=cfg.QUERY_CACHE_MAX_SIZE,
            ttl_seconds=cfg.QUERY_CACHE_TTL_SECONDS,
            prefix=QUERIES_PREFIX,
            name="queries",
            **cache_kwargs,
        ),
        airports=BoundedCache(
            storage,
            max_size=cfg.AIRPORT_CACHE_MAX_SIZE,
            ttl_seconds=cfg.AIRPORT_CACHE_TTL_SECONDS,
            prefix=AIRPORTS_PREFIX,
            name="airports",
            **cache_kwargs,
        ),
    )
