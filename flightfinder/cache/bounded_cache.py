import json
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from flightfinder.cache.storage import KeyValueStore, StorageError
from flightfinder.obs.logger import log_event
from flightfinder.obs.metrics import inc_counter

T = TypeVar("T")

DEFAULT_MAX_SIZE = 100
DEFAULT_TTL_SECONDS = 4 * 60 * 60
DEFAULT_PREFIX = "flight-finder-cache-"


class BoundedCache(Generic[T]):
    """LRU cache with per-entry TTL, mirrored to a persistent key/value store.

    Memory is the source of truth for the running process. Each write is
    copied to ``storage`` under ``prefix + key`` as ``{"value", "timestamp"}``
    JSON (timestamp in epoch milliseconds); storage failures are logged and
    swallowed. On construction persisted entries under the prefix are
    loaded in order of their last write (promotions by ``get`` are not
    persisted) and expired ones are dropped.

    Values must be JSON-serialisable to survive a restart; anything else
    stays in memory only.
    """

    def __init__(self, storage: KeyValueStore, max_size: int = DEFAULT_MAX_SIZE,
                 ttl_seconds: float = DEFAULT_TTL_SECONDS, prefix: str = DEFAULT_PREFIX,
                 name: Optional[str] = None, clock: Callable[[], float] = time.time):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.storage = storage
        self.max_size = max_size
        self.ttl_ms = int(ttl_seconds * 1000)
        self.prefix = prefix
        self.name = name or prefix.rstrip("-")
        self._clock = clock
        self._entries: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        self.stats = {"hits": 0, "misses": 0, "evictions": 0, "expired": 0}

        self._load_from_storage()
        self.cleanup()

    # Public API

    def set(self, key: str, value: T) -> None:
        if key in self._entries:
            self._entries.move_to_end(key)
        elif len(self._entries) >= self.max_size:
            self._evict_lru()

        entry = {"value": value, "timestamp": self._now_ms()}
        self._entries[key] = entry
        self._save_to_storage(key, entry)
        log_event("cache_set", level="DEBUG", cache=self.name, key=key)

    def get(self, key: str, default: Optional[T] = None) -> Optional[T]:
        entry = self._entries.get(key)
        if entry is None:
            self._record("misses")
            return default
        if self._is_expired(entry):
            self._expire(key)
            self._record("misses")
            return default

        self._entries.move_to_end(key)
        self._record("hits")
        log_event("cache_hit", level="DEBUG", cache=self.name, key=key)
        return entry["value"]

    def has(self, key: str) -> bool:
        """Freshness check without promoting the entry."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        if self._is_expired(entry):
            self._expire(key)
            return False
        return True

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)
        self._remove_from_storage(key)

    def clear(self) -> None:
        """Drop every entry of this cache; other prefixes in the store are untouched."""
        self._entries.clear()
        try:
            for storage_key in self.storage.keys(self.prefix):
                self.storage.remove(storage_key)
        except StorageError as e:
            self._storage_failed("clear", None, e)
        log_event("cache_cleared", cache=self.name)

    def cleanup(self) -> int:
        """Evict every expired entry; returns how many were removed."""
        expired = [k for k, entry in self._entries.items() if self._is_expired(entry)]
        for key in expired:
            self._expire(key)
        log_event("cache_cleanup", level="DEBUG", cache=self.name, removed=len(expired),
                  size=len(self._entries))
        return len(expired)

    def keys(self) -> List[str]:
        """Non-expired keys, least recently used first."""
        return [k for k, entry in self._entries.items() if not self._is_expired(entry)]

    def size(self) -> int:
        return len(self.keys())

    def get_stats(self) -> Dict[str, Any]:
        lookups = self.stats["hits"] + self.stats["misses"]
        hit_rate = self.stats["hits"] / lookups * 100 if lookups else 0
        return {
            "name": self.name,
            "size": self.size(),
            "max_size": self.max_size,
            "ttl_seconds": self.ttl_ms / 1000,
            **self.stats,
            "hit_rate": f"{hit_rate:.1f}%",
        }

    def __contains__(self, key: str) -> bool:
        return self.has(key)

    def __len__(self) -> int:
        return self.size()

    # Internals

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _is_expired(self, entry: Dict[str, Any]) -> bool:
        return self._now_ms() - entry["timestamp"] > self.ttl_ms

    def _record(self, stat: str) -> None:
        self.stats[stat] += 1
        inc_counter(f"cache_{stat}_total", {"cache": self.name})

    def _expire(self, key: str) -> None:
        self.delete(key)
        self._record("expired")

    def _evict_lru(self) -> None:
        oldest_key, _ = self._entries.popitem(last=False)
        self._remove_from_storage(oldest_key)
        self._record("evictions")
        log_event("cache_evicted", level="DEBUG", cache=self.name, key=oldest_key)

    def _storage_failed(self, operation: str, key: Optional[str], error: Exception) -> None:
        inc_counter("cache_storage_errors_total", {"cache": self.name, "op": operation})
        log_event("cache_storage_error", level="ERROR", cache=self.name, op=operation, key=key,
                  error=error)

    def _save_to_storage(self, key: str, entry: Dict[str, Any]) -> None:
        try:
            self.storage.set(self.prefix + key, json.dumps(entry))
        except (StorageError, TypeError, ValueError) as e:
            # Quota or serialisation problems: memory only, no stale persisted copy
            self._storage_failed("set", key, e)
            self._remove_from_storage(key)

    def _remove_from_storage(self, key: str) -> None:
        try:
            self.storage.remove(self.prefix + key)
        except StorageError as e:
            self._storage_failed("remove", key, e)

    def _load_from_storage(self) -> None:
        try:
            storage_keys = self.storage.keys(self.prefix)
        except StorageError as e:
            self._storage_failed("load", None, e)
            return

        loaded = []
        for storage_key in storage_keys:
            key = storage_key[len(self.prefix):]
            try:
                raw = self.storage.get(storage_key)
                if raw is None:
                    continue
                entry = json.loads(raw)
                if not isinstance(entry, dict) or "value" not in entry:
                    raise ValueError("missing value")
                loaded.append((key, {"value": entry["value"], "timestamp": int(entry["timestamp"])}))
            except (StorageError, ValueError, TypeError, KeyError) as e:
                self._storage_failed("load", key, e)

        # Ordered by last write; reads since then are not reflected
        loaded.sort(key=lambda item: item[1]["timestamp"])
        for key, entry in loaded:
            self._entries[key] = entry
        while len(self._entries) > self.max_size:
            self._evict_lru()
        log_event("cache_loaded", level="DEBUG", cache=self.name, size=len(self._entries))
