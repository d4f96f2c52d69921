"""Persistent key/value stores backing BoundedCache.

Every backend exposes the same small surface (get/set/remove/keys/clear) and
signals failure with StorageError so the cache can degrade to memory-only
behaviour without caring which store it is talking to.
"""

import json
import os
import tempfile
import threading
from typing import Dict, Iterable, List, Optional, Protocol

import redis


class StorageError(Exception):
    """A persistent store could not complete an operation."""


class StorageQuotaError(StorageError):
    """A write would push the store past its capacity."""


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...

    def keys(self, prefix: str = "") -> List[str]: ...

    def clear(self) -> None: ...


def _size_of(data: Dict[str, str]) -> int:
    return sum(len(k) + len(v) for k, v in data.items())


class MemoryStorage:
    """In-process store with an optional byte quota, like a browser's localStorage."""

    def __init__(self, quota_bytes: Optional[int] = None):
        self.quota_bytes = quota_bytes
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            if self.quota_bytes is not None:
                projected = dict(self._data)
                projected[key] = value
                if _size_of(projected) > self.quota_bytes:
                    raise StorageQuotaError(f"Quota of {self.quota_bytes} bytes exceeded writing {key}")
            self._data[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return [k for k in self._data if k.startswith(prefix)]

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class JsonFileStorage:
    """Single JSON document on disk, rewritten atomically on every change."""

    def __init__(self, path: str, quota_bytes: Optional[int] = None):
        self.path = path
        self.quota_bytes = quota_bytes
        self._lock = threading.Lock()
        self._data: Dict[str, str] = self._load()

    def _load(self) -> Dict[str, str]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise StorageError(f"Cannot read {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StorageError(f"{self.path} does not hold a JSON object")
        return {str(k): str(v) for k, v in data.items()}

    def _flush(self, data: Dict[str, str]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, separators=(",", ":"))
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise StorageError(f"Cannot write {self.path}: {e}") from e

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            updated = dict(self._data)
            updated[key] = value
            if self.quota_bytes is not None and _size_of(updated) > self.quota_bytes:
                raise StorageQuotaError(f"Quota of {self.quota_bytes} bytes exceeded writing {key}")
            self._flush(updated)
            self._data = updated

    def remove(self, key: str) -> None:
        with self._lock:
            if key not in self._data:
                return
            updated = dict(self._data)
            del updated[key]
            self._flush(updated)
            self._data = updated

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return [k for k in self._data if k.startswith(prefix)]

    def clear(self) -> None:
        with self._lock:
            self._flush({})
            self._data = {}


class RedisStorage:
    """Redis-backed store; keys live under an optional namespace."""

    def __init__(self, client: redis.Redis, namespace: str = ""):
        self.client = client
        self.namespace = namespace

    @classmethod
    def from_url(cls, redis_url: str, namespace: str = "") -> "RedisStorage":
        return cls(redis.from_url(redis_url, decode_responses=True), namespace)

    def _key(self, key: str) -> str:
        return f"{self.namespace}{key}"

    def get(self, key: str) -> Optional[str]:
        try:
            return self.client.get(self._key(key))
        except redis.RedisError as e:
            raise StorageError(f"Redis get failed for {key}: {e}") from e

    def set(self, key: str, value: str) -> None:
        try:
            self.client.set(self._key(key), value)
        except redis.ResponseError as e:
            # maxmemory with noeviction surfaces as OOM
            if "OOM" in str(e):
                raise StorageQuotaError(str(e)) from e
            raise StorageError(f"Redis set failed for {key}: {e}") from e
        except redis.RedisError as e:
            raise StorageError(f"Redis set failed for {key}: {e}") from e

    def remove(self, key: str) -> None:
        try:
            self.client.delete(self._key(key))
        except redis.RedisError as e:
            raise StorageError(f"Redis delete failed for {key}: {e}") from e

    def keys(self, prefix: str = "") -> List[str]:
        try:
            found: Iterable[str] = self.client.scan_iter(f"{self._key(prefix)}*")
            return [k[len(self.namespace):] for k in found]
        except redis.RedisError as e:
            raise StorageError(f"Redis scan failed: {e}") from e

    def clear(self) -> None:
        for key in self.keys():
            self.remove(key)
