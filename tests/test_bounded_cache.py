import json

import pytest

from flightfinder.cache.bounded_cache import BoundedCache
from flightfinder.cache.storage import MemoryStorage, StorageError
from flightfinder.obs.metrics import get_counter

PREFIX = "test-"


def make_cache(storage, clock, **kwargs):
    kwargs.setdefault("max_size", 3)
    kwargs.setdefault("ttl_seconds", 60)
    return BoundedCache(storage, prefix=PREFIX, name="test", clock=clock, **kwargs)


class BrokenKeysStorage(MemoryStorage):
    def keys(self, prefix=""):
        raise StorageError("store offline")


def test_set_then_get(storage, clock):
    cache = make_cache(storage, clock)
    cache.set("a", {"price": 120})
    assert cache.get("a") == {"price": 120}
    assert cache.get("missing") is None
    assert cache.get("missing", "fallback") == "fallback"


def test_invalid_configuration():
    with pytest.raises(ValueError):
        BoundedCache(MemoryStorage(), max_size=0)
    with pytest.raises(ValueError):
        BoundedCache(MemoryStorage(), ttl_seconds=0)


def test_entry_expires_after_ttl(storage, clock):
    cache = make_cache(storage, clock)
    cache.set("a", 1)

    clock.advance(60)
    assert cache.get("a") == 1  # exactly at the TTL is still fresh

    clock.advance(0.001)
    assert cache.get("a") is None
    assert storage.get(PREFIX + "a") is None
    assert cache.stats["expired"] == 1


def test_size_ignores_expired_entries(storage, clock):
    cache = make_cache(storage, clock)
    cache.set("old", 1)
    clock.advance(30)
    cache.set("new", 2)
    clock.advance(31)

    assert cache.size() == 1
    assert cache.keys() == ["new"]
    assert len(cache) == 1


def test_lru_eviction_respects_recent_reads(storage, clock):
    cache = make_cache(storage, clock)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("c", 3)

    cache.get("a")
    cache.set("d", 4)

    assert cache.keys() == ["c", "a", "d"]
    assert cache.get("b") is None
    assert storage.get(PREFIX + "b") is None
    assert cache.stats["evictions"] == 1


def test_overwrite_at_capacity_does_not_evict(storage, clock):
    cache = make_cache(storage, clock)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("c", 3)

    cache.set("a", 10)

    assert cache.size() == 3
    assert cache.get("a") == 10
    assert cache.keys()[-1] == "a"
    assert cache.stats["evictions"] == 0


def test_has_does_not_promote(storage, clock):
    cache = make_cache(storage, clock)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("c", 3)

    assert cache.has("a")
    assert "a" in cache
    cache.set("d", 4)

    assert not cache.has("a")


def test_has_evicts_expired(storage, clock):
    cache = make_cache(storage, clock)
    cache.set("a", 1)
    clock.advance(61)

    assert cache.has("a") is False
    assert storage.keys(PREFIX) == []


def test_delete_is_idempotent(storage, clock):
    cache = make_cache(storage, clock)
    cache.set("a", 1)
    cache.delete("a")
    cache.delete("a")

    assert cache.get("a") is None
    assert storage.get(PREFIX + "a") is None


def test_clear_only_touches_own_prefix(storage, clock):
    other = BoundedCache(storage, prefix="other-", name="other", clock=clock)
    cache = make_cache(storage, clock)
    storage.set("unrelated", "keep me")
    other.set("x", 1)
    cache.set("a", 1)
    cache.set("b", 2)

    cache.clear()

    assert cache.size() == 0
    assert storage.keys(PREFIX) == []
    assert other.get("x") == 1
    assert storage.get("unrelated") == "keep me"


def test_cleanup_returns_removed_count(storage, clock):
    cache = make_cache(storage, clock)
    cache.set("a", 1)
    cache.set("b", 2)
    clock.advance(30)
    cache.set("c", 3)
    clock.advance(31)

    assert cache.cleanup() == 2
    assert cache.keys() == ["c"]
    assert cache.cleanup() == 0


def test_persisted_format(storage, clock):
    cache = make_cache(storage, clock)
    cache.set("a", ["JFK", "LAX"])

    stored = json.loads(storage.get(PREFIX + "a"))
    assert stored == {"value": ["JFK", "LAX"], "timestamp": int(clock.now * 1000)}


def test_reload_restores_entries_and_order(storage, clock):
    cache = make_cache(storage, clock)
    cache.set("a", 1)
    clock.advance(1)
    cache.set("b", 2)
    clock.advance(1)
    cache.set("c", 3)

    reloaded = make_cache(storage, clock)

    assert reloaded.keys() == ["a", "b", "c"]
    assert reloaded.get("b") == 2
    reloaded.set("d", 4)
    assert reloaded.keys() == ["c", "b", "d"]


def test_reload_trims_to_max_size(storage, clock):
    big = make_cache(storage, clock, max_size=5)
    for i in range(5):
        big.set(str(i), i)
        clock.advance(1)

    small = make_cache(storage, clock, max_size=2)

    assert small.keys() == ["3", "4"]
    assert sorted(storage.keys(PREFIX)) == [PREFIX + "3", PREFIX + "4"]


def test_reload_drops_expired_entries(storage, clock):
    cache = make_cache(storage, clock)
    cache.set("stale", 1)
    clock.advance(45)
    cache.set("fresh", 2)
    clock.advance(30)

    reloaded = make_cache(storage, clock)

    assert reloaded.keys() == ["fresh"]
    assert storage.get(PREFIX + "stale") is None


def test_corrupt_persisted_entries_are_skipped(storage, clock, capsys):
    storage.set(PREFIX + "bad", "{not json")
    storage.set(PREFIX + "shape", json.dumps(["value"]))
    storage.set(PREFIX + "good", json.dumps({"value": 5, "timestamp": int(clock.now * 1000)}))

    cache = make_cache(storage, clock)

    assert cache.keys() == ["good"]
    assert "cache_storage_error" in capsys.readouterr().out


def test_quota_failure_keeps_memory_copy(clock, capsys):
    storage = MemoryStorage(quota_bytes=40)
    cache = make_cache(storage, clock)

    cache.set("big", "x" * 100)

    assert cache.get("big") == "x" * 100
    assert storage.get(PREFIX + "big") is None
    assert get_counter("cache_storage_errors_total", {"cache": "test", "op": "set"}) == 1
    out = capsys.readouterr().out
    assert "cache_storage_error" in out
    assert "StorageQuotaError" in out


def test_unserialisable_value_stays_in_memory(storage, clock):
    cache = make_cache(storage, clock)
    marker = object()

    cache.set("obj", marker)

    assert cache.get("obj") is marker
    assert storage.keys(PREFIX) == []


def test_unreadable_store_starts_empty(clock):
    cache = make_cache(BrokenKeysStorage(), clock)
    assert cache.size() == 0
    cache.set("a", 1)
    assert cache.get("a") == 1


def test_stats_and_counters(storage, clock):
    cache = make_cache(storage, clock)
    cache.set("a", 1)
    cache.get("a")
    cache.get("a")
    cache.get("nope")

    stats = cache.get_stats()
    assert stats["hits"] == 2
    assert stats["misses"] == 1
    assert stats["hit_rate"] == "66.7%"
    assert stats["size"] == 1
    assert stats["max_size"] == 3
    assert get_counter("cache_hits_total", {"cache": "test"}) == 2
    assert get_counter("cache_misses_total", {"cache": "test"}) == 1


def test_failed_overwrite_drops_stale_persisted_value(storage, clock):
    cache = make_cache(storage, clock)
    cache.set("a", 1)
    cache.set("a", object())

    assert storage.get(PREFIX + "a") is None
    assert make_cache(storage, clock).get("a") is None


def test_overwrite_over_quota_drops_stale_persisted_value(clock):
    storage = MemoryStorage(quota_bytes=120)
    cache = make_cache(storage, clock)
    cache.set("a", "small")
    assert storage.get(PREFIX + "a") is not None

    cache.set("a", "x" * 200)

    assert cache.get("a") == "x" * 200
    assert storage.get(PREFIX + "a") is None
    assert make_cache(storage, clock).get("a") is None


def test_reload_order_follows_last_write_not_reads(storage, clock):
    cache = make_cache(storage, clock)
    cache.set("a", 1)
    clock.advance(1)
    cache.set("b", 2)
    cache.get("a")

    assert cache.keys() == ["b", "a"]
    assert make_cache(storage, clock).keys() == ["a", "b"]
