"""
Cold Read Cache Tests

Covers:
- LRU eviction order
- TTL expiry (with a controllable clock)
- LZ4 compression above the threshold
- Identity index used by reads without an event-time hint

Run: python -m pytest billvault/tests/test_cache.py -v
"""

from __future__ import annotations

import pytest

from billvault.cache import ColdReadCache
from billvault.tests.helpers import assert_err, assert_ok


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def key(n: int) -> str:
    return f"customer123/2023-02/rec{n}.json"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# BASIC OPERATIONS
# =============================================================================

async def test_get_put_and_stats():
    cache = ColdReadCache(max_entries=10, ttl_seconds=60)
    assert assert_ok(await cache.get(key(1))) is None

    assert_ok(await cache.put(key(1), b'{"id":"rec1"}'))
    assert assert_ok(await cache.get(key(1))) == b'{"id":"rec1"}'
    assert key(1) in cache
    assert len(cache) == 1

    stats = cache.stats
    assert stats.hits == 1
    assert stats.misses == 1
    assert stats.hit_rate == 0.5


async def test_rejects_non_cold_keys():
    cache = ColdReadCache()
    assert assert_err(await cache.put("not-a-key", b"x"))
    assert assert_err(await cache.put("customer123/2023-02/.json", b"x"))
    assert len(cache) == 0


async def test_delete_and_clear():
    cache = ColdReadCache()
    assert_ok(await cache.put(key(1), b"a"))
    assert_ok(await cache.put(key(2), b"b"))

    assert await cache.delete(key(1))
    assert not await cache.delete(key(1))
    await cache.clear()
    assert len(cache) == 0
    assert cache.stats.total_bytes == 0


# =============================================================================
# EVICTION AND EXPIRY
# =============================================================================

async def test_lru_evicts_least_recently_used():
    cache = ColdReadCache(max_entries=2, ttl_seconds=60)
    assert_ok(await cache.put(key(1), b"one"))
    assert_ok(await cache.put(key(2), b"two"))

    # Touch 1 so 2 becomes the eviction candidate
    assert_ok(await cache.get(key(1)))
    assert_ok(await cache.put(key(3), b"three"))

    assert key(1) in cache
    assert key(2) not in cache
    assert key(3) in cache
    assert cache.stats.evictions == 1


async def test_ttl_expiry_counts_as_miss(clock):
    cache = ColdReadCache(max_entries=10, ttl_seconds=30, clock=clock)
    assert_ok(await cache.put(key(1), b"one"))

    clock.advance(29)
    assert assert_ok(await cache.get(key(1))) == b"one"

    clock.advance(2)
    assert assert_ok(await cache.get(key(1))) is None
    assert cache.stats.expirations == 1
    assert len(cache) == 0


async def test_cleanup_expired(clock):
    cache = ColdReadCache(max_entries=10, ttl_seconds=10, clock=clock)
    assert_ok(await cache.put(key(1), b"one"))
    clock.advance(5)
    assert_ok(await cache.put(key(2), b"two"))
    clock.advance(6)

    assert await cache.cleanup_expired() == 1
    assert key(2) in cache


# =============================================================================
# COMPRESSION
# =============================================================================

async def test_large_payloads_are_compressed():
    cache = ColdReadCache(compression_threshold=64)
    payload = b'{"details":"' + b"x" * 4096 + b'"}'
    assert_ok(await cache.put(key(1), payload))

    assert assert_ok(await cache.get(key(1))) == payload
    assert cache.stats.total_bytes < len(payload)
    assert cache.stats.compression_ratio < 1.0


async def test_small_payloads_are_stored_raw():
    cache = ColdReadCache(compression_threshold=64)
    assert_ok(await cache.put(key(1), b"tiny"))
    assert cache.stats.total_bytes == 4
    assert cache.stats.compression_ratio == 1.0


# =============================================================================
# IDENTITY INDEX
# =============================================================================

async def test_key_for_finds_cached_identity(clock):
    cache = ColdReadCache(ttl_seconds=10, clock=clock)
    assert await cache.key_for("customer123", "rec1") is None

    assert_ok(await cache.put(key(1), b"one"))
    assert await cache.key_for("customer123", "rec1") == key(1)
    assert await cache.key_for("customer999", "rec1") is None

    clock.advance(11)
    assert await cache.key_for("customer123", "rec1") is None


async def test_key_for_forgets_evicted_entries():
    cache = ColdReadCache(max_entries=1)
    assert_ok(await cache.put(key(1), b"one"))
    assert_ok(await cache.put(key(2), b"two"))
    assert await cache.key_for("customer123", "rec1") is None
    assert await cache.key_for("customer123", "rec2") == key(2)


def test_invalid_construction():
    with pytest.raises(ValueError):
        ColdReadCache(max_entries=0)
    with pytest.raises(ValueError):
        ColdReadCache(ttl_seconds=0)
