"""
Cold Read Cache: Bounded LRU + TTL Cache for Archived Records

Sits in front of the cold store to bound tail latency for repeated cold
reads:
- Keyed by deterministic cold object key
- LRU eviction when max_entries is exceeded
- TTL expiry to bound memory (cold content is immutable once written)
- LZ4-compressed payloads above a size threshold
- Identity index so a read without an event-time hint can still hit

Design:
    The cache is best-effort. Callers treat any Err or timeout as a miss;
    its unavailability degrades latency, never correctness.
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

import lz4.frame

from billvault.core import constants as C
from billvault.core.errors import StorageError
from billvault.core.types import Result, Ok, Err


# =============================================================================
# CACHE ENTRY
# =============================================================================
@dataclass(slots=True)
class CacheEntry:
    """Cached cold object payload."""
    key: str
    identity: tuple[str, str]
    data: bytes
    is_compressed: bool
    expires_at: float
    raw_size: int

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def payload(self) -> bytes:
        """Decompressed object bytes."""
        if not self.is_compressed:
            return self.data
        return lz4.frame.decompress(self.data)


# =============================================================================
# CACHE STATISTICS
# =============================================================================
@dataclass
class CacheStats:
    """Cache performance statistics."""
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0
    total_bytes: int = 0
    raw_bytes: int = 0
    entry_count: int = 0

    @property
    def hit_rate(self) -> float:
        """Cache hit rate."""
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    @property
    def compression_ratio(self) -> float:
        """Stored bytes over raw bytes (1.0 when nothing is cached)."""
        return self.total_bytes / self.raw_bytes if self.raw_bytes else 1.0


def _identity_from_key(key: str) -> Optional[tuple[str, str]]:
    """Parse (customer_id, record_id) out of a "{customer}/{YYYY-MM}/{id}.json" key."""
    parts = key.split("/")
    if len(parts) != 3 or not parts[2].endswith(C.COLD_KEY_SUFFIX):
        return None
    record_id = parts[2][: -len(C.COLD_KEY_SUFFIX)]
    if not parts[0] or not record_id:
        return None
    return (parts[0], record_id)


# =============================================================================
# COLD READ CACHE
# =============================================================================
class ColdReadCache:
    """
    Concurrency-safe bounded cache of cold object payloads.

    Usage:
        cache = ColdReadCache(max_entries=10000, ttl_seconds=3600)
        await cache.put("customer123/2024-01/abcde123.json", payload)

        result = await cache.get("customer123/2024-01/abcde123.json")
        key = await cache.key_for("customer123", "abcde123")
    """

    __slots__ = (
        "_entries", "_index", "_max_entries", "_ttl_seconds",
        "_compression_threshold", "_clock", "_stats", "_lock",
    )

    def __init__(
        self,
        max_entries: int = C.CACHE_MAX_ENTRIES,
        ttl_seconds: float = C.CACHE_TTL_SECONDS,
        compression_threshold: int = C.CACHE_COMPRESSION_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._index: dict[tuple[str, str], str] = {}
        self._max_entries = max_entries
        self._ttl_seconds = ttl_seconds
        self._compression_threshold = compression_threshold
        self._clock = clock
        self._stats = CacheStats()
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config) -> ColdReadCache:
        """Build from a CacheConfig."""
        return cls(
            max_entries=config.max_entries,
            ttl_seconds=config.ttl_seconds,
            compression_threshold=config.compression_threshold_bytes,
        )

    async def get(self, key: str) -> Result[Optional[bytes], StorageError]:
        """
        Look up a cold object payload.

        Returns:
            Ok(bytes): Fresh entry, promoted to most recently used
            Ok(None): Absent or expired
        """
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats.misses += 1
                return Ok(None)

            if entry.is_expired(self._clock()):
                self._remove(entry)
                self._stats.expirations += 1
                self._stats.misses += 1
                return Ok(None)

            self._entries.move_to_end(key)
            self._stats.hits += 1
            data = entry

        try:
            return Ok(data.payload())
        except RuntimeError as e:
            # lz4 frame damaged in memory; drop it and report a miss
            await self.delete(key)
            return Err(StorageError.serialization_failed("cold_cache", key, e))

    async def put(self, key: str, data: bytes) -> Result[None, StorageError]:
        """
        Insert or refresh a payload, evicting the least recently used
        entries beyond capacity.
        """
        identity = _identity_from_key(key)
        if identity is None:
            return Err(StorageError.serialization_failed(
                "cold_cache", key, ValueError("not a cold object key"),
            ))

        if len(data) >= self._compression_threshold:
            stored = lz4.frame.compress(data)
            compressed = True
        else:
            stored = data
            compressed = False

        async with self._lock:
            existing = self._entries.get(key)
            if existing is not None:
                self._remove(existing)

            entry = CacheEntry(
                key=key,
                identity=identity,
                data=stored,
                is_compressed=compressed,
                expires_at=self._clock() + self._ttl_seconds,
                raw_size=len(data),
            )
            self._entries[key] = entry
            self._index[identity] = key
            self._stats.total_bytes += len(stored)
            self._stats.raw_bytes += entry.raw_size
            self._stats.entry_count = len(self._entries)

            while len(self._entries) > self._max_entries:
                _, oldest = next(iter(self._entries.items()))
                self._remove(oldest)
                self._stats.evictions += 1

        return Ok(None)

    async def key_for(self, customer_id: str, record_id: str) -> Optional[str]:
        """Cold key of a cached record, if a fresh entry exists."""
        async with self._lock:
            key = self._index.get((customer_id, record_id))
            if key is None:
                return None
            entry = self._entries.get(key)
            if entry is None or entry.is_expired(self._clock()):
                return None
            return key

    async def delete(self, key: str) -> bool:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            self._remove(entry)
            return True

    async def cleanup_expired(self) -> int:
        """Remove all expired entries. Returns count removed."""
        async with self._lock:
            now = self._clock()
            expired = [e for e in self._entries.values() if e.is_expired(now)]
            for entry in expired:
                self._remove(entry)
            self._stats.expirations += len(expired)
            return len(expired)

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()
            self._index.clear()
            self._stats.total_bytes = 0
            self._stats.raw_bytes = 0
            self._stats.entry_count = 0

    def _remove(self, entry: CacheEntry) -> None:
        """Drop an entry. Caller holds the lock."""
        self._entries.pop(entry.key, None)
        if self._index.get(entry.identity) == entry.key:
            del self._index[entry.identity]
        self._stats.total_bytes -= len(entry.data)
        self._stats.raw_bytes -= entry.raw_size
        self._stats.entry_count = len(self._entries)

    @property
    def stats(self) -> CacheStats:
        return self._stats

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        """Membership without touching LRU order."""
        return key in self._entries
