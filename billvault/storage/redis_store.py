"""
Redis Hot Store and Lease Backend
=================================

Production Redis/Valkey implementations of HotStoreProtocol and
LeaseBackendProtocol.

Design Principles:
------------------
1. **Lock-Free**: Version checks via Lua scripts, no Python-side locks
2. **Connection Pooling**: redis-py pool with socket timeouts
3. **Result Monad**: No exceptions for control flow
4. **Single Slot**: All keys share one hash tag so multi-key scripts are
   valid in cluster mode

Memory Layout:
--------------
- Record:  Hash   {prefix}:r:{customer_id}/{record_id}
           fields 'd' (JSON record), 'v' (version), 'c' (created), 'u' (updated)
- Index:   ZSet   {prefix}:ts   member "{customer_id}/{record_id}",
           score = event time in epoch microseconds
- Version: String {prefix}:ver  store-wide monotonic counter
- Lease:   String {prefix}:lease:{resource}  value "{holder}:{token}", PX ttl
           String {prefix}:fence:{resource}  fencing counter

Algorithmic Complexity:
-----------------------
| Operation          | Time           | Notes                        |
|--------------------|----------------|------------------------------|
| get                | O(1)           | HGETALL                      |
| put                | O(log n)       | Lua: INCR + HSET + ZADD      |
| delete_if_version  | O(log n)       | Lua: HGET + DEL + ZREM       |
| query_by_timestamp | O(log n + k)   | ZRANGEBYSCORE + pipelined get|

Author: Planetary AI Systems
License: MIT
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from billvault.core.errors import StorageError
from billvault.core.types import Result, Ok, Err
from billvault.records.codec import decode_record, encode_record, epoch_micros
from billvault.records.model import BillingRecord, StoredRecord
from billvault.storage.config import RedisConfig, RedisMode
from billvault.storage.protocols import DeleteOutcome

if TYPE_CHECKING:
    import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

BACKEND_NAME: str = "redis"

# Lua script for versioned upsert with index maintenance
LUA_PUT_SCRIPT: str = """
local key = KEYS[1]
local index = KEYS[2]
local counter = KEYS[3]

local version = redis.call('INCR', counter)
local created = redis.call('HGET', key, 'c')
if not created then
    created = ARGV[3]
end

redis.call('HSET', key, 'd', ARGV[1], 'v', version, 'c', created, 'u', ARGV[3])
redis.call('ZADD', index, ARGV[2], ARGV[4])

return version
"""

# Lua script for compare-version-and-delete
LUA_DELETE_IF_VERSION_SCRIPT: str = """
local key = KEYS[1]
local index = KEYS[2]

local current = redis.call('HGET', key, 'v')
if not current then
    return 0
end
if tonumber(current) ~= tonumber(ARGV[1]) then
    return -1
end

redis.call('DEL', key)
redis.call('ZREM', index, ARGV[2])
return 1
"""

# Lua script for unconditional delete with index maintenance
LUA_DELETE_SCRIPT: str = """
local removed = redis.call('DEL', KEYS[1])
redis.call('ZREM', KEYS[2], ARGV[1])
return removed
"""

LUA_LEASE_ACQUIRE_SCRIPT: str = """
local current = redis.call('GET', KEYS[1])
if current then
    local holder = string.match(current, '^(.*):%d+$')
    if holder ~= ARGV[1] then
        return nil
    end
end

local token = redis.call('INCR', KEYS[2])
redis.call('SET', KEYS[1], ARGV[1] .. ':' .. token, 'PX', ARGV[2])
return token
"""

LUA_LEASE_RENEW_SCRIPT: str = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('PEXPIRE', KEYS[1], ARGV[2])
end
return 0
"""

LUA_LEASE_RELEASE_SCRIPT: str = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


# =============================================================================
# ERROR MAPPING
# =============================================================================

def _map_error(operation: str, exc: BaseException, start_ns: int) -> StorageError:
    """Translate a redis-py or asyncio exception into a StorageError."""
    from redis import exceptions as redis_exc

    if isinstance(exc, (asyncio.TimeoutError, redis_exc.TimeoutError)):
        duration_ms = (time.perf_counter_ns() - start_ns) // 1_000_000
        return StorageError.timeout(BACKEND_NAME, operation, duration_ms, exc)
    if isinstance(exc, redis_exc.ResponseError) and "BUSY" in str(exc):
        return StorageError.throttled(BACKEND_NAME, operation, exc)
    return StorageError.connection_failed(BACKEND_NAME, operation, exc)


async def _open_client(config: RedisConfig) -> "aioredis.Redis":
    """Create a client for the configured topology."""
    import redis.asyncio as aioredis

    kwargs = config.get_connection_kwargs()

    if config.mode == RedisMode.CLUSTER:
        from redis.asyncio.cluster import RedisCluster
        return RedisCluster(**kwargs)

    if config.mode == RedisMode.SENTINEL:
        from redis.asyncio.sentinel import Sentinel
        sentinel = Sentinel(
            list(config.sentinel_hosts),
            socket_timeout=config.socket_timeout_ms / 1000,
        )
        kwargs.pop("host", None)
        kwargs.pop("port", None)
        return sentinel.master_for(
            config.sentinel_service,
            redis_class=aioredis.Redis,
            **kwargs,
        )

    return aioredis.Redis(**kwargs)


# =============================================================================
# METRICS COLLECTOR
# =============================================================================

@dataclass(slots=True)
class RedisMetrics:
    """
    Operation counters for the Redis hot store.

    Single-threaded asyncio accumulation, no locking.
    """
    get_count: int = 0
    put_count: int = 0
    delete_count: int = 0
    scan_count: int = 0

    get_latency_sum_ns: int = 0

    connection_errors: int = 0
    timeout_errors: int = 0
    version_conflicts: int = 0
    undecodable_records: int = 0

    def record_get(self, latency_ns: int) -> None:
        self.get_count += 1
        self.get_latency_sum_ns += latency_ns

    def record_error(self, error: StorageError) -> None:
        if error.context.get("duration_ms") is not None:
            self.timeout_errors += 1
        else:
            self.connection_errors += 1

    def get_avg_get_latency_ms(self) -> float:
        if self.get_count == 0:
            return 0.0
        return (self.get_latency_sum_ns / self.get_count) / 1_000_000


# =============================================================================
# REDIS HOT STORE
# =============================================================================

class RedisHotStore:
    """
    Hot tier on Redis/Valkey implementing HotStoreProtocol.

    Each record is a Redis Hash; a sorted set indexed by event time gives
    the archival engine its cross-partition scan without SCAN over the
    keyspace.

    Example:
        >>> store = RedisHotStore(RedisConfig(host="redis.internal"))
        >>> await store.connect()
        >>> await store.put(record)
        >>> await store.close()
    """

    __slots__ = (
        "_config",
        "_client",
        "_metrics",
        "_put_sha",
        "_delete_sha",
        "_delete_if_version_sha",
        "_connected",
    )

    def __init__(self, config: RedisConfig) -> None:
        """
        Args:
            config: Redis connection configuration.

        Note:
            Call `connect()` before performing operations.
        """
        self._config = config
        self._client: Optional["aioredis.Redis"] = None
        self._metrics = RedisMetrics()
        self._put_sha: Optional[str] = None
        self._delete_sha: Optional[str] = None
        self._delete_if_version_sha: Optional[str] = None
        self._connected = False

    # -------------------------------------------------------------------------
    # KEY LAYOUT
    # -------------------------------------------------------------------------

    def _tag(self) -> str:
        return f"{{{self._config.key_prefix}}}"

    def _record_key(self, customer_id: str, record_id: str) -> str:
        return f"{self._tag()}:r:{customer_id}/{record_id}"

    def _index_key(self) -> str:
        return f"{self._tag()}:ts"

    def _version_key(self) -> str:
        return f"{self._tag()}:ver"

    @staticmethod
    def _member(customer_id: str, record_id: str) -> str:
        return f"{customer_id}/{record_id}"

    # -------------------------------------------------------------------------
    # CONNECTION MANAGEMENT
    # -------------------------------------------------------------------------

    async def connect(self) -> Result[None, StorageError]:
        """
        Open the client and load Lua scripts.

        Returns:
            Ok(None) on success, Err(StorageError) on failure.
        """
        start_ns = time.perf_counter_ns()
        try:
            self._client = await _open_client(self._config)
            await self._client.ping()

            self._put_sha = await self._client.script_load(LUA_PUT_SCRIPT)
            self._delete_sha = await self._client.script_load(LUA_DELETE_SCRIPT)
            self._delete_if_version_sha = await self._client.script_load(
                LUA_DELETE_IF_VERSION_SCRIPT
            )

            self._connected = True
            return Ok(None)
        except Exception as e:
            error = _map_error("connect", e, start_ns)
            self._metrics.record_error(error)
            return Err(error)

    async def close(self) -> None:
        """Close the client. Safe to call multiple times."""
        if self._client:
            await self._client.aclose()
            self._client = None
        self._connected = False

    @property
    def metrics(self) -> RedisMetrics:
        return self._metrics

    # -------------------------------------------------------------------------
    # HOT STORE OPERATIONS
    # -------------------------------------------------------------------------

    def _decode_hash(self, data: Dict[str, str]) -> Result[StoredRecord, StorageError]:
        payload = data.get("d", "")
        decoded = decode_record(payload)
        if decoded.is_err():
            return Err(StorageError.serialization_failed(
                BACKEND_NAME, "hash field d", ValueError(decoded.error),
            ))
        return Ok(StoredRecord(record=decoded.unwrap(), version=int(data.get("v", "0"))))

    async def get(
        self,
        customer_id: str,
        record_id: str,
    ) -> Result[Optional[StoredRecord], StorageError]:
        """
        Point read by composite key.

        Complexity: O(1) - HGETALL.
        """
        if not self._connected or not self._client:
            return Err(StorageError.not_connected(BACKEND_NAME))

        start_ns = time.perf_counter_ns()
        try:
            data: Dict[str, str] = await self._client.hgetall(
                self._record_key(customer_id, record_id)
            )
        except Exception as e:
            error = _map_error("get", e, start_ns)
            self._metrics.record_error(error)
            return Err(error)

        self._metrics.record_get(time.perf_counter_ns() - start_ns)
        if not data:
            return Ok(None)
        return self._decode_hash(data)

    async def put(self, record: BillingRecord) -> Result[StoredRecord, StorageError]:
        """
        Versioned upsert.

        The store-wide counter gives a rewritten record a strictly larger
        version even after a delete and re-insert.
        """
        if not self._connected or not self._client:
            return Err(StorageError.not_connected(BACKEND_NAME))

        try:
            payload = encode_record(record).decode("utf-8")
        except (TypeError, ValueError) as e:
            return Err(StorageError.serialization_failed(
                BACKEND_NAME, self._record_key(record.customer_id, record.id), e,
            ))

        start_ns = time.perf_counter_ns()
        try:
            version = await self._client.evalsha(
                self._put_sha,
                3,
                self._record_key(record.customer_id, record.id),
                self._index_key(),
                self._version_key(),
                payload,
                epoch_micros(record.timestamp),
                datetime.now(timezone.utc).isoformat(),
                self._member(record.customer_id, record.id),
            )
        except Exception as e:
            error = _map_error("put", e, start_ns)
            self._metrics.record_error(error)
            return Err(error)

        self._metrics.put_count += 1
        return Ok(StoredRecord(record=record, version=int(version)))

    async def delete(
        self,
        customer_id: str,
        record_id: str,
    ) -> Result[bool, StorageError]:
        if not self._connected or not self._client:
            return Err(StorageError.not_connected(BACKEND_NAME))

        start_ns = time.perf_counter_ns()
        try:
            removed = await self._client.evalsha(
                self._delete_sha,
                2,
                self._record_key(customer_id, record_id),
                self._index_key(),
                self._member(customer_id, record_id),
            )
        except Exception as e:
            error = _map_error("delete", e, start_ns)
            self._metrics.record_error(error)
            return Err(error)

        self._metrics.delete_count += 1
        return Ok(int(removed) > 0)

    async def delete_if_version(
        self,
        customer_id: str,
        record_id: str,
        expected_version: int,
    ) -> Result[DeleteOutcome, StorageError]:
        """
        Delete only if the stored version still equals expected_version.

        Complexity: O(log n) - executed atomically on the server.
        """
        if not self._connected or not self._client:
            return Err(StorageError.not_connected(BACKEND_NAME))

        start_ns = time.perf_counter_ns()
        try:
            outcome = int(await self._client.evalsha(
                self._delete_if_version_sha,
                2,
                self._record_key(customer_id, record_id),
                self._index_key(),
                expected_version,
                self._member(customer_id, record_id),
            ))
        except Exception as e:
            error = _map_error("delete_if_version", e, start_ns)
            self._metrics.record_error(error)
            return Err(error)

        if outcome == 1:
            self._metrics.delete_count += 1
            return Ok(DeleteOutcome.DELETED)
        if outcome == -1:
            self._metrics.version_conflicts += 1
            return Ok(DeleteOutcome.VERSION_MISMATCH)
        return Ok(DeleteOutcome.NOT_FOUND)

    async def query_by_timestamp(
        self,
        cutoff: datetime,
        limit: int = 100,
        cursor: Optional[str] = None,
    ) -> Result[tuple[list[StoredRecord], Optional[str]], StorageError]:
        """
        Scan the time index for records with timestamp <= cutoff.

        Cursor is "{score}/{member}"; members sharing a score are ordered
        lexicographically by Redis, so (score, member) is a total order.
        """
        if not self._connected or not self._client:
            return Err(StorageError.not_connected(BACKEND_NAME))
        if limit <= 0:
            return Ok(([], None))

        max_score = epoch_micros(cutoff)
        after: Optional[Tuple[int, str]] = None
        if cursor:
            score_text, member_text = cursor.split("/", 1)
            after = (int(score_text), member_text)
        min_score: Any = after[0] if after else "-inf"

        start_ns = time.perf_counter_ns()
        try:
            collected: List[Tuple[str, int]] = []
            offset = 0
            # One extra entry tells whether another page exists
            while len(collected) <= limit:
                batch = await self._client.zrangebyscore(
                    self._index_key(),
                    min_score,
                    max_score,
                    start=offset,
                    num=limit + 1,
                    withscores=True,
                )
                if not batch:
                    break
                offset += len(batch)
                for member, score in batch:
                    entry = (member, int(score))
                    if after and (entry[1], entry[0]) <= after:
                        continue
                    collected.append(entry)
                    if len(collected) > limit:
                        break

            page = collected[:limit]
            async with self._client.pipeline(transaction=False) as pipe:
                for member, _ in page:
                    customer_id, record_id = member.split("/", 1)
                    pipe.hgetall(self._record_key(customer_id, record_id))
                hashes = await pipe.execute()
        except Exception as e:
            error = _map_error("query_by_timestamp", e, start_ns)
            self._metrics.record_error(error)
            return Err(error)

        self._metrics.scan_count += 1
        records = self._decode_page(page, hashes)

        next_cursor: Optional[str] = None
        if len(collected) > limit:
            last_member, last_score = page[-1]
            next_cursor = f"{last_score}/{last_member}"
        return Ok((records, next_cursor))

    def _decode_page(
        self,
        page: List[Tuple[str, int]],
        hashes: List[Dict[str, str]],
    ) -> list[StoredRecord]:
        """
        Decode a fetched scan page.

        An undecodable hash is logged and left out of the page; it stays in
        the hot tier for an operator and the cursor still moves past it.
        """
        records: list[StoredRecord] = []
        for (member, _), data in zip(page, hashes):
            if not data:
                continue  # Deleted between index read and fetch
            decoded = self._decode_hash(data)
            if decoded.is_err():
                self._metrics.undecodable_records += 1
                logger.error(
                    "Skipping undecodable hot record in timestamp scan",
                    extra={"member": member, "error": decoded.error.message},
                )
                continue
            records.append(decoded.unwrap())
        return records


# =============================================================================
# REDIS LEASE BACKEND
# =============================================================================

class RedisLeaseBackend:
    """
    Lease state on Redis for cross-process archival pass exclusion.

    SET NX semantics via Lua so the fencing counter and the lease value
    change atomically.
    """

    __slots__ = (
        "_config",
        "_client",
        "_acquire_sha",
        "_renew_sha",
        "_release_sha",
        "_connected",
    )

    def __init__(self, config: RedisConfig) -> None:
        self._config = config
        self._client: Optional["aioredis.Redis"] = None
        self._acquire_sha: Optional[str] = None
        self._renew_sha: Optional[str] = None
        self._release_sha: Optional[str] = None
        self._connected = False

    def _lease_key(self, resource_id: str) -> str:
        return f"{{{self._config.key_prefix}}}:lease:{resource_id}"

    def _fence_key(self, resource_id: str) -> str:
        return f"{{{self._config.key_prefix}}}:fence:{resource_id}"

    async def connect(self) -> Result[None, StorageError]:
        start_ns = time.perf_counter_ns()
        try:
            self._client = await _open_client(self._config)
            await self._client.ping()
            self._acquire_sha = await self._client.script_load(LUA_LEASE_ACQUIRE_SCRIPT)
            self._renew_sha = await self._client.script_load(LUA_LEASE_RENEW_SCRIPT)
            self._release_sha = await self._client.script_load(LUA_LEASE_RELEASE_SCRIPT)
            self._connected = True
            return Ok(None)
        except Exception as e:
            return Err(_map_error("connect", e, start_ns))

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
        self._connected = False

    async def try_acquire(
        self,
        resource_id: str,
        holder_id: str,
        ttl_ms: int,
    ) -> Result[Optional[int], StorageError]:
        if not self._connected or not self._client:
            return Err(StorageError.not_connected(BACKEND_NAME))
        start_ns = time.perf_counter_ns()
        try:
            token = await self._client.evalsha(
                self._acquire_sha,
                2,
                self._lease_key(resource_id),
                self._fence_key(resource_id),
                holder_id,
                ttl_ms,
            )
        except Exception as e:
            return Err(_map_error("lease_acquire", e, start_ns))
        return Ok(int(token) if token is not None else None)

    async def renew(
        self,
        resource_id: str,
        holder_id: str,
        fencing_token: int,
        ttl_ms: int,
    ) -> Result[bool, StorageError]:
        if not self._connected or not self._client:
            return Err(StorageError.not_connected(BACKEND_NAME))
        start_ns = time.perf_counter_ns()
        try:
            renewed = await self._client.evalsha(
                self._renew_sha,
                1,
                self._lease_key(resource_id),
                f"{holder_id}:{fencing_token}",
                ttl_ms,
            )
        except Exception as e:
            return Err(_map_error("lease_renew", e, start_ns))
        return Ok(int(renewed) == 1)

    async def release(
        self,
        resource_id: str,
        holder_id: str,
        fencing_token: int,
    ) -> Result[bool, StorageError]:
        if not self._connected or not self._client:
            return Err(StorageError.not_connected(BACKEND_NAME))
        start_ns = time.perf_counter_ns()
        try:
            released = await self._client.evalsha(
                self._release_sha,
                1,
                self._lease_key(resource_id),
                f"{holder_id}:{fencing_token}",
            )
        except Exception as e:
            return Err(_map_error("lease_release", e, start_ns))
        return Ok(int(released) == 1)

    async def holder(self, resource_id: str) -> Result[Optional[str], StorageError]:
        if not self._connected or not self._client:
            return Err(StorageError.not_connected(BACKEND_NAME))
        start_ns = time.perf_counter_ns()
        try:
            value = await self._client.get(self._lease_key(resource_id))
        except Exception as e:
            return Err(_map_error("lease_holder", e, start_ns))
        if value is None:
            return Ok(None)
        holder_id, _, _ = value.rpartition(":")
        return Ok(holder_id)


# =============================================================================
# MODULE EXPORTS
# =============================================================================

__all__ = [
    "RedisHotStore",
    "RedisLeaseBackend",
    "RedisMetrics",
]
