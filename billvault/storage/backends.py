"""
In-Memory Store Backends: Development and Testing Implementations

Provides in-memory implementations of the store adapter protocols:
- InMemoryHotStore: versioned records with a time-ordered scan
- InMemoryColdStore: S3-compatible object map
- InMemoryLedgerStore: ledger entries and archival runs
- InMemoryLeaseBackend: lease state with fencing tokens

Every backend carries a FaultInjector so the archival state machine and the
read router can be exercised against failures without live cloud services:

    hot = InMemoryHotStore()
    hot.faults.fail_next("delete_if_version", 2)
    cold.faults.delay_next("get", seconds=5.0)
    cold.corrupt_next_writes(1)

Design Principles:
    - Full protocol compliance for seamless production swap
    - Async-safe operations via asyncio locks
    - Fault hooks run outside the store lock, so a hook may call back
      into any store

Performance Characteristics:
    - Get/Put/Delete: O(1) average case
    - Time scan: O(n log n) per page (sorted on demand)

Author: Planetary AI Systems
License: MIT
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from billvault.core.errors import StorageError
from billvault.core.types import Result, Ok, Err, Timestamp
from billvault.ledger.models import ArchivalRun, LedgerEntry, MigrationState
from billvault.records.codec import cold_key_matches, epoch_micros
from billvault.records.model import BillingRecord, StoredRecord
from billvault.storage.protocols import DeleteOutcome


AnyOperation = "*"
Hook = Callable[[], Awaitable[None]]


# =============================================================================
# FAULT INJECTION
# =============================================================================
@dataclass
class _PendingFailure:
    remaining: int
    error: Optional[StorageError] = None


class FaultInjector:
    """
    Scripted failures, delays and hooks keyed by operation name.

    Operation names are the adapter method names ("get", "put",
    "query_by_timestamp", ...). "*" matches every operation.
    """

    __slots__ = ("_backend", "_failures", "_delays", "_hooks", "calls")

    def __init__(self, backend: str) -> None:
        self._backend = backend
        self._failures: Dict[str, _PendingFailure] = {}
        self._delays: Dict[str, List[float]] = {}
        self._hooks: Dict[str, List[Hook]] = {}
        self.calls: Dict[str, int] = {}

    def fail_next(
        self,
        operation: str,
        count: int = 1,
        error: Optional[StorageError] = None,
    ) -> None:
        """Fail the next `count` calls of operation."""
        self._failures[operation] = _PendingFailure(remaining=count, error=error)

    def fail_always(self, operation: str, error: Optional[StorageError] = None) -> None:
        self._failures[operation] = _PendingFailure(remaining=-1, error=error)

    def delay_next(self, operation: str, seconds: float, count: int = 1) -> None:
        """Sleep before the next `count` calls of operation."""
        self._delays.setdefault(operation, []).extend([seconds] * count)

    def before_next(self, operation: str, hook: Hook) -> None:
        """Run an async hook once, right before the next call of operation."""
        self._hooks.setdefault(operation, []).append(hook)

    def clear(self) -> None:
        self._failures.clear()
        self._delays.clear()
        self._hooks.clear()

    def _take_failure(self, operation: str) -> Optional[_PendingFailure]:
        for key in (operation, AnyOperation):
            pending = self._failures.get(key)
            if pending is None:
                continue
            if pending.remaining > 0:
                pending.remaining -= 1
                if pending.remaining == 0:
                    del self._failures[key]
            return pending
        return None

    async def check(self, operation: str) -> Optional[StorageError]:
        """Apply scripted behaviour; returns the error to surface, if any."""
        self.calls[operation] = self.calls.get(operation, 0) + 1

        hooks = self._hooks.get(operation)
        if hooks:
            hook = hooks.pop(0)
            await hook()

        delays = self._delays.get(operation)
        if delays:
            await asyncio.sleep(delays.pop(0))

        pending = self._take_failure(operation)
        if pending is None:
            return None
        return pending.error or StorageError.connection_failed(
            self._backend, operation, ConnectionError("injected failure"),
        )


# =============================================================================
# IN-MEMORY HOT STORE
# =============================================================================
def _scan_key(record: BillingRecord) -> Tuple[int, str, str]:
    return (epoch_micros(record.timestamp), record.customer_id, record.id)


def _encode_scan_cursor(key: Tuple[int, str, str]) -> str:
    return f"{key[0]}/{key[1]}/{key[2]}"


def _decode_scan_cursor(cursor: str) -> Tuple[int, str, str]:
    micros, customer_id, record_id = cursor.split("/", 2)
    return (int(micros), customer_id, record_id)


class InMemoryHotStore:
    """
    In-memory hot tier.

    Versions come from a store-wide monotonic counter, so a rewrite of the
    same identity always produces a larger version.

    Example:
        store = InMemoryHotStore()
        await store.put(record)
        result = await store.get("customer123", "abcde123")
    """

    __slots__ = ("_data", "_lock", "_version_counter", "faults", "deletes")

    def __init__(self) -> None:
        self._data: Dict[Tuple[str, str], StoredRecord] = {}
        self._lock = asyncio.Lock()
        self._version_counter: int = 0
        self.faults = FaultInjector("memory-hot")
        self.deletes: int = 0

    async def get(
        self,
        customer_id: str,
        record_id: str,
    ) -> Result[Optional[StoredRecord], StorageError]:
        error = await self.faults.check("get")
        if error:
            return Err(error)
        async with self._lock:
            return Ok(self._data.get((customer_id, record_id)))

    async def put(self, record: BillingRecord) -> Result[StoredRecord, StorageError]:
        error = await self.faults.check("put")
        if error:
            return Err(error)
        async with self._lock:
            self._version_counter += 1
            stored = StoredRecord(record=record, version=self._version_counter)
            self._data[record.identity] = stored
            return Ok(stored)

    async def delete(
        self,
        customer_id: str,
        record_id: str,
    ) -> Result[bool, StorageError]:
        error = await self.faults.check("delete")
        if error:
            return Err(error)
        async with self._lock:
            removed = self._data.pop((customer_id, record_id), None)
            if removed is not None:
                self.deletes += 1
            return Ok(removed is not None)

    async def delete_if_version(
        self,
        customer_id: str,
        record_id: str,
        expected_version: int,
    ) -> Result[DeleteOutcome, StorageError]:
        error = await self.faults.check("delete_if_version")
        if error:
            return Err(error)
        async with self._lock:
            stored = self._data.get((customer_id, record_id))
            if stored is None:
                return Ok(DeleteOutcome.NOT_FOUND)
            if stored.version != expected_version:
                return Ok(DeleteOutcome.VERSION_MISMATCH)
            del self._data[(customer_id, record_id)]
            self.deletes += 1
            return Ok(DeleteOutcome.DELETED)

    async def query_by_timestamp(
        self,
        cutoff: datetime,
        limit: int = 100,
        cursor: Optional[str] = None,
    ) -> Result[tuple[list[StoredRecord], Optional[str]], StorageError]:
        error = await self.faults.check("query_by_timestamp")
        if error:
            return Err(error)
        if limit <= 0:
            return Ok(([], None))

        cutoff_micros = epoch_micros(cutoff)
        after = _decode_scan_cursor(cursor) if cursor else None

        async with self._lock:
            candidates = sorted(
                (
                    (_scan_key(stored.record), stored)
                    for stored in self._data.values()
                    if epoch_micros(stored.record.timestamp) <= cutoff_micros
                ),
                key=lambda item: item[0],
            )

        if after is not None:
            candidates = [item for item in candidates if item[0] > after]

        page = candidates[:limit]
        next_cursor = _encode_scan_cursor(page[-1][0]) if len(candidates) > limit else None
        return Ok(([stored for _, stored in page], next_cursor))

    # -------------------------------------------------------------------------
    # Utility Methods
    # -------------------------------------------------------------------------

    async def count(self) -> int:
        async with self._lock:
            return len(self._data)


# =============================================================================
# IN-MEMORY COLD STORE (S3-COMPATIBLE)
# =============================================================================
@dataclass
class ObjectMetadata:
    """Metadata for stored objects."""
    key: str
    size_bytes: int
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class InMemoryColdStore:
    """
    In-memory cold tier keyed by object key.

    corrupt_next_writes(n) flips the last byte of the next n writes so the
    archival verify step sees a checksum mismatch.
    """

    __slots__ = ("_objects", "_metadata", "_lock", "_corrupt_writes", "faults", "writes")

    def __init__(self) -> None:
        self._objects: Dict[str, bytes] = {}
        self._metadata: Dict[str, ObjectMetadata] = {}
        self._lock = asyncio.Lock()
        self._corrupt_writes: int = 0
        self.faults = FaultInjector("memory-cold")
        self.writes: int = 0

    def corrupt_next_writes(self, count: int = 1) -> None:
        self._corrupt_writes = count

    def corrupt_always(self) -> None:
        self._corrupt_writes = -1

    async def put(
        self,
        key: str,
        data: bytes,
        overwrite: bool = True,
    ) -> Result[bool, StorageError]:
        error = await self.faults.check("put")
        if error:
            return Err(error)
        async with self._lock:
            if not overwrite and key in self._objects:
                return Ok(False)
            if self._corrupt_writes != 0 and data:
                data = data[:-1] + bytes([data[-1] ^ 0xFF])
                if self._corrupt_writes > 0:
                    self._corrupt_writes -= 1
            self._objects[key] = data
            self._metadata[key] = ObjectMetadata(key=key, size_bytes=len(data))
            self.writes += 1
            return Ok(True)

    async def get(self, key: str) -> Result[Optional[bytes], StorageError]:
        error = await self.faults.check("get")
        if error:
            return Err(error)
        async with self._lock:
            return Ok(self._objects.get(key))

    async def exists(self, key: str) -> Result[bool, StorageError]:
        error = await self.faults.check("exists")
        if error:
            return Err(error)
        async with self._lock:
            return Ok(key in self._objects)

    async def find_key(
        self,
        customer_id: str,
        record_id: str,
    ) -> Result[Optional[str], StorageError]:
        error = await self.faults.check("find_key")
        if error:
            return Err(error)
        prefix = f"{customer_id}/"
        async with self._lock:
            for key in sorted(self._objects):
                if key.startswith(prefix) and cold_key_matches(key, customer_id, record_id):
                    return Ok(key)
        return Ok(None)

    # -------------------------------------------------------------------------
    # Utility Methods
    # -------------------------------------------------------------------------

    async def delete_object(self, key: str) -> None:
        """Remove an object (test setup only; archival never deletes cold data)."""
        async with self._lock:
            self._objects.pop(key, None)
            self._metadata.pop(key, None)

    async def keys(self) -> List[str]:
        async with self._lock:
            return sorted(self._objects)

    async def count(self) -> int:
        async with self._lock:
            return len(self._objects)


# =============================================================================
# IN-MEMORY LEDGER STORE
# =============================================================================
def _entry_cursor(customer_id: str, record_id: str) -> str:
    return f"{customer_id}/{record_id}"


class InMemoryLedgerStore:
    """
    In-memory migration ledger.

    Survives engine restarts within a process; tests share one instance
    between successive engines to model a durable external store.
    """

    __slots__ = ("_entries", "_runs", "_lock", "faults")

    def __init__(self) -> None:
        self._entries: Dict[Tuple[str, str], LedgerEntry] = {}
        self._runs: Dict[str, ArchivalRun] = {}
        self._lock = asyncio.Lock()
        self.faults = FaultInjector("memory-ledger")

    async def get_entry(
        self,
        customer_id: str,
        record_id: str,
    ) -> Result[Optional[LedgerEntry], StorageError]:
        error = await self.faults.check("get_entry")
        if error:
            return Err(error)
        async with self._lock:
            return Ok(self._entries.get((customer_id, record_id)))

    async def put_entry(self, entry: LedgerEntry) -> Result[None, StorageError]:
        error = await self.faults.check("put_entry")
        if error:
            return Err(error)
        async with self._lock:
            self._entries[entry.identity] = entry
            return Ok(None)

    async def list_entries(
        self,
        state: MigrationState,
        limit: int = 100,
        cursor: Optional[str] = None,
    ) -> Result[tuple[list[LedgerEntry], Optional[str]], StorageError]:
        error = await self.faults.check("list_entries")
        if error:
            return Err(error)
        async with self._lock:
            matching = sorted(
                (entry for entry in self._entries.values() if entry.state == state),
                key=lambda entry: entry.identity,
            )
        if cursor is not None:
            after = tuple(cursor.split("/", 1))
            matching = [entry for entry in matching if entry.identity > after]
        page = matching[:limit]
        next_cursor = (
            _entry_cursor(*page[-1].identity) if len(matching) > limit else None
        )
        return Ok((page, next_cursor))

    async def delete_entry(
        self,
        customer_id: str,
        record_id: str,
    ) -> Result[bool, StorageError]:
        error = await self.faults.check("delete_entry")
        if error:
            return Err(error)
        async with self._lock:
            return Ok(self._entries.pop((customer_id, record_id), None) is not None)

    async def purge_entries(
        self,
        state: MigrationState,
        updated_before: datetime,
    ) -> Result[int, StorageError]:
        error = await self.faults.check("purge_entries")
        if error:
            return Err(error)
        async with self._lock:
            expired = [
                identity for identity, entry in self._entries.items()
                if entry.state == state and entry.updated_at < updated_before
            ]
            for identity in expired:
                del self._entries[identity]
            return Ok(len(expired))

    async def put_run(self, run: ArchivalRun) -> Result[None, StorageError]:
        error = await self.faults.check("put_run")
        if error:
            return Err(error)
        async with self._lock:
            self._runs[run.run_id] = run
            return Ok(None)

    async def list_runs(self, limit: int = 20) -> Result[list[ArchivalRun], StorageError]:
        error = await self.faults.check("list_runs")
        if error:
            return Err(error)
        async with self._lock:
            runs = sorted(self._runs.values(), key=lambda run: run.started_at, reverse=True)
            return Ok(runs[:limit])

    # -------------------------------------------------------------------------
    # Utility Methods
    # -------------------------------------------------------------------------

    async def all_entries(self) -> Dict[Tuple[str, str], LedgerEntry]:
        """Snapshot of every entry (tests and diagnostics)."""
        async with self._lock:
            return dict(self._entries)


# =============================================================================
# IN-MEMORY LEASE BACKEND
# =============================================================================
@dataclass
class LeaseState:
    """Lease held on a resource."""
    holder_id: str
    fencing_token: int
    expires_at_ns: int


class InMemoryLeaseBackend:
    """
    Process-local lease state.

    Shared by every PassLease in the process; use the Redis backend when
    passes may start from several processes.
    """

    __slots__ = ("_leases", "_fences", "_lock", "faults")

    def __init__(self) -> None:
        self._leases: Dict[str, LeaseState] = {}
        self._fences: Dict[str, int] = {}
        self._lock = asyncio.Lock()
        self.faults = FaultInjector("memory-lease")

    async def try_acquire(
        self,
        resource_id: str,
        holder_id: str,
        ttl_ms: int,
    ) -> Result[Optional[int], StorageError]:
        error = await self.faults.check("try_acquire")
        if error:
            return Err(error)
        async with self._lock:
            now_ns = Timestamp.now().nanos
            state = self._leases.get(resource_id)
            if state and state.expires_at_ns > now_ns and state.holder_id != holder_id:
                return Ok(None)

            token = self._fences.get(resource_id, 0) + 1
            self._fences[resource_id] = token
            self._leases[resource_id] = LeaseState(
                holder_id=holder_id,
                fencing_token=token,
                expires_at_ns=now_ns + ttl_ms * 1_000_000,
            )
            return Ok(token)

    async def renew(
        self,
        resource_id: str,
        holder_id: str,
        fencing_token: int,
        ttl_ms: int,
    ) -> Result[bool, StorageError]:
        error = await self.faults.check("renew")
        if error:
            return Err(error)
        async with self._lock:
            state = self._leases.get(resource_id)
            if not state or state.holder_id != holder_id or state.fencing_token != fencing_token:
                return Ok(False)
            state.expires_at_ns = Timestamp.now().nanos + ttl_ms * 1_000_000
            return Ok(True)

    async def release(
        self,
        resource_id: str,
        holder_id: str,
        fencing_token: int,
    ) -> Result[bool, StorageError]:
        error = await self.faults.check("release")
        if error:
            return Err(error)
        async with self._lock:
            state = self._leases.get(resource_id)
            if not state or state.holder_id != holder_id or state.fencing_token != fencing_token:
                return Ok(False)
            del self._leases[resource_id]
            return Ok(True)

    async def holder(self, resource_id: str) -> Result[Optional[str], StorageError]:
        error = await self.faults.check("holder")
        if error:
            return Err(error)
        async with self._lock:
            state = self._leases.get(resource_id)
            if not state or state.expires_at_ns <= Timestamp.now().nanos:
                return Ok(None)
            return Ok(state.holder_id)


# =============================================================================
# MODULE EXPORTS
# =============================================================================
__all__ = [
    "FaultInjector",
    "InMemoryHotStore",
    "InMemoryColdStore",
    "InMemoryLedgerStore",
    "InMemoryLeaseBackend",
    "ObjectMetadata",
    "LeaseState",
]
