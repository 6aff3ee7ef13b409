"""
Store Adapter Protocols: Capability Interfaces for the Two Tiers

Structural subtyping protocols (PEP 544) for the external collaborators:
- HotStoreProtocol: low-latency point reads plus a cross-partition time scan
- ColdStoreProtocol: object put/get/exists by deterministic key
- LedgerStoreProtocol: durable migration ledger and archival run history
- LeaseBackendProtocol: mutual exclusion for archival passes

Design Principles:
    - Zero-exception control flow via Result[T, StorageError]
    - Absence is Ok(None) / Ok(False), never an Err
    - Every Err is a StorageError; callers decide between retry and Unavailable
    - Async-first for non-blocking I/O

Author: Planetary AI Systems
License: MIT
"""

from __future__ import annotations

from abc import abstractmethod
from datetime import datetime
from enum import Enum, auto
from typing import TYPE_CHECKING, Optional, Protocol, runtime_checkable

from billvault.core.errors import StorageError
from billvault.core.types import Result

if TYPE_CHECKING:
    from billvault.ledger.models import ArchivalRun, LedgerEntry, MigrationState
    from billvault.records.model import BillingRecord, StoredRecord


# =============================================================================
# CONDITIONAL DELETE OUTCOME
# =============================================================================
class DeleteOutcome(Enum):
    """Result of a version-checked delete."""
    DELETED = auto()           # Version matched, record removed
    VERSION_MISMATCH = auto()  # Record was rewritten since it was read
    NOT_FOUND = auto()         # Record already gone


# =============================================================================
# HOT STORE PROTOCOL
# =============================================================================
@runtime_checkable
class HotStoreProtocol(Protocol):
    """
    Low-latency record store partitioned by customer_id.

    Every put of an identity bumps its version; the archival engine uses
    the version to detect writes that land after its candidate scan.
    """

    @abstractmethod
    async def get(
        self,
        customer_id: str,
        record_id: str,
    ) -> Result[Optional[StoredRecord], StorageError]:
        """
        Point read by composite key.

        Returns:
            Ok(StoredRecord): Record present
            Ok(None): Record absent
            Err(StorageError): Store failure (never means absent)

        Complexity: O(1)
        """
        ...

    @abstractmethod
    async def put(self, record: BillingRecord) -> Result[StoredRecord, StorageError]:
        """Insert or overwrite, returning the stored version."""
        ...

    @abstractmethod
    async def delete(
        self,
        customer_id: str,
        record_id: str,
    ) -> Result[bool, StorageError]:
        """
        Unconditional delete.

        Returns:
            Ok(True) if a record was removed, Ok(False) if it was absent.
        """
        ...

    @abstractmethod
    async def delete_if_version(
        self,
        customer_id: str,
        record_id: str,
        expected_version: int,
    ) -> Result[DeleteOutcome, StorageError]:
        """
        Atomically delete only if the stored version equals expected_version.

        Complexity: O(1), single round trip
        """
        ...

    @abstractmethod
    async def query_by_timestamp(
        self,
        cutoff: datetime,
        limit: int = 100,
        cursor: Optional[str] = None,
    ) -> Result[tuple[list[StoredRecord], Optional[str]], StorageError]:
        """
        Cross-partition scan of records with timestamp <= cutoff.

        Pages are ordered by (timestamp, customer_id, id). The cursor is
        key based, so records deleted between pages never shift the scan.

        Returns:
            Ok((records, next_cursor)): next_cursor is None on the last page
            Err(StorageError): Scan failed

        Complexity: O(log n + limit)
        """
        ...


# =============================================================================
# COLD STORE PROTOCOL
# =============================================================================
@runtime_checkable
class ColdStoreProtocol(Protocol):
    """
    Object store for archived records.

    Keys follow the "{customer_id}/{YYYY-MM}/{id}.json" scheme.
    """

    @abstractmethod
    async def put(
        self,
        key: str,
        data: bytes,
        overwrite: bool = True,
    ) -> Result[bool, StorageError]:
        """
        Write an object.

        An overwrite of identical content succeeds.

        Returns:
            Ok(True): Object written
            Ok(False): overwrite=False and the key already exists
        """
        ...

    @abstractmethod
    async def get(self, key: str) -> Result[Optional[bytes], StorageError]:
        """Read an object; Ok(None) when absent."""
        ...

    @abstractmethod
    async def exists(self, key: str) -> Result[bool, StorageError]:
        ...

    @abstractmethod
    async def find_key(
        self,
        customer_id: str,
        record_id: str,
    ) -> Result[Optional[str], StorageError]:
        """
        Locate the object of a record whose event month is unknown.

        Fallback for reads with no event-time hint, no cached key and no
        ledger entry. Cost grows with the months archived for the customer,
        not with the objects under them.
        """
        ...


# =============================================================================
# LEDGER STORE PROTOCOL
# =============================================================================
@runtime_checkable
class LedgerStoreProtocol(Protocol):
    """
    Durable storage for migration ledger entries and archival runs.

    put_entry has upsert semantics keyed by (customer_id, record_id).
    """

    @abstractmethod
    async def get_entry(
        self,
        customer_id: str,
        record_id: str,
    ) -> Result[Optional[LedgerEntry], StorageError]:
        ...

    @abstractmethod
    async def put_entry(self, entry: LedgerEntry) -> Result[None, StorageError]:
        ...

    @abstractmethod
    async def list_entries(
        self,
        state: MigrationState,
        limit: int = 100,
        cursor: Optional[str] = None,
    ) -> Result[tuple[list[LedgerEntry], Optional[str]], StorageError]:
        """
        Page through entries in a state, ordered by (customer_id, record_id).

        Each call reads current state; the cursor is key based.
        """
        ...

    @abstractmethod
    async def delete_entry(
        self,
        customer_id: str,
        record_id: str,
    ) -> Result[bool, StorageError]:
        ...

    @abstractmethod
    async def purge_entries(
        self,
        state: MigrationState,
        updated_before: datetime,
    ) -> Result[int, StorageError]:
        """Delete entries in state last updated before the threshold."""
        ...

    @abstractmethod
    async def put_run(self, run: ArchivalRun) -> Result[None, StorageError]:
        ...

    @abstractmethod
    async def list_runs(self, limit: int = 20) -> Result[list[ArchivalRun], StorageError]:
        """Most recent runs first."""
        ...


# =============================================================================
# LEASE BACKEND PROTOCOL
# =============================================================================
@runtime_checkable
class LeaseBackendProtocol(Protocol):
    """
    Shared lease state for archival pass exclusion.

    Fencing tokens are monotonic per resource.
    """

    @abstractmethod
    async def try_acquire(
        self,
        resource_id: str,
        holder_id: str,
        ttl_ms: int,
    ) -> Result[Optional[int], StorageError]:
        """
        Returns:
            Ok(token): Lease granted with fencing token
            Ok(None): Lease held by another holder
        """
        ...

    @abstractmethod
    async def renew(
        self,
        resource_id: str,
        holder_id: str,
        fencing_token: int,
        ttl_ms: int,
    ) -> Result[bool, StorageError]:
        ...

    @abstractmethod
    async def release(
        self,
        resource_id: str,
        holder_id: str,
        fencing_token: int,
    ) -> Result[bool, StorageError]:
        ...

    @abstractmethod
    async def holder(self, resource_id: str) -> Result[Optional[str], StorageError]:
        ...


# =============================================================================
# MODULE EXPORTS
# =============================================================================
__all__ = [
    "DeleteOutcome",
    "HotStoreProtocol",
    "ColdStoreProtocol",
    "LedgerStoreProtocol",
    "LeaseBackendProtocol",
]
