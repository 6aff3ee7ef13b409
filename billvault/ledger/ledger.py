"""
Migration Ledger: Durable Per-Record Archival Progress

Facade over a LedgerStoreProtocol that enforces the migration state
machine and idempotent writes.

Contract:
    upsert(entry)          -> idempotent; same (identity, state, attempts) is a no-op
    get(customer_id, id)   -> entry or None
    list_by_state(state)   -> lazy, restartable async iterator; each page is
                              re-queried, so iteration observes current state
    discard(entry)         -> forget a PENDING entry whose record is gone
    record_run(run)        -> persist archival run summary
    purge_expired(days)    -> drop DELETED entries past the grace period

Failure model:
    Every store failure surfaces as LedgerUnavailableError. Callers halt
    new transitions instead of guessing state.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, AsyncIterator, Optional, Union

from billvault.core.constants import DEFAULT_PAGE_SIZE
from billvault.core.errors import (
    InvalidTransitionError,
    LedgerUnavailableError,
)
from billvault.core.types import Result, Ok, Err
from billvault.ledger.models import (
    ArchivalRun,
    LedgerEntry,
    MigrationState,
    is_valid_transition,
    utc_now,
)

if TYPE_CHECKING:
    from billvault.storage.protocols import LedgerStoreProtocol

logger = logging.getLogger(__name__)

LedgerError = Union[LedgerUnavailableError, InvalidTransitionError]


class MigrationLedger:
    """
    Ledger facade owned by the archival engine; read-only to the router.

    Thread Safety: coroutine-safe as long as the underlying store is. A
    single archival pass (enforced by the pass lease) is the only writer.

    Usage:
        ledger = MigrationLedger(InMemoryLedgerStore())
        entry = LedgerEntry.pending("customer123", "abcde123")
        await ledger.upsert(entry)
        async for stuck in ledger.list_by_state(MigrationState.COPY_IN_FLIGHT):
            ...
    """

    __slots__ = ("_store", "_page_size")

    def __init__(
        self,
        store: LedgerStoreProtocol,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        self._store = store
        self._page_size = page_size

    @property
    def store(self) -> LedgerStoreProtocol:
        return self._store

    async def get(
        self,
        customer_id: str,
        record_id: str,
    ) -> Result[Optional[LedgerEntry], LedgerUnavailableError]:
        result = await self._store.get_entry(customer_id, record_id)
        if result.is_err():
            return Err(LedgerUnavailableError.from_storage("get", result.error))
        return result

    async def upsert(self, entry: LedgerEntry) -> Result[LedgerEntry, LedgerError]:
        """
        Write an entry, enforcing the state machine against the stored one.

        Returns:
            Ok(stored entry): written, or the existing entry when the write
                is a no-op
            Err(InvalidTransitionError): state machine violation
            Err(LedgerUnavailableError): store failure
        """
        current_result = await self.get(entry.customer_id, entry.record_id)
        if current_result.is_err():
            return current_result
        current = current_result.unwrap()

        if current is not None:
            if current.same_progress(entry):
                return Ok(current)
            if not is_valid_transition(current.state, entry.state):
                return Err(InvalidTransitionError.between(
                    entry.customer_id, entry.record_id, current.state.name, entry.state.name,
                ))
        elif entry.state != MigrationState.PENDING:
            return Err(InvalidTransitionError.between(
                entry.customer_id, entry.record_id, "ABSENT", entry.state.name,
            ))

        return await self._put(entry)

    async def transition(
        self,
        entry: LedgerEntry,
        to_state: MigrationState,
        *,
        error: Optional[str] = None,
        count_attempt: bool = False,
    ) -> Result[LedgerEntry, LedgerError]:
        """
        Move a known entry to to_state and persist it.

        The caller holds the latest entry (single writer), so no re-read.
        """
        successor = entry.transition(to_state, error=error, count_attempt=count_attempt)
        if successor.is_err():
            return successor
        return await self._put(successor.unwrap())

    async def discard(self, entry: LedgerEntry) -> Result[None, LedgerError]:
        """
        Forget a PENDING entry whose record left the hot tier before any copy.

        Later states may have a cold object that reconciliation still has to
        account for, so they are never discarded.
        """
        if entry.state is not MigrationState.PENDING:
            return Err(InvalidTransitionError.between(
                entry.customer_id, entry.record_id, entry.state.name, "ABSENT",
            ))
        result = await self._store.delete_entry(entry.customer_id, entry.record_id)
        if result.is_err():
            return Err(LedgerUnavailableError.from_storage("discard", result.error))
        return Ok(None)

    async def _put(self, entry: LedgerEntry) -> Result[LedgerEntry, LedgerUnavailableError]:
        result = await self._store.put_entry(entry)
        if result.is_err():
            return Err(LedgerUnavailableError.from_storage("put", result.error))
        return Ok(entry)

    async def list_by_state(
        self,
        state: MigrationState,
        page_size: Optional[int] = None,
    ) -> AsyncIterator[LedgerEntry]:
        """
        Lazily iterate entries in a state.

        Finite and restartable: a new iteration starts a fresh query, and
        every page reflects the store at the time it is fetched.

        Raises:
            LedgerUnavailableError: If a page cannot be read.
        """
        cursor: Optional[str] = None
        limit = page_size or self._page_size
        while True:
            result = await self._store.list_entries(state, limit=limit, cursor=cursor)
            if result.is_err():
                raise LedgerUnavailableError.from_storage("list_by_state", result.error)
            entries, cursor = result.unwrap()
            for entry in entries:
                yield entry
            if cursor is None:
                return

    async def record_run(self, run: ArchivalRun) -> Result[None, LedgerUnavailableError]:
        result = await self._store.put_run(run)
        if result.is_err():
            return Err(LedgerUnavailableError.from_storage("record_run", result.error))
        return Ok(None)

    async def recent_runs(self, limit: int = 20) -> Result[list[ArchivalRun], LedgerUnavailableError]:
        result = await self._store.list_runs(limit)
        if result.is_err():
            return Err(LedgerUnavailableError.from_storage("recent_runs", result.error))
        return result

    async def purge_expired(
        self,
        grace_days: int,
        now: Optional[datetime] = None,
    ) -> Result[int, LedgerUnavailableError]:
        """Remove DELETED entries last updated more than grace_days ago."""
        threshold = (now or utc_now()) - timedelta(days=grace_days)
        result = await self._store.purge_entries(MigrationState.DELETED, threshold)
        if result.is_err():
            return Err(LedgerUnavailableError.from_storage("purge_expired", result.error))
        purged = result.unwrap()
        if purged:
            logger.info(
                "Purged expired ledger entries",
                extra={"purged": purged, "grace_days": grace_days},
            )
        return Ok(purged)
