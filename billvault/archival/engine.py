"""
Archival Migration Engine: Copy-Verify-Delete from Hot to Cold Tier

Moves records with timestamp <= cutoff from the hot store to the cold
store without losing or duplicating any record.

Per-record protocol:
    1. Ledger entry created as PENDING when first seen
    2. PENDING → COPY_IN_FLIGHT, then overwrite-safe cold put at the
       deterministic key
    3. Read the object back and compare SHA-256 with the encoded record
    4. Re-read the hot record before the copy and again after verification;
       a version change since the scan re-queues it, and a record deleted
       before the copy is skipped without writing to the cold tier
    5. COPY_IN_FLIGHT → VERIFIED, then delete the hot record only if its
       version is still the scanned one
    6. VERIFIED → DELETED

Failure model:
    - Transient store errors: backoff and retry within the pass; every
      failed attempt is counted on the ledger entry
    - Corruption: never deletes, counted, retried on the next pass
    - attempts >= max_attempts: QUARANTINED, record stays in the hot store
    - Ledger unavailable: the pass stops (no blind transitions); the
      process keeps running and the next pass resumes from the ledger

Concurrency:
    One pass at a time (PassLease). Within a pass a bounded worker pool
    processes records in parallel; the steps of one record are sequential.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from billvault.archival.lease import LeaseHandle, PassLease
from billvault.core import constants as C
from billvault.core.config import ArchivalConfig
from billvault.core.errors import (
    BillVaultError,
    CorruptionError,
    InvalidTransitionError,
    LedgerUnavailableError,
    QuarantinedError,
    StorageError,
)
from billvault.core.types import Result
from billvault.ledger import ArchivalRun, LedgerEntry, MigrationLedger, MigrationState
from billvault.observability.logging import StructuredLogger
from billvault.observability.metrics import ArchivalMetrics
from billvault.records.codec import cold_key, decode_record, encode_record, record_checksum
from billvault.records.model import StoredRecord
from billvault.reliability.retry import RetryPolicy, retry_with_backoff
from billvault.storage.protocols import ColdStoreProtocol, DeleteOutcome, HotStoreProtocol

logger = StructuredLogger(__name__)


def cutoff_for_retention(
    now: Optional[datetime] = None,
    retention_days: int = C.DEFAULT_RETENTION_DAYS,
) -> datetime:
    """Cutoff that archives records older than retention_days."""
    if retention_days < 0:
        raise ValueError("retention_days must be >= 0")
    return (now or datetime.now(timezone.utc)) - timedelta(days=retention_days)


def _as_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


# =============================================================================
# RECORD OUTCOMES
# =============================================================================
class RecordOutcome(Enum):
    """What one pass did with one candidate record."""
    MIGRATED = "migrated"          # Reached DELETED
    SKIPPED = "skipped"            # Already terminal in the ledger
    REQUEUED = "requeued"          # Late write detected; next pass
    FAILED = "failed"              # Attempt counted; next pass
    QUARANTINED = "quarantined"    # Retry budget exhausted


@dataclass
class _PassCounters:
    scanned: int = 0
    migrated: int = 0
    failed: int = 0
    skipped: int = 0
    requeued: int = 0
    quarantined: int = 0
    reconciled: int = 0
    aborted: bool = False
    deadline_exceeded: bool = False

    def count(self, outcome: RecordOutcome) -> None:
        if outcome is RecordOutcome.MIGRATED:
            self.migrated += 1
        elif outcome is RecordOutcome.SKIPPED:
            self.skipped += 1
        elif outcome is RecordOutcome.REQUEUED:
            self.requeued += 1
        elif outcome is RecordOutcome.FAILED:
            self.failed += 1
        elif outcome is RecordOutcome.QUARANTINED:
            self.quarantined += 1


@dataclass
class _RecordProgress:
    """Working state of one record across in-pass attempts."""
    stored: StoredRecord
    entry: LedgerEntry
    key: str
    data: bytes
    expected: str  # sha256 hex of data


class _Requeue(Exception):
    """Hot record changed after the candidate scan."""


class _SourceGone(Exception):
    """Hot record removed after the candidate scan, before any copy."""


# =============================================================================
# ARCHIVAL ENGINE
# =============================================================================
class ArchivalEngine:
    """
    Scheduled hot → cold migration.

    Usage:
        engine = ArchivalEngine(hot, cold, MigrationLedger(ledger_store),
                                lease=PassLease(lease_backend))
        run = await engine.run_archival_pass(cutoff_for_retention())
    """

    __slots__ = (
        "_hot", "_cold", "_ledger", "_lease", "_config",
        "_retry_policy", "_metrics",
    )

    def __init__(
        self,
        hot: HotStoreProtocol,
        cold: ColdStoreProtocol,
        ledger: MigrationLedger,
        lease: Optional[PassLease] = None,
        config: Optional[ArchivalConfig] = None,
        metrics: Optional[ArchivalMetrics] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._hot = hot
        self._cold = cold
        self._ledger = ledger
        self._lease = lease
        self._config = config or ArchivalConfig()
        self._metrics = metrics or ArchivalMetrics()
        self._retry_policy = retry_policy or RetryPolicy(
            max_retries=self._config.retry_max_retries,
            base_delay_ms=self._config.retry_base_delay_ms,
            max_delay_ms=self._config.retry_max_delay_ms,
        )

    @property
    def config(self) -> ArchivalConfig:
        return self._config

    # -------------------------------------------------------------------------
    # Pass Orchestration
    # -------------------------------------------------------------------------

    async def run_archival_pass(self, cutoff: datetime) -> ArchivalRun:
        """
        Archive every hot record with timestamp <= cutoff.

        Idempotent: re-running with the same cutoff after a complete pass
        writes nothing. Per-record failures never abort the pass; ledger
        unavailability ends it early with aborted=True.

        Raises:
            LeaseError: Another pass holds the archival lease, or the lease
                backend failed (see LeaseError.is_contention).
        """
        cutoff = _as_utc(cutoff)
        if self._lease is None:
            return await self._run(cutoff, None)
        acquired = await self._lease.try_acquire()
        if acquired.is_err():
            if acquired.error.is_contention:
                logger.info("Archival pass skipped: lease held", reason=acquired.error.message)
            else:
                logger.error("Archival pass not started: lease backend failed", error=acquired.error.message)
            raise acquired.error

        handle = acquired.unwrap()
        try:
            return await self._run(cutoff, handle)
        finally:
            await handle.release()

    async def _run(self, cutoff: datetime, handle: Optional[LeaseHandle]) -> ArchivalRun:
        run = ArchivalRun(cutoff=cutoff)
        counters = _PassCounters()
        started = time.perf_counter()

        with logger.context(run_id=run.run_id):
            logger.info("Archival pass started", cutoff=cutoff.isoformat())

            start_result = await self._ledger.record_run(run)
            if start_result.is_err():
                counters.aborted = True
                logger.error(
                    "Ledger unavailable, archival pass aborted",
                    error=start_result.error.message,
                )
            else:
                await self._execute_with_deadline(cutoff, counters, handle)

                if not counters.aborted:
                    purge = await self._ledger.purge_expired(self._config.ledger_grace_days)
                    if purge.is_err():
                        logger.warning("Ledger purge failed", error=purge.error.message)

            finished = replace(
                run,
                finished_at=datetime.now(timezone.utc),
                scanned=counters.scanned,
                migrated=counters.migrated,
                failed=counters.failed,
                skipped=counters.skipped,
                requeued=counters.requeued,
                quarantined=counters.quarantined,
                reconciled=counters.reconciled,
                aborted=counters.aborted,
                deadline_exceeded=counters.deadline_exceeded,
            )
            if not start_result.is_err():
                finish_result = await self._ledger.record_run(finished)
                if finish_result.is_err():
                    logger.error("Failed to record archival run", error=finish_result.error.message)

            elapsed = time.perf_counter() - started
            self._metrics.pass_duration.observe(elapsed)
            self._metrics.passes.inc(status=self._status(finished))
            logger.info(
                "Archival pass finished",
                duration_seconds=round(elapsed, 3),
                scanned=finished.scanned,
                migrated=finished.migrated,
                failed=finished.failed,
                skipped=finished.skipped,
                requeued=finished.requeued,
                quarantined=finished.quarantined,
                reconciled=finished.reconciled,
                aborted=finished.aborted,
                deadline_exceeded=finished.deadline_exceeded,
            )
        return finished

    @staticmethod
    def _status(run: ArchivalRun) -> str:
        if run.aborted:
            return "aborted"
        if run.deadline_exceeded:
            return "deadline_exceeded"
        return "completed"

    async def _execute_with_deadline(
        self,
        cutoff: datetime,
        counters: _PassCounters,
        handle: Optional[LeaseHandle],
    ) -> None:
        try:
            if self._config.pass_deadline_seconds is None:
                await self._execute(cutoff, counters, handle)
            else:
                await asyncio.wait_for(
                    self._execute(cutoff, counters, handle),
                    timeout=self._config.pass_deadline_seconds,
                )
        except asyncio.TimeoutError:
            counters.deadline_exceeded = True
            logger.warning(
                "Archival pass deadline exceeded; in-flight records resume next pass",
                deadline_seconds=self._config.pass_deadline_seconds,
            )
        except LedgerUnavailableError as e:
            counters.aborted = True
            logger.error("Ledger unavailable, archival pass aborted", error=e.message)

    async def _execute(
        self,
        cutoff: datetime,
        counters: _PassCounters,
        handle: Optional[LeaseHandle],
    ) -> None:
        if self._config.reconcile_in_flight:
            await self._reconcile(counters)

        queue: asyncio.Queue[Optional[StoredRecord]] = asyncio.Queue(
            maxsize=self._config.worker_count * 2,
        )
        tasks = [asyncio.create_task(self._produce(cutoff, queue, counters, handle))]
        tasks.extend(
            asyncio.create_task(self._work(cutoff, queue, counters))
            for _ in range(self._config.worker_count)
        )

        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for task in done:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()

    async def _produce(
        self,
        cutoff: datetime,
        queue: asyncio.Queue[Optional[StoredRecord]],
        counters: _PassCounters,
        handle: Optional[LeaseHandle],
    ) -> None:
        """Feed the workers, then one stop sentinel per worker."""
        await self._scan(cutoff, queue, counters, handle)
        for _ in range(self._config.worker_count):
            await queue.put(None)

    async def _scan(
        self,
        cutoff: datetime,
        queue: asyncio.Queue[Optional[StoredRecord]],
        counters: _PassCounters,
        handle: Optional[LeaseHandle],
    ) -> None:
        """Page through eligible hot records."""
        cursor: Optional[str] = None
        while True:
            page = await retry_with_backoff(
                lambda: self._hot.query_by_timestamp(
                    cutoff, limit=self._config.page_size, cursor=cursor,
                ),
                self._retry_policy,
                operation="query_by_timestamp",
            )
            if page.is_err():
                counters.aborted = True
                logger.error("Hot store scan failed, pass ends early", error=str(page.error))
                return

            records, cursor = page.unwrap()
            for stored in records:
                if handle is not None and handle.lost:
                    counters.aborted = True
                    logger.error("Archival lease lost, pass ends early")
                    return
                counters.scanned += 1
                await queue.put(stored)

            if cursor is None:
                return

    async def _work(
        self,
        cutoff: datetime,
        queue: asyncio.Queue[Optional[StoredRecord]],
        counters: _PassCounters,
    ) -> None:
        while True:
            stored = await queue.get()
            if stored is None:
                return
            outcome = await self.process_record(stored, cutoff)
            counters.count(outcome)
            self._metrics.records.inc(outcome=outcome.value)

    # -------------------------------------------------------------------------
    # Per-Record Protocol
    # -------------------------------------------------------------------------

    async def process_record(self, stored: StoredRecord, cutoff: datetime) -> RecordOutcome:
        """
        Run copy-verify-delete for one scanned record.

        Raises:
            LedgerUnavailableError: Ledger store failed; the pass must stop.
        """
        record = stored.record
        with logger.context(customer_id=record.customer_id, record_id=record.id):
            if record.timestamp > _as_utc(cutoff):
                return RecordOutcome.SKIPPED
            try:
                return await self._process(stored)
            except InvalidTransitionError as e:
                logger.error("Ledger rejected transition", error=e.message)
                return RecordOutcome.FAILED

    async def _process(self, stored: StoredRecord) -> RecordOutcome:
        record = stored.record
        entry = _unwrap(await self._ledger.get(record.customer_id, record.id))

        if entry is not None and entry.state is MigrationState.QUARANTINED:
            logger.debug("Record quarantined, skipping")
            return RecordOutcome.SKIPPED
        if entry is not None and entry.state is MigrationState.DELETED:
            logger.warning("Hot record present for an archived identity, skipping")
            return RecordOutcome.SKIPPED

        key = cold_key(record)
        if entry is None:
            entry = _unwrap(await self._ledger.upsert(
                LedgerEntry.pending(record.customer_id, record.id, key)
            ))

        try:
            data = encode_record(record)
        except (TypeError, ValueError) as e:
            await self._quarantine_entry(entry, f"record cannot be encoded: {e}")
            return RecordOutcome.QUARANTINED

        progress = _RecordProgress(
            stored=stored,
            entry=entry,
            key=key,
            data=data,
            expected=record_checksum(data).to_hex(),
        )

        policy = self._retry_policy
        retry = 0
        while True:
            try:
                await self._attempt(progress)
                return RecordOutcome.MIGRATED
            except _Requeue:
                return RecordOutcome.REQUEUED
            except _SourceGone:
                await self._source_gone(progress.entry)
                return RecordOutcome.SKIPPED
            except (StorageError, CorruptionError) as error:
                progress.entry = await self._record_failure(progress.entry, error)
                if progress.entry.state is MigrationState.QUARANTINED:
                    return RecordOutcome.QUARANTINED
                retryable = isinstance(error, StorageError) and error.is_transient
                if not retryable or retry >= policy.max_retries:
                    return RecordOutcome.FAILED
                delay_ms = policy.backoff_ms(retry)
                retry += 1
                await asyncio.sleep(delay_ms / 1000)

    async def _attempt(self, progress: _RecordProgress) -> None:
        """
        One copy-verify-delete attempt. Ledger progress is written back to
        progress.entry as it happens.

        Raises:
            StorageError: Transient or permanent store failure.
            CorruptionError: Cold read-back mismatch.
            _Requeue: Late write detected.
            _SourceGone: Hot record deleted before the copy.
        """
        stored = progress.stored
        record = stored.record
        key = progress.key

        # Source check: the scanned snapshot is copied only while the hot
        # tier still holds that exact version
        source = _raise_err(await self._hot.get(record.customer_id, record.id))
        if source is None:
            raise _SourceGone()
        if source.version != stored.version:
            logger.info(
                "Hot record rewritten before copy, re-queued",
                scanned_version=stored.version,
                current_version=source.version,
            )
            raise _Requeue()

        if progress.entry.state is MigrationState.PENDING:
            progress.entry = _unwrap(await self._ledger.transition(
                progress.entry, MigrationState.COPY_IN_FLIGHT,
            ))

        # Copy
        _raise_err(await self._cold.put(key, progress.data, overwrite=True))

        # Verify
        read_back = _raise_err(await self._cold.get(key))
        actual = record_checksum(read_back).to_hex() if read_back is not None else None
        if actual != progress.expected:
            error = CorruptionError.checksum_mismatch(key, progress.expected, actual)
            logger.error("Cold copy failed verification", cold_key=key, error=error.message)
            raise error

        # Late-write guard
        current = _raise_err(await self._hot.get(record.customer_id, record.id))
        if current is not None and current.version != stored.version:
            logger.info(
                "Hot record rewritten after scan, re-queued",
                scanned_version=stored.version,
                current_version=current.version,
            )
            raise _Requeue()

        if progress.entry.state is MigrationState.COPY_IN_FLIGHT:
            progress.entry = _unwrap(await self._ledger.transition(
                progress.entry, MigrationState.VERIFIED,
            ))

        # Delete
        outcome = _raise_err(await self._hot.delete_if_version(
            record.customer_id, record.id, stored.version,
        ))
        if outcome is DeleteOutcome.VERSION_MISMATCH:
            logger.info("Hot record rewritten before delete, re-queued", scanned_version=stored.version)
            raise _Requeue()
        if outcome is DeleteOutcome.NOT_FOUND:
            logger.info("Hot record already gone; cold copy is verified")

        progress.entry = _unwrap(await self._ledger.transition(
            progress.entry, MigrationState.DELETED,
        ))
        logger.debug("Record archived", cold_key=key)

    async def _source_gone(self, entry: LedgerEntry) -> None:
        if entry.state is MigrationState.PENDING:
            _unwrap(await self._ledger.discard(entry))
            logger.info("Hot record already gone before copy, skipped")
            return
        # An earlier attempt may have written a cold object
        logger.warning(
            "Hot record gone with migration in progress, left for reconciliation",
            state=entry.state.name,
        )

    async def _record_failure(self, entry: LedgerEntry, error: BillVaultError) -> LedgerEntry:
        """Count a failed attempt; quarantine once the budget is spent."""
        entry = _unwrap(await self._ledger.transition(
            entry, entry.state, error=error.message, count_attempt=True,
        ))
        if entry.attempts >= self._config.max_attempts:
            return await self._quarantine_entry(entry, error.message)
        logger.warning(
            "Archival attempt failed",
            attempts=entry.attempts,
            error_code=error.code.name,
            error=error.message,
        )
        return entry

    async def _quarantine_entry(self, entry: LedgerEntry, reason: str) -> LedgerEntry:
        entry = _unwrap(await self._ledger.transition(
            entry, MigrationState.QUARANTINED, error=reason,
        ))
        error = QuarantinedError.budget_exhausted(
            entry.customer_id, entry.record_id, entry.attempts, reason,
        )
        logger.error(
            "Record quarantined, operator review required",
            attempts=entry.attempts,
            error=error.message,
            error_id=error.error_id,
        )
        return entry

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    async def _reconcile(self, counters: _PassCounters) -> None:
        """
        Finish entries whose hot record is gone after a crash.

        A COPY_IN_FLIGHT or VERIFIED entry without a hot record advances to
        DELETED when the cold object decodes to the same identity.
        """
        for state in (MigrationState.COPY_IN_FLIGHT, MigrationState.VERIFIED):
            async for entry in self._ledger.list_by_state(state):
                if await self._reconcile_entry(entry):
                    counters.reconciled += 1
                    self._metrics.records.inc(outcome="reconciled")

    async def _reconcile_entry(self, entry: LedgerEntry) -> bool:
        with logger.context(customer_id=entry.customer_id, record_id=entry.record_id):
            hot = await self._hot.get(entry.customer_id, entry.record_id)
            if hot.is_err():
                logger.warning("Reconciliation skipped: hot store error", error=hot.error.message)
                return False
            if hot.unwrap() is not None:
                # Still in the hot tier; the scan handles it
                return False

            key = entry.cold_key
            if key is None:
                found = await self._cold.find_key(entry.customer_id, entry.record_id)
                if found.is_err():
                    logger.warning("Reconciliation skipped: cold store error", error=found.error.message)
                    return False
                key = found.unwrap()

            data = None
            if key is not None:
                fetched = await self._cold.get(key)
                if fetched.is_err():
                    logger.warning("Reconciliation skipped: cold store error", error=fetched.error.message)
                    return False
                data = fetched.unwrap()

            if data is None:
                logger.warning("Stale in-flight entry has no hot or cold copy", state=entry.state.name)
                return False

            decoded = decode_record(data)
            if decoded.is_err() or decoded.unwrap().identity != entry.identity:
                logger.error("Stale in-flight entry has an unreadable cold object", cold_key=key)
                return False

            try:
                if entry.state is MigrationState.COPY_IN_FLIGHT:
                    entry = _unwrap(await self._ledger.transition(entry, MigrationState.VERIFIED))
                _unwrap(await self._ledger.transition(entry, MigrationState.DELETED))
            except InvalidTransitionError as e:
                logger.error("Ledger rejected reconciliation", error=e.message)
                return False

            logger.info("Reconciled stale in-flight entry", cold_key=key)
            return True


# =============================================================================
# RESULT HELPERS
# =============================================================================
def _unwrap(result: Result):
    """Ledger results: raise the error (LedgerUnavailable stops the pass)."""
    if result.is_err():
        raise result.error
    return result.unwrap()


def _raise_err(result: Result):
    """Store results: raise the StorageError for the attempt loop."""
    if result.is_err():
        raise result.error
    return result.unwrap()
