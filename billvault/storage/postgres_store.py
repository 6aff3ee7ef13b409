"""
PostgreSQL Ledger Store

Durable storage for the migration ledger and archival run history.

Provides:
- Connection pooling via asyncpg with min/max bounds
- Idempotent schema creation
- Upserts with INSERT ... ON CONFLICT DO UPDATE
- Keyset pagination for list_entries (restartable, never stale)

Tables:
- migration_ledger: one row per (customer_id, record_id)
- archival_runs: one row per archival pass

Complexity:
- get_entry / put_entry: O(log n) primary key
- list_entries: O(log n + limit) via (state, customer_id, record_id) index
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Optional

from billvault.core.errors import StorageError
from billvault.core.types import Result, Ok, Err, Timestamp
from billvault.ledger.models import ArchivalRun, LedgerEntry, MigrationState
from billvault.storage.config import PostgresConfig

logger = logging.getLogger(__name__)

BACKEND_NAME = "postgres"


# ==========================================================================
# SCHEMA
# ==========================================================================

MIGRATION_LEDGER_DDL = """
CREATE TABLE IF NOT EXISTS migration_ledger (
    customer_id TEXT NOT NULL,
    record_id TEXT NOT NULL,

    -- PENDING | COPY_IN_FLIGHT | VERIFIED | DELETED | QUARANTINED
    state VARCHAR(32) NOT NULL,
    attempts INT NOT NULL DEFAULT 0,
    last_error TEXT,
    cold_key TEXT,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),

    PRIMARY KEY (customer_id, record_id)
);

CREATE INDEX IF NOT EXISTS idx_migration_ledger_state
    ON migration_ledger (state, customer_id, record_id);

CREATE INDEX IF NOT EXISTS idx_migration_ledger_state_updated
    ON migration_ledger (state, updated_at);
"""

ARCHIVAL_RUNS_DDL = """
CREATE TABLE IF NOT EXISTS archival_runs (
    run_id TEXT PRIMARY KEY,
    cutoff TIMESTAMPTZ NOT NULL,
    started_at TIMESTAMPTZ NOT NULL,
    finished_at TIMESTAMPTZ,
    scanned INT NOT NULL DEFAULT 0,
    migrated INT NOT NULL DEFAULT 0,
    failed INT NOT NULL DEFAULT 0,
    skipped INT NOT NULL DEFAULT 0,
    requeued INT NOT NULL DEFAULT 0,
    quarantined INT NOT NULL DEFAULT 0,
    reconciled INT NOT NULL DEFAULT 0,
    aborted BOOLEAN NOT NULL DEFAULT FALSE,
    deadline_exceeded BOOLEAN NOT NULL DEFAULT FALSE
);

CREATE INDEX IF NOT EXISTS idx_archival_runs_started
    ON archival_runs (started_at DESC);
"""

UPSERT_ENTRY_SQL = """
INSERT INTO migration_ledger
    (customer_id, record_id, state, attempts, last_error, cold_key, updated_at)
VALUES ($1, $2, $3, $4, $5, $6, $7)
ON CONFLICT (customer_id, record_id) DO UPDATE SET
    state = EXCLUDED.state,
    attempts = EXCLUDED.attempts,
    last_error = EXCLUDED.last_error,
    cold_key = COALESCE(EXCLUDED.cold_key, migration_ledger.cold_key),
    updated_at = EXCLUDED.updated_at
"""

UPSERT_RUN_SQL = """
INSERT INTO archival_runs
    (run_id, cutoff, started_at, finished_at, scanned, migrated, failed,
     skipped, requeued, quarantined, reconciled, aborted, deadline_exceeded)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
ON CONFLICT (run_id) DO UPDATE SET
    finished_at = EXCLUDED.finished_at,
    scanned = EXCLUDED.scanned,
    migrated = EXCLUDED.migrated,
    failed = EXCLUDED.failed,
    skipped = EXCLUDED.skipped,
    requeued = EXCLUDED.requeued,
    quarantined = EXCLUDED.quarantined,
    reconciled = EXCLUDED.reconciled,
    aborted = EXCLUDED.aborted,
    deadline_exceeded = EXCLUDED.deadline_exceeded
"""


# ==========================================================================
# ROW MAPPING
# ==========================================================================

def _entry_from_row(row: Any) -> LedgerEntry:
    return LedgerEntry(
        customer_id=row["customer_id"],
        record_id=row["record_id"],
        state=MigrationState[row["state"]],
        attempts=row["attempts"],
        last_error=row["last_error"],
        updated_at=row["updated_at"],
        cold_key=row["cold_key"],
    )


def _run_from_row(row: Any) -> ArchivalRun:
    return ArchivalRun(
        run_id=row["run_id"],
        cutoff=row["cutoff"],
        started_at=row["started_at"],
        finished_at=row["finished_at"],
        scanned=row["scanned"],
        migrated=row["migrated"],
        failed=row["failed"],
        skipped=row["skipped"],
        requeued=row["requeued"],
        quarantined=row["quarantined"],
        reconciled=row["reconciled"],
        aborted=row["aborted"],
        deadline_exceeded=row["deadline_exceeded"],
    )


@dataclass
class ConnectionStats:
    """Connection pool statistics for observability."""

    total_queries: int = 0
    failed_queries: int = 0
    avg_query_time_ns: float = 0.0


# ==========================================================================
# LEDGER STORE
# ==========================================================================

class PostgresLedgerStore:
    """
    PostgreSQL implementation of LedgerStoreProtocol.

    Thread Safety: All operations are coroutine-safe.

    Usage:
        result = await PostgresLedgerStore.create(config)
        store = result.unwrap()
        await store.put_entry(entry)
        await store.close()
    """

    __slots__ = ("_config", "_pool", "_stats", "_closed")

    def __init__(self, config: PostgresConfig) -> None:
        self._config = config
        self._pool: Optional[Any] = None  # asyncpg.Pool
        self._stats = ConnectionStats()
        self._closed = False

    @classmethod
    async def create(cls, config: PostgresConfig) -> Result[PostgresLedgerStore, StorageError]:
        """
        Factory method: open the pool and ensure the schema exists.
        """
        store = cls(config)
        result = await store._initialize_pool()
        if result.is_err():
            return result
        schema = await store.ensure_schema()
        if schema.is_err():
            await store.close()
            return schema
        return Ok(store)

    async def _initialize_pool(self) -> Result[None, StorageError]:
        """Initialize connection pool with config parameters."""
        import asyncpg

        start = Timestamp.now()
        try:
            self._pool = await asyncpg.create_pool(
                host=self._config.host,
                port=self._config.port,
                database=self._config.database,
                user=self._config.user,
                password=self._config.password,
                min_size=self._config.pool_min,
                max_size=self._config.pool_max,
                command_timeout=self._config.query_timeout_ms / 1000,
                server_settings={"search_path": self._config.schema},
                statement_cache_size=100,
            )

            async with self._pool.acquire() as conn:
                await conn.execute("SELECT 1")

            logger.info(
                "Ledger store initialized",
                extra={
                    "host": self._config.host,
                    "port": self._config.port,
                    "pool_size": f"{self._config.pool_min}-{self._config.pool_max}",
                },
            )
            return Ok(None)
        except Exception as e:
            return Err(self._map_error("connect", e, start))

    async def ensure_schema(self) -> Result[None, StorageError]:
        """Create tables and indexes (idempotent)."""
        start = Timestamp.now()
        try:
            async with self._connection() as conn:
                async with conn.transaction():
                    await conn.execute(MIGRATION_LEDGER_DDL)
                    await conn.execute(ARCHIVAL_RUNS_DDL)
            return Ok(None)
        except Exception as e:
            return Err(self._map_error("ensure_schema", e, start))

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[Any]:
        if self._closed or self._pool is None:
            raise ConnectionError("ledger store is closed")
        start = Timestamp.now()
        try:
            async with self._pool.acquire() as conn:
                yield conn
        finally:
            self._update_stats(Timestamp.now() - start)

    def _map_error(self, operation: str, exc: BaseException, start: Timestamp) -> StorageError:
        self._stats.failed_queries += 1
        elapsed_ms = int((Timestamp.now() - start) / 1_000_000)
        if isinstance(exc, asyncio.TimeoutError) or "timeout" in str(exc).lower():
            return StorageError.timeout(BACKEND_NAME, operation, elapsed_ms, exc)
        return StorageError.connection_failed(BACKEND_NAME, operation, exc)

    def _update_stats(self, elapsed_ns: int) -> None:
        """Exponential moving average for query time."""
        alpha = 0.1
        self._stats.total_queries += 1
        self._stats.avg_query_time_ns = (
            alpha * elapsed_ns +
            (1 - alpha) * self._stats.avg_query_time_ns
        )

    @property
    def stats(self) -> ConnectionStats:
        return self._stats

    # -------------------------------------------------------------------------
    # LEDGER ENTRIES
    # -------------------------------------------------------------------------

    async def get_entry(
        self,
        customer_id: str,
        record_id: str,
    ) -> Result[Optional[LedgerEntry], StorageError]:
        start = Timestamp.now()
        try:
            async with self._connection() as conn:
                row = await conn.fetchrow(
                    "SELECT * FROM migration_ledger WHERE customer_id = $1 AND record_id = $2",
                    customer_id, record_id,
                )
        except Exception as e:
            return Err(self._map_error("get_entry", e, start))
        return Ok(_entry_from_row(row) if row else None)

    async def put_entry(self, entry: LedgerEntry) -> Result[None, StorageError]:
        start = Timestamp.now()
        try:
            async with self._connection() as conn:
                await conn.execute(
                    UPSERT_ENTRY_SQL,
                    entry.customer_id,
                    entry.record_id,
                    entry.state.name,
                    entry.attempts,
                    entry.last_error,
                    entry.cold_key,
                    entry.updated_at,
                )
        except Exception as e:
            return Err(self._map_error("put_entry", e, start))
        return Ok(None)

    async def list_entries(
        self,
        state: MigrationState,
        limit: int = 100,
        cursor: Optional[str] = None,
    ) -> Result[tuple[list[LedgerEntry], Optional[str]], StorageError]:
        """Keyset pagination over (customer_id, record_id)."""
        start = Timestamp.now()
        after_customer, after_record = ("", "")
        if cursor:
            after_customer, after_record = cursor.split("/", 1)
        try:
            async with self._connection() as conn:
                rows = await conn.fetch(
                    """
                    SELECT * FROM migration_ledger
                    WHERE state = $1 AND (customer_id, record_id) > ($2, $3)
                    ORDER BY customer_id, record_id
                    LIMIT $4
                    """,
                    state.name, after_customer, after_record, limit + 1,
                )
        except Exception as e:
            return Err(self._map_error("list_entries", e, start))

        entries = [_entry_from_row(row) for row in rows[:limit]]
        next_cursor = None
        if len(rows) > limit and entries:
            last = entries[-1]
            next_cursor = f"{last.customer_id}/{last.record_id}"
        return Ok((entries, next_cursor))

    async def delete_entry(
        self,
        customer_id: str,
        record_id: str,
    ) -> Result[bool, StorageError]:
        start = Timestamp.now()
        try:
            async with self._connection() as conn:
                status = await conn.execute(
                    "DELETE FROM migration_ledger WHERE customer_id = $1 AND record_id = $2",
                    customer_id, record_id,
                )
        except Exception as e:
            return Err(self._map_error("delete_entry", e, start))
        return Ok(status.endswith(" 1"))

    async def purge_entries(
        self,
        state: MigrationState,
        updated_before: datetime,
    ) -> Result[int, StorageError]:
        start = Timestamp.now()
        try:
            async with self._connection() as conn:
                status = await conn.execute(
                    "DELETE FROM migration_ledger WHERE state = $1 AND updated_at < $2",
                    state.name, updated_before,
                )
        except Exception as e:
            return Err(self._map_error("purge_entries", e, start))
        # asyncpg returns the command tag, e.g. "DELETE 42"
        return Ok(int(status.rsplit(" ", 1)[-1]))

    # -------------------------------------------------------------------------
    # ARCHIVAL RUNS
    # -------------------------------------------------------------------------

    async def put_run(self, run: ArchivalRun) -> Result[None, StorageError]:
        start = Timestamp.now()
        try:
            async with self._connection() as conn:
                await conn.execute(
                    UPSERT_RUN_SQL,
                    run.run_id,
                    run.cutoff,
                    run.started_at,
                    run.finished_at,
                    run.scanned,
                    run.migrated,
                    run.failed,
                    run.skipped,
                    run.requeued,
                    run.quarantined,
                    run.reconciled,
                    run.aborted,
                    run.deadline_exceeded,
                )
        except Exception as e:
            return Err(self._map_error("put_run", e, start))
        return Ok(None)

    async def list_runs(self, limit: int = 20) -> Result[list[ArchivalRun], StorageError]:
        start = Timestamp.now()
        try:
            async with self._connection() as conn:
                rows = await conn.fetch(
                    "SELECT * FROM archival_runs ORDER BY started_at DESC LIMIT $1",
                    limit,
                )
        except Exception as e:
            return Err(self._map_error("list_runs", e, start))
        return Ok([_run_from_row(row) for row in rows])

    # -------------------------------------------------------------------------
    # LIFECYCLE
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Close connection pool and release resources."""
        if self._closed:
            return
        self._closed = True
        if self._pool is not None:
            await self._pool.close()
            logger.info("Ledger store closed")

    async def __aenter__(self) -> PostgresLedgerStore:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


__all__ = [
    "PostgresLedgerStore",
    "MIGRATION_LEDGER_DDL",
    "ARCHIVAL_RUNS_DDL",
]
