"""
Unified Read Router: One get() Across Hot Store, Cache and Cold Store

Resolution order:
    1. Hot store point read; present means authoritative
    2. Cold Read Cache by deterministic cold key
    3. Cold store read by key; populates the cache
    4. Double miss: the ledger decides between NotFound and Unavailable

Every store call runs under its own timeout. A timeout or store error is
never reported as absence; it becomes Unavailable.

Cold key resolution:
    With an event-time hint the key is derived directly. Without one the
    router asks the cache identity index, then the ledger entry, and only
    then has the cold store search the customer's months.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime
from typing import Any, Awaitable, Optional

from billvault.cache.cold_cache import ColdReadCache
from billvault.core import constants as C
from billvault.core.config import ReadConfig
from billvault.core.errors import (
    RecordNotFoundError,
    RecordUnavailableError,
    StorageError,
)
from billvault.core.types import Result, Ok, Err
from billvault.ledger import LedgerEntry, MigrationLedger, MigrationState
from billvault.observability.logging import StructuredLogger
from billvault.observability.metrics import ReadMetrics
from billvault.records.codec import cold_key_for, decode_record
from billvault.records.model import BillingRecord, validate_identifier
from billvault.reliability.retry import RetryPolicy, retry_with_backoff
from billvault.router.results import Found, NotFound, ReadResult, Tier, Unavailable
from billvault.storage.protocols import ColdStoreProtocol, HotStoreProtocol

logger = StructuredLogger(__name__)


class ReadRouter:
    """
    Stateless per-request read path; the cache is the only shared state.

    Usage:
        router = ReadRouter(hot, cold, MigrationLedger(ledger_store), cache)
        result = await router.get_record("customer123", "abcde123")
        match result:
            case Found(record=record): ...
            case Unavailable(reason=reason): ...
            case NotFound(): ...
    """

    __slots__ = ("_hot", "_cold", "_ledger", "_cache", "_config", "_metrics")

    def __init__(
        self,
        hot: HotStoreProtocol,
        cold: ColdStoreProtocol,
        ledger: MigrationLedger,
        cache: Optional[ColdReadCache] = None,
        config: Optional[ReadConfig] = None,
        metrics: Optional[ReadMetrics] = None,
    ) -> None:
        self._hot = hot
        self._cold = cold
        self._ledger = ledger
        self._cache = cache
        self._config = config or ReadConfig()
        self._metrics = metrics or ReadMetrics()

    async def get_record(
        self,
        customer_id: str,
        record_id: str,
        timestamp: Optional[datetime] = None,
    ) -> ReadResult:
        """
        Resolve a record across tiers.

        Args:
            customer_id: Partition key.
            record_id: Record identifier.
            timestamp: Optional event-time hint; lets the cold key be
                derived without a listing.

        Raises:
            ValueError: Malformed identifiers.
        """
        validate_identifier("customer_id", customer_id)
        validate_identifier("id", record_id)

        started = time.perf_counter()
        with logger.context(customer_id=customer_id, record_id=record_id):
            result = await self._resolve(customer_id, record_id, timestamp)
            self._observe(result, time.perf_counter() - started)
        return result

    async def get_billing_record(
        self,
        record_id: str,
        customer_id: str,
        timestamp: Optional[datetime] = None,
    ) -> BillingRecord:
        """
        Caller-facing read API.

        Unavailable results are retried with backoff before giving up.

        Raises:
            RecordNotFoundError: Absent from both tiers with no pending migration.
            RecordUnavailableError: Still unavailable after the retry budget.
        """
        async def attempt() -> Result[BillingRecord, Any]:
            result = await self.get_record(customer_id, record_id, timestamp)
            if isinstance(result, Found):
                return Ok(result.record)
            if isinstance(result, NotFound):
                return Err(RecordNotFoundError.for_record(customer_id, record_id))
            return Err(RecordUnavailableError.for_record(customer_id, record_id, result.reason))

        base = self._config.unavailable_base_delay_ms
        policy = RetryPolicy(
            max_retries=self._config.unavailable_retries,
            base_delay_ms=base,
            max_delay_ms=max(base, C.RETRY_MAX_DELAY_MS),
        )
        outcome = await retry_with_backoff(
            attempt,
            policy,
            should_retry=lambda error: isinstance(error, RecordUnavailableError),
            operation="get_billing_record",
        )
        if outcome.is_err():
            raise outcome.error
        return outcome.unwrap()

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    async def _resolve(
        self,
        customer_id: str,
        record_id: str,
        timestamp: Optional[datetime],
    ) -> ReadResult:
        # 1. Hot store
        hot = await self._bounded(
            self._hot.get(customer_id, record_id),
            self._config.hot_timeout_s, "hot", "get",
        )
        if hot.is_ok() and hot.unwrap() is not None:
            return Found(hot.unwrap().record, Tier.HOT)
        hot_error = hot.error if hot.is_err() else None

        # 2. Cache
        key = cold_key_for(customer_id, record_id, timestamp) if timestamp is not None else None
        if self._cache is not None:
            if key is None:
                key = await self._cached_key(customer_id, record_id)
            if key is not None:
                cached = await self._from_cache(key, customer_id, record_id)
                if cached is not None:
                    return Found(cached, Tier.CACHE)

        # 3. Cold store, keyed by the ledger entry before any listing
        entry: Optional[Result[Optional[LedgerEntry], Any]] = None
        if key is None:
            entry = await self._ledger_entry(customer_id, record_id)
            if entry.is_ok() and entry.unwrap() is not None:
                key = entry.unwrap().cold_key

        cold = await self._from_cold(key, customer_id, record_id)
        if isinstance(cold, Unavailable):
            return self._unavailable(cold.reason, cold.cause)
        if cold is not None:
            return cold

        if hot_error is not None:
            return self._unavailable("hot store unavailable", hot_error)

        # 4. Double miss: ledger disambiguation
        if entry is None:
            entry = await self._ledger_entry(customer_id, record_id)
        return self._disambiguate(customer_id, record_id, entry)

    async def _bounded(
        self,
        call: Awaitable[Result[Any, StorageError]],
        timeout_s: float,
        backend: str,
        operation: str,
    ) -> Result[Any, StorageError]:
        try:
            return await asyncio.wait_for(call, timeout=timeout_s)
        except asyncio.TimeoutError:
            return Err(StorageError.timeout(backend, operation, int(timeout_s * 1000)))

    async def _cached_key(self, customer_id: str, record_id: str) -> Optional[str]:
        try:
            return await asyncio.wait_for(
                self._cache.key_for(customer_id, record_id),
                timeout=self._config.cache_timeout_s,
            )
        except asyncio.TimeoutError:
            return None

    async def _from_cache(
        self,
        key: str,
        customer_id: str,
        record_id: str,
    ) -> Optional[BillingRecord]:
        """Best-effort cache read; any failure is a miss."""
        cached = await self._bounded(
            self._cache.get(key), self._config.cache_timeout_s, "cache", "get",
        )
        if cached.is_err():
            logger.debug("Cache read failed, treated as miss", error=cached.error.message)
            return None
        data = cached.unwrap()
        if data is None:
            return None
        decoded = decode_record(data)
        if decoded.is_err() or decoded.unwrap().identity != (customer_id, record_id):
            await self._cache.delete(key)
            return None
        return decoded.unwrap()

    async def _from_cold(
        self,
        key: Optional[str],
        customer_id: str,
        record_id: str,
    ) -> Optional[ReadResult]:
        """Found, Unavailable, or None when the cold tier has no object."""
        if key is None:
            located = await self._bounded(
                self._cold.find_key(customer_id, record_id),
                self._config.cold_timeout_s, "cold", "find_key",
            )
            if located.is_err():
                return Unavailable("cold store unavailable", located.error)
            key = located.unwrap()
            if key is None:
                return None

        fetched = await self._bounded(
            self._cold.get(key), self._config.cold_timeout_s, "cold", "get",
        )
        if fetched.is_err():
            return Unavailable("cold store unavailable", fetched.error)
        data = fetched.unwrap()
        if data is None:
            return None

        decoded = decode_record(data)
        if decoded.is_err():
            logger.error("Cold object is not a decodable record", cold_key=key, error=decoded.error)
            return Unavailable("cold object unreadable")

        if self._cache is not None:
            stored = await self._bounded(
                self._cache.put(key, data), self._config.cache_timeout_s, "cache", "put",
            )
            if stored.is_err():
                logger.debug("Cache populate failed", error=stored.error.message)

        return Found(decoded.unwrap(), Tier.COLD)

    async def _ledger_entry(
        self,
        customer_id: str,
        record_id: str,
    ) -> Result[Optional[LedgerEntry], Any]:
        return await self._bounded(
            self._ledger.get(customer_id, record_id),
            self._config.ledger_timeout_s, "ledger", "get",
        )

    def _disambiguate(
        self,
        customer_id: str,
        record_id: str,
        entry_result: Result[Optional[LedgerEntry], Any],
    ) -> ReadResult:
        if entry_result.is_err():
            return self._unavailable("ledger unavailable", entry_result.error)

        entry = entry_result.unwrap()
        if entry is None:
            return NotFound(customer_id, record_id)

        if entry.state is MigrationState.DELETED:
            logger.error(
                "Archived record missing from cold tier",
                cold_key=entry.cold_key,
                updated_at=entry.updated_at.isoformat(),
            )
            return self._unavailable("archived record missing from cold tier")

        if entry.state.hot_may_be_gone:
            return self._unavailable(f"migration in flight ({entry.state.name})")

        return NotFound(customer_id, record_id)

    def _unavailable(self, reason: str, cause: Optional[Any] = None) -> Unavailable:
        logger.warning(
            "Read unavailable",
            reason=reason,
            error=getattr(cause, "message", None),
        )
        return Unavailable(reason, cause)

    def _observe(self, result: ReadResult, elapsed: float) -> None:
        if isinstance(result, Found):
            tier, outcome = result.tier.value, "found"
        elif isinstance(result, NotFound):
            tier, outcome = "none", "not_found"
        else:
            tier, outcome = "none", "unavailable"
        self._metrics.requests.inc(tier=tier, result=outcome)
        self._metrics.latency.observe(elapsed, result=outcome)
