"""
Pytest fixtures wiring the in-memory store adapters.
"""

from __future__ import annotations

import pytest

from billvault.archival import ArchivalEngine, PassLease
from billvault.cache import ColdReadCache
from billvault.core.config import ArchivalConfig, ReadConfig
from billvault.ledger import MigrationLedger
from billvault.observability.metrics import ArchivalMetrics, MetricsCollector, ReadMetrics
from billvault.reliability import RetryPolicy
from billvault.router import ReadRouter
from billvault.storage import (
    InMemoryColdStore,
    InMemoryHotStore,
    InMemoryLeaseBackend,
    InMemoryLedgerStore,
)


@pytest.fixture
def hot() -> InMemoryHotStore:
    return InMemoryHotStore()


@pytest.fixture
def cold() -> InMemoryColdStore:
    return InMemoryColdStore()


@pytest.fixture
def ledger_store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def ledger(ledger_store: InMemoryLedgerStore) -> MigrationLedger:
    return MigrationLedger(ledger_store, page_size=2)


@pytest.fixture
def lease_backend() -> InMemoryLeaseBackend:
    return InMemoryLeaseBackend()


@pytest.fixture
def collector() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def make_engine(hot, cold, ledger, lease_backend, collector):
    """Engine factory; each call shares the same stores (a new process)."""
    def factory(retries: int = 2, **overrides) -> ArchivalEngine:
        config = ArchivalConfig(**{"worker_count": 4, "page_size": 3, **overrides})
        return ArchivalEngine(
            hot,
            cold,
            ledger,
            lease=PassLease(lease_backend),
            config=config,
            metrics=ArchivalMetrics(collector),
            retry_policy=RetryPolicy.immediate(retries),
        )
    return factory


@pytest.fixture
def engine(make_engine) -> ArchivalEngine:
    return make_engine()


@pytest.fixture
def cache() -> ColdReadCache:
    return ColdReadCache(max_entries=100, ttl_seconds=60)


@pytest.fixture
def make_router(hot, cold, ledger, cache, collector):
    def factory(**overrides) -> ReadRouter:
        config = ReadConfig(**{"unavailable_retries": 1, "unavailable_base_delay_ms": 0, **overrides})
        return ReadRouter(
            hot, cold, ledger,
            cache=cache,
            config=config,
            metrics=ReadMetrics(collector),
        )
    return factory


@pytest.fixture
def router(make_router) -> ReadRouter:
    return make_router()
