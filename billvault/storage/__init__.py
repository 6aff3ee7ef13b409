"""
Storage Module: Store Adapters for the Hot and Cold Tiers
=========================================================

Provides:
- Protocol definitions for pluggable backends
- In-memory implementations for development/testing
- Production backends (Redis, S3, PostgreSQL)
- Factory functions for backend selection

Design Principles:
-----------------
1. **Backend Agnostic**: Same interface for in-memory and production
2. **Factory Pattern**: Runtime backend selection via configuration
3. **Lazy Loading**: Production drivers imported only when connecting
4. **Result Monad**: No exceptions for control flow

Example:
    >>> # Development (in-memory)
    >>> stores = (await open_stores(StorageConfig.for_development())).unwrap()

    >>> # Production (configured)
    >>> stores = (await open_stores(StorageConfig.from_env())).unwrap()
    >>> try:
    ...     ...
    ... finally:
    ...     await stores.close()
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List

from billvault.core.errors import StorageError
from billvault.core.types import Result, Ok, Err

# Protocol definitions
from billvault.storage.protocols import (
    DeleteOutcome,
    HotStoreProtocol,
    ColdStoreProtocol,
    LedgerStoreProtocol,
    LeaseBackendProtocol,
)

# In-memory backends (always available)
from billvault.storage.backends import (
    FaultInjector,
    InMemoryHotStore,
    InMemoryColdStore,
    InMemoryLedgerStore,
    InMemoryLeaseBackend,
)

# Configuration
from billvault.storage.config import (
    BackendType,
    RedisMode,
    RedisConfig,
    S3Config,
    PostgresConfig,
    StorageConfig,
)


# =============================================================================
# STORE BUNDLE
# =============================================================================

@dataclass
class Stores:
    """Connected store adapters plus their shutdown hooks."""
    hot: HotStoreProtocol
    cold: ColdStoreProtocol
    ledger: LedgerStoreProtocol
    lease: LeaseBackendProtocol
    _closers: List[Callable[[], Awaitable[None]]] = field(default_factory=list, repr=False)

    async def close(self) -> None:
        """Close production clients in reverse open order."""
        while self._closers:
            closer = self._closers.pop()
            await closer()


# =============================================================================
# FACTORY FUNCTIONS
# =============================================================================

def create_hot_store(config: StorageConfig) -> Any:
    """
    Create the hot store for the configured backend.

    Returns:
        InMemoryHotStore or an unconnected RedisHotStore.
    """
    if config.hot_backend == BackendType.REDIS:
        from billvault.storage.redis_store import RedisHotStore
        return RedisHotStore(config.redis_config)
    return InMemoryHotStore()


def create_cold_store(config: StorageConfig) -> Any:
    """
    Create the cold store for the configured backend.

    Returns:
        InMemoryColdStore or an unconnected S3ColdStore.
    """
    if config.cold_backend == BackendType.S3:
        from billvault.storage.s3_store import S3ColdStore
        return S3ColdStore(config.s3_config)
    return InMemoryColdStore()


def create_lease_backend(config: StorageConfig) -> Any:
    if config.lease_backend == BackendType.REDIS:
        from billvault.storage.redis_store import RedisLeaseBackend
        return RedisLeaseBackend(config.redis_config)
    return InMemoryLeaseBackend()


async def create_ledger_store(config: StorageConfig) -> Result[Any, StorageError]:
    """
    Create the ledger store; the PostgreSQL backend connects eagerly.
    """
    if config.ledger_backend == BackendType.POSTGRES:
        from billvault.storage.postgres_store import PostgresLedgerStore
        return await PostgresLedgerStore.create(config.postgres_config)
    return Ok(InMemoryLedgerStore())


async def open_stores(config: StorageConfig) -> Result[Stores, StorageError]:
    """
    Create and connect every store adapter.

    On failure, adapters opened so far are closed before returning Err.
    """
    closers: List[Callable[[], Awaitable[None]]] = []

    async def _abort(error: StorageError) -> Result[Stores, StorageError]:
        for closer in reversed(closers):
            await closer()
        return Err(error)

    ledger_result = await create_ledger_store(config)
    if ledger_result.is_err():
        return Err(ledger_result.error)
    ledger = ledger_result.unwrap()
    if hasattr(ledger, "close"):
        closers.append(ledger.close)

    hot = create_hot_store(config)
    cold = create_cold_store(config)
    lease = create_lease_backend(config)

    for adapter in (hot, cold, lease):
        connect = getattr(adapter, "connect", None)
        if connect is None:
            continue
        connected = await connect()
        if connected.is_err():
            return await _abort(connected.error)
        closers.append(adapter.close)

    return Ok(Stores(hot=hot, cold=cold, ledger=ledger, lease=lease, _closers=closers))


# =============================================================================
# MODULE EXPORTS
# =============================================================================

__all__ = [
    # Protocols
    "DeleteOutcome",
    "HotStoreProtocol",
    "ColdStoreProtocol",
    "LedgerStoreProtocol",
    "LeaseBackendProtocol",
    # In-memory backends
    "FaultInjector",
    "InMemoryHotStore",
    "InMemoryColdStore",
    "InMemoryLedgerStore",
    "InMemoryLeaseBackend",
    # Configuration
    "BackendType",
    "RedisMode",
    "RedisConfig",
    "S3Config",
    "PostgresConfig",
    "StorageConfig",
    # Factories
    "Stores",
    "create_hot_store",
    "create_cold_store",
    "create_lease_backend",
    "create_ledger_store",
    "open_stores",
]
