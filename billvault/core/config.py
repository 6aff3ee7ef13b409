"""
Configuration Management for the Tiered Billing Store

Provides validated configuration with sensible defaults.
Supports environment variable overrides (BILLVAULT_ prefix).

Design:
- Immutable after validation
- Fail-fast on invalid configuration
- Type-safe with dataclasses
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from billvault.core.types import Result, Ok, Err
from billvault.core import constants as C
from billvault.storage.config import StorageConfig


def _getenv_float(name: str) -> Optional[float]:
    value = os.getenv(name)
    return float(value) if value else None


@dataclass(frozen=True)
class ArchivalConfig:
    """Archival migration engine configuration."""

    retention_days: int = C.DEFAULT_RETENTION_DAYS
    max_attempts: int = C.DEFAULT_MAX_ATTEMPTS  # Quarantine ceiling
    worker_count: int = C.DEFAULT_WORKER_COUNT
    page_size: int = C.DEFAULT_PAGE_SIZE
    pass_deadline_seconds: Optional[float] = None
    ledger_grace_days: int = C.DEFAULT_LEDGER_GRACE_DAYS
    lease_ttl_ms: int = C.ARCHIVAL_LEASE_TTL_MS
    reconcile_in_flight: bool = True

    # In-pass retry for transient store errors
    retry_max_retries: int = C.RETRY_MAX_ATTEMPTS
    retry_base_delay_ms: int = C.RETRY_BASE_MS
    retry_max_delay_ms: int = C.RETRY_MAX_DELAY_MS


@dataclass(frozen=True)
class ReadConfig:
    """Unified read router configuration."""

    hot_timeout_s: float = C.HOT_TIMEOUT_S
    cache_timeout_s: float = C.CACHE_TIMEOUT_S
    cold_timeout_s: float = C.COLD_TIMEOUT_S
    ledger_timeout_s: float = C.LEDGER_TIMEOUT_S
    unavailable_retries: int = C.READ_UNAVAILABLE_RETRIES
    unavailable_base_delay_ms: int = C.RETRY_BASE_MS


@dataclass(frozen=True)
class CacheConfig:
    """Cold read cache configuration."""

    max_entries: int = C.CACHE_MAX_ENTRIES
    ttl_seconds: int = C.CACHE_TTL_SECONDS
    compression_threshold_bytes: int = C.CACHE_COMPRESSION_THRESHOLD


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration."""

    log_level: str = "INFO"
    log_json: bool = True


@dataclass(frozen=True)
class BillVaultConfig:
    """Root configuration for the billing store."""

    archival: ArchivalConfig = field(default_factory=ArchivalConfig)
    read: ReadConfig = field(default_factory=ReadConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    @classmethod
    def from_env(cls) -> Result[BillVaultConfig, str]:
        """
        Load configuration from environment variables.

        Environment variables are prefixed with BILLVAULT_.
        Example: BILLVAULT_RETENTION_DAYS, BILLVAULT_WORKER_COUNT
        Store backends are selected with STORAGE_* (see storage.config).
        """
        try:
            archival = ArchivalConfig(
                retention_days=int(os.getenv("BILLVAULT_RETENTION_DAYS", str(C.DEFAULT_RETENTION_DAYS))),
                max_attempts=int(os.getenv("BILLVAULT_MAX_ATTEMPTS", str(C.DEFAULT_MAX_ATTEMPTS))),
                worker_count=int(os.getenv("BILLVAULT_WORKER_COUNT", str(C.DEFAULT_WORKER_COUNT))),
                page_size=int(os.getenv("BILLVAULT_PAGE_SIZE", str(C.DEFAULT_PAGE_SIZE))),
                pass_deadline_seconds=_getenv_float("BILLVAULT_PASS_DEADLINE_SECONDS"),
                ledger_grace_days=int(os.getenv("BILLVAULT_LEDGER_GRACE_DAYS", str(C.DEFAULT_LEDGER_GRACE_DAYS))),
                lease_ttl_ms=int(os.getenv("BILLVAULT_LEASE_TTL_MS", str(C.ARCHIVAL_LEASE_TTL_MS))),
            )

            read = ReadConfig(
                hot_timeout_s=float(os.getenv("BILLVAULT_HOT_TIMEOUT_S", str(C.HOT_TIMEOUT_S))),
                cold_timeout_s=float(os.getenv("BILLVAULT_COLD_TIMEOUT_S", str(C.COLD_TIMEOUT_S))),
                ledger_timeout_s=float(os.getenv("BILLVAULT_LEDGER_TIMEOUT_S", str(C.LEDGER_TIMEOUT_S))),
            )

            cache = CacheConfig(
                max_entries=int(os.getenv("BILLVAULT_CACHE_MAX_ENTRIES", str(C.CACHE_MAX_ENTRIES))),
                ttl_seconds=int(os.getenv("BILLVAULT_CACHE_TTL_SECONDS", str(C.CACHE_TTL_SECONDS))),
            )

            observability = ObservabilityConfig(
                log_level=os.getenv("BILLVAULT_LOG_LEVEL", "INFO").upper(),
                log_json=os.getenv("BILLVAULT_LOG_JSON", "true").lower() in ("true", "1", "yes"),
            )

            return Ok(cls(
                archival=archival,
                read=read,
                cache=cache,
                observability=observability,
                storage=StorageConfig.from_env(),
            ))
        except (ValueError, TypeError) as e:
            return Err(f"Configuration error: {e}")

    def validate(self) -> Result[None, str]:
        """Validate configuration invariants."""
        if self.archival.retention_days < 1:
            return Err("retention_days must be >= 1")
        if self.archival.max_attempts < 1:
            return Err("max_attempts must be >= 1")
        if self.archival.worker_count < 1:
            return Err("worker_count must be >= 1")
        if not (1 <= self.archival.page_size <= C.MAX_PAGE_SIZE):
            return Err(f"page_size must be in [1, {C.MAX_PAGE_SIZE}]")
        if self.archival.pass_deadline_seconds is not None and self.archival.pass_deadline_seconds <= 0:
            return Err("pass_deadline_seconds must be > 0")
        if self.archival.ledger_grace_days < 0:
            return Err("ledger_grace_days must be >= 0")
        for name in ("hot_timeout_s", "cache_timeout_s", "cold_timeout_s", "ledger_timeout_s"):
            if getattr(self.read, name) <= 0:
                return Err(f"{name} must be > 0")
        if self.cache.max_entries < 1:
            return Err("cache max_entries must be >= 1")
        if self.cache.ttl_seconds < 1:
            return Err("cache ttl_seconds must be >= 1")
        if self.observability.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            return Err(f"Unknown log level: {self.observability.log_level}")
        return Ok(None)
