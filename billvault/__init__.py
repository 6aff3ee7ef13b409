"""
Tiered Billing Record Store

Keeps billing records cheap to store and fast to read regardless of age:
- Hot tier: low-latency key-value store (Redis) for recent records
- Cold tier: object storage (S3) for archived records
- Migration Ledger: durable per-record archival progress (PostgreSQL)
- Archival Migration Engine: crash-safe copy-verify-delete from hot to cold
- Cold Read Cache: bounded LRU + TTL cache in front of the cold tier
- Unified Read Router: one get() across tiers, never "not found" mid-migration

Guarantees:
- A hot record is deleted only after its cold copy is verified
- Re-running a pass with the same cutoff changes nothing
- Store errors and in-flight migrations surface as Unavailable, not NotFound

Author: Planetary AI Systems
License: MIT
"""

__version__ = "1.0.0"
__author__ = "Planetary AI Systems"

# =============================================================================
# PUBLIC API EXPORTS
# =============================================================================
from billvault.core.types import (
    Result,
    Ok,
    Err,
    Timestamp,
    ContentHash,
)
from billvault.core.errors import (
    BillVaultError,
    StorageError,
    CorruptionError,
    QuarantinedError,
    PermanentFailure,
    LedgerUnavailableError,
    LeaseError,
    RecordNotFoundError,
    RecordUnavailableError,
)
from billvault.core.config import BillVaultConfig

# Records
from billvault.records import BillingRecord, StoredRecord, cold_key

# Ledger
from billvault.ledger import (
    MigrationState,
    LedgerEntry,
    ArchivalRun,
    MigrationLedger,
)

# Archival
from billvault.archival import ArchivalEngine, PassLease, cutoff_for_retention

# Read path
from billvault.cache import ColdReadCache
from billvault.router import ReadRouter, Found, NotFound, Unavailable, Tier

__all__ = [
    # Version
    "__version__",
    "__author__",
    # Result monad
    "Result",
    "Ok",
    "Err",
    "Timestamp",
    "ContentHash",
    # Errors
    "BillVaultError",
    "StorageError",
    "CorruptionError",
    "QuarantinedError",
    "PermanentFailure",
    "LedgerUnavailableError",
    "LeaseError",
    "RecordNotFoundError",
    "RecordUnavailableError",
    # Config
    "BillVaultConfig",
    # Records
    "BillingRecord",
    "StoredRecord",
    "cold_key",
    # Ledger
    "MigrationState",
    "LedgerEntry",
    "ArchivalRun",
    "MigrationLedger",
    # Archival
    "ArchivalEngine",
    "PassLease",
    "cutoff_for_retention",
    # Read path
    "ColdReadCache",
    "ReadRouter",
    "Found",
    "NotFound",
    "Unavailable",
    "Tier",
]
