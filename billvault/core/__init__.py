"""
Core module: Type definitions, error hierarchy, and configuration.

This module provides the foundational abstractions for the billing store:
- Result/Either monads for zero-exception control flow
- Error hierarchy with error codes
- Configuration management with validation
"""

from billvault.core.types import (
    Result,
    Ok,
    Err,
    Timestamp,
    ContentHash,
)
from billvault.core.errors import (
    ErrorCode,
    BillVaultError,
    StorageError,
    MigrationError,
    CorruptionError,
    InvalidTransitionError,
    QuarantinedError,
    PermanentFailure,
    LedgerUnavailableError,
    LeaseError,
    RecordNotFoundError,
    RecordUnavailableError,
    ReliabilityError,
)
from billvault.core.config import (
    ArchivalConfig,
    ReadConfig,
    CacheConfig,
    ObservabilityConfig,
    BillVaultConfig,
)

__all__ = [
    "Result",
    "Ok",
    "Err",
    "Timestamp",
    "ContentHash",
    "ErrorCode",
    "BillVaultError",
    "StorageError",
    "MigrationError",
    "CorruptionError",
    "InvalidTransitionError",
    "QuarantinedError",
    "PermanentFailure",
    "LedgerUnavailableError",
    "LeaseError",
    "RecordNotFoundError",
    "RecordUnavailableError",
    "ReliabilityError",
    "ArchivalConfig",
    "ReadConfig",
    "CacheConfig",
    "ObservabilityConfig",
    "BillVaultConfig",
]
