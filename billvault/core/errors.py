"""
Error Hierarchy for the Tiered Billing Store

Design Principles:
- Forbid exceptions for control flow (use Result types)
- Never swallow errors or use null for absence
- Carry full error context for debugging and audit trails

Each error type includes:
- Unique error code for programmatic handling
- Human-readable message for logging
- Optional cause chain for root cause analysis
- Timestamp for correlation with log lines

Error taxonomy:
- StorageError: transient store failure (timeouts, throttling, connection)
- LedgerUnavailableError: ledger store failure, fatal to an archival pass
- CorruptionError: cold copy failed verification, never triggers delete
- InvalidTransitionError: ledger state machine violation
- QuarantinedError: retry budget exhausted, operator review required
- LeaseError: another archival pass holds the lease
- RecordNotFoundError / RecordUnavailableError: caller-facing read API

Usage:
    result = await hot_store.get(customer_id, record_id)
    match result:
        case Ok(None):
            ...  # confirmed absence
        case Ok(stored):
            ...
        case Err(StorageError() as error):
            ...  # transient, never mapped to "not found"
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from billvault.core.types import Timestamp


# =============================================================================
# ERROR CODE ENUMERATION
# =============================================================================
class ErrorCode(Enum):
    """
    Unique error codes for programmatic error handling.

    Codes are grouped by subsystem:
    - 1xxx: Storage errors
    - 2xxx: Migration errors
    - 3xxx: Read path errors
    - 6xxx: Reliability errors
    - 9xxx: Internal errors
    """

    # Storage errors (1xxx)
    STORAGE_CONNECTION_FAILED = 1001
    STORAGE_TIMEOUT = 1002
    STORAGE_THROTTLED = 1003
    STORAGE_SERIALIZATION_FAILED = 1004
    STORAGE_NOT_CONNECTED = 1005

    # Migration errors (2xxx)
    MIGRATION_CORRUPTION = 2001
    MIGRATION_INVALID_TRANSITION = 2002
    MIGRATION_QUARANTINED = 2003
    MIGRATION_LEDGER_UNAVAILABLE = 2004
    MIGRATION_LEASE_HELD = 2005
    MIGRATION_LEASE_BACKEND_FAILED = 2006

    # Read path errors (3xxx)
    READ_NOT_FOUND = 3001
    READ_UNAVAILABLE = 3002

    # Reliability errors (6xxx)
    RELIABILITY_RETRY_EXHAUSTED = 6001
    RELIABILITY_TIMEOUT = 6002

    # Internal errors (9xxx)
    INTERNAL_ERROR = 9001
    INTERNAL_CONFIGURATION_ERROR = 9002


# =============================================================================
# BASE ERROR CLASS
# =============================================================================
@dataclass
class BillVaultError(Exception):
    """
    Base class for all billing store errors.

    Provides common infrastructure for error handling:
    - Unique error ID for log correlation
    - Error code for programmatic handling
    - Timestamp for correlation
    - Cause chain for root cause analysis
    """

    code: ErrorCode
    message: str
    error_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: Timestamp = field(default_factory=Timestamp.now)
    cause: Optional[Exception] = None
    context: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """
        Serialize error to dictionary for logging.

        Note: Excludes cause stack trace.
        """
        return {
            "error_id": self.error_id,
            "code": self.code.name,
            "code_value": self.code.value,
            "message": self.message,
            "timestamp_nanos": self.timestamp.nanos,
            "context": self.context,
        }

    def __str__(self) -> str:
        return f"[{self.code.name}] {self.message} (id={self.error_id[:8]})"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"code={self.code.name}, "
            f"message={self.message!r}, "
            f"error_id={self.error_id!r})"
        )


# =============================================================================
# STORAGE ERRORS (HOT / COLD / LEDGER ADAPTERS)
# =============================================================================
@dataclass
class StorageError(BillVaultError):
    """
    Errors raised at store adapter boundaries.

    All variants except serialization failures are transient: callers
    retry them, and the read path reports them as Unavailable.
    """

    @property
    def is_transient(self) -> bool:
        return self.code != ErrorCode.STORAGE_SERIALIZATION_FAILED

    @classmethod
    def connection_failed(
        cls,
        backend: str,
        operation: str,
        cause: Optional[Exception] = None,
    ) -> StorageError:
        """Store call failed at the transport level."""
        return cls(
            code=ErrorCode.STORAGE_CONNECTION_FAILED,
            message=f"{backend} {operation} failed: {cause}" if cause else f"{backend} {operation} failed",
            cause=cause,
            context={"backend": backend, "operation": operation},
        )

    @classmethod
    def timeout(
        cls,
        backend: str,
        operation: str,
        duration_ms: int,
        cause: Optional[Exception] = None,
    ) -> StorageError:
        """Store call exceeded its deadline."""
        return cls(
            code=ErrorCode.STORAGE_TIMEOUT,
            message=f"{backend} {operation} timed out after {duration_ms}ms",
            cause=cause,
            context={"backend": backend, "operation": operation, "duration_ms": duration_ms},
        )

    @classmethod
    def throttled(
        cls,
        backend: str,
        operation: str,
        cause: Optional[Exception] = None,
    ) -> StorageError:
        """Store rejected the request due to rate limits."""
        return cls(
            code=ErrorCode.STORAGE_THROTTLED,
            message=f"{backend} {operation} throttled",
            cause=cause,
            context={"backend": backend, "operation": operation},
        )

    @classmethod
    def serialization_failed(
        cls,
        backend: str,
        key: str,
        cause: Optional[Exception] = None,
    ) -> StorageError:
        """Stored payload could not be encoded or decoded."""
        return cls(
            code=ErrorCode.STORAGE_SERIALIZATION_FAILED,
            message=f"{backend} payload at '{key}' is not decodable: {cause}",
            cause=cause,
            context={"backend": backend, "key": key},
        )

    @classmethod
    def not_connected(cls, backend: str) -> StorageError:
        return cls(
            code=ErrorCode.STORAGE_NOT_CONNECTED,
            message=f"{backend} is not connected",
            context={"backend": backend},
        )


# =============================================================================
# MIGRATION ERRORS (ARCHIVAL ENGINE / LEDGER)
# =============================================================================
@dataclass
class MigrationError(BillVaultError):
    """Errors from the archival migration engine and its ledger."""


@dataclass
class CorruptionError(MigrationError):
    """Cold copy read back does not match the source content."""

    @classmethod
    def checksum_mismatch(
        cls,
        cold_key: str,
        expected: str,
        actual: Optional[str],
    ) -> CorruptionError:
        return cls(
            code=ErrorCode.MIGRATION_CORRUPTION,
            message=(
                f"Cold object '{cold_key}' failed verification: checksum mismatch, "
                f"expected sha256 {expected[:16]}, got {actual[:16] if actual else 'nothing'}"
            ),
            context={"cold_key": cold_key, "expected": expected, "actual": actual},
        )


@dataclass
class InvalidTransitionError(MigrationError):
    """Ledger transition not permitted by the migration state machine."""

    @classmethod
    def between(
        cls,
        customer_id: str,
        record_id: str,
        from_state: str,
        to_state: str,
    ) -> InvalidTransitionError:
        return cls(
            code=ErrorCode.MIGRATION_INVALID_TRANSITION,
            message=f"Invalid ledger transition {from_state} -> {to_state} for {customer_id}/{record_id}",
            context={
                "customer_id": customer_id,
                "record_id": record_id,
                "from_state": from_state,
                "to_state": to_state,
            },
        )


@dataclass
class QuarantinedError(MigrationError):
    """Retry budget exhausted; the record stays in the hot store."""

    @classmethod
    def budget_exhausted(
        cls,
        customer_id: str,
        record_id: str,
        attempts: int,
        last_error: Optional[str],
    ) -> QuarantinedError:
        return cls(
            code=ErrorCode.MIGRATION_QUARANTINED,
            message=f"Record {customer_id}/{record_id} quarantined after {attempts} attempts: {last_error}",
            context={
                "customer_id": customer_id,
                "record_id": record_id,
                "attempts": attempts,
                "last_error": last_error,
            },
        )


# Operator-facing alias: a quarantined record is a permanent failure.
PermanentFailure = QuarantinedError


@dataclass
class LedgerUnavailableError(MigrationError):
    """Ledger store unreachable; no transition may be guessed."""

    @classmethod
    def from_storage(cls, operation: str, error: BillVaultError) -> LedgerUnavailableError:
        return cls(
            code=ErrorCode.MIGRATION_LEDGER_UNAVAILABLE,
            message=f"Ledger {operation} failed: {error.message}",
            cause=error,
            context={"operation": operation, "storage_code": error.code.name},
        )


@dataclass
class LeaseError(MigrationError):
    """Archival lease not granted: held elsewhere or backend failure."""

    @classmethod
    def held(cls, resource_id: str, detail: str) -> LeaseError:
        return cls(
            code=ErrorCode.MIGRATION_LEASE_HELD,
            message=f"Lease '{resource_id}' unavailable: {detail}",
            context={"resource_id": resource_id},
        )

    @classmethod
    def backend_failed(cls, resource_id: str, cause: StorageError) -> LeaseError:
        """Lease state could not be read or written; says nothing about holders."""
        return cls(
            code=ErrorCode.MIGRATION_LEASE_BACKEND_FAILED,
            message=f"Lease '{resource_id}' backend failed: {cause.message}",
            cause=cause,
            context={"resource_id": resource_id, "backend_code": cause.code.name},
        )

    @property
    def is_contention(self) -> bool:
        return self.code == ErrorCode.MIGRATION_LEASE_HELD


# =============================================================================
# READ PATH ERRORS (CALLER-FACING API)
# =============================================================================
@dataclass
class ReadError(BillVaultError):
    """Errors surfaced by the caller-facing get_billing_record API."""


@dataclass
class RecordNotFoundError(ReadError):
    """Record is absent from both tiers and has no pending migration."""

    @classmethod
    def for_record(cls, customer_id: str, record_id: str) -> RecordNotFoundError:
        return cls(
            code=ErrorCode.READ_NOT_FOUND,
            message=f"Billing record '{record_id}' not found for customer '{customer_id}'",
            context={"customer_id": customer_id, "record_id": record_id},
        )


@dataclass
class RecordUnavailableError(ReadError):
    """Record could not be resolved yet; the caller should retry later."""

    @classmethod
    def for_record(
        cls,
        customer_id: str,
        record_id: str,
        reason: str,
    ) -> RecordUnavailableError:
        return cls(
            code=ErrorCode.READ_UNAVAILABLE,
            message=f"Billing record '{record_id}' temporarily unavailable: {reason}",
            context={"customer_id": customer_id, "record_id": record_id, "reason": reason},
        )


# =============================================================================
# RELIABILITY ERRORS
# =============================================================================
@dataclass
class ReliabilityError(BillVaultError):
    """Errors from the retry subsystem."""

    @classmethod
    def retry_exhausted(
        cls,
        attempts: int,
        last_error: str,
    ) -> ReliabilityError:
        """All retry attempts exhausted."""
        return cls(
            code=ErrorCode.RELIABILITY_RETRY_EXHAUSTED,
            message=f"Retry exhausted after {attempts} attempts: {last_error}",
            context={"attempts": attempts, "last_error": last_error},
        )

    @classmethod
    def timeout(
        cls,
        operation: str,
        timeout_ms: int,
    ) -> ReliabilityError:
        return cls(
            code=ErrorCode.RELIABILITY_TIMEOUT,
            message=f"Operation '{operation}' timed out after {timeout_ms}ms",
            context={"operation": operation, "timeout_ms": timeout_ms},
        )
