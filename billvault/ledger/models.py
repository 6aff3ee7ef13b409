"""
Migration Ledger Models: Per-Record Archival State Machine

States:
    PENDING        → Record became eligible; nothing written yet
    COPY_IN_FLIGHT → Cold write started; hot copy is still authoritative
    VERIFIED       → Cold copy read back and checksum confirmed
    DELETED        → Hot copy removed; cold copy is authoritative
    QUARANTINED    → Retry budget exhausted; operator review required

Transitions:
    PENDING        → COPY_IN_FLIGHT : Copy started
    COPY_IN_FLIGHT → COPY_IN_FLIGHT : Failed attempt recorded
    COPY_IN_FLIGHT → VERIFIED       : Checksum match
    VERIFIED       → VERIFIED       : Resumed delete attempt recorded
    VERIFIED       → DELETED        : Hot delete confirmed
    any non-final  → QUARANTINED    : attempts reached the ceiling

Design:
    - Entries are immutable; a transition produces a new entry
    - DELETED and QUARANTINED are terminal
    - Self-transitions only update attempts/last_error bookkeeping
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Optional
from uuid import uuid4

from billvault.core.errors import InvalidTransitionError
from billvault.core.types import Result, Ok, Err


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# MIGRATION STATE ENUMERATION
# =============================================================================
class MigrationState(Enum):
    """
    Archival lifecycle states of a single record.

    Ordered by progression; DELETED and QUARANTINED are final.
    """
    PENDING = auto()
    COPY_IN_FLIGHT = auto()
    VERIFIED = auto()
    DELETED = auto()
    QUARANTINED = auto()

    @property
    def is_terminal(self) -> bool:
        return self in (MigrationState.DELETED, MigrationState.QUARANTINED)

    @property
    def hot_may_be_gone(self) -> bool:
        """States in which the hot copy may already be deleted."""
        return self in (MigrationState.COPY_IN_FLIGHT, MigrationState.VERIFIED, MigrationState.DELETED)

    @classmethod
    def parse(cls, value: str) -> MigrationState:
        normalized = value.strip().upper().replace("-", "_")
        aliases = {"COPYINFLIGHT": "COPY_IN_FLIGHT", "IN_FLIGHT": "COPY_IN_FLIGHT"}
        try:
            return cls[aliases.get(normalized, normalized)]
        except KeyError:
            raise ValueError(f"Unknown migration state: {value!r}") from None


# =============================================================================
# TRANSITION DEFINITIONS
# =============================================================================
VALID_TRANSITIONS: frozenset[tuple[MigrationState, MigrationState]] = frozenset({
    (MigrationState.PENDING, MigrationState.COPY_IN_FLIGHT),
    (MigrationState.COPY_IN_FLIGHT, MigrationState.COPY_IN_FLIGHT),
    (MigrationState.COPY_IN_FLIGHT, MigrationState.VERIFIED),
    (MigrationState.VERIFIED, MigrationState.VERIFIED),
    (MigrationState.VERIFIED, MigrationState.DELETED),

    # Quarantine from any non-final state
    (MigrationState.PENDING, MigrationState.QUARANTINED),
    (MigrationState.COPY_IN_FLIGHT, MigrationState.QUARANTINED),
    (MigrationState.VERIFIED, MigrationState.QUARANTINED),
})


def is_valid_transition(from_state: MigrationState, to_state: MigrationState) -> bool:
    return (from_state, to_state) in VALID_TRANSITIONS


# =============================================================================
# LEDGER ENTRY
# =============================================================================
@dataclass(frozen=True, slots=True)
class LedgerEntry:
    """
    Durable migration progress for one (customer_id, record_id).

    cold_key is recorded when the entry is created so that operators and
    the reconciliation sweep can locate the cold object without the record.
    """
    customer_id: str
    record_id: str
    state: MigrationState
    attempts: int = 0
    last_error: Optional[str] = None
    updated_at: datetime = field(default_factory=utc_now)
    cold_key: Optional[str] = None

    @property
    def identity(self) -> tuple[str, str]:
        return (self.customer_id, self.record_id)

    @classmethod
    def pending(cls, customer_id: str, record_id: str, cold_key: Optional[str] = None) -> LedgerEntry:
        return cls(
            customer_id=customer_id,
            record_id=record_id,
            state=MigrationState.PENDING,
            cold_key=cold_key,
        )

    def transition(
        self,
        to_state: MigrationState,
        *,
        error: Optional[str] = None,
        count_attempt: bool = False,
        now: Optional[datetime] = None,
    ) -> Result[LedgerEntry, InvalidTransitionError]:
        """
        Produce the successor entry.

        Args:
            to_state: Target state.
            error: Failure description stored in last_error.
            count_attempt: Increment attempts.
            now: Timestamp override (tests).

        Returns:
            Ok(entry) or Err(InvalidTransitionError).
        """
        if not is_valid_transition(self.state, to_state):
            return Err(InvalidTransitionError.between(
                self.customer_id, self.record_id, self.state.name, to_state.name,
            ))
        return Ok(replace(
            self,
            state=to_state,
            attempts=self.attempts + 1 if count_attempt else self.attempts,
            last_error=error if error is not None else self.last_error,
            updated_at=now or utc_now(),
        ))

    def same_progress(self, other: LedgerEntry) -> bool:
        """True when other carries the same state and attempts (idempotent write)."""
        return (
            self.identity == other.identity
            and self.state == other.state
            and self.attempts == other.attempts
        )


# =============================================================================
# ARCHIVAL RUN
# =============================================================================
@dataclass(frozen=True, slots=True)
class ArchivalRun:
    """
    Summary of one archival pass.

    Written when the pass starts and again when it finishes; immutable
    afterwards.
    """
    cutoff: datetime
    run_id: str = field(default_factory=lambda: str(uuid4()))
    started_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    scanned: int = 0
    migrated: int = 0
    failed: int = 0
    skipped: int = 0
    requeued: int = 0
    quarantined: int = 0
    reconciled: int = 0
    aborted: bool = False
    deadline_exceeded: bool = False

    @property
    def is_finished(self) -> bool:
        return self.finished_at is not None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "cutoff": self.cutoff.isoformat(),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "scanned": self.scanned,
            "migrated": self.migrated,
            "failed": self.failed,
            "skipped": self.skipped,
            "requeued": self.requeued,
            "quarantined": self.quarantined,
            "reconciled": self.reconciled,
            "aborted": self.aborted,
            "deadline_exceeded": self.deadline_exceeded,
        }
