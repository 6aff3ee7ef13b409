"""
Ledger module: durable per-record migration state.

Provides:
- MigrationState machine with the allowed transitions
- LedgerEntry and ArchivalRun value types
- MigrationLedger facade with idempotent upserts
"""

from billvault.ledger.models import (
    MigrationState,
    VALID_TRANSITIONS,
    is_valid_transition,
    LedgerEntry,
    ArchivalRun,
)
from billvault.ledger.ledger import MigrationLedger

__all__ = [
    "MigrationState",
    "VALID_TRANSITIONS",
    "is_valid_transition",
    "LedgerEntry",
    "ArchivalRun",
    "MigrationLedger",
]
