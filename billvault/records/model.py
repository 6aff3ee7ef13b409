"""
Billing Record Model

Immutable value types for billing records as they live in the hot store
and travel to the cold store.

Design:
    - Records are immutable after creation; archival only relocates them
    - Identity is the (customer_id, id) composite key
    - Event time is always a timezone-aware UTC datetime
    - StoredRecord pairs a record with the hot store's write version so the
      archival engine can detect writes that land after its candidate scan
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union


Amount = Union[int, float]


def validate_identifier(name: str, value: str) -> None:
    """
    Reject identifiers that would break the cold key scheme.

    Raises:
        ValueError: If value is empty, not a string or contains '/'.
    """
    if not isinstance(value, str) or not value:
        raise ValueError(f"{name} must be a non-empty string")
    if "/" in value:
        raise ValueError(f"{name} must not contain '/': {value!r}")


@dataclass(frozen=True, slots=True)
class BillingRecord:
    """
    A single billing event.

    Attributes:
        id: Opaque unique identifier (immutable).
        customer_id: Partition key (immutable).
        timestamp: Event time in UTC, drives eligibility and cold addressing.
        amount: Billed amount as written by the producer.
        details: Opaque JSON-compatible payload.
    """
    id: str
    customer_id: str
    timestamp: datetime
    amount: Amount
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        validate_identifier("id", self.id)
        validate_identifier("customer_id", self.customer_id)
        if not isinstance(self.timestamp, datetime):
            raise ValueError("timestamp must be a datetime")
        if self.timestamp.tzinfo is None:
            # Naive datetimes are taken as UTC
            object.__setattr__(self, "timestamp", self.timestamp.replace(tzinfo=timezone.utc))
        elif self.timestamp.utcoffset() != timezone.utc.utcoffset(None):
            object.__setattr__(self, "timestamp", self.timestamp.astimezone(timezone.utc))
        if isinstance(self.amount, bool) or not isinstance(self.amount, (int, float)):
            raise ValueError(f"amount must be numeric, got {type(self.amount).__name__}")
        if not isinstance(self.details, dict):
            raise ValueError("details must be a dict")

    @property
    def identity(self) -> tuple[str, str]:
        """Composite key (customer_id, id)."""
        return (self.customer_id, self.id)

    def __hash__(self) -> int:
        return hash(self.identity)


@dataclass(frozen=True, slots=True)
class StoredRecord:
    """
    Record as read from the hot store.

    version increases on every put of the same identity; the archival
    engine compares it before deleting.
    """
    record: BillingRecord
    version: int

    @property
    def customer_id(self) -> str:
        return self.record.customer_id

    @property
    def id(self) -> str:
        return self.record.id
