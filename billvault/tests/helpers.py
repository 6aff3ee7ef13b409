"""
Shared test helpers: record builders and Result assertions.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from billvault.core.types import Result
from billvault.records.model import BillingRecord

OLD = datetime(2023, 2, 15, 9, 53, tzinfo=timezone.utc)
CUTOFF = datetime(2024, 1, 1, tzinfo=timezone.utc)
RECENT = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_record(
    record_id: str = "abcde123",
    customer_id: str = "customer123",
    timestamp: datetime = OLD,
    amount: Any = 200,
    details: Optional[dict[str, Any]] = None,
) -> BillingRecord:
    return BillingRecord(
        id=record_id,
        customer_id=customer_id,
        timestamp=timestamp,
        amount=amount,
        details=details if details is not None else {"plan": "pro", "items": [{"sku": "A1", "qty": 2}]},
    )


def assert_ok(result: Result) -> Any:
    """Unwrap an Ok or fail the test with the error."""
    assert result.is_ok(), f"expected Ok, got {result!r}"
    return result.unwrap()


def assert_err(result: Result) -> Any:
    assert result.is_err(), f"expected Err, got {result!r}"
    return result.error
