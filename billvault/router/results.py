"""
Read Results: Tagged Tri-State Outcome of a Unified Read

Found | NotFound | Unavailable

"Not found" and "transient failure" carry different caller obligations,
so neither is an exception on the router path: NotFound is confirmed
absence, Unavailable means retry shortly.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from billvault.core.errors import BillVaultError
from billvault.records.model import BillingRecord


class Tier(Enum):
    """Where a read was served from."""
    HOT = "hot"
    CACHE = "cache"
    COLD = "cold"


@dataclass(frozen=True, slots=True)
class Found:
    record: BillingRecord
    tier: Tier


@dataclass(frozen=True, slots=True)
class NotFound:
    customer_id: str
    record_id: str


@dataclass(frozen=True, slots=True)
class Unavailable:
    """Transient store failure or in-flight migration."""
    reason: str
    cause: Optional[BillVaultError] = None


ReadResult = Union[Found, NotFound, Unavailable]


__all__ = [
    "Tier",
    "Found",
    "NotFound",
    "Unavailable",
    "ReadResult",
]
