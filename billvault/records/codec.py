"""
Record Codec and Cold Key Scheme

Wire format shared by the hot store, the cold store and the read cache.

Cold key (bit-exact for compatibility with existing archives):
    "{customer_id}/{YYYY-MM}/{id}.json"

Payload: the full record as JSON with fields
    id, customer_id, timestamp (ISO-8601 UTC, "Z" suffix), amount, details

Encoding is canonical (sorted keys, compact separators) so the same record
always produces the same bytes and the same SHA-256 checksum. Verification
of a cold copy compares checksums of the bytes written and the bytes read.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any

from billvault.core.constants import COLD_KEY_SUFFIX
from billvault.core.types import ContentHash, Result, Ok, Err
from billvault.records.model import BillingRecord, validate_identifier


_TS_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
_TS_FORMAT_MICROS = "%Y-%m-%dT%H:%M:%S.%fZ"


# =============================================================================
# TIMESTAMPS
# =============================================================================

def format_timestamp(ts: datetime) -> str:
    """Render a UTC datetime as ISO-8601 with a 'Z' suffix."""
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc)
    return ts.strftime(_TS_FORMAT_MICROS if ts.microsecond else _TS_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """
    Parse ISO-8601 text into an aware UTC datetime.

    Accepts 'Z' or numeric offsets; naive values are taken as UTC.

    Raises:
        ValueError: If the text is not ISO-8601.
    """
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def epoch_micros(ts: datetime) -> int:
    """Exact microseconds since the Unix epoch (scan index score)."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return (ts - _EPOCH) // timedelta(microseconds=1)


def year_month(ts: datetime) -> str:
    """'YYYY-MM' partition segment of the cold key."""
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc)
    return f"{ts.year:04d}-{ts.month:02d}"


# =============================================================================
# COLD KEY
# =============================================================================

def cold_key_for(customer_id: str, record_id: str, timestamp: datetime) -> str:
    """
    Deterministic cold object key from record identity and event time.

    Pure function: retries always target the same key, so a re-copy
    overwrites instead of duplicating.
    """
    validate_identifier("customer_id", customer_id)
    validate_identifier("id", record_id)
    return f"{customer_id}/{year_month(timestamp)}/{record_id}{COLD_KEY_SUFFIX}"


def cold_key(record: BillingRecord) -> str:
    """Cold object key of a record."""
    return cold_key_for(record.customer_id, record.id, record.timestamp)


def cold_key_matches(key: str, customer_id: str, record_id: str) -> bool:
    """True when key addresses (customer_id, record_id) in some month."""
    parts = key.split("/")
    return (
        len(parts) == 3
        and parts[0] == customer_id
        and parts[2] == f"{record_id}{COLD_KEY_SUFFIX}"
    )


# =============================================================================
# JSON PAYLOAD
# =============================================================================

def record_to_dict(record: BillingRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "customer_id": record.customer_id,
        "timestamp": format_timestamp(record.timestamp),
        "amount": record.amount,
        "details": record.details,
    }


def record_from_dict(payload: dict[str, Any]) -> BillingRecord:
    """
    Build a record from its JSON object form.

    Raises:
        ValueError: On missing fields or malformed values.
    """
    missing = [name for name in ("id", "customer_id", "timestamp", "amount") if name not in payload]
    if missing:
        raise ValueError(f"record payload missing fields: {', '.join(missing)}")
    return BillingRecord(
        id=payload["id"],
        customer_id=payload["customer_id"],
        timestamp=parse_timestamp(payload["timestamp"]),
        amount=payload["amount"],
        details=payload.get("details") or {},
    )


def encode_record(record: BillingRecord) -> bytes:
    """
    Canonical JSON encoding.

    Raises:
        TypeError: If details holds values JSON cannot represent.
    """
    return json.dumps(
        record_to_dict(record),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


def decode_record(data: bytes | str) -> Result[BillingRecord, str]:
    """Decode a JSON payload into a record."""
    try:
        payload = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        return Err(f"invalid JSON: {e}")
    if not isinstance(payload, dict):
        return Err("record payload must be a JSON object")
    try:
        return Ok(record_from_dict(payload))
    except (ValueError, TypeError) as e:
        return Err(str(e))


def record_checksum(data: bytes) -> ContentHash:
    """SHA-256 over encoded bytes."""
    return ContentHash.compute(data)
