"""
Records module: billing record model, JSON codec and cold key scheme.
"""

from billvault.records.model import (
    Amount,
    BillingRecord,
    StoredRecord,
    validate_identifier,
)
from billvault.records.codec import (
    format_timestamp,
    parse_timestamp,
    epoch_micros,
    year_month,
    cold_key,
    cold_key_for,
    cold_key_matches,
    record_to_dict,
    record_from_dict,
    encode_record,
    decode_record,
    record_checksum,
)

__all__ = [
    "Amount",
    "BillingRecord",
    "StoredRecord",
    "validate_identifier",
    "format_timestamp",
    "parse_timestamp",
    "epoch_micros",
    "year_month",
    "cold_key",
    "cold_key_for",
    "cold_key_matches",
    "record_to_dict",
    "record_from_dict",
    "encode_record",
    "decode_record",
    "record_checksum",
]
