"""
System-Wide Constants for the Tiered Billing Store

All magic numbers and configuration defaults centralized here.
"""

from typing import Final

# =============================================================================
# SIZE AND TIME UNITS
# =============================================================================
KB: Final[int] = 1024
MB: Final[int] = 1024 * KB

SECOND_MS: Final[int] = 1000
MINUTE_MS: Final[int] = 60 * SECOND_MS

NS_PER_MS: Final[int] = 1_000_000
NS_PER_S: Final[int] = 1_000_000_000
SECONDS_PER_DAY: Final[int] = 86_400

# =============================================================================
# ARCHIVAL
# =============================================================================
DEFAULT_RETENTION_DAYS: Final[int] = 90
DEFAULT_MAX_ATTEMPTS: Final[int] = 5
DEFAULT_WORKER_COUNT: Final[int] = 8
DEFAULT_PAGE_SIZE: Final[int] = 100
MAX_PAGE_SIZE: Final[int] = 1000
DEFAULT_LEDGER_GRACE_DAYS: Final[int] = 30
ARCHIVAL_LEASE_RESOURCE: Final[str] = "billvault:archival-pass"
ARCHIVAL_LEASE_TTL_MS: Final[int] = MINUTE_MS

# =============================================================================
# RELIABILITY
# =============================================================================
RETRY_BASE_MS: Final[int] = 100
RETRY_MAX_DELAY_MS: Final[int] = 10 * SECOND_MS
RETRY_MAX_ATTEMPTS: Final[int] = 3

# =============================================================================
# READ PATH
# =============================================================================
HOT_TIMEOUT_S: Final[float] = 0.5
CACHE_TIMEOUT_S: Final[float] = 0.1
COLD_TIMEOUT_S: Final[float] = 3.0
LEDGER_TIMEOUT_S: Final[float] = 0.5
READ_UNAVAILABLE_RETRIES: Final[int] = 2

# =============================================================================
# COLD READ CACHE
# =============================================================================
CACHE_MAX_ENTRIES: Final[int] = 10_000
CACHE_TTL_SECONDS: Final[int] = 3600
CACHE_COMPRESSION_THRESHOLD: Final[int] = 1 * KB

# =============================================================================
# COLD OBJECT FORMAT
# =============================================================================
COLD_KEY_SUFFIX: Final[str] = ".json"
COLD_CONTENT_TYPE: Final[str] = "application/json"
