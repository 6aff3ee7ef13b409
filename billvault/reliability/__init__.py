"""
Reliability module: retry policy and exponential backoff.
"""

from billvault.reliability.retry import (
    RetryPolicy,
    RetryStats,
    calculate_backoff,
    is_transient,
    retry_with_backoff,
)

__all__ = [
    "RetryPolicy",
    "RetryStats",
    "calculate_backoff",
    "is_transient",
    "retry_with_backoff",
]
