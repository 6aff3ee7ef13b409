"""
Retry Policy: Exponential Backoff with Jitter

Implements the retry strategy shared by the archival engine and the
caller-facing read API:
- Exponential backoff: 100ms × 2^n
- Full jitter: random(0, backoff) to prevent thundering herd
- Bounded attempts; only transient errors are retried

Operations return Result values, so retries are driven by Err variants
rather than exceptions. A per-attempt timeout turns a hung call into a
ReliabilityError.timeout that is itself retryable.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

from billvault.core import constants as C
from billvault.core.errors import ReliabilityError, StorageError
from billvault.core.types import Result, Ok, Err

logger = logging.getLogger(__name__)

T = TypeVar("T")
E = TypeVar("E")


def is_transient(error: Any) -> bool:
    """Default retry predicate: transient storage errors and timeouts."""
    if isinstance(error, StorageError):
        return error.is_transient
    return isinstance(error, ReliabilityError)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration."""

    max_retries: int = C.RETRY_MAX_ATTEMPTS
    base_delay_ms: int = C.RETRY_BASE_MS
    max_delay_ms: int = C.RETRY_MAX_DELAY_MS
    exponential_base: float = 2.0
    jitter: bool = True  # Full jitter

    # Per-attempt and overall timeouts
    attempt_timeout_s: Optional[float] = None
    global_timeout_s: float = 60.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay_ms < 0 or self.max_delay_ms < self.base_delay_ms:
            raise ValueError("require 0 <= base_delay_ms <= max_delay_ms")

    @classmethod
    def immediate(cls, max_retries: int) -> RetryPolicy:
        """Retries without sleeping (tests and in-process fakes)."""
        return cls(max_retries=max_retries, base_delay_ms=0, max_delay_ms=0, jitter=False)

    def backoff_ms(self, attempt: int) -> float:
        """Delay before retry number attempt + 1 (attempt is zero based)."""
        return calculate_backoff(
            attempt=attempt,
            base_delay_ms=self.base_delay_ms,
            max_delay_ms=self.max_delay_ms,
            exponential_base=self.exponential_base,
            jitter=self.jitter,
        )


@dataclass
class RetryStats:
    """Retry attempt statistics."""
    total_attempts: int = 0
    failed_attempts: int = 0
    total_delay_ms: float = 0.0
    last_error: Optional[str] = None


def calculate_backoff(
    attempt: int,
    base_delay_ms: int,
    max_delay_ms: int,
    exponential_base: float,
    jitter: bool,
) -> float:
    """
    Calculate backoff delay with optional jitter.

    Full jitter: random(0, min(cap, base * 2^attempt))
    """
    delay = min(max_delay_ms, base_delay_ms * (exponential_base ** attempt))

    if jitter:
        delay = random.uniform(0, delay)

    return delay


async def retry_with_backoff(
    func: Callable[[], Awaitable[Result[T, E]]],
    policy: RetryPolicy,
    should_retry: Callable[[Any], bool] = is_transient,
    stats: Optional[RetryStats] = None,
    operation: str = "operation",
) -> Result[T, Union[E, ReliabilityError]]:
    """
    Execute a Result-returning coroutine with retry and exponential backoff.

    Args:
        func: Zero-argument coroutine factory, called once per attempt
        policy: Retry configuration
        should_retry: Predicate deciding whether an Err is worth retrying
        stats: Optional accumulator for attempt statistics
        operation: Name used in timeout errors and logs

    Returns:
        The first Ok, the first non-retryable Err, or the last Err once
        retries are exhausted.
    """
    if stats is None:
        stats = RetryStats()

    global_deadline = time.monotonic() + policy.global_timeout_s
    result: Result[T, Union[E, ReliabilityError]] = Err(
        ReliabilityError.retry_exhausted(attempts=0, last_error="not attempted")
    )

    for attempt in range(policy.max_retries + 1):
        if time.monotonic() >= global_deadline:
            break

        stats.total_attempts += 1
        try:
            if policy.attempt_timeout_s is not None:
                result = await asyncio.wait_for(func(), timeout=policy.attempt_timeout_s)
            else:
                result = await func()
        except asyncio.TimeoutError:
            result = Err(ReliabilityError.timeout(
                operation, int(policy.attempt_timeout_s * 1000),
            ))

        if result.is_ok():
            return result

        stats.failed_attempts += 1
        stats.last_error = str(result.error)
        if not should_retry(result.error):
            return result

        if attempt < policy.max_retries:
            delay = policy.backoff_ms(attempt)
            stats.total_delay_ms += delay
            logger.debug(
                "Retrying %s in %.0fms (attempt %d): %s",
                operation, delay, attempt + 2, result.error,
            )
            await asyncio.sleep(delay / 1000)

    return result
