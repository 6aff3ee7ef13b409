"""
Pass Lease: Mutual Exclusion for Archival Passes

At most one archival pass runs at a time across all processes sharing a
lease backend. The lease carries a fencing token (monotonic per
resource) and is renewed in the background while the pass runs.

Algorithm:
    1. try_acquire on the backend with a TTL and a unique holder id
    2. Background renewal renew_margin_ms before local expiry
    3. A failed renewal marks the handle lost; the pass stops taking work
    4. Explicit release with token verification

Safety Guarantees:
    - Mutual exclusion: only one holder at a time
    - Crash recovery: TTL-based automatic release
    - Fencing: a stale holder cannot release a newer lease
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional
from uuid import uuid4

from billvault.core import constants as C
from billvault.core.errors import LeaseError
from billvault.core.types import Result, Ok, Err
from billvault.storage.protocols import LeaseBackendProtocol

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================
MIN_LEASE_TTL_MS: int = 100
CLOCK_DRIFT_FACTOR: float = 0.01   # 1% clock drift allowance


# =============================================================================
# LEASE CONFIGURATION
# =============================================================================
@dataclass(frozen=True, slots=True)
class LeaseConfig:
    """Configuration for the archival pass lease."""
    ttl_ms: int = C.ARCHIVAL_LEASE_TTL_MS
    auto_renew: bool = True
    renew_margin_ms: Optional[int] = None  # Default: a third of the TTL

    def __post_init__(self) -> None:
        if self.ttl_ms < MIN_LEASE_TTL_MS:
            raise ValueError(f"TTL must be >= {MIN_LEASE_TTL_MS}ms")
        if self.renew_margin_ms is not None and not (0 <= self.renew_margin_ms < self.ttl_ms):
            raise ValueError("Renew margin must be in [0, TTL)")

    @property
    def effective_renew_margin_ms(self) -> int:
        if self.renew_margin_ms is not None:
            return self.renew_margin_ms
        return self.ttl_ms // 3


# =============================================================================
# LEASE HANDLE
# =============================================================================
@dataclass
class LeaseHandle:
    """
    Handle to an acquired lease.

    Must call release() or be obtained through PassLease.hold().
    """
    resource_id: str
    holder_id: str
    fencing_token: int
    config: LeaseConfig
    expires_at: float  # time.monotonic() based

    _released: bool = field(default=False, repr=False)
    _lost: bool = field(default=False, repr=False)
    _renewal_task: Optional[asyncio.Task[None]] = field(default=None, repr=False)
    _owner: Optional[PassLease] = field(default=None, repr=False)

    @property
    def is_valid(self) -> bool:
        """Held, not lost, and not within the drift allowance of expiry."""
        if self._released or self._lost:
            return False
        drift_s = self.config.ttl_ms * CLOCK_DRIFT_FACTOR / 1000
        return time.monotonic() < self.expires_at - drift_s

    @property
    def lost(self) -> bool:
        return self._lost

    @property
    def ttl_remaining_ms(self) -> int:
        return max(0, int((self.expires_at - time.monotonic()) * 1000))

    async def release(self) -> Result[bool, LeaseError]:
        """Release the lease. Idempotent."""
        if self._released:
            return Ok(False)
        self._released = True

        if self._renewal_task:
            self._renewal_task.cancel()
            try:
                await self._renewal_task
            except asyncio.CancelledError:
                pass

        if self._owner is None:
            return Ok(False)
        return await self._owner._release_internal(self)


# =============================================================================
# PASS LEASE MANAGER
# =============================================================================
class PassLease:
    """
    Lease manager over a LeaseBackendProtocol.

    Usage:
        lease = PassLease(backend)

        async with lease.hold("billvault:archival-pass") as handle:
            await run_pass(handle)
    """

    __slots__ = ("_backend", "_holder_id", "_config")

    def __init__(
        self,
        backend: LeaseBackendProtocol,
        holder_id: Optional[str] = None,
        config: Optional[LeaseConfig] = None,
    ) -> None:
        self._backend = backend
        self._holder_id = holder_id or f"archival-{uuid4().hex[:12]}"
        self._config = config or LeaseConfig()

    @property
    def holder_id(self) -> str:
        return self._holder_id

    async def try_acquire(
        self,
        resource_id: str = C.ARCHIVAL_LEASE_RESOURCE,
    ) -> Result[LeaseHandle, LeaseError]:
        """
        Attempt to acquire the lease without waiting.

        Returns Err if the lease is held elsewhere or the backend fails.
        """
        config = self._config
        result = await self._backend.try_acquire(resource_id, self._holder_id, config.ttl_ms)
        if result.is_err():
            logger.error(
                "Lease backend failed",
                extra={"resource_id": resource_id, "error": result.error.message},
            )
            return Err(LeaseError.backend_failed(resource_id, result.error))

        token = result.unwrap()
        if token is None:
            holder = await self._backend.holder(resource_id)
            detail = f"held by {holder.unwrap_or(None) or 'another holder'}"
            return Err(LeaseError.held(resource_id, detail))

        handle = LeaseHandle(
            resource_id=resource_id,
            holder_id=self._holder_id,
            fencing_token=token,
            config=config,
            expires_at=time.monotonic() + config.ttl_ms / 1000,
        )
        handle._owner = self

        if config.auto_renew:
            handle._renewal_task = asyncio.create_task(self._auto_renew(handle))

        logger.debug(
            "Lease acquired",
            extra={"resource_id": resource_id, "holder_id": self._holder_id, "fencing_token": token},
        )
        return Ok(handle)

    @asynccontextmanager
    async def hold(
        self,
        resource_id: str = C.ARCHIVAL_LEASE_RESOURCE,
    ) -> AsyncIterator[LeaseHandle]:
        """
        Acquire as async context manager; releases on exit.

        Raises:
            LeaseError: If the lease cannot be acquired.
        """
        result = await self.try_acquire(resource_id)
        if result.is_err():
            raise result.error

        handle = result.unwrap()
        try:
            yield handle
        finally:
            await handle.release()

    async def _extend(self, handle: LeaseHandle) -> bool:
        result = await self._backend.renew(
            handle.resource_id, handle.holder_id, handle.fencing_token, handle.config.ttl_ms,
        )
        if result.is_err() or not result.unwrap():
            return False
        handle.expires_at = time.monotonic() + handle.config.ttl_ms / 1000
        return True

    async def _release_internal(self, handle: LeaseHandle) -> Result[bool, LeaseError]:
        result = await self._backend.release(
            handle.resource_id, handle.holder_id, handle.fencing_token,
        )
        if result.is_err():
            # TTL expiry frees the lease eventually
            logger.warning(
                "Lease release failed",
                extra={"resource_id": handle.resource_id, "error": result.error.message},
            )
            return Err(LeaseError.backend_failed(handle.resource_id, result.error))
        return result

    async def _auto_renew(self, handle: LeaseHandle) -> None:
        """Background task for automatic lease renewal."""
        margin_ms = handle.config.effective_renew_margin_ms
        while not handle._released:
            wait_ms = handle.ttl_remaining_ms - margin_ms
            await asyncio.sleep(max(wait_ms, 1) / 1000)

            if handle._released:
                return

            if not await self._extend(handle):
                handle._lost = True
                logger.error(
                    "Lease lost during renewal",
                    extra={"resource_id": handle.resource_id, "fencing_token": handle.fencing_token},
                )
                return
