"""
Pass Lease Tests

Covers:
- Mutual exclusion between holders
- Release and re-acquire with increasing fencing tokens
- Renewal failure marks the handle lost

Run: python -m pytest billvault/tests/test_lease.py -v
"""

from __future__ import annotations

import asyncio

import pytest

from billvault.archival import LeaseConfig, PassLease
from billvault.core.errors import ErrorCode, LeaseError
from billvault.tests.helpers import assert_err, assert_ok


async def test_second_holder_is_rejected(lease_backend):
    first = PassLease(lease_backend, holder_id="pass-a")
    second = PassLease(lease_backend, holder_id="pass-b")

    handle = assert_ok(await first.try_acquire())
    error = assert_err(await second.try_acquire())
    assert error.code == ErrorCode.MIGRATION_LEASE_HELD
    assert error.is_contention
    assert "pass-a" in error.message

    await handle.release()
    other = assert_ok(await second.try_acquire())
    assert other.fencing_token > handle.fencing_token
    await other.release()


async def test_release_is_idempotent(lease_backend):
    handle = assert_ok(await PassLease(lease_backend).try_acquire())
    assert assert_ok(await handle.release()) is True
    assert assert_ok(await handle.release()) is False
    assert not handle.is_valid


async def test_hold_context_releases(lease_backend):
    lease = PassLease(lease_backend)
    async with lease.hold() as handle:
        assert handle.is_valid
        with pytest.raises(LeaseError):
            async with PassLease(lease_backend).hold():
                pass
    assert not handle.is_valid
    assert assert_ok(await lease_backend.holder("billvault:archival-pass")) is None


async def test_backend_failure_is_not_contention(lease_backend):
    lease_backend.faults.fail_next("try_acquire")
    error = assert_err(await PassLease(lease_backend).try_acquire())
    assert isinstance(error, LeaseError)
    assert error.code == ErrorCode.MIGRATION_LEASE_BACKEND_FAILED
    assert not error.is_contention
    assert error.cause is not None

    # Backend recovered; nobody holds the lease
    handle = assert_ok(await PassLease(lease_backend).try_acquire())
    await handle.release()


async def test_renewal_keeps_lease_alive(lease_backend):
    lease = PassLease(lease_backend, config=LeaseConfig(ttl_ms=300))
    handle = assert_ok(await lease.try_acquire())
    await asyncio.sleep(0.5)
    assert handle.is_valid
    assert lease_backend.faults.calls.get("renew", 0) >= 1
    await handle.release()


async def test_failed_renewal_marks_handle_lost(lease_backend):
    lease_backend.faults.fail_always("renew")
    handle = assert_ok(await PassLease(lease_backend, config=LeaseConfig(ttl_ms=300)).try_acquire())
    await asyncio.sleep(0.4)
    assert handle.lost
    assert not handle.is_valid
    await handle.release()


def test_lease_config_validation():
    with pytest.raises(ValueError):
        LeaseConfig(ttl_ms=10)
    with pytest.raises(ValueError):
        LeaseConfig(ttl_ms=1000, renew_margin_ms=1000)
    assert LeaseConfig(ttl_ms=900).effective_renew_margin_ms == 300
