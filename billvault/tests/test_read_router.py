"""
Unified Read Router Tests

Covers:
- Tier resolution order (hot, cache, cold)
- Ledger disambiguation of a double miss
- Store errors and timeouts surface as Unavailable, never NotFound
- Caller-facing get_billing_record errors

Run: python -m pytest billvault/tests/test_read_router.py -v
"""

from __future__ import annotations

import pytest

from billvault.cache import ColdReadCache
from billvault.core.errors import RecordNotFoundError, RecordUnavailableError, StorageError
from billvault.core.types import Err
from billvault.ledger import LedgerEntry, MigrationState
from billvault.records import cold_key, encode_record
from billvault.router import Found, NotFound, ReadRouter, Tier, Unavailable
from billvault.tests.helpers import CUTOFF, OLD, assert_ok, make_record

S = MigrationState


async def put_cold(cold, record):
    assert_ok(await cold.put(cold_key(record), encode_record(record)))


async def ledger_entry(ledger, record, *states):
    entry = assert_ok(await ledger.upsert(LedgerEntry.pending(record.customer_id, record.id, cold_key(record))))
    for state in states:
        entry = assert_ok(await ledger.transition(entry, state))
    return entry


# =============================================================================
# TIER RESOLUTION
# =============================================================================

async def test_hot_hit(router, hot):
    record = make_record()
    assert_ok(await hot.put(record))

    result = await router.get_record("customer123", "abcde123")

    assert isinstance(result, Found)
    assert result.tier is Tier.HOT
    assert result.record == record


async def test_archived_record_reads_back_from_cold_then_cache(engine, router, hot):
    record = make_record()
    assert_ok(await hot.put(record))
    run = await engine.run_archival_pass(CUTOFF)
    assert run.migrated == 1

    first = await router.get_record("customer123", "abcde123")
    assert isinstance(first, Found)
    assert first.tier is Tier.COLD
    assert first.record.details == record.details
    assert first.record.amount == 200

    second = await router.get_record("customer123", "abcde123")
    assert isinstance(second, Found)
    assert second.tier is Tier.CACHE
    assert second.record == record


async def test_timestamp_hint_addresses_cold_directly(router, cold):
    record = make_record()
    await put_cold(cold, record)

    result = await router.get_record("customer123", "abcde123", timestamp=OLD)

    assert isinstance(result, Found)
    assert result.tier is Tier.COLD
    assert cold.faults.calls.get("find_key", 0) == 0


async def test_ledger_cold_key_avoids_cold_search(hot, cold, ledger):
    record = make_record()
    await put_cold(cold, record)
    await ledger_entry(ledger, record, S.COPY_IN_FLIGHT, S.VERIFIED, S.DELETED)
    router = ReadRouter(hot, cold, ledger)

    result = await router.get_record("customer123", "abcde123")

    assert isinstance(result, Found)
    assert result.tier is Tier.COLD
    assert cold.faults.calls.get("find_key", 0) == 0


async def test_record_without_ledger_entry_is_still_located(hot, cold, ledger):
    record = make_record()
    await put_cold(cold, record)
    router = ReadRouter(hot, cold, ledger)

    result = await router.get_record("customer123", "abcde123")

    assert isinstance(result, Found)
    assert cold.faults.calls["find_key"] == 1


async def test_router_without_cache(hot, cold, ledger):
    record = make_record()
    await put_cold(cold, record)
    router = ReadRouter(hot, cold, ledger)

    for _ in range(2):
        result = await router.get_record("customer123", "abcde123")
        assert isinstance(result, Found)
        assert result.tier is Tier.COLD


async def test_stale_cache_entry_is_dropped(router, cache, cold):
    record = make_record()
    await put_cold(cold, record)
    # Cached payload belongs to another identity
    assert_ok(await cache.put(cold_key(record), encode_record(make_record(record_id="other"))))

    result = await router.get_record("customer123", "abcde123", timestamp=OLD)

    assert isinstance(result, Found)
    assert result.tier is Tier.COLD
    assert result.record == record


# =============================================================================
# LEDGER DISAMBIGUATION
# =============================================================================

async def test_unknown_record_is_not_found(router):
    result = await router.get_record("customer123", "nope")
    assert result == NotFound("customer123", "nope")


@pytest.mark.parametrize("states", [
    (S.COPY_IN_FLIGHT,),
    (S.COPY_IN_FLIGHT, S.VERIFIED),
])
async def test_in_flight_migration_is_unavailable(router, ledger, states):
    await ledger_entry(ledger, make_record(), *states)

    result = await router.get_record("customer123", "abcde123")

    assert isinstance(result, Unavailable)
    assert "in flight" in result.reason


async def test_deleted_without_cold_object_is_unavailable(router, ledger):
    await ledger_entry(ledger, make_record(), S.COPY_IN_FLIGHT, S.VERIFIED, S.DELETED)

    result = await router.get_record("customer123", "abcde123")

    assert isinstance(result, Unavailable)
    assert "missing from cold tier" in result.reason


@pytest.mark.parametrize("states", [(), (S.QUARANTINED,)])
async def test_pending_or_quarantined_miss_is_not_found(router, ledger, states):
    await ledger_entry(ledger, make_record(), *states)

    result = await router.get_record("customer123", "abcde123")

    assert isinstance(result, NotFound)


# =============================================================================
# STORE FAILURES
# =============================================================================

async def test_hot_error_with_cold_miss_is_unavailable(router, hot):
    hot.faults.fail_next("get")

    result = await router.get_record("customer123", "abcde123")

    assert isinstance(result, Unavailable)
    assert isinstance(result.cause, StorageError)


async def test_hot_error_with_cold_copy_is_found(router, hot, cold):
    record = make_record()
    await put_cold(cold, record)
    hot.faults.fail_next("get")

    result = await router.get_record("customer123", "abcde123")

    assert isinstance(result, Found)
    assert result.tier is Tier.COLD


async def test_hot_timeout_is_not_absence(make_router, hot):
    hot.faults.delay_next("get", 1.0)

    result = await make_router(hot_timeout_s=0.05).get_record("customer123", "abcde123")

    assert isinstance(result, Unavailable)


async def test_cold_timeout_is_unavailable(make_router, cold):
    cold.faults.delay_next("find_key", 1.0)

    result = await make_router(cold_timeout_s=0.05).get_record("customer123", "abcde123")

    assert isinstance(result, Unavailable)
    assert result.reason == "cold store unavailable"


async def test_undecodable_cold_object_is_unavailable(router, cold):
    assert_ok(await cold.put(cold_key(make_record()), b"\x00garbage"))

    result = await router.get_record("customer123", "abcde123", timestamp=OLD)

    assert isinstance(result, Unavailable)
    assert result.reason == "cold object unreadable"


async def test_cache_failure_degrades_to_cold(router, cold, monkeypatch):
    record = make_record()
    await put_cold(cold, record)

    async def broken_get(self, key):
        return Err(StorageError.connection_failed("cold_cache", "get"))

    monkeypatch.setattr(ColdReadCache, "get", broken_get)

    result = await router.get_record("customer123", "abcde123", timestamp=OLD)

    assert isinstance(result, Found)
    assert result.tier is Tier.COLD


async def test_ledger_failure_is_unavailable(router, ledger_store):
    ledger_store.faults.fail_next("get_entry")

    result = await router.get_record("customer123", "abcde123")

    assert isinstance(result, Unavailable)
    assert result.reason == "ledger unavailable"


async def test_invalid_identifiers_are_rejected(router):
    with pytest.raises(ValueError):
        await router.get_record("", "abcde123")
    with pytest.raises(ValueError):
        await router.get_record("customer123", "a/b")


# =============================================================================
# CALLER-FACING API
# =============================================================================

async def test_get_billing_record_returns_record(router, hot):
    record = make_record()
    assert_ok(await hot.put(record))
    assert await router.get_billing_record("abcde123", "customer123") == record


async def test_get_billing_record_not_found_is_not_retried(router, hot):
    with pytest.raises(RecordNotFoundError):
        await router.get_billing_record("abcde123", "customer123")
    assert hot.faults.calls["get"] == 1


async def test_get_billing_record_retries_unavailable(router, hot, ledger):
    await ledger_entry(ledger, make_record(), S.COPY_IN_FLIGHT)

    with pytest.raises(RecordUnavailableError) as info:
        await router.get_billing_record("abcde123", "customer123")

    assert "in flight" in info.value.message
    # unavailable_retries=1 in the fixture
    assert hot.faults.calls["get"] == 2


async def _noop():
    return None


async def test_get_billing_record_recovers_when_migration_completes(router, hot, cold, ledger):
    record = make_record()
    entry = await ledger_entry(ledger, record, S.COPY_IN_FLIGHT)

    async def migration_finishes():
        await put_cold(cold, record)
        verified = assert_ok(await ledger.transition(entry, S.VERIFIED))
        assert_ok(await ledger.transition(verified, S.DELETED))

    # First attempt sees an in-flight entry; the retry finds the cold copy
    hot.faults.before_next("get", _noop)
    hot.faults.before_next("get", migration_finishes)

    assert await router.get_billing_record("abcde123", "customer123") == record


# =============================================================================
# METRICS
# =============================================================================

async def test_read_metrics(router, hot, collector):
    assert_ok(await hot.put(make_record()))
    await router.get_record("customer123", "abcde123")
    await router.get_record("customer123", "missing")

    requests = collector.counter("read_requests_total", ["tier", "result"])
    assert requests.get(tier="hot", result="found") == 1
    assert requests.get(tier="none", result="not_found") == 1
    assert collector.histogram("read_latency_seconds", ["result"]).count(result="found") == 1
