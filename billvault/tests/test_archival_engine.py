"""
Archival Migration Engine Tests

Covers:
- Eligibility and the deterministic cold layout
- Idempotent re-runs
- No hot delete without a verified cold copy
- Retry budget and quarantine
- Late writes and external deletes during a pass
- Ledger outages, deadlines and crash reconciliation

Every scenario runs against the in-memory adapters with scripted faults.

Run: python -m pytest billvault/tests/test_archival_engine.py -v
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from billvault.archival import PassLease, RecordOutcome, cutoff_for_retention
from billvault.core.errors import LeaseError
from billvault.ledger import LedgerEntry, MigrationState
from billvault.records import cold_key, decode_record, encode_record
from billvault.router import NotFound
from billvault.tests.helpers import CUTOFF, OLD, RECENT, assert_ok, make_record

S = MigrationState


async def seed(hot, *records):
    for record in records:
        assert_ok(await hot.put(record))


async def state_of(ledger, record):
    entry = assert_ok(await ledger.get(record.customer_id, record.id))
    return entry.state if entry is not None else None


async def cold_record(cold, record):
    data = assert_ok(await cold.get(cold_key(record)))
    assert data is not None, f"no cold object for {record.id}"
    return assert_ok(decode_record(data))


def rewrite_of(hot, record, amount=999):
    async def hook():
        assert_ok(await hot.put(make_record(
            record_id=record.id, customer_id=record.customer_id,
            timestamp=record.timestamp, amount=amount,
        )))
    return hook


# =============================================================================
# BASIC PASSES
# =============================================================================

async def test_empty_hot_store_is_a_noop(engine, cold, ledger):
    run = await engine.run_archival_pass(CUTOFF)
    assert run.scanned == 0
    assert run.migrated == 0
    assert not run.aborted
    assert run.is_finished
    assert await cold.count() == 0
    runs = assert_ok(await ledger.recent_runs())
    assert [r.run_id for r in runs] == [run.run_id]


async def test_archives_exact_record_to_month_key(engine, hot, cold, ledger):
    record = make_record()
    await seed(hot, record)

    run = await engine.run_archival_pass(CUTOFF)

    assert run.migrated == 1
    assert await hot.count() == 0
    assert await cold.keys() == ["customer123/2023-02/abcde123.json"]
    assert await cold_record(cold, record) == record
    assert await state_of(ledger, record) is S.DELETED


async def test_only_records_at_or_before_cutoff_move(engine, hot, cold, ledger):
    old = make_record(record_id="old")
    edge = make_record(record_id="edge", timestamp=CUTOFF)
    recent = make_record(record_id="recent", timestamp=RECENT)
    await seed(hot, old, edge, recent)

    run = await engine.run_archival_pass(CUTOFF)

    assert run.scanned == 2
    assert run.migrated == 2
    assert assert_ok(await hot.get("customer123", "recent")) is not None
    assert await cold.count() == 2
    assert await state_of(ledger, recent) is None


async def test_many_records_across_pages(make_engine, hot, cold):
    records = [
        make_record(record_id=f"r{i:03d}", customer_id=f"c{i % 3}", timestamp=OLD + timedelta(hours=i))
        for i in range(25)
    ]
    await seed(hot, *records)

    run = await make_engine(page_size=4, worker_count=3).run_archival_pass(CUTOFF)

    assert run.scanned == 25
    assert run.migrated == 25
    assert await hot.count() == 0
    assert await cold.count() == 25


async def test_rerun_with_same_cutoff_changes_nothing(engine, hot, cold, ledger_store):
    await seed(hot, make_record(record_id="a"), make_record(record_id="b"))
    first = await engine.run_archival_pass(CUTOFF)
    assert first.migrated == 2

    writes, deletes = cold.writes, hot.deletes
    entries = await ledger_store.all_entries()

    second = await engine.run_archival_pass(CUTOFF)

    assert second.scanned == 0
    assert second.migrated == 0
    assert cold.writes == writes
    assert hot.deletes == deletes
    assert await ledger_store.all_entries() == entries


def test_cutoff_for_retention():
    now = datetime(2024, 4, 10, tzinfo=timezone.utc)
    assert cutoff_for_retention(now, 90) == datetime(2024, 1, 11, tzinfo=timezone.utc)
    with pytest.raises(ValueError):
        cutoff_for_retention(now, -1)


async def test_process_record_skips_ineligible(engine, hot, ledger):
    stored = assert_ok(await hot.put(make_record(timestamp=RECENT)))
    assert await engine.process_record(stored, CUTOFF) is RecordOutcome.SKIPPED
    assert await state_of(ledger, stored.record) is None


# =============================================================================
# VERIFICATION AND RETRY BUDGET
# =============================================================================

async def test_corrupt_copy_never_deletes_hot(engine, hot, cold, ledger):
    record = make_record()
    await seed(hot, record)
    cold.corrupt_always()

    run = await engine.run_archival_pass(CUTOFF)

    assert run.failed == 1
    assert run.migrated == 0
    assert await hot.count() == 1
    assert hot.deletes == 0
    entry = assert_ok(await ledger.get(record.customer_id, record.id))
    assert entry.state is S.COPY_IN_FLIGHT
    assert entry.attempts == 1
    assert "checksum" in entry.last_error

    # Storage heals; the next pass overwrites the bad object
    cold.corrupt_next_writes(0)
    run = await engine.run_archival_pass(CUTOFF)

    assert run.migrated == 1
    assert await hot.count() == 0
    assert await cold_record(cold, record) == record
    assert await state_of(ledger, record) is S.DELETED


async def test_persistent_corruption_quarantines(make_engine, hot, cold, ledger):
    engine = make_engine(max_attempts=3)
    record = make_record()
    await seed(hot, record)
    cold.corrupt_always()

    outcomes = []
    for _ in range(4):
        run = await engine.run_archival_pass(CUTOFF)
        outcomes.append((run.failed, run.quarantined, run.skipped))

    assert outcomes == [(1, 0, 0), (1, 0, 0), (0, 1, 0), (0, 0, 1)]
    entry = assert_ok(await ledger.get(record.customer_id, record.id))
    assert entry.state is S.QUARANTINED
    assert entry.attempts == 3
    assert await hot.count() == 1


async def test_transient_errors_are_retried_within_pass(make_engine, hot, cold, ledger):
    record = make_record()
    await seed(hot, record)
    cold.faults.fail_next("put", 2)

    run = await make_engine(retries=2).run_archival_pass(CUTOFF)

    assert run.migrated == 1
    assert run.failed == 0
    entry = assert_ok(await ledger.get(record.customer_id, record.id))
    assert entry.state is S.DELETED
    assert entry.attempts == 2


async def test_exhausted_in_pass_retries_fail_the_record(make_engine, hot, cold, ledger):
    record = make_record()
    await seed(hot, record)
    cold.faults.fail_next("put", 3)

    run = await make_engine(retries=1).run_archival_pass(CUTOFF)

    assert run.failed == 1
    assert await hot.count() == 1
    entry = assert_ok(await ledger.get(record.customer_id, record.id))
    assert entry.attempts == 2
    assert entry.state is S.COPY_IN_FLIGHT


async def test_attempt_budget_quarantines_within_pass(make_engine, hot, cold, ledger, collector):
    record = make_record()
    await seed(hot, record)
    cold.faults.fail_always("put")

    run = await make_engine(retries=5, max_attempts=2).run_archival_pass(CUTOFF)

    assert run.quarantined == 1
    assert await hot.count() == 1
    assert await cold.count() == 0
    entry = assert_ok(await ledger.get(record.customer_id, record.id))
    assert entry.state is S.QUARANTINED
    assert entry.attempts == 2
    assert entry.last_error
    assert collector.counter("archival_records_total", ["outcome"]).get(outcome="quarantined") == 1


async def test_unencodable_record_is_quarantined(engine, hot, cold, ledger):
    record = make_record(details={"bad": float("nan")})
    await seed(hot, record)

    run = await engine.run_archival_pass(CUTOFF)

    assert run.quarantined == 1
    assert await cold.count() == 0
    assert await hot.count() == 1
    assert await state_of(ledger, record) is S.QUARANTINED


# =============================================================================
# LATE WRITES
# =============================================================================

async def _noop():
    return None


async def test_rewrite_before_copy_requeues_without_writing(engine, hot, cold, ledger):
    record = make_record()
    await seed(hot, record)
    # The first hot get of a record is the source check before the copy
    hot.faults.before_next("get", rewrite_of(hot, record))

    run = await engine.run_archival_pass(CUTOFF)

    assert run.requeued == 1
    assert cold.writes == 0
    assert await state_of(ledger, record) is S.PENDING

    run = await engine.run_archival_pass(CUTOFF)

    assert run.migrated == 1
    assert (await cold_record(cold, record)).amount == 999


async def test_rewrite_before_verify_requeues(engine, hot, cold, ledger):
    record = make_record()
    await seed(hot, record)
    # Second hot get is the late-write guard after verification
    hot.faults.before_next("get", _noop)
    hot.faults.before_next("get", rewrite_of(hot, record))

    run = await engine.run_archival_pass(CUTOFF)

    assert run.requeued == 1
    assert await hot.count() == 1
    assert hot.deletes == 0
    assert await state_of(ledger, record) is S.COPY_IN_FLIGHT

    run = await engine.run_archival_pass(CUTOFF)

    assert run.migrated == 1
    assert await hot.count() == 0
    assert (await cold_record(cold, record)).amount == 999


async def test_rewrite_before_delete_requeues(engine, hot, cold, ledger):
    record = make_record()
    await seed(hot, record)
    hot.faults.before_next("delete_if_version", rewrite_of(hot, record))

    run = await engine.run_archival_pass(CUTOFF)

    assert run.requeued == 1
    assert (assert_ok(await hot.get(record.customer_id, record.id))).record.amount == 999
    assert await state_of(ledger, record) is S.VERIFIED

    run = await engine.run_archival_pass(CUTOFF)

    assert run.migrated == 1
    assert await hot.count() == 0
    assert (await cold_record(cold, record)).amount == 999
    assert await state_of(ledger, record) is S.DELETED


async def test_external_delete_before_hot_delete(engine, hot, cold, ledger):
    record = make_record()
    await seed(hot, record)

    async def remove():
        assert_ok(await hot.delete(record.customer_id, record.id))

    hot.faults.before_next("delete_if_version", remove)

    run = await engine.run_archival_pass(CUTOFF)

    assert run.migrated == 1
    assert await cold_record(cold, record) == record
    assert await state_of(ledger, record) is S.DELETED


async def test_external_delete_before_copy_is_skipped(engine, hot, cold, ledger, router):
    record = make_record()
    await seed(hot, record)

    async def remove():
        assert_ok(await hot.delete(record.customer_id, record.id))

    # Deleted after the scan, before the source check that precedes the copy
    hot.faults.before_next("get", remove)

    run = await engine.run_archival_pass(CUTOFF)

    assert run.scanned == 1
    assert run.skipped == 1
    assert run.migrated == 0
    assert cold.writes == 0
    assert await state_of(ledger, record) is None
    assert isinstance(await router.get_record(record.customer_id, record.id), NotFound)


async def test_external_delete_mid_migration_is_left_for_reconciliation(engine, hot, cold, ledger):
    record = make_record()
    await seed(hot, record)
    await _entry_in(ledger, record, S.COPY_IN_FLIGHT)

    async def remove():
        assert_ok(await hot.delete(record.customer_id, record.id))

    # Reconciliation reads first and finds the record; the source check does not
    hot.faults.before_next("get", _noop)
    hot.faults.before_next("get", remove)

    run = await engine.run_archival_pass(CUTOFF)

    assert run.skipped == 1
    assert cold.writes == 0
    assert await state_of(ledger, record) is S.COPY_IN_FLIGHT


# =============================================================================
# LEDGER OUTAGE, DEADLINE, LEASE
# =============================================================================

async def test_ledger_outage_aborts_without_deleting(engine, hot, cold, ledger_store):
    await seed(hot, make_record(record_id="a"), make_record(record_id="b"))
    ledger_store.faults.fail_always("get_entry")

    run = await engine.run_archival_pass(CUTOFF)

    assert run.aborted
    assert await hot.count() == 2
    assert hot.deletes == 0
    assert cold.writes == 0


async def test_ledger_outage_mid_record_never_deletes(engine, hot, cold, ledger, ledger_store):
    record = make_record()
    await seed(hot, record)

    async def ledger_goes_down():
        ledger_store.faults.fail_always("put_entry")

    # Outage strikes once the copy has started
    cold.faults.before_next("put", ledger_goes_down)

    run = await engine.run_archival_pass(CUTOFF)

    assert run.aborted
    assert await hot.count() == 1
    assert hot.deletes == 0
    assert await state_of(ledger, record) is S.COPY_IN_FLIGHT

    ledger_store.faults.clear()
    run = await engine.run_archival_pass(CUTOFF)
    assert run.migrated == 1
    assert await hot.count() == 0


async def test_run_record_failure_aborts_before_work(engine, hot, ledger, ledger_store):
    await seed(hot, make_record())
    ledger_store.faults.fail_next("put_run")

    run = await engine.run_archival_pass(CUTOFF)

    assert run.aborted
    assert run.scanned == 0
    assert await hot.count() == 1
    assert assert_ok(await ledger.recent_runs()) == []


async def test_scan_failure_ends_pass_early(make_engine, hot):
    await seed(hot, make_record())
    hot.faults.fail_next("query_by_timestamp", 3)

    run = await make_engine(retries=1).run_archival_pass(CUTOFF)

    assert run.aborted
    assert await hot.count() == 1


async def test_deadline_leaves_in_flight_for_next_pass(make_engine, hot, cold, ledger):
    record = make_record()
    await seed(hot, record)
    cold.faults.delay_next("put", 1.0)

    run = await make_engine(pass_deadline_seconds=0.05, worker_count=1).run_archival_pass(CUTOFF)

    assert run.deadline_exceeded
    assert not run.aborted
    assert await hot.count() == 1
    assert await state_of(ledger, record) is S.COPY_IN_FLIGHT

    run = await make_engine().run_archival_pass(CUTOFF)
    assert run.migrated == 1
    assert await state_of(ledger, record) is S.DELETED


async def test_concurrent_pass_is_refused(engine, lease_backend):
    other = await PassLease(lease_backend, holder_id="other-pass").try_acquire()
    handle = assert_ok(other)
    try:
        with pytest.raises(LeaseError):
            await engine.run_archival_pass(CUTOFF)
    finally:
        await handle.release()

    run = await engine.run_archival_pass(CUTOFF)
    assert not run.aborted


# =============================================================================
# CRASH RECONCILIATION
# =============================================================================

async def _entry_in(ledger, record, *states):
    entry = assert_ok(await ledger.upsert(LedgerEntry.pending(record.customer_id, record.id, cold_key(record))))
    for state in states:
        entry = assert_ok(await ledger.transition(entry, state))
    return entry


async def test_reconciles_entries_whose_hot_copy_is_gone(engine, cold, ledger):
    verified = make_record(record_id="verified")
    copied = make_record(record_id="copied")
    orphan = make_record(record_id="orphan")

    # Crash after the hot delete, before the ledger caught up
    assert_ok(await cold.put(cold_key(verified), encode_record(verified)))
    assert_ok(await cold.put(cold_key(copied), encode_record(copied)))
    await _entry_in(ledger, verified, S.COPY_IN_FLIGHT, S.VERIFIED)
    await _entry_in(ledger, copied, S.COPY_IN_FLIGHT)
    await _entry_in(ledger, orphan, S.COPY_IN_FLIGHT)

    run = await engine.run_archival_pass(CUTOFF)

    assert run.reconciled == 2
    assert await state_of(ledger, verified) is S.DELETED
    assert await state_of(ledger, copied) is S.DELETED
    assert await state_of(ledger, orphan) is S.COPY_IN_FLIGHT


async def test_reconciliation_ignores_mismatched_cold_object(engine, cold, ledger):
    record = make_record(record_id="wanted")
    other = make_record(record_id="someone-else")
    assert_ok(await cold.put(cold_key(record), encode_record(other)))
    await _entry_in(ledger, record, S.COPY_IN_FLIGHT, S.VERIFIED)

    run = await engine.run_archival_pass(CUTOFF)

    assert run.reconciled == 0
    assert await state_of(ledger, record) is S.VERIFIED


async def test_deleted_entry_with_hot_record_is_left_alone(engine, hot, cold, ledger):
    record = make_record()
    await _entry_in(ledger, record, S.COPY_IN_FLIGHT, S.VERIFIED, S.DELETED)
    await seed(hot, record)

    run = await engine.run_archival_pass(CUTOFF)

    assert run.skipped == 1
    assert await hot.count() == 1
    assert cold.writes == 0


# =============================================================================
# METRICS
# =============================================================================

async def test_pass_metrics(engine, hot, collector):
    await seed(hot, make_record(record_id="a"), make_record(record_id="b"))
    await engine.run_archival_pass(CUTOFF)

    records = collector.counter("archival_records_total", ["outcome"])
    passes = collector.counter("archival_passes_total", ["status"])
    duration = collector.histogram("archival_pass_duration_seconds", ())
    assert records.get(outcome="migrated") == 2
    assert passes.get(status="completed") == 1
    assert duration.count() == 1
