"""
Operator CLI Tests

Commands run against in-memory stores; output is one JSON object per line.

Run: python -m pytest billvault/tests/test_cli.py -v
"""

from __future__ import annotations

import io
import json
from dataclasses import replace

import pytest

from billvault.__main__ import (
    EXIT_ABORTED,
    EXIT_CONFIG,
    EXIT_LEASE_HELD,
    EXIT_NOT_FOUND,
    EXIT_OK,
    EXIT_UNAVAILABLE,
    build_parser,
    run_command,
)
from billvault.archival import PassLease
from billvault.core.config import BillVaultConfig, ReadConfig
from billvault.ledger import LedgerEntry, MigrationLedger, MigrationState
from billvault.storage import Stores
from billvault.tests.helpers import assert_ok, make_record


@pytest.fixture
def stores(hot, cold, ledger_store, lease_backend) -> Stores:
    return Stores(hot=hot, cold=cold, ledger=ledger_store, lease=lease_backend)


@pytest.fixture
def config() -> BillVaultConfig:
    return replace(BillVaultConfig(), read=ReadConfig(unavailable_retries=0))


async def run(argv, config, stores):
    out = io.StringIO()
    code = await run_command(build_parser().parse_args(argv), config, stores, out)
    lines = [json.loads(line) for line in out.getvalue().splitlines()]
    return code, lines


def test_cutoff_and_retention_are_exclusive():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["archive", "--cutoff", "2024-01-01T00:00:00Z", "--retention-days", "30"])


def test_command_is_required():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


async def test_archive_then_get(config, stores, hot):
    assert_ok(await hot.put(make_record()))

    code, lines = await run(["archive", "--cutoff", "2024-01-01T00:00:00Z"], config, stores)
    assert code == EXIT_OK
    assert lines[0]["migrated"] == 1
    assert lines[0]["aborted"] is False

    code, lines = await run(["get", "customer123", "abcde123"], config, stores)
    assert code == EXIT_OK
    assert lines == [{
        "id": "abcde123",
        "customer_id": "customer123",
        "timestamp": "2023-02-15T09:53:00Z",
        "amount": 200,
        "details": {"plan": "pro", "items": [{"sku": "A1", "qty": 2}]},
    }]

    code, lines = await run(["runs"], config, stores)
    assert code == EXIT_OK
    assert len(lines) == 1
    assert lines[0]["migrated"] == 1


async def test_archive_by_retention_days(config, stores, hot):
    assert_ok(await hot.put(make_record()))
    code, lines = await run(["archive", "--retention-days", "30"], config, stores)
    assert code == EXIT_OK
    assert lines[0]["migrated"] == 1


async def test_archive_refused_while_lease_held(config, stores, lease_backend):
    handle = assert_ok(await PassLease(lease_backend).try_acquire())
    try:
        code, lines = await run(["archive"], config, stores)
    finally:
        await handle.release()
    assert code == EXIT_LEASE_HELD
    assert lines == []


async def test_lease_backend_outage_is_not_reported_as_held(config, stores, lease_backend):
    lease_backend.faults.fail_next("try_acquire")
    code, lines = await run(["archive"], config, stores)
    assert code == EXIT_CONFIG
    assert lines == []


async def test_aborted_pass_exit_code(config, stores, ledger_store):
    ledger_store.faults.fail_next("put_run")
    code, lines = await run(["archive", "--cutoff", "2024-01-01T00:00:00Z"], config, stores)
    assert code == EXIT_ABORTED
    assert lines[0]["aborted"] is True


async def test_get_exit_codes(config, stores, ledger_store):
    code, _ = await run(["get", "customer123", "missing"], config, stores)
    assert code == EXIT_NOT_FOUND

    ledger = MigrationLedger(ledger_store)
    entry = assert_ok(await ledger.upsert(LedgerEntry.pending("customer123", "moving")))
    assert_ok(await ledger.transition(entry, MigrationState.COPY_IN_FLIGHT))

    code, _ = await run(["get", "customer123", "moving"], config, stores)
    assert code == EXIT_UNAVAILABLE


async def test_quarantine_listing(config, stores, ledger_store):
    ledger = MigrationLedger(ledger_store)
    for i in range(3):
        entry = assert_ok(await ledger.upsert(LedgerEntry.pending("customer123", f"r{i}")))
        assert_ok(await ledger.transition(entry, MigrationState.QUARANTINED, error="checksum mismatch"))

    code, lines = await run(["quarantine", "--limit", "2"], config, stores)

    assert code == EXIT_OK
    assert [line["record_id"] for line in lines] == ["r0", "r1"]
    assert lines[0]["last_error"] == "checksum mismatch"


async def test_quarantine_reports_ledger_outage(config, stores, ledger_store):
    ledger_store.faults.fail_next("list_entries")
    code, lines = await run(["quarantine"], config, stores)
    assert code == EXIT_UNAVAILABLE
    assert lines == []
