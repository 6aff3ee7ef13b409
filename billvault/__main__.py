#!/usr/bin/env python3
"""
Tiered Billing Record Store: Operator CLI

Usage:
    python -m billvault archive [--cutoff ISO | --retention-days N] [--deadline S]
    python -m billvault get CUSTOMER RECORD [--timestamp ISO]
    python -m billvault quarantine [--limit N]
    python -m billvault runs [--limit N]

    # Production backends
    STORAGE_HOT_BACKEND=redis STORAGE_COLD_BACKEND=s3 \\
    STORAGE_LEDGER_BACKEND=postgres STORAGE_LEASE_BACKEND=redis \\
    python -m billvault archive --retention-days 90

Exit codes:
    0 success, 1 configuration or connection error (including the lease
    backend), 2 pass aborted,
    3 lease held by another pass, 4 record not found, 5 record unavailable
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import replace
from typing import Optional, Sequence, TextIO

from billvault.archival import ArchivalEngine, PassLease, cutoff_for_retention
from billvault.archival.lease import LeaseConfig
from billvault.cache import ColdReadCache
from billvault.core.config import BillVaultConfig
from billvault.core.errors import LeaseError, LedgerUnavailableError, RecordNotFoundError, RecordUnavailableError
from billvault.ledger import MigrationLedger, MigrationState
from billvault.observability.logging import LogLevel, setup_logging
from billvault.records.codec import parse_timestamp, record_to_dict
from billvault.router import ReadRouter
from billvault.storage import Stores, open_stores

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_ABORTED = 2
EXIT_LEASE_HELD = 3
EXIT_NOT_FOUND = 4
EXIT_UNAVAILABLE = 5


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="billvault",
        description="Tiered billing record store operations",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    archive = commands.add_parser("archive", help="Run one archival pass")
    when = archive.add_mutually_exclusive_group()
    when.add_argument("--cutoff", help="Archive records with timestamp <= this ISO-8601 UTC time")
    when.add_argument("--retention-days", type=int, help="Archive records older than N days")
    archive.add_argument("--deadline", type=float, help="Cancel the pass after S seconds")

    get = commands.add_parser("get", help="Read a record through the unified router")
    get.add_argument("customer_id")
    get.add_argument("record_id")
    get.add_argument("--timestamp", help="Event-time hint (ISO-8601) for direct cold addressing")

    quarantine = commands.add_parser("quarantine", help="List quarantined records for review")
    quarantine.add_argument("--limit", type=int, default=100)

    runs = commands.add_parser("runs", help="Show recent archival runs")
    runs.add_argument("--limit", type=int, default=20)

    return parser


def _emit(out: TextIO, payload: object) -> None:
    out.write(json.dumps(payload, default=str, sort_keys=True) + "\n")


# =============================================================================
# COMMANDS
# =============================================================================

async def cmd_archive(args: argparse.Namespace, config: BillVaultConfig, stores: Stores, out: TextIO) -> int:
    archival = config.archival
    if args.deadline is not None:
        archival = replace(archival, pass_deadline_seconds=args.deadline)

    if args.cutoff:
        cutoff = parse_timestamp(args.cutoff)
    else:
        days = args.retention_days if args.retention_days is not None else archival.retention_days
        cutoff = cutoff_for_retention(retention_days=days)

    engine = ArchivalEngine(
        stores.hot,
        stores.cold,
        MigrationLedger(stores.ledger, page_size=archival.page_size),
        lease=PassLease(stores.lease, config=LeaseConfig(ttl_ms=archival.lease_ttl_ms)),
        config=archival,
    )
    try:
        run = await engine.run_archival_pass(cutoff)
    except LeaseError as e:
        print(f"Archival pass not started: {e.message}", file=sys.stderr)
        return EXIT_LEASE_HELD if e.is_contention else EXIT_CONFIG

    _emit(out, run.to_dict())
    return EXIT_ABORTED if run.aborted else EXIT_OK


async def cmd_get(args: argparse.Namespace, config: BillVaultConfig, stores: Stores, out: TextIO) -> int:
    router = ReadRouter(
        stores.hot,
        stores.cold,
        MigrationLedger(stores.ledger),
        cache=ColdReadCache.from_config(config.cache),
        config=config.read,
    )
    timestamp = parse_timestamp(args.timestamp) if args.timestamp else None
    try:
        record = await router.get_billing_record(args.record_id, args.customer_id, timestamp)
    except RecordNotFoundError as e:
        print(e.message, file=sys.stderr)
        return EXIT_NOT_FOUND
    except RecordUnavailableError as e:
        print(e.message, file=sys.stderr)
        return EXIT_UNAVAILABLE

    _emit(out, record_to_dict(record))
    return EXIT_OK


async def cmd_quarantine(args: argparse.Namespace, config: BillVaultConfig, stores: Stores, out: TextIO) -> int:
    ledger = MigrationLedger(stores.ledger)
    shown = 0
    try:
        async for entry in ledger.list_by_state(MigrationState.QUARANTINED):
            _emit(out, {
                "customer_id": entry.customer_id,
                "record_id": entry.record_id,
                "attempts": entry.attempts,
                "last_error": entry.last_error,
                "updated_at": entry.updated_at.isoformat(),
                "cold_key": entry.cold_key,
            })
            shown += 1
            if shown >= args.limit:
                break
    except LedgerUnavailableError as e:
        print(e.message, file=sys.stderr)
        return EXIT_UNAVAILABLE
    return EXIT_OK


async def cmd_runs(args: argparse.Namespace, config: BillVaultConfig, stores: Stores, out: TextIO) -> int:
    result = await MigrationLedger(stores.ledger).recent_runs(args.limit)
    if result.is_err():
        print(result.error.message, file=sys.stderr)
        return EXIT_UNAVAILABLE
    for run in result.unwrap():
        _emit(out, run.to_dict())
    return EXIT_OK


COMMANDS = {
    "archive": cmd_archive,
    "get": cmd_get,
    "quarantine": cmd_quarantine,
    "runs": cmd_runs,
}


async def run_command(
    args: argparse.Namespace,
    config: BillVaultConfig,
    stores: Optional[Stores] = None,
    out: TextIO = sys.stdout,
) -> int:
    """Execute a parsed command; opens (and closes) stores when none are given."""
    owned = stores is None
    if stores is None:
        opened = await open_stores(config.storage)
        if opened.is_err():
            print(f"Storage error: {opened.error.message}", file=sys.stderr)
            return EXIT_CONFIG
        stores = opened.unwrap()

    try:
        return await COMMANDS[args.command](args, config, stores, out)
    finally:
        if owned:
            await stores.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    config_result = BillVaultConfig.from_env()
    if config_result.is_err():
        print(f"Configuration error: {config_result.error}", file=sys.stderr)
        return EXIT_CONFIG
    config = config_result.unwrap()

    validation = config.validate()
    if validation.is_err():
        print(f"Validation error: {validation.error}", file=sys.stderr)
        return EXIT_CONFIG

    setup_logging(
        level=LogLevel.parse(config.observability.log_level),
        json_output=config.observability.log_json,
    )

    try:
        return asyncio.run(run_command(args, config))
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
