"""
Production Store Adapter Tests (no live services)

Covers key layouts, row mapping, error translation, scan paging over
undecodable hashes and the not-connected guard of the Redis, S3 and
PostgreSQL adapters.

Run: python -m pytest billvault/tests/test_store_adapters.py -v
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone

from botocore.exceptions import ClientError
from redis import exceptions as redis_exc

from billvault.core.errors import ErrorCode
from billvault.ledger import MigrationState
from billvault.records import encode_record, epoch_micros
from billvault.storage import PostgresConfig, RedisConfig, S3Config
from billvault.storage import postgres_store, redis_store, s3_store
from billvault.storage.postgres_store import PostgresLedgerStore
from billvault.storage.redis_store import RedisHotStore, RedisLeaseBackend
from billvault.storage.s3_store import S3ColdStore
from billvault.tests.helpers import CUTOFF, assert_err, assert_ok, make_record


# =============================================================================
# REDIS
# =============================================================================

def test_redis_keys_share_one_hash_slot():
    store = RedisHotStore(RedisConfig(key_prefix="billing"))
    keys = [store._record_key("customer123", "abcde123"), store._index_key(), store._version_key()]
    assert all(key.startswith("{billing}:") for key in keys)
    assert store._member("customer123", "abcde123") == "customer123/abcde123"


def test_redis_hash_decoding():
    store = RedisHotStore(RedisConfig())
    record = make_record()

    stored = assert_ok(store._decode_hash({"d": encode_record(record).decode(), "v": "7"}))
    assert stored.record == record
    assert stored.version == 7

    error = assert_err(store._decode_hash({"d": "{broken", "v": "1"}))
    assert error.code == ErrorCode.STORAGE_SERIALIZATION_FAILED
    assert not error.is_transient


def test_redis_error_mapping():
    start = time.perf_counter_ns()
    assert redis_store._map_error("get", redis_exc.TimeoutError("slow"), start).code == ErrorCode.STORAGE_TIMEOUT
    assert redis_store._map_error("put", redis_exc.ResponseError("BUSY script"), start).code == ErrorCode.STORAGE_THROTTLED
    assert redis_store._map_error("get", redis_exc.ConnectionError("down"), start).code == ErrorCode.STORAGE_CONNECTION_FAILED


class _FakePipeline:
    def __init__(self, hashes):
        self._hashes = hashes
        self._queued = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def hgetall(self, key):
        self._queued.append(key)

    async def execute(self):
        return [self._hashes.get(key, {}) for key in self._queued]


class _FakeRedis:
    """Just the time index and hash reads used by the timestamp scan."""

    def __init__(self):
        self.index = []
        self.hashes = {}

    async def zrangebyscore(self, key, min_score, max_score, start=0, num=None, withscores=False):
        low = float("-inf") if min_score == "-inf" else min_score
        matching = sorted(
            ((member, score) for member, score in self.index if low <= score <= max_score),
            key=lambda item: (item[1], item[0]),
        )
        return matching[start:start + num]

    def pipeline(self, transaction=True):
        return _FakePipeline(self.hashes)


def _scan_store(fake: _FakeRedis) -> RedisHotStore:
    store = RedisHotStore(RedisConfig())
    store._client = fake
    store._connected = True
    return store


def _index(store: RedisHotStore, fake: _FakeRedis, record, payload: str, version: int) -> None:
    member = store._member(record.customer_id, record.id)
    fake.index.append((member, float(epoch_micros(record.timestamp))))
    fake.hashes[store._record_key(record.customer_id, record.id)] = {"d": payload, "v": str(version)}


async def test_redis_scan_skips_undecodable_hash(caplog):
    fake = _FakeRedis()
    store = _scan_store(fake)
    first = make_record(record_id="aaaa0001", timestamp=datetime(2023, 1, 1, tzinfo=timezone.utc))
    poison = make_record(record_id="aaaa0002", timestamp=datetime(2023, 1, 2, tzinfo=timezone.utc))
    last = make_record(record_id="aaaa0003", timestamp=datetime(2023, 1, 3, tzinfo=timezone.utc))
    _index(store, fake, first, encode_record(first).decode(), 1)
    _index(store, fake, poison, "{broken", 2)
    _index(store, fake, last, encode_record(last).decode(), 3)

    with caplog.at_level("ERROR", logger=redis_store.__name__):
        records, cursor = assert_ok(await store.query_by_timestamp(CUTOFF, limit=2))

    assert [stored.record.id for stored in records] == ["aaaa0001"]
    assert cursor is not None
    assert store.metrics.undecodable_records == 1
    assert any(getattr(r, "member", None) == "customer123/aaaa0002" for r in caplog.records)

    # The cursor moves past the bad hash, so later pages still arrive
    records, cursor = assert_ok(await store.query_by_timestamp(CUTOFF, limit=2, cursor=cursor))
    assert [stored.record.id for stored in records] == ["aaaa0003"]
    assert cursor is None


async def test_redis_requires_connect():
    store = RedisHotStore(RedisConfig())
    assert assert_err(await store.get("c", "r")).code == ErrorCode.STORAGE_NOT_CONNECTED
    assert assert_err(await store.query_by_timestamp(CUTOFF)).code == ErrorCode.STORAGE_NOT_CONNECTED

    lease = RedisLeaseBackend(RedisConfig())
    assert assert_err(await lease.try_acquire("res", "me", 1000)).code == ErrorCode.STORAGE_NOT_CONNECTED


# =============================================================================
# S3
# =============================================================================

def test_s3_key_prefix():
    store = S3ColdStore(S3Config(bucket_name="archived-records", key_prefix="billing/"))
    key = "customer123/2023-02/abcde123.json"
    assert store._object_key(key) == "billing/" + key
    assert store._strip_prefix(store._object_key(key)) == key


def test_s3_error_mapping():
    start = time.perf_counter_ns()
    throttled = ClientError({"Error": {"Code": "SlowDown", "Message": "slow"}}, "PutObject")
    denied = ClientError({"Error": {"Code": "AccessDenied", "Message": "no"}}, "GetObject")
    assert s3_store._map_error("put", throttled, start).code == ErrorCode.STORAGE_THROTTLED
    assert s3_store._map_error("get", denied, start).code == ErrorCode.STORAGE_CONNECTION_FAILED
    assert s3_store._map_error("get", asyncio.TimeoutError(), start).code == ErrorCode.STORAGE_TIMEOUT


class _FakeS3:
    """Bucket listing with delimiters and HEAD, as used by find_key."""

    def __init__(self, keys):
        self.keys = set(keys)
        self.listed = []
        self.heads = []

    async def list_objects_v2(self, Bucket, Prefix, Delimiter=None, MaxKeys=1000, ContinuationToken=None):
        self.listed.append((Prefix, Delimiter))
        prefixes = sorted({
            Prefix + key[len(Prefix):].split(Delimiter, 1)[0] + Delimiter
            for key in self.keys
            if key.startswith(Prefix) and Delimiter in key[len(Prefix):]
        })
        return {"CommonPrefixes": [{"Prefix": p} for p in prefixes]}

    async def head_object(self, Bucket, Key):
        self.heads.append(Key)
        if Key not in self.keys:
            raise ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject")
        return {}


async def test_s3_find_key_heads_one_key_per_month():
    fake = _FakeS3([
        "billing/customer123/2023-01/other001.json",
        "billing/customer123/2023-01/other002.json",
        "billing/customer123/2023-02/abcde123.json",
        "billing/customer123/2023-03/other003.json",
    ])
    store = S3ColdStore(S3Config(bucket_name="archived-records", key_prefix="billing/"))
    store._client = fake
    store._connected = True

    key = assert_ok(await store.find_key("customer123", "abcde123"))

    assert key == "customer123/2023-02/abcde123.json"
    assert fake.listed == [("billing/customer123/", "/")]
    # Newest month first, never the objects themselves
    assert fake.heads == [
        "billing/customer123/2023-03/abcde123.json",
        "billing/customer123/2023-02/abcde123.json",
    ]
    assert assert_ok(await store.find_key("customer123", "missing1")) is None


async def test_s3_requires_connect():
    store = S3ColdStore(S3Config(bucket_name="archived-records"))
    assert assert_err(await store.get("c/2023-02/r.json")).code == ErrorCode.STORAGE_NOT_CONNECTED


# =============================================================================
# POSTGRES
# =============================================================================

def test_ledger_row_mapping():
    updated = datetime(2024, 1, 2, tzinfo=timezone.utc)
    entry = postgres_store._entry_from_row({
        "customer_id": "customer123",
        "record_id": "abcde123",
        "state": "COPY_IN_FLIGHT",
        "attempts": 2,
        "last_error": "checksum mismatch",
        "updated_at": updated,
        "cold_key": "customer123/2023-02/abcde123.json",
    })
    assert entry.state is MigrationState.COPY_IN_FLIGHT
    assert entry.attempts == 2
    assert entry.updated_at == updated


def test_run_row_mapping():
    started = datetime(2024, 1, 2, tzinfo=timezone.utc)
    run = postgres_store._run_from_row({
        "run_id": "run-1", "cutoff": CUTOFF, "started_at": started, "finished_at": None,
        "scanned": 3, "migrated": 2, "failed": 1, "skipped": 0, "requeued": 0,
        "quarantined": 0, "reconciled": 0, "aborted": False, "deadline_exceeded": False,
    })
    assert run.run_id == "run-1"
    assert not run.is_finished
    assert run.migrated == 2


async def test_closed_ledger_store_reports_errors():
    store = PostgresLedgerStore(PostgresConfig())
    error = assert_err(await store.get_entry("c", "r"))
    assert error.code == ErrorCode.STORAGE_CONNECTION_FAILED
    assert store.stats.failed_queries == 1
