"""
Configuration Tests

Run: python -m pytest billvault/tests/test_config.py -v
"""

from __future__ import annotations

from dataclasses import replace

import pytest

from billvault.core.config import ArchivalConfig, BillVaultConfig, ReadConfig
from billvault.storage import BackendType, StorageConfig, open_stores
from billvault.tests.helpers import assert_err, assert_ok


def test_defaults_are_valid():
    config = BillVaultConfig()
    assert_ok(config.validate())
    assert config.archival.retention_days == 90
    assert config.storage.hot_backend == BackendType.IN_MEMORY


def test_from_env_overrides(monkeypatch):
    monkeypatch.setenv("BILLVAULT_RETENTION_DAYS", "30")
    monkeypatch.setenv("BILLVAULT_WORKER_COUNT", "16")
    monkeypatch.setenv("BILLVAULT_PASS_DEADLINE_SECONDS", "1800")
    monkeypatch.setenv("BILLVAULT_COLD_TIMEOUT_S", "1.5")
    monkeypatch.setenv("BILLVAULT_LOG_LEVEL", "debug")
    monkeypatch.setenv("BILLVAULT_LOG_JSON", "false")

    config = assert_ok(BillVaultConfig.from_env())

    assert config.archival.retention_days == 30
    assert config.archival.worker_count == 16
    assert config.archival.pass_deadline_seconds == 1800.0
    assert config.read.cold_timeout_s == 1.5
    assert config.observability.log_level == "DEBUG"
    assert config.observability.log_json is False
    assert_ok(config.validate())


def test_from_env_rejects_malformed_numbers(monkeypatch):
    monkeypatch.setenv("BILLVAULT_MAX_ATTEMPTS", "five")
    assert "Configuration error" in assert_err(BillVaultConfig.from_env())


@pytest.mark.parametrize("change", [
    {"archival": ArchivalConfig(retention_days=0)},
    {"archival": ArchivalConfig(max_attempts=0)},
    {"archival": ArchivalConfig(worker_count=0)},
    {"archival": ArchivalConfig(pass_deadline_seconds=0)},
    {"read": ReadConfig(cold_timeout_s=0)},
])
def test_validate_rejects(change):
    assert assert_err(replace(BillVaultConfig(), **change).validate())


def test_backend_names():
    assert BackendType.parse("Valkey") is BackendType.REDIS
    assert BackendType.parse("postgresql") is BackendType.POSTGRES
    with pytest.raises(ValueError):
        BackendType.parse("mongo")


def test_storage_defaults_to_in_memory():
    storage = StorageConfig()
    assert storage.cold_backend == BackendType.IN_MEMORY
    assert storage.ledger_backend == BackendType.IN_MEMORY


def test_production_backends_need_their_config():
    with pytest.raises(ValueError):
        StorageConfig(hot_backend=BackendType.REDIS)
    with pytest.raises(ValueError):
        StorageConfig(cold_backend=BackendType.S3)
    with pytest.raises(ValueError):
        StorageConfig(hot_backend=BackendType.S3)


async def test_open_in_memory_stores():
    stores = assert_ok(await open_stores(StorageConfig.for_development()))
    assert assert_ok(await stores.hot.get("customer123", "abcde123")) is None
    await stores.close()
