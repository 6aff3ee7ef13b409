"""
S3-Compatible Cold Store
========================

Cold tier implementation of ColdStoreProtocol for AWS S3, MinIO,
Cloudflare R2 and other S3-compatible services.

Design Principles:
------------------
1. **Idempotent Writes**: put overwrites by default; a retried copy of the
   same record lands on the same key with the same bytes
2. **Conditional Writes**: overwrite=False maps to If-None-Match: *
3. **Result Monad**: No exceptions for control flow; NoSuchKey is Ok(None)
4. **Integrity Metadata**: every object carries its SHA-256 as user metadata

Algorithmic Complexity:
-----------------------
| Operation | Time  | Notes                                  |
|-----------|-------|----------------------------------------|
| put       | O(n)  | n = object size                        |
| get       | O(n)  | Full download to memory                |
| exists    | O(1)  | HEAD                                   |
| find_key  | O(m)  | m = months archived for the customer   |

Thread Safety:
--------------
- aioboto3 clients are safe for concurrent async operations
- No shared mutable state besides counters

Author: Planetary AI Systems
License: MIT
"""

from __future__ import annotations

import asyncio
import hashlib
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional

from billvault.core.constants import COLD_CONTENT_TYPE, COLD_KEY_SUFFIX
from billvault.core.errors import StorageError
from billvault.core.types import Result, Ok, Err
from billvault.storage.config import S3Config

if TYPE_CHECKING:
    from types_aiobotocore_s3 import S3Client


# =============================================================================
# CONSTANTS
# =============================================================================

BACKEND_NAME: str = "s3"

NOT_FOUND_CODES: frozenset[str] = frozenset({"NoSuchKey", "404", "NotFound"})
THROTTLE_CODES: frozenset[str] = frozenset({
    "SlowDown", "Throttling", "ThrottlingException", "RequestLimitExceeded", "503",
})
PRECONDITION_CODES: frozenset[str] = frozenset({"PreconditionFailed", "412"})

LIST_PAGE_SIZE: int = 1000


# =============================================================================
# ERROR MAPPING
# =============================================================================

def _error_code(exc: BaseException) -> str:
    response = getattr(exc, "response", None) or {}
    return str(response.get("Error", {}).get("Code", ""))


def _map_error(operation: str, exc: BaseException, start_ns: int) -> StorageError:
    """Translate a botocore or asyncio exception into a StorageError."""
    from botocore.exceptions import ConnectTimeoutError, ReadTimeoutError

    if isinstance(exc, (asyncio.TimeoutError, ConnectTimeoutError, ReadTimeoutError)):
        duration_ms = (time.perf_counter_ns() - start_ns) // 1_000_000
        return StorageError.timeout(BACKEND_NAME, operation, duration_ms, exc)
    if _error_code(exc) in THROTTLE_CODES:
        return StorageError.throttled(BACKEND_NAME, operation, exc)
    return StorageError.connection_failed(BACKEND_NAME, operation, exc)


# =============================================================================
# METRICS
# =============================================================================

@dataclass(slots=True)
class S3Metrics:
    """Operation counters for the cold store."""
    put_count: int = 0
    get_count: int = 0
    head_count: int = 0
    list_count: int = 0

    bytes_uploaded: int = 0
    bytes_downloaded: int = 0

    put_latency_sum_ns: int = 0
    get_latency_sum_ns: int = 0

    errors: int = 0

    def record_upload(self, size_bytes: int, latency_ns: int) -> None:
        self.put_count += 1
        self.bytes_uploaded += size_bytes
        self.put_latency_sum_ns += latency_ns

    def record_download(self, size_bytes: int, latency_ns: int) -> None:
        self.get_count += 1
        self.bytes_downloaded += size_bytes
        self.get_latency_sum_ns += latency_ns


# =============================================================================
# S3 COLD STORE
# =============================================================================

class S3ColdStore:
    """
    Cold tier on an S3-compatible bucket.

    Keys are the deterministic "{customer_id}/{YYYY-MM}/{id}.json" scheme,
    optionally under config.key_prefix.

    Example:
        >>> store = S3ColdStore(S3Config(bucket_name="archived-records"))
        >>> await store.connect()
        >>> await store.put("customer123/2023-02/abcde123.json", payload)
        >>> await store.close()
    """

    __slots__ = (
        "_config",
        "_client",
        "_session",
        "_metrics",
        "_connected",
    )

    def __init__(self, config: S3Config) -> None:
        """
        Args:
            config: S3 connection configuration.

        Note:
            Call `connect()` before performing operations.
        """
        self._config = config
        self._client: Optional["S3Client"] = None
        self._session: Any = None
        self._metrics = S3Metrics()
        self._connected = False

    def _object_key(self, key: str) -> str:
        return f"{self._config.key_prefix}{key}"

    def _strip_prefix(self, object_key: str) -> str:
        return object_key[len(self._config.key_prefix):]

    # -------------------------------------------------------------------------
    # CONNECTION MANAGEMENT
    # -------------------------------------------------------------------------

    async def connect(self) -> Result[None, StorageError]:
        """
        Initialize the S3 client and check the bucket.

        Returns:
            Ok(None) on success, Err(StorageError) on failure.
        """
        import aioboto3
        from botocore.config import Config

        start_ns = time.perf_counter_ns()
        try:
            session_kwargs: Dict[str, Any] = {}
            if self._config.access_key_id and self._config.secret_access_key:
                session_kwargs["aws_access_key_id"] = self._config.access_key_id
                session_kwargs["aws_secret_access_key"] = self._config.secret_access_key
            if self._config.session_token:
                session_kwargs["aws_session_token"] = self._config.session_token

            self._session = aioboto3.Session(**session_kwargs)

            client_config = Config(
                max_pool_connections=self._config.max_concurrency,
                connect_timeout=self._config.connect_timeout_seconds,
                read_timeout=self._config.read_timeout_seconds,
                retries={"max_attempts": self._config.max_retries},
            )

            client_kwargs: Dict[str, Any] = {
                "region_name": self._config.region,
                "config": client_config,
                "use_ssl": self._config.use_ssl,
            }
            if self._config.endpoint_url:
                client_kwargs["endpoint_url"] = self._config.endpoint_url
            if not self._config.verify_ssl:
                client_kwargs["verify"] = False

            self._client = await self._session.client("s3", **client_kwargs).__aenter__()
            await self._client.head_bucket(Bucket=self._config.bucket_name)

            self._connected = True
            return Ok(None)
        except Exception as e:
            self._metrics.errors += 1
            return Err(_map_error("connect", e, start_ns))

    async def close(self) -> None:
        """Close the client. Safe to call multiple times."""
        if self._client:
            await self._client.__aexit__(None, None, None)
            self._client = None
        self._connected = False

    @property
    def metrics(self) -> S3Metrics:
        return self._metrics

    # -------------------------------------------------------------------------
    # COLD STORE OPERATIONS
    # -------------------------------------------------------------------------

    async def put(
        self,
        key: str,
        data: bytes,
        overwrite: bool = True,
    ) -> Result[bool, StorageError]:
        """
        Upload an archived record.

        Returns:
            Ok(True) when written, Ok(False) when overwrite=False and the
            object already exists.
        """
        if not self._connected or not self._client:
            return Err(StorageError.not_connected(BACKEND_NAME))

        put_kwargs: Dict[str, Any] = {
            "Bucket": self._config.bucket_name,
            "Key": self._object_key(key),
            "Body": data,
            "ContentType": COLD_CONTENT_TYPE,
            "Metadata": {"sha256": hashlib.sha256(data).hexdigest()},
        }
        if not overwrite:
            put_kwargs["IfNoneMatch"] = "*"

        start_ns = time.perf_counter_ns()
        try:
            await self._client.put_object(**put_kwargs)
        except Exception as e:
            if not overwrite and _error_code(e) in PRECONDITION_CODES:
                return Ok(False)
            self._metrics.errors += 1
            return Err(_map_error("put", e, start_ns))

        self._metrics.record_upload(len(data), time.perf_counter_ns() - start_ns)
        return Ok(True)

    async def get(self, key: str) -> Result[Optional[bytes], StorageError]:
        """
        Download an archived record.

        Returns:
            Ok(bytes), Ok(None) when the key does not exist.
        """
        if not self._connected or not self._client:
            return Err(StorageError.not_connected(BACKEND_NAME))

        start_ns = time.perf_counter_ns()
        try:
            response = await self._client.get_object(
                Bucket=self._config.bucket_name,
                Key=self._object_key(key),
            )
            async with response["Body"] as stream:
                data = await stream.read()
        except Exception as e:
            if _error_code(e) in NOT_FOUND_CODES:
                return Ok(None)
            self._metrics.errors += 1
            return Err(_map_error("get", e, start_ns))

        self._metrics.record_download(len(data), time.perf_counter_ns() - start_ns)
        return Ok(data)

    async def exists(self, key: str) -> Result[bool, StorageError]:
        """HEAD the object. Complexity: O(1)."""
        if not self._connected or not self._client:
            return Err(StorageError.not_connected(BACKEND_NAME))

        start_ns = time.perf_counter_ns()
        try:
            await self._client.head_object(
                Bucket=self._config.bucket_name,
                Key=self._object_key(key),
            )
        except Exception as e:
            if _error_code(e) in NOT_FOUND_CODES:
                return Ok(False)
            self._metrics.errors += 1
            return Err(_map_error("exists", e, start_ns))

        self._metrics.head_count += 1
        return Ok(True)

    async def find_key(
        self,
        customer_id: str,
        record_id: str,
    ) -> Result[Optional[str], StorageError]:
        """
        Locate a record's object when its event month is unknown.

        Lists the customer's month prefixes with a "/" delimiter, then
        HEADs the one candidate key per month, newest month first.

        Complexity: O(m) where m = months archived for the customer.
        """
        if not self._connected or not self._client:
            return Err(StorageError.not_connected(BACKEND_NAME))

        months = await self._list_months(customer_id)
        if months.is_err():
            return months

        for month in sorted(months.unwrap(), reverse=True):
            key = f"{customer_id}/{month}/{record_id}{COLD_KEY_SUFFIX}"
            found = await self.exists(key)
            if found.is_err():
                return found
            if found.unwrap():
                return Ok(key)
        return Ok(None)

    async def _list_months(self, customer_id: str) -> Result[list[str], StorageError]:
        """Month segments ("YYYY-MM") under the customer prefix."""
        prefix = self._object_key(f"{customer_id}/")
        list_kwargs: Dict[str, Any] = {
            "Bucket": self._config.bucket_name,
            "Prefix": prefix,
            "Delimiter": "/",
            "MaxKeys": LIST_PAGE_SIZE,
        }

        months: list[str] = []
        start_ns = time.perf_counter_ns()
        try:
            while True:
                response = await self._client.list_objects_v2(**list_kwargs)
                self._metrics.list_count += 1
                for common in response.get("CommonPrefixes", []):
                    month = common["Prefix"][len(prefix):].rstrip("/")
                    if month:
                        months.append(month)
                token = response.get("NextContinuationToken")
                if not token:
                    return Ok(months)
                list_kwargs["ContinuationToken"] = token
        except Exception as e:
            self._metrics.errors += 1
            return Err(_map_error("find_key", e, start_ns))


# =============================================================================
# MODULE EXPORTS
# =============================================================================

__all__ = [
    "S3ColdStore",
    "S3Metrics",
]
