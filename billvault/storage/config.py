"""
Backend Configuration Module
============================

Type-safe, immutable configuration dataclasses for the store adapters.
All configurations use frozen dataclasses for thread-safety and hash-ability.

Design Principles:
------------------
1. **Immutability**: All configs are frozen to prevent runtime mutation
2. **Validation**: Pre-conditions checked at construction time
3. **Defaults**: Sensible defaults for development; explicit for production
4. **Environment**: Supports loading from environment variables

Backends:
---------
- Hot store:    Redis/Valkey (point reads, version-checked deletes)
- Cold store:   S3-compatible object store (AWS S3, MinIO, R2)
- Ledger store: PostgreSQL (durable, transactional upserts)
- Lease:        Redis (SET NX PX) or in-process for single-node runs
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, List, Optional, Tuple


# =============================================================================
# ENVIRONMENT HELPERS
# =============================================================================

def _env(prefix: str, key: str, default: str = "") -> str:
    return os.environ.get(f"{prefix}_{key}", default)


def _env_int(prefix: str, key: str, default: int) -> int:
    val = _env(prefix, key)
    return int(val) if val else default


def _env_bool(prefix: str, key: str, default: bool) -> bool:
    val = _env(prefix, key).lower()
    if val in ("true", "1", "yes"):
        return True
    if val in ("false", "0", "no"):
        return False
    return default


# =============================================================================
# ENUMERATIONS
# =============================================================================

class BackendType(Enum):
    """
    Storage backend type enumeration.

    Used for factory pattern dispatch and configuration validation.
    """
    IN_MEMORY = auto()  # Development/testing only
    REDIS = auto()      # Hot store and lease
    S3 = auto()         # Cold store
    POSTGRES = auto()   # Ledger store

    @classmethod
    def parse(cls, value: str) -> BackendType:
        mapping = {
            "in_memory": cls.IN_MEMORY,
            "memory": cls.IN_MEMORY,
            "redis": cls.REDIS,
            "valkey": cls.REDIS,
            "s3": cls.S3,
            "minio": cls.S3,
            "postgres": cls.POSTGRES,
            "postgresql": cls.POSTGRES,
        }
        try:
            return mapping[value.strip().lower()]
        except KeyError:
            raise ValueError(f"Unknown backend type: {value!r}") from None


class RedisMode(Enum):
    """
    Redis deployment topology.

    Determines connection pooling and failover strategy.
    """
    STANDALONE = auto()  # Single node - development
    SENTINEL = auto()    # HA via Redis Sentinel
    CLUSTER = auto()     # Sharded cluster mode


# =============================================================================
# REDIS CONFIGURATION
# =============================================================================

@dataclass(frozen=True, slots=True)
class RedisConfig:
    """
    Redis/Valkey connection configuration.

    Attributes:
        host: Redis server hostname or IP address.
        port: Redis server port (1-65535).
        password: Optional authentication password.
        db: Logical database index (0-15 for single node).
        mode: Deployment topology (standalone/sentinel/cluster).
        sentinel_hosts: List of (host, port) tuples for Sentinel mode.
        sentinel_service: Sentinel master name.
        key_prefix: Namespace prepended to every key.
        max_connections: Connection pool size. Must be > 0.
        connect_timeout_ms: TCP connection timeout in milliseconds.
        socket_timeout_ms: Socket read/write timeout in milliseconds.
        ssl: Enable TLS encryption for connections.
    """
    sentinel_hosts: Tuple[Tuple[str, int], ...] = field(default_factory=tuple)
    password: Optional[str] = None
    host: str = "localhost"
    sentinel_service: str = "mymaster"
    key_prefix: str = "billing"

    socket_timeout_ms: int = 5000
    connect_timeout_ms: int = 2000
    max_connections: int = 50
    port: int = 6379
    db: int = 0
    mode: RedisMode = RedisMode.STANDALONE

    ssl: bool = False

    def __post_init__(self) -> None:
        """
        Validate configuration invariants.

        Raises:
            ValueError: If any invariant is violated.
        """
        if not (1 <= self.port <= 65535):
            raise ValueError(f"port must be in [1, 65535], got {self.port}")
        if self.mode == RedisMode.STANDALONE and not (0 <= self.db <= 15):
            raise ValueError(f"db must be in [0, 15] for standalone, got {self.db}")
        if self.max_connections <= 0:
            raise ValueError(f"max_connections must be > 0, got {self.max_connections}")
        if self.connect_timeout_ms <= 0:
            raise ValueError(f"connect_timeout_ms must be > 0, got {self.connect_timeout_ms}")
        if self.socket_timeout_ms <= 0:
            raise ValueError(f"socket_timeout_ms must be > 0, got {self.socket_timeout_ms}")
        if self.mode == RedisMode.SENTINEL and len(self.sentinel_hosts) == 0:
            raise ValueError("sentinel_hosts required when mode == SENTINEL")
        if not self.key_prefix:
            raise ValueError("key_prefix must be non-empty")

    @classmethod
    def from_env(cls, prefix: str = "REDIS") -> RedisConfig:
        """
        Construct configuration from environment variables.

        Environment Variables:
        - {prefix}_HOST, {prefix}_PORT, {prefix}_PASSWORD, {prefix}_DB
        - {prefix}_SSL, {prefix}_MAX_CONNECTIONS
        - {prefix}_MODE: standalone|sentinel|cluster
        - {prefix}_SENTINEL_HOSTS: Comma-separated host:port pairs
        - {prefix}_KEY_PREFIX: Key namespace (default: billing)
        """
        mode_map = {
            "standalone": RedisMode.STANDALONE,
            "sentinel": RedisMode.SENTINEL,
            "cluster": RedisMode.CLUSTER,
        }
        mode = mode_map.get(_env(prefix, "MODE", "standalone").lower(), RedisMode.STANDALONE)

        sentinel_hosts: Tuple[Tuple[str, int], ...] = tuple()
        sentinel_str = _env(prefix, "SENTINEL_HOSTS")
        if sentinel_str:
            parsed: List[Tuple[str, int]] = []
            for entry in sentinel_str.split(","):
                host_port = entry.strip().split(":")
                if len(host_port) == 2:
                    parsed.append((host_port[0], int(host_port[1])))
            sentinel_hosts = tuple(parsed)

        return cls(
            host=_env(prefix, "HOST", "localhost"),
            port=_env_int(prefix, "PORT", 6379),
            password=_env(prefix, "PASSWORD") or None,
            db=_env_int(prefix, "DB", 0),
            mode=mode,
            sentinel_hosts=sentinel_hosts,
            key_prefix=_env(prefix, "KEY_PREFIX", "billing"),
            max_connections=_env_int(prefix, "MAX_CONNECTIONS", 50),
            connect_timeout_ms=_env_int(prefix, "CONNECT_TIMEOUT_MS", 2000),
            socket_timeout_ms=_env_int(prefix, "SOCKET_TIMEOUT_MS", 5000),
            ssl=_env_bool(prefix, "SSL", False),
        )

    def get_connection_kwargs(self) -> Dict[str, Any]:
        """
        Generate kwargs for redis-py connection.

        Returns:
            Dict suitable for redis.asyncio.Redis() or RedisCluster().
        """
        kwargs: Dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "socket_connect_timeout": self.connect_timeout_ms / 1000.0,
            "socket_timeout": self.socket_timeout_ms / 1000.0,
            "decode_responses": True,
            "ssl": self.ssl,
        }
        if self.mode != RedisMode.CLUSTER:
            kwargs["db"] = self.db
            kwargs["max_connections"] = self.max_connections
        if self.password:
            kwargs["password"] = self.password
        return kwargs


# =============================================================================
# S3 CONFIGURATION
# =============================================================================

@dataclass(frozen=True, slots=True)
class S3Config:
    """
    S3-compatible object store configuration for the cold tier.

    Attributes:
        bucket_name: S3 bucket name (required).
        region: AWS region.
        endpoint_url: Custom endpoint for MinIO/R2 (None for AWS).
        access_key_id: AWS access key (None for IAM role auth).
        secret_access_key: AWS secret key (None for IAM role auth).
        session_token: Temporary session token for STS.
        key_prefix: Optional prefix prepended to every cold key.
        max_concurrency: Connection pool size.
        connect_timeout_seconds: TCP connect timeout.
        read_timeout_seconds: Read operation timeout.
        max_retries: botocore-level retry attempts.
        use_ssl: Use HTTPS for connections.
        verify_ssl: Verify SSL certificates (disable for self-signed).
    """
    bucket_name: str
    region: str = "us-east-1"
    endpoint_url: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    session_token: Optional[str] = None
    key_prefix: str = ""

    max_concurrency: int = 10
    connect_timeout_seconds: int = 5
    read_timeout_seconds: int = 30
    max_retries: int = 3

    use_ssl: bool = True
    verify_ssl: bool = True

    def __post_init__(self) -> None:
        if not self.bucket_name or len(self.bucket_name) < 3:
            raise ValueError("bucket_name must be at least 3 characters")
        if self.max_concurrency <= 0:
            raise ValueError(f"max_concurrency must be > 0, got {self.max_concurrency}")
        if self.connect_timeout_seconds <= 0:
            raise ValueError("connect_timeout_seconds must be > 0")
        if self.read_timeout_seconds <= 0:
            raise ValueError("read_timeout_seconds must be > 0")
        if self.key_prefix and not self.key_prefix.endswith("/"):
            raise ValueError("key_prefix must end with '/'")

    @classmethod
    def from_env(cls, prefix: str = "S3") -> S3Config:
        """
        Construct configuration from environment variables.

        Environment Variables:
        - {prefix}_BUCKET: Bucket name (required)
        - {prefix}_REGION, {prefix}_ENDPOINT_URL, {prefix}_KEY_PREFIX
        - {prefix}_ACCESS_KEY_ID / AWS_ACCESS_KEY_ID
        - {prefix}_SECRET_ACCESS_KEY / AWS_SECRET_ACCESS_KEY
        - AWS_SESSION_TOKEN

        Raises:
            ValueError: If required bucket_name is missing.
        """
        bucket = _env(prefix, "BUCKET")
        if not bucket:
            raise ValueError(f"Environment variable {prefix}_BUCKET is required")

        return cls(
            bucket_name=bucket,
            region=_env(prefix, "REGION", "us-east-1"),
            endpoint_url=_env(prefix, "ENDPOINT_URL") or None,
            access_key_id=_env(prefix, "ACCESS_KEY_ID") or os.environ.get("AWS_ACCESS_KEY_ID"),
            secret_access_key=_env(prefix, "SECRET_ACCESS_KEY") or os.environ.get("AWS_SECRET_ACCESS_KEY"),
            session_token=os.environ.get("AWS_SESSION_TOKEN"),
            key_prefix=_env(prefix, "KEY_PREFIX", ""),
            max_concurrency=_env_int(prefix, "MAX_CONCURRENCY", 10),
            connect_timeout_seconds=_env_int(prefix, "CONNECT_TIMEOUT", 5),
            read_timeout_seconds=_env_int(prefix, "READ_TIMEOUT", 30),
            max_retries=_env_int(prefix, "MAX_RETRIES", 3),
            use_ssl=_env_bool(prefix, "USE_SSL", True),
            verify_ssl=_env_bool(prefix, "VERIFY_SSL", True),
        )


# =============================================================================
# POSTGRES CONFIGURATION
# =============================================================================

@dataclass(frozen=True, slots=True)
class PostgresConfig:
    """PostgreSQL ledger store configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "billvault"
    user: str = "billvault"
    password: str = ""
    pool_min: int = 2
    pool_max: int = 20
    query_timeout_ms: int = 5000
    schema: str = "public"

    def __post_init__(self) -> None:
        if self.pool_min > self.pool_max:
            raise ValueError("pool_min cannot exceed pool_max")
        if self.query_timeout_ms <= 0:
            raise ValueError("query_timeout_ms must be > 0")

    @property
    def dsn(self) -> str:
        """PostgreSQL connection string."""
        return (
            f"postgresql://{self.user}:{self.password}@"
            f"{self.host}:{self.port}/{self.database}"
        )

    @classmethod
    def from_env(cls, prefix: str = "POSTGRES") -> PostgresConfig:
        return cls(
            host=_env(prefix, "HOST", "localhost"),
            port=_env_int(prefix, "PORT", 5432),
            database=_env(prefix, "DATABASE", "billvault"),
            user=_env(prefix, "USER", "billvault"),
            password=_env(prefix, "PASSWORD", ""),
            pool_min=_env_int(prefix, "POOL_MIN", 2),
            pool_max=_env_int(prefix, "POOL_MAX", 20),
            query_timeout_ms=_env_int(prefix, "QUERY_TIMEOUT_MS", 5000),
            schema=_env(prefix, "SCHEMA", "public"),
        )


# =============================================================================
# UNIFIED STORAGE CONFIGURATION
# =============================================================================

@dataclass(frozen=True, slots=True)
class StorageConfig:
    """
    Unified configuration for all store adapters.

    Attributes:
        hot_backend: Hot store backend (IN_MEMORY or REDIS).
        cold_backend: Cold store backend (IN_MEMORY or S3).
        ledger_backend: Ledger store backend (IN_MEMORY or POSTGRES).
        lease_backend: Archival lease backend (IN_MEMORY or REDIS).
    """
    hot_backend: BackendType = BackendType.IN_MEMORY
    cold_backend: BackendType = BackendType.IN_MEMORY
    ledger_backend: BackendType = BackendType.IN_MEMORY
    lease_backend: BackendType = BackendType.IN_MEMORY

    redis_config: Optional[RedisConfig] = None
    s3_config: Optional[S3Config] = None
    postgres_config: Optional[PostgresConfig] = None

    def __post_init__(self) -> None:
        """Validate backend configuration consistency."""
        if self.hot_backend not in (BackendType.IN_MEMORY, BackendType.REDIS):
            raise ValueError(f"Unsupported hot_backend: {self.hot_backend.name}")
        if self.cold_backend not in (BackendType.IN_MEMORY, BackendType.S3):
            raise ValueError(f"Unsupported cold_backend: {self.cold_backend.name}")
        if self.ledger_backend not in (BackendType.IN_MEMORY, BackendType.POSTGRES):
            raise ValueError(f"Unsupported ledger_backend: {self.ledger_backend.name}")
        if self.lease_backend not in (BackendType.IN_MEMORY, BackendType.REDIS):
            raise ValueError(f"Unsupported lease_backend: {self.lease_backend.name}")

        uses_redis = BackendType.REDIS in (self.hot_backend, self.lease_backend)
        if uses_redis and self.redis_config is None:
            raise ValueError("redis_config required when a backend is REDIS")
        if self.cold_backend == BackendType.S3 and self.s3_config is None:
            raise ValueError("s3_config required when cold_backend=S3")
        if self.ledger_backend == BackendType.POSTGRES and self.postgres_config is None:
            raise ValueError("postgres_config required when ledger_backend=POSTGRES")

    @classmethod
    def for_development(cls) -> StorageConfig:
        """All in-memory backends for zero external dependencies."""
        return cls()

    @classmethod
    def from_env(cls) -> StorageConfig:
        """
        Construct full configuration from environment.

        Environment Variables:
        - STORAGE_HOT_BACKEND: in_memory|redis
        - STORAGE_COLD_BACKEND: in_memory|s3
        - STORAGE_LEDGER_BACKEND: in_memory|postgres
        - STORAGE_LEASE_BACKEND: in_memory|redis

        Plus backend-specific variables (REDIS_*, S3_*, POSTGRES_*).
        """
        hot = BackendType.parse(_env("STORAGE", "HOT_BACKEND", "in_memory"))
        cold = BackendType.parse(_env("STORAGE", "COLD_BACKEND", "in_memory"))
        ledger = BackendType.parse(_env("STORAGE", "LEDGER_BACKEND", "in_memory"))
        lease = BackendType.parse(_env("STORAGE", "LEASE_BACKEND", "in_memory"))

        redis_config = None
        if BackendType.REDIS in (hot, lease):
            redis_config = RedisConfig.from_env()

        s3_config = S3Config.from_env() if cold == BackendType.S3 else None
        postgres_config = PostgresConfig.from_env() if ledger == BackendType.POSTGRES else None

        return cls(
            hot_backend=hot,
            cold_backend=cold,
            ledger_backend=ledger,
            lease_backend=lease,
            redis_config=redis_config,
            s3_config=s3_config,
            postgres_config=postgres_config,
        )


# =============================================================================
# MODULE EXPORTS
# =============================================================================

__all__ = [
    "BackendType",
    "RedisMode",
    "RedisConfig",
    "S3Config",
    "PostgresConfig",
    "StorageConfig",
]
