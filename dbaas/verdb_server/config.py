"""
Configuration management for VerDB Server.

All configuration is done via environment variables.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Live and history collections are always distinct
    - Configuration objects are immutable once loaded

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Never change a collection default, existing stores depend on it
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class StoreBackend(Enum):
    """Supported document store backends."""

    MEMORY = "memory"
    SQLITE = "sqlite"


@dataclass(frozen=True)
class VersioningConfig:
    """Versioning options.

    Attributes:
        live_collection: Collection holding the current documents
        history_collection: Append-only collection of history records
        tenant_key: Payload field copied onto deletion tombstones
        log_errors: Log every aborted mutation before re-raising it
        claim_timeout_ms: How long a colliding history entry counts as
            another writer's in-flight claim rather than an orphan
    """

    live_collection: str = "documents"
    history_collection: str = "versions"
    tenant_key: str = "tenant_id"
    log_errors: bool = False
    claim_timeout_ms: int = 30_000

    @classmethod
    def from_env(cls) -> VersioningConfig:
        """Load configuration from environment variables."""
        return cls(
            live_collection=os.getenv("VERDB_LIVE_COLLECTION", "documents"),
            history_collection=os.getenv("VERDB_HISTORY_COLLECTION", "versions"),
            tenant_key=os.getenv("VERDB_TENANT_KEY", "tenant_id"),
            log_errors=os.getenv("VERDB_LOG_ERRORS", "false").lower() == "true",
            claim_timeout_ms=int(os.getenv("VERDB_CLAIM_TIMEOUT_MS", "30000")),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Document store configuration.

    Attributes:
        backend: Which store backend to use
        db_path: SQLite database file
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    backend: StoreBackend = StoreBackend.SQLITE
    db_path: str = "/var/lib/verdb/verdb.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables.

        Raises:
            ValueError: If STORE_BACKEND is not a known backend
        """
        backend_str = os.getenv("STORE_BACKEND", "sqlite").lower()
        try:
            backend = StoreBackend(backend_str)
        except ValueError:
            raise ValueError(f"Invalid STORE_BACKEND '{backend_str}'. Must be one of: memory, sqlite")

        return cls(
            backend=backend,
            db_path=os.getenv("SQLITE_DB_PATH", "/var/lib/verdb/verdb.db"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete configuration.

    Attributes:
        versioning: Versioning options
        storage: Document store configuration
        observability: Logging configuration
    """

    versioning: VersioningConfig = field(default_factory=VersioningConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            versioning=VersioningConfig.from_env(),
            storage=StorageConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.versioning.live_collection:
            raise ValueError("VERDB_LIVE_COLLECTION must not be empty")
        if not self.versioning.history_collection:
            raise ValueError("VERDB_HISTORY_COLLECTION must not be empty")
        if self.versioning.live_collection == self.versioning.history_collection:
            raise ValueError("Live and history collections must be different")
        if self.versioning.claim_timeout_ms < 0:
            raise ValueError("VERDB_CLAIM_TIMEOUT_MS must not be negative")

        if self.storage.backend == StoreBackend.SQLITE:
            if not self.storage.db_path:
                raise ValueError("SQLITE_DB_PATH is required when STORE_BACKEND=sqlite")
            if not os.path.exists(os.path.dirname(self.storage.db_path) or "."):
                logger.warning(
                    f"Database directory does not exist: {self.storage.db_path}. "
                    "It will be created on connect."
                )

        if self.observability.log_format not in ("json", "text"):
            raise ValueError(f"Invalid LOG_FORMAT '{self.observability.log_format}'")

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Configuration loaded",
            extra={
                "store_backend": self.storage.backend.value,
                "db_path": self.storage.db_path
                if self.storage.backend == StoreBackend.SQLITE
                else None,
                "live_collection": self.versioning.live_collection,
                "history_collection": self.versioning.history_collection,
                "tenant_key": self.versioning.tenant_key,
                "log_errors": self.versioning.log_errors,
                "claim_timeout_ms": self.versioning.claim_timeout_ms,
                "log_level": self.observability.log_level,
            },
        )
