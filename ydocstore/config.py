"""
Configuration management for ydocstore.

All configuration is done via environment variables. This module provides
typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Compaction and checkpoint initialization policies are explicit choices
    - Table names are plain SQL identifiers

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)

_IDENTIFIER_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


class CompactionMode(Enum):
    """When compaction triggered by load_document runs."""

    SYNC = "sync"
    BACKGROUND = "background"
    DISABLED = "disabled"


class CheckpointInitMode(Enum):
    """When the initial checkpoint of a new document is written."""

    SYNC = "sync"
    BACKGROUND = "background"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def is_valid_identifier(name: str) -> bool:
    """Whether ``name`` can be used unquoted-safe as a table name."""
    return bool(_IDENTIFIER_RE.fullmatch(name))


@dataclass(frozen=True)
class StorageConfig:
    """SQLite storage configuration.

    Attributes:
        db_path: Path of the SQLite database file
        table_name: Table holding delta and checkpoint rows
        use_index: Provision the document_id and (document_id, id) indexes
        pool_size: Maximum number of pooled connections
        acquire_timeout_seconds: How long to wait for a free connection
        page_size: Rows per page when scanning a document's deltas
        busy_timeout_ms: SQLite busy timeout in milliseconds
        wal_mode: SQLite WAL journal mode enabled
    """

    db_path: str = "./data/ydocstore.db"
    table_name: str = "yjs_writings"
    use_index: bool = True
    pool_size: int = 5
    acquire_timeout_seconds: float = 30.0
    page_size: int = 1000
    busy_timeout_ms: int = 5000
    wal_mode: bool = True

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            db_path=os.getenv("STORE_DB_PATH", "./data/ydocstore.db"),
            table_name=os.getenv("STORE_TABLE_NAME", "yjs_writings"),
            use_index=_env_bool("STORE_USE_INDEX", "true"),
            pool_size=int(os.getenv("STORE_POOL_SIZE", "5")),
            acquire_timeout_seconds=float(os.getenv("STORE_ACQUIRE_TIMEOUT_SECONDS", "30")),
            page_size=int(os.getenv("STORE_PAGE_SIZE", "1000")),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
        )


@dataclass(frozen=True)
class CompactionConfig:
    """Compaction and checkpoint policy.

    Attributes:
        threshold: Compact when a load observes more deltas than this
        mode: Whether load-triggered compaction is awaited, dispatched or off
        checkpoint_init: Whether the first-write checkpoint is awaited or dispatched
    """

    threshold: int = 500
    mode: CompactionMode = CompactionMode.BACKGROUND
    checkpoint_init: CheckpointInitMode = CheckpointInitMode.BACKGROUND

    @classmethod
    def from_env(cls) -> CompactionConfig:
        """Load configuration from environment variables.

        Raises:
            ValueError: If a mode is not one of the supported values.
        """
        mode_str = os.getenv("COMPACTION_MODE", "background").lower()
        try:
            mode = CompactionMode(mode_str)
        except ValueError:
            raise ValueError(
                f"Invalid COMPACTION_MODE '{mode_str}'. Must be one of: sync, background, disabled"
            )

        init_str = os.getenv("CHECKPOINT_INIT_MODE", "background").lower()
        try:
            checkpoint_init = CheckpointInitMode(init_str)
        except ValueError:
            raise ValueError(
                f"Invalid CHECKPOINT_INIT_MODE '{init_str}'. Must be one of: sync, background"
            )

        return cls(
            threshold=int(os.getenv("COMPACTION_THRESHOLD", "500")),
            mode=mode,
            checkpoint_init=checkpoint_init,
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
class ServiceConfig:
    """Complete configuration.

    Attributes:
        storage: SQLite storage configuration
        compaction: Compaction policy
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    compaction: CompactionConfig = field(default_factory=CompactionConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServiceConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServiceConfig with all sections populated from environment.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            compaction=CompactionConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not is_valid_identifier(self.storage.table_name):
            raise ValueError(
                f"STORE_TABLE_NAME '{self.storage.table_name}' is not a valid SQL identifier"
            )
        if self.storage.pool_size < 1:
            raise ValueError("STORE_POOL_SIZE must be at least 1")
        if self.storage.page_size < 1:
            raise ValueError("STORE_PAGE_SIZE must be at least 1")
        if self.compaction.threshold < 0:
            raise ValueError("COMPACTION_THRESHOLD must not be negative")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        db_dir = os.path.dirname(os.path.abspath(self.storage.db_path))
        if not os.path.exists(db_dir):
            logger.warning(
                f"Database directory does not exist: {db_dir}. It will be created on connect."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Configuration loaded",
            extra={
                "db_path": self.storage.db_path,
                "table_name": self.storage.table_name,
                "use_index": self.storage.use_index,
                "pool_size": self.storage.pool_size,
                "page_size": self.storage.page_size,
                "compaction_threshold": self.compaction.threshold,
                "compaction_mode": self.compaction.mode.value,
                "checkpoint_init": self.compaction.checkpoint_init.value,
                "log_level": self.observability.log_level,
            },
        )
