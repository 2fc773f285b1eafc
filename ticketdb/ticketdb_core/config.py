"""
Configuration management for the TicketDB core.

All configuration is done via environment variables. This module provides
typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set an explicit DATA_DIR and CATALOG_PATH

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StorageConfig:
    """SQLite storage configuration.

    Attributes:
        data_dir: Directory holding the database file
        db_filename: Database file name inside data_dir
        wal_mode: SQLite WAL mode enabled (readers never block writers)
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cache_size_pages: SQLite cache size in pages (negative = KB)
    """

    data_dir: str = "/var/lib/ticketdb"
    db_filename: str = "ticketdb.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -64000  # 64MB

    @property
    def db_path(self) -> Path:
        return Path(self.data_dir) / self.db_filename

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "/var/lib/ticketdb"),
            db_filename=os.getenv("DB_FILENAME", "ticketdb.db"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-64000")),
        )


@dataclass(frozen=True)
class CatalogConfig:
    """Field catalog source configuration.

    Attributes:
        catalog_path: JSON file with field definitions and entity types
    """

    catalog_path: str | None = None

    @classmethod
    def from_env(cls) -> CatalogConfig:
        """Load configuration from environment variables."""
        return cls(catalog_path=os.getenv("CATALOG_PATH"))


@dataclass(frozen=True)
class ChangeLogConfig:
    """Changelog reader configuration.

    Attributes:
        page_size: Rows fetched per round trip when iterating entries
    """

    page_size: int = 500

    @classmethod
    def from_env(cls) -> ChangeLogConfig:
        """Load configuration from environment variables."""
        return cls(page_size=int(os.getenv("CHANGELOG_PAGE_SIZE", "500")))


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
class EngineConfig:
    """Complete engine configuration.

    Attributes:
        storage: SQLite storage configuration
        catalog: Field catalog source
        changelog: Changelog reader configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    catalog: CatalogConfig = field(default_factory=CatalogConfig)
    changelog: ChangeLogConfig = field(default_factory=ChangeLogConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            catalog=CatalogConfig.from_env(),
            changelog=ChangeLogConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.storage.db_filename:
            raise ValueError("DB_FILENAME must not be empty")
        if self.storage.busy_timeout_ms < 0:
            raise ValueError("SQLITE_BUSY_TIMEOUT_MS must not be negative")
        if self.changelog.page_size <= 0:
            raise ValueError("CHANGELOG_PAGE_SIZE must be positive")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )
        if self.catalog.catalog_path and not os.path.exists(self.catalog.catalog_path):
            raise ValueError(f"CATALOG_PATH does not exist: {self.catalog.catalog_path}")

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Engine configuration loaded",
            extra={
                "data_dir": self.storage.data_dir,
                "db_filename": self.storage.db_filename,
                "wal_mode": self.storage.wal_mode,
                "catalog_path": self.catalog.catalog_path,
                "changelog_page_size": self.changelog.page_size,
                "log_level": self.observability.log_level,
            },
        )
