"""
Configuration management for Notetree Server.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set an explicit store backend and data dir
    - Retry budgets are always at least one attempt

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
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
class StoreConfig:
    """Document store configuration.

    Attributes:
        backend: Which document store adapter to use
        data_dir: Directory for the SQLite database file
        sqlite_file: SQLite file name inside data_dir
        timeout_ms: Per-call timeout enforced by the adapter
    """

    backend: StoreBackend = StoreBackend.MEMORY
    data_dir: str = "/var/lib/notetree"
    sqlite_file: str = "notetree.db"
    timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StoreConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("NOTETREE_STORE_BACKEND", "memory").lower()
        try:
            backend = StoreBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid NOTETREE_STORE_BACKEND '{backend_str}'. Must be one of: memory, sqlite"
            )
        return cls(
            backend=backend,
            data_dir=os.getenv("NOTETREE_DATA_DIR", "/var/lib/notetree"),
            sqlite_file=os.getenv("NOTETREE_SQLITE_FILE", "notetree.db"),
            timeout_ms=int(os.getenv("NOTETREE_STORE_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class TreeConfig:
    """Tree engine configuration.

    Attributes:
        max_attempts: Read-modify-write attempts per document before giving up
        retry_delay_ms: Base delay between attempts (multiplied by attempt number)
        max_depth: Upper bound on ancestor walks (path resolution, cycle checks)
    """

    max_attempts: int = 5
    retry_delay_ms: int = 10
    max_depth: int = 1000

    @classmethod
    def from_env(cls) -> TreeConfig:
        """Load configuration from environment variables."""
        return cls(
            max_attempts=int(os.getenv("NOTETREE_MAX_ATTEMPTS", "5")),
            retry_delay_ms=int(os.getenv("NOTETREE_RETRY_DELAY_MS", "10")),
            max_depth=int(os.getenv("NOTETREE_MAX_DEPTH", "1000")),
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
    """Complete server configuration.

    HTTP bind settings live in api.settings (pydantic-settings), the same
    split the gateway uses.

    Attributes:
        store: Document store configuration
        tree: Tree engine configuration
        observability: Logging configuration
    """

    store: StoreConfig = field(default_factory=StoreConfig)
    tree: TreeConfig = field(default_factory=TreeConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        config = cls(
            store=StoreConfig.from_env(),
            tree=TreeConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.tree.max_attempts < 1:
            raise ValueError("NOTETREE_MAX_ATTEMPTS must be at least 1")
        if self.tree.retry_delay_ms < 0:
            raise ValueError("NOTETREE_RETRY_DELAY_MS must not be negative")
        if self.tree.max_depth < 1:
            raise ValueError("NOTETREE_MAX_DEPTH must be at least 1")
        if self.store.timeout_ms <= 0:
            raise ValueError("NOTETREE_STORE_TIMEOUT_MS must be positive")

        if self.store.backend == StoreBackend.SQLITE:
            if not self.store.sqlite_file:
                raise ValueError("NOTETREE_SQLITE_FILE is required when NOTETREE_STORE_BACKEND=sqlite")
            if not os.path.exists(self.store.data_dir):
                logger.warning(
                    f"Data directory does not exist: {self.store.data_dir}. "
                    "It will be created on connect."
                )
        else:
            logger.warning("Using in-memory document store; all data is lost on exit")

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Server configuration loaded",
            extra={
                "store_backend": self.store.backend.value,
                "data_dir": self.store.data_dir
                if self.store.backend == StoreBackend.SQLITE
                else None,
                "store_timeout_ms": self.store.timeout_ms,
                "max_attempts": self.tree.max_attempts,
                "retry_delay_ms": self.tree.retry_delay_ms,
                "max_depth": self.tree.max_depth,
                "log_level": self.observability.log_level,
            },
        )
