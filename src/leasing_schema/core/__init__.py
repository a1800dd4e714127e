"""Core infrastructure - config, logging, errors, retry."""

from leasing_schema.core.config import ConfigManager
from leasing_schema.core.errors import (
    ConnectionError,
    DuplicateEntryError,
    ErrorCategory,
    InsufficientHistoryError,
    LockContentionError,
    MigrationError,
    MigrationFailedError,
    NotFoundError,
    RegistryError,
    SchemaOperationError,
    classify_error,
)
from leasing_schema.core.logging import setup_logging
from leasing_schema.core.retry import RetryConfig, retry_with_config

__all__ = [
    # Config
    "ConfigManager",
    # Logging
    "setup_logging",
    # Errors
    "ErrorCategory",
    "MigrationError",
    "RegistryError",
    "ConnectionError",
    "SchemaOperationError",
    "LockContentionError",
    "InsufficientHistoryError",
    "DuplicateEntryError",
    "NotFoundError",
    "MigrationFailedError",
    "classify_error",
    # Retry
    "RetryConfig",
    "retry_with_config",
]
