"""
Error hierarchy for the migration runner.

Every error raised by the runner, the ledger, the registry or a schema
adapter derives from MigrationError and carries a category that tells the
retry layer whether trying again could help.

Note: ConnectionError intentionally shadows the builtin inside this package;
import it from here when you mean the runner's error.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    """Classification of error types for retry decisions."""

    TRANSIENT = "transient"  # Database unreachable, lock held - may succeed later
    PERMANENT = "permanent"  # Bad migration, rejected DDL - will not succeed on retry
    UNKNOWN = "unknown"


class MigrationError(Exception):
    """Base exception for all migration runner errors."""

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message} (caused by: {self.cause})"
        return self.message


class RegistryError(MigrationError):
    """Malformed, duplicate or unknown migration id, or a broken migration module."""

    category = ErrorCategory.PERMANENT


class ConnectionError(MigrationError):
    """The target database (or its ledger table) could not be reached."""

    category = ErrorCategory.TRANSIENT


class SchemaOperationError(MigrationError):
    """A DDL or raw statement was rejected by the database."""

    category = ErrorCategory.PERMANENT


class LockContentionError(MigrationError):
    """Another process holds the migration lock."""

    category = ErrorCategory.TRANSIENT

    def __init__(
        self,
        message: str,
        holder: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message, cause)
        self.holder = holder


class InsufficientHistoryError(MigrationError):
    """Rollback requested for more migrations than are applied."""

    category = ErrorCategory.PERMANENT

    def __init__(self, requested: int, available: int):
        super().__init__(
            f"Cannot roll back {requested} migration(s): only {available} applied"
        )
        self.requested = requested
        self.available = available


class DuplicateEntryError(MigrationError):
    """The ledger already records this migration id."""

    category = ErrorCategory.PERMANENT

    def __init__(self, migration_id: str, cause: Optional[BaseException] = None):
        super().__init__(f"Migration {migration_id} is already recorded as applied", cause)
        self.migration_id = migration_id


class NotFoundError(MigrationError):
    """The ledger has no entry for this migration id."""

    category = ErrorCategory.PERMANENT

    def __init__(self, migration_id: str):
        super().__init__(f"Migration {migration_id} is not recorded as applied")
        self.migration_id = migration_id


class MigrationFailedError(MigrationError):
    """A migration's up or down procedure failed and was rolled back.

    Attributes:
        migration_id: The migration that failed.
        direction: "up" or "down".
        completed: Ids finished earlier in the same run (still committed).
    """

    def __init__(
        self,
        migration_id: str,
        direction: str,
        cause: BaseException,
        completed: Optional[list[str]] = None,
    ):
        super().__init__(f"Migration {migration_id} failed during {direction}", cause)
        self.migration_id = migration_id
        self.direction = direction
        self.completed = list(completed or [])

    @property
    def category(self) -> ErrorCategory:  # type: ignore[override]
        return classify_error(self.cause) if self.cause else ErrorCategory.UNKNOWN

    @property
    def cause_name(self) -> str:
        """Class name of the underlying error, used as the CLI error category."""
        return type(self.cause).__name__ if self.cause else "UnknownError"


def classify_error(error: BaseException) -> ErrorCategory:
    """Classify an error into a category.

    Runner errors know their own category. Anything else is unknown.
    """
    if isinstance(error, MigrationError):
        return error.category
    return ErrorCategory.UNKNOWN
