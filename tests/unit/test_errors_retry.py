"""
Unit tests for the error hierarchy and connection retry.

Tests cover:
- Error categories (transient vs permanent)
- Error messages with causes
- MigrationFailedError taking its category from the cause
- retry_with_config retrying only ConnectionError
- The runner retrying its initial connect
"""
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

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
from leasing_schema.core.retry import RetryConfig, retry_with_config
from leasing_schema.services.registry import MigrationRegistry
from leasing_schema.services.runner import MigrationRunner

INSTANT = RetryConfig(max_attempts=3, min_wait_seconds=0, max_wait_seconds=0, jitter=False)


class TestErrorHierarchy:
    """Test error type classification."""

    def test_all_errors_are_migration_errors(self):
        errors = [
            RegistryError("x"),
            ConnectionError("x"),
            SchemaOperationError("x"),
            LockContentionError("x"),
            InsufficientHistoryError(2, 1),
            DuplicateEntryError("001-a"),
            NotFoundError("001-a"),
        ]
        for error in errors:
            assert isinstance(error, MigrationError)
            assert isinstance(error.timestamp, datetime)

    def test_transient_errors(self):
        assert classify_error(ConnectionError("db down")) == ErrorCategory.TRANSIENT
        assert classify_error(LockContentionError("held", holder="host:1")) == ErrorCategory.TRANSIENT

    def test_permanent_errors(self):
        for error in [
            RegistryError("x"),
            SchemaOperationError("x"),
            InsufficientHistoryError(3, 1),
            DuplicateEntryError("001-a"),
            NotFoundError("001-a"),
        ]:
            assert classify_error(error) == ErrorCategory.PERMANENT

    def test_foreign_errors_are_unknown(self):
        assert classify_error(ValueError("x")) == ErrorCategory.UNKNOWN

    def test_connection_error_shadows_builtin(self):
        import builtins

        assert ConnectionError is not builtins.ConnectionError


class TestErrorMessages:
    """Test error string formatting."""

    def test_message_without_cause(self):
        assert str(RegistryError("bad id")) == "bad id"

    def test_message_with_cause(self):
        error = SchemaOperationError("Statement failed", cause=ValueError("syntax"))

        assert str(error) == "Statement failed (caused by: syntax)"
        assert isinstance(error.cause, ValueError)

    def test_insufficient_history_fields(self):
        error = InsufficientHistoryError(requested=3, available=1)

        assert error.requested == 3
        assert error.available == 1
        assert "only 1 applied" in str(error)


class TestMigrationFailedError:
    """Test the wrapper raised when a migration procedure fails."""

    def test_category_follows_cause(self):
        permanent = MigrationFailedError("001-a", "up", SchemaOperationError("rejected"))
        transient = MigrationFailedError("001-a", "up", ConnectionError("lost"))
        unknown = MigrationFailedError("001-a", "up", RuntimeError("bug"))

        assert permanent.category == ErrorCategory.PERMANENT
        assert transient.category == ErrorCategory.TRANSIENT
        assert unknown.category == ErrorCategory.UNKNOWN

    def test_fields(self):
        error = MigrationFailedError(
            "002-b", "down", SchemaOperationError("rejected"), completed=["003-c"]
        )

        assert error.migration_id == "002-b"
        assert error.direction == "down"
        assert error.completed == ["003-c"]
        assert error.cause_name == "SchemaOperationError"
        assert "002-b" in str(error)
        assert "rejected" in str(error)


class TestRetryConfig:
    """Test RetryConfig construction."""

    def test_defaults(self):
        config = RetryConfig()

        assert config.max_attempts == 3
        assert config.jitter is True

    def test_from_dict(self):
        config = RetryConfig.from_dict(
            {"max_attempts": "5", "min_wait_seconds": 0.5, "jitter": False}
        )

        assert config.max_attempts == 5
        assert config.min_wait_seconds == 0.5
        assert config.max_wait_seconds == 30.0
        assert config.jitter is False


class TestRetryWithConfig:
    """Test the retry decorator."""

    @pytest.mark.asyncio
    async def test_retries_connection_error(self):
        func = AsyncMock(side_effect=[ConnectionError("down"), ConnectionError("down"), "ok"])

        result = await retry_with_config(INSTANT)(func)()

        assert result == "ok"
        assert func.await_count == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        func = AsyncMock(side_effect=ConnectionError("down"))

        with pytest.raises(ConnectionError):
            await retry_with_config(INSTANT)(func)()

        assert func.await_count == 3

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self):
        func = AsyncMock(side_effect=SchemaOperationError("rejected"))

        with pytest.raises(SchemaOperationError):
            await retry_with_config(INSTANT)(func)()

        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_passes_arguments(self):
        func = AsyncMock(return_value=7)

        assert await retry_with_config(INSTANT)(func)(1, key="v") == 7
        func.assert_awaited_once_with(1, key="v")


class TestRunnerConnect:
    """Test the runner's use of retry when connecting."""

    @pytest.mark.asyncio
    async def test_connect_retries_transient_failures(self):
        backend = MagicMock()
        backend.is_connected = False
        backend.connect = AsyncMock(side_effect=[ConnectionError("refused"), None])
        runner = MigrationRunner(backend, MigrationRegistry(), retry=INSTANT)

        await runner.connect()

        assert backend.connect.await_count == 2

    @pytest.mark.asyncio
    async def test_connect_skipped_when_connected(self):
        backend = MagicMock()
        backend.is_connected = True
        backend.connect = AsyncMock()
        runner = MigrationRunner(backend, MigrationRegistry(), retry=INSTANT)

        await runner.connect()

        backend.connect.assert_not_awaited()
