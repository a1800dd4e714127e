"""
Retry logic with exponential backoff for transient connection failures.

Only connecting to the database is retried. Migrations themselves are never
retried: a rejected DDL statement fails the same way the second time.

Usage:
    from leasing_schema.core.retry import RetryConfig, retry_with_config

    @retry_with_config(RetryConfig(max_attempts=5))
    async def connect():
        ...
"""
from dataclasses import dataclass
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random_exponential,
)

from leasing_schema.core.errors import ConnectionError

log = structlog.get_logger()

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_MIN_WAIT_SECONDS = 1.0
DEFAULT_MAX_WAIT_SECONDS = 30.0
DEFAULT_EXPONENTIAL_MULTIPLIER = 2.0
DEFAULT_JITTER = True


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_attempts: Maximum number of attempts (including the first).
        min_wait_seconds: Minimum wait time between attempts.
        max_wait_seconds: Maximum wait time between attempts.
        exponential_multiplier: Multiplier for exponential backoff.
        jitter: Whether to add randomness to wait times.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    min_wait_seconds: float = DEFAULT_MIN_WAIT_SECONDS
    max_wait_seconds: float = DEFAULT_MAX_WAIT_SECONDS
    exponential_multiplier: float = DEFAULT_EXPONENTIAL_MULTIPLIER
    jitter: bool = DEFAULT_JITTER

    @classmethod
    def from_dict(cls, config_dict: dict[str, Any]) -> "RetryConfig":
        """Create RetryConfig from a dictionary (e.g. ConfigManager.get_section("retry"))."""
        return cls(
            max_attempts=int(config_dict.get("max_attempts", DEFAULT_MAX_ATTEMPTS)),
            min_wait_seconds=float(config_dict.get("min_wait_seconds", DEFAULT_MIN_WAIT_SECONDS)),
            max_wait_seconds=float(config_dict.get("max_wait_seconds", DEFAULT_MAX_WAIT_SECONDS)),
            exponential_multiplier=float(
                config_dict.get("exponential_multiplier", DEFAULT_EXPONENTIAL_MULTIPLIER)
            ),
            jitter=bool(config_dict.get("jitter", DEFAULT_JITTER)),
        )


T = TypeVar("T")


def _log_retry(log_context: Optional[dict[str, Any]]) -> Callable[[RetryCallState], None]:
    context = log_context or {}

    def callback(state: RetryCallState) -> None:
        exception = state.outcome.exception() if state.outcome else None
        log.warning(
            "retry_attempt",
            attempt=state.attempt_number,
            error=str(exception) if exception else None,
            error_type=type(exception).__name__ if exception else None,
            wait_seconds=state.next_action.sleep if state.next_action else 0,
            **context,
        )

    return callback


def retry_with_config(
    config: RetryConfig,
    log_context: Optional[dict[str, Any]] = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator retrying an async function on ConnectionError.

    Args:
        config: RetryConfig with retry parameters.
        log_context: Additional context for log messages.

    Example:
        @retry_with_config(RetryConfig(max_attempts=5, min_wait_seconds=2.0))
        async def connect():
            ...
    """
    if config.jitter:
        wait_strategy = wait_random_exponential(
            multiplier=config.exponential_multiplier,
            min=config.min_wait_seconds,
            max=config.max_wait_seconds,
        )
    else:
        wait_strategy = wait_exponential(
            multiplier=config.exponential_multiplier,
            min=config.min_wait_seconds,
            max=config.max_wait_seconds,
        )

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max(1, config.max_attempts)),
                wait=wait_strategy,
                retry=retry_if_exception_type(ConnectionError),
                before_sleep=_log_retry(log_context),
                reraise=True,
            ):
                with attempt:
                    return await func(*args, **kwargs)

        return wrapper

    return decorator
