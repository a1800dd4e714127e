"""
Logging for the migrate command.

structlog renders the events and the stdlib root logger carries them to
stderr (plus an optional file), so stdout only holds command output.
"""
import logging
import sys
from typing import Optional

import structlog

_SHARED_PROCESSORS: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.processors.StackInfoRenderer(),
]


def _render_processors(json_output: bool) -> list[structlog.types.Processor]:
    if json_output:
        return [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    return [
        structlog.dev.ConsoleRenderer(
            colors=sys.stderr.isatty(),
            exception_formatter=structlog.dev.plain_traceback,
        )
    ]


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
) -> None:
    """Route migration events to stderr and, optionally, a log file.

    Safe to call more than once; each call replaces the previous handlers.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
            Unknown names fall back to INFO.
        json_output: Emit one JSON object per event instead of console text.
        log_file: Also append events to this file.
    """
    log_level = logging.getLevelNamesMapping().get(level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(format="%(message)s", level=log_level, handlers=handlers, force=True)

    structlog.configure(
        processors=_SHARED_PROCESSORS + _render_processors(json_output),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )
