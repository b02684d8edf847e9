"""Structured logging setup."""

import logging

import structlog

from orderhooks.config import settings


def setup_logging(level: str | None = None, *, json_logs: bool = False) -> None:
    """Configure structlog for the application.

    Args:
        level: Log level name (defaults to ``LOG_LEVEL``).
        json_logs: Render JSON lines instead of the console format.
    """
    log_level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        cache_logger_on_first_use=True,
    )
