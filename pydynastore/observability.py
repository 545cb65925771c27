"""Structured logging configuration using structlog.

Provides JSON logging for production and console logging for development.
Library modules obtain their logger with ``get_logger(__name__)`` and never
configure logging themselves; applications call ``setup_logging`` once at
startup (``ServiceFactory`` does so from ``StoreSettings`` when asked).
"""

import sys
from typing import Any, Literal, cast

import structlog

LogFormat = Literal["json", "console"]

_LEVELS: dict[str, int] = {
    "DEBUG": 10,
    "INFO": 20,
    "WARNING": 30,
    "ERROR": 40,
    "CRITICAL": 50,
}


def setup_logging(level: str = "INFO", format: LogFormat = "json") -> None:
    """Configure structured logging.

    Args:
        level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        format: Output format - "json" for production, "console" for development.

    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(_LEVELS.get(level.upper(), 20)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance bound to the given name.

    Args:
        name: Logger name (typically __name__ of the module).

    Returns:
        A bound structlog logger.

    """
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))


__all__ = [
    "LogFormat",
    "get_logger",
    "setup_logging",
]
