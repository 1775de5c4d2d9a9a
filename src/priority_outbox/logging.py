"""Structured logging for priority-outbox.

Every module logs through :func:`get_logger`, which binds a structlog logger to
a stdlib logger under the ``priority_outbox`` namespace. :func:`setup_logging`
attaches handlers to that namespace logger only, so an embedding application
keeps control of the root logger. Calling it again replaces the handlers it
installed before.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import structlog
from structlog.typing import Processor

from priority_outbox.config import Settings, get_settings

LOGGER_NAMESPACE = "priority_outbox"

_PROCESSORS: list[Processor] = [
    structlog.stdlib.filter_by_level,
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.StackInfoRenderer(),
    structlog.dev.set_exc_info,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
]


def _formatter(renderer: Processor) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer]
    )


def _file_handler(settings: Settings) -> RotatingFileHandler | None:
    """Rotating JSON file handler, or None if the log directory is unusable."""
    try:
        Path(settings.log_directory).mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            filename=settings.log_file_path,
            maxBytes=settings.log_file_max_bytes,
            backupCount=settings.log_file_backup_count,
            encoding="utf-8",
        )
    except OSError as e:
        # structlog is not configured yet; fall back to console-only logging
        print(f"Warning: Could not setup file logging: {e}", file=sys.stderr)
        return None
    handler.setFormatter(_formatter(structlog.processors.JSONRenderer()))
    return handler


def setup_logging(settings: Settings | None = None) -> logging.Logger:
    """Configure structlog and the ``priority_outbox`` logger.

    Console output is colored in development and JSON otherwise; a rotating
    JSON file is added when ``log_to_file`` is set.

    Args:
        settings: Settings to apply; the cached application settings when omitted.

    Returns:
        The configured namespace logger.
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level, logging.INFO)

    package_logger = logging.getLogger(LOGGER_NAMESPACE)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.setLevel(level)
    package_logger.propagate = False

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(
        _formatter(
            structlog.dev.ConsoleRenderer(colors=True)
            if settings.is_development
            else structlog.processors.JSONRenderer()
        )
    )
    package_logger.addHandler(console)

    if settings.log_to_file:
        file_handler = _file_handler(settings)
        if file_handler is not None:
            package_logger.addHandler(file_handler)

    structlog.configure(
        processors=_PROCESSORS,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )
    return package_logger


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger under the ``priority_outbox`` namespace.

    Names outside the namespace are prefixed so their events reach the
    handlers installed by :func:`setup_logging`.
    """
    if name != LOGGER_NAMESPACE and not name.startswith(f"{LOGGER_NAMESPACE}."):
        name = f"{LOGGER_NAMESPACE}.{name}"
    return structlog.get_logger(name)  # type: ignore[no-any-return]
