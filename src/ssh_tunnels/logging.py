"""Structured logging for the supervisor and its command line."""

import logging
import logging.handlers
import sys
from pathlib import Path

import structlog
from structlog.typing import Processor

DEFAULT_MAX_LOG_BYTES = 1024 * 1024
FILE_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _processors(json_format: bool) -> list[Processor]:
    renderer: Processor = (
        structlog.processors.JSONRenderer()
        if json_format
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    return [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ]


def _rotating_file_handler(
    log_file: str | Path, max_bytes: int, backup_count: int
) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT))
    return handler


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_file: str | Path | None = None,
    max_bytes: int = DEFAULT_MAX_LOG_BYTES,
    backup_count: int = 1,
) -> None:
    """Route structlog events to stdout and, optionally, a size-capped file.

    Calling it again replaces the handlers installed by the previous call.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Render events as JSON lines instead of key=value text
        log_file: Log file path; rotated once it reaches ``max_bytes``
        max_bytes: Rotation size of the log file
        backup_count: Rotated files kept next to the log file
    """
    log_level = getattr(logging, level.upper())

    root_logger = logging.getLogger()
    for old in root_logger.handlers[:]:
        root_logger.removeHandler(old)
        if isinstance(old, logging.FileHandler):
            old.close()
    root_logger.setLevel(log_level)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    handlers[0].setFormatter(logging.Formatter("%(message)s"))
    if log_file:
        handlers.append(_rotating_file_handler(log_file, max_bytes, backup_count))

    for handler in handlers:
        handler.setLevel(log_level)
        root_logger.addHandler(handler)

    structlog.configure(
        processors=_processors(json_format),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Logger for ``name``, usually the calling module's ``__name__``."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]
