"""
Structured Logging

The package logs through module loggers below `pg_transactional_outbox`
and installs only a NullHandler: nothing is emitted unless the host
application configures logging, e.g. with `configure_logging`.
"""

import json
import logging
import sys
from datetime import datetime, timezone

# LogRecord attributes that are not user supplied `extra` fields
_RESERVED = frozenset((
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName",
))

PACKAGE_LOGGER = "pg_transactional_outbox"


class StructuredFormatter(logging.Formatter):
    """
    JSON structured log formatter.

    Message context passed via `extra=` (message_id, aggregate_type, lsn, ...)
    becomes top level fields of the entry.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED or key.startswith("_"):
                continue
            try:
                json.dumps(value)
                log_entry[key] = value
            except (TypeError, ValueError):
                log_entry[key] = str(value)

        return json.dumps(log_entry)


def configure_logging(level: str = "INFO", structured: bool = True) -> logging.Logger:
    """
    Enable the package logs on stdout.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        structured: Use JSON structured format

    Returns:
        The package logger
    """
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(getattr(logging, level.upper()))
    package_logger.propagate = True

    for handler in package_logger.handlers[:]:
        if not isinstance(handler, logging.NullHandler):
            package_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    if structured:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        ))
    package_logger.addHandler(handler)
    return package_logger


def disable_logging() -> None:
    """Silence the package logs again (e.g. in test runs)."""
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in package_logger.handlers[:]:
        if not isinstance(handler, logging.NullHandler):
            package_logger.removeHandler(handler)
    package_logger.propagate = False
