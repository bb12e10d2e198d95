"""Logging configuration for the image workflow engine.

Records pick up the active run context (``run_id``, request id, ...) from a
context variable, so concurrent runs on worker threads and concurrent HTTP
requests each log under their own identifiers.
"""

import logging
import sys
import json
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import Optional, Dict, Any, Iterator
from pathlib import Path


DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [run %(run_id)s] - %(message)s"

# Third-party loggers and the most verbose level they may log at
THIRD_PARTY_LEVELS = {
    "uvicorn": logging.INFO,
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "sqlalchemy.pool": logging.WARNING,
    "urllib3": logging.WARNING,
    "asyncio": logging.WARNING,
}

_log_context: ContextVar[Dict[str, Any]] = ContextVar("imageflow_log_context", default={})


class StructuredFormatter(logging.Formatter):
    """Formatter emitting one JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc_value) if exc_value else None,
                "traceback": traceback.format_exception(*record.exc_info)
            }

        # Run context first, explicit per-call fields win
        entry.update(getattr(record, "context_fields", {}))
        entry.update(getattr(record, "extra_fields", {}))

        return json.dumps(entry, default=str)


class RunContextFilter(logging.Filter):
    """Stamps the current logging context onto every record.

    ``record.run_id`` is always set ("-" outside a run) so plain format
    strings can reference it.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        context = _log_context.get()
        record.context_fields = dict(context)
        record.run_id = context.get("run_id", "-")
        return True


def current_logging_context() -> Dict[str, Any]:
    """Copy of the context fields active in this thread or task."""
    return dict(_log_context.get())


@contextmanager
def logging_context(**fields) -> Iterator[None]:
    """Add fields to the logging context for the duration of a block.

    Nested blocks extend the outer context; leaving a block restores it.
    """
    token = _log_context.set({**_log_context.get(), **fields})
    try:
        yield
    finally:
        _log_context.reset(token)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure logging for the image workflow engine.

    Replaces any handlers already on the root logger, so calling it twice
    (CLI, then server startup) does not duplicate output.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path for log output, rotated at ``max_size``
        log_format: Format string for plain-text output
        structured: Emit JSON lines instead of plain text
        max_size: Maximum log file size in bytes before rotation
        backup_count: Number of rotated files to keep

    Returns:
        Root logger instance
    """
    level = level.upper()
    if structured:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(fmt=log_format or DEFAULT_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(log_file, maxBytes=max_size, backupCount=backup_count))

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    context_filter = RunContextFilter()
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(context_filter)
        root_logger.addHandler(handler)

    for name, quiet_level in THIRD_PARTY_LEVELS.items():
        logging.getLogger(name).setLevel(quiet_level)
    logging.getLogger("imageflow").setLevel(logging.DEBUG if level == "DEBUG" else logging.INFO)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for the given name."""
    return logging.getLogger(name)


def log_with_context(logger: logging.Logger, level: int, message: str, **fields):
    """Log a message with additional structured fields."""
    logger.log(level, message, extra={"extra_fields": fields})


class RetryLogger:
    """Logs retry activity for one kind of call (a backend, a storage operation).

    Messages go to ``recovery.<component>`` with the attempt numbers as
    structured fields.
    """

    def __init__(self, component_name: str):
        self.logger = get_logger(f"recovery.{component_name}")
        self.component_name = component_name

    def log_retry(self, target: str, error: Exception, attempt: int, max_retries: int, delay: float):
        log_with_context(
            self.logger, logging.WARNING,
            f"{target}: retry {attempt}/{max_retries} in {delay:.2f}s after {type(error).__name__}",
            component=self.component_name,
            target=target,
            error_message=str(error),
            attempt=attempt,
            max_retries=max_retries,
            delay=delay
        )

    def log_recovery_success(self, target: str, attempts_used: int):
        log_with_context(
            self.logger, logging.INFO,
            f"{target}: succeeded on attempt {attempts_used}",
            component=self.component_name,
            target=target,
            attempts_used=attempts_used,
            recovery_status="success"
        )

    def log_recovery_failure(self, target: str, final_error: Exception, attempts_used: int):
        log_with_context(
            self.logger, logging.ERROR,
            f"{target}: giving up after {attempts_used} attempt(s): {final_error}",
            component=self.component_name,
            target=target,
            error_type=type(final_error).__name__,
            attempts_used=attempts_used,
            recovery_status="failed"
        )
