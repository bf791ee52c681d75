"""
Import Relay - Structured Logging

JSON log output for log aggregation. All log entries include:
- timestamp (ISO 8601)
- level, logger name, message
- Context fields (correlation_id, index_id, topic, partition, offset, ...)

Message bodies are never logged; the context fields are enough to find a
message again on the broker.

Usage:
    from import_relay.core.logging import LogContext, configure_worker_logging

    configure_worker_logging("import-relay", level="INFO")

    with LogContext(correlation_id="abc", index_id=42):
        logger.info("Import dispatched")  # Includes correlation_id and index_id
"""

from __future__ import annotations

import json
import logging
import sys
import time
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Generator

# =============================================================================
# Context Variables for Correlation
# =============================================================================

_log_context: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})

# Fields copied from `extra=` on a log call into the JSON document
EXTRA_KEYS = (
    "correlation_id",
    "index_id",
    "topic",
    "partition",
    "offset",
    "worker",
    "outcome",
    "failure_category",
    "failure_detail",
    "retryable",
    "attempt",
    "max_attempts",
    "duration_ms",
    "status",
)


def get_current_context() -> Dict[str, Any]:
    """Get current logging context."""
    return _log_context.get().copy()


def set_context(**kwargs: Any) -> None:
    """Set context values for the current thread/task."""
    current = _log_context.get().copy()
    current.update(kwargs)
    _log_context.set(current)


def clear_context() -> None:
    """Clear all context values."""
    _log_context.set({})


@contextmanager
def LogContext(**kwargs: Any) -> Generator[None, None, None]:
    """
    Context manager for adding fields to all logs within the block.

    None values are dropped so optional ids do not clutter the output.
    """
    previous = _log_context.get()
    merged = previous.copy()
    merged.update({k: v for k, v in kwargs.items() if v is not None})
    token = _log_context.set(merged)
    try:
        yield
    finally:
        _log_context.reset(token)


# =============================================================================
# Formatters
# =============================================================================


class StructuredJsonFormatter(logging.Formatter):
    """
    JSON log formatter for production environments.

    Output format:
    {
        "timestamp": "2026-10-18T10:30:00.123456+00:00",
        "level": "WARNING",
        "logger": "import_relay.workers.consumer",
        "message": "Import rejected by remote service",
        "correlation_id": "abc",
        "index_id": 42,
        "failure_category": "business",
        ...
    }
    """

    def __init__(self, include_traceback: bool = True):
        super().__init__()
        self.include_traceback = include_traceback

    def format(self, record: logging.LogRecord) -> str:
        log_dict: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        log_dict.update(get_current_context())

        for key in EXTRA_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                log_dict[key] = value

        if record.exc_info and self.include_traceback:
            log_dict["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(log_dict, default=str, ensure_ascii=False)


class _SimpleFormatter(logging.Formatter):
    """Simple timestamp | level | name | message [context] format."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = get_current_context()
        if context:
            pairs = " ".join(f"{k}={v}" for k, v in context.items())
            line = f"{line} [{pairs}]"
        return line


# =============================================================================
# Split-Stream Handler (stdout for INFO/DEBUG, stderr for WARNING+)
# =============================================================================


class _MaxLevelFilter(logging.Filter):
    """Filter that passes records at or below a maximum level."""

    def __init__(self, max_level: int):
        super().__init__()
        self.max_level = max_level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno <= self.max_level


def _create_split_handlers(
    formatter: logging.Formatter,
    level: int = logging.DEBUG,
) -> list[logging.Handler]:
    """
    Create handlers that route logs to stdout/stderr based on level.

    - DEBUG, INFO → stdout
    - WARNING, ERROR, CRITICAL → stderr
    """
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(level)
    stdout_handler.addFilter(_MaxLevelFilter(logging.INFO))
    stdout_handler.setFormatter(formatter)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(max(level, logging.WARNING))
    stderr_handler.setFormatter(formatter)

    return [stdout_handler, stderr_handler]


def configure_worker_logging(
    worker_name: str,
    level: str = "INFO",
    json_output: bool = True,
) -> logging.Logger:
    """
    Configure logging for a worker process with split stdout/stderr streams.

    Args:
        worker_name: Name of the worker (used as logger name).
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_output: If True, use JSON format; else the simple text format.

    Returns:
        Configured logger instance for the worker.
    """
    numeric_level = getattr(logging, level.upper())
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter: logging.Formatter = StructuredJsonFormatter() if json_output else _SimpleFormatter()
    for handler in _create_split_handlers(formatter, numeric_level):
        root_logger.addHandler(handler)

    # grpc is chatty at DEBUG
    logging.getLogger("grpc").setLevel(max(numeric_level, logging.INFO))

    return logging.getLogger(worker_name)


# =============================================================================
# Timing
# =============================================================================


class Timer:
    """
    Context manager for timing code blocks.

    Usage:
        with Timer() as t:
            do_something()
        metrics.observe_duration(t.elapsed_seconds)
    """

    def __init__(self) -> None:
        self.start_time: float = 0
        self.end_time: float = 0

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args: Any) -> None:
        self.end_time = time.perf_counter()

    @property
    def elapsed_seconds(self) -> float:
        end = self.end_time or time.perf_counter()
        return end - self.start_time

    @property
    def elapsed_ms(self) -> float:
        return self.elapsed_seconds * 1000
