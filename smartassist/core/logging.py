"""Structured logging for the session & synchronization engine.

JSON output for log aggregation in production, human-readable lines in
development. Student, session and table identifiers passed through
``extra`` are lifted into top-level JSON fields.
"""
import logging
import json
import sys
import time
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Record attributes promoted into the JSON document when present
CONTEXT_FIELDS = (
    "request_id", "user_id", "student_id", "teacher_id", "session_id",
    "tutorial_id", "table", "operation", "endpoint", "method",
    "status_code", "duration_ms", "error_type",
)


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON documents."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info and record.exc_info[0] is not None:
            log_obj["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info)
            }

        if hasattr(record, "extra_fields"):
            log_obj.update(record.extra_fields)

        for attr in CONTEXT_FIELDS:
            if hasattr(record, attr):
                log_obj[attr] = getattr(record, attr)

        return json.dumps(log_obj, default=str)


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter that stamps a fixed context on every record.

    Example:
        >>> logger = ContextLogger(base_logger, {"student_id": "S1"})
        >>> logger.info("Auto-save skipped")
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = kwargs.get("extra", {})
        extra.update(self.extra)
        kwargs["extra"] = extra
        return msg, kwargs


def setup_logging(
    level: str = "INFO",
    json_format: bool = True
) -> logging.Logger:
    """Configure application-wide logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Whether to use JSON formatter (True for production)

    Returns:
        Configured root logger
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, level.upper()))

    if json_format:
        formatter = JSONFormatter()
    else:
        fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        formatter = logging.Formatter(fmt)

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    return root_logger


def get_logger(name: str, context: Optional[Dict[str, Any]] = None) -> logging.Logger:
    """Get a logger, wrapped in a ContextLogger when context is given.

    Example:
        >>> logger = get_logger(__name__, {"student_id": "S1"})
        >>> logger.info("Heartbeat sent", extra={"session_id": "abc"})
    """
    logger = logging.getLogger(name)

    if context:
        return ContextLogger(logger, context)

    return logger


class LogTimer:
    """Context manager that logs how long an operation took.

    Works in both sync and async code since it only brackets the block.

    Example:
        >>> with LogTimer(logger, "dashboard_rebuild"):
        ...     await dashboard.rebuild()
    """

    def __init__(self, logger: logging.Logger, operation: str, level: int = logging.DEBUG):
        self.logger = logger
        self.operation = operation
        self.level = level
        self.start_time: Optional[float] = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is None:
            return
        duration = (time.perf_counter() - self.start_time) * 1000

        if exc_type:
            self.logger.warning(
                f"{self.operation} failed after {duration:.1f}ms",
                extra={"operation": self.operation, "duration_ms": duration}
            )
        else:
            self.logger.log(
                self.level,
                f"{self.operation} completed in {duration:.1f}ms",
                extra={"operation": self.operation, "duration_ms": duration}
            )
