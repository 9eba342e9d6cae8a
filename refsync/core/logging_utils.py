from __future__ import annotations

import datetime as dt
import json
import logging
import os
import sys
import uuid
from typing import Any

from loguru import logger as loguru_logger

UTC = dt.UTC

_STANDARD_RECORD_FIELDS = frozenset(
    {
        "args",
        "msg",
        "name",
        "levelno",
        "levelname",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "getMessage",
        "message",
    }
)

# Timing and volume fields grouped under "performance" in JSON output
_PERFORMANCE_FIELDS = frozenset(
    {
        "latency_ms",
        "elapsed_sec",
        "pages",
        "batches",
        "poll_count",
        "wait_sec",
    }
)

# Third-party loggers that are chatty at DEBUG
_NOISY_LOGGERS = ("httpx", "httpcore", "peewee")


class EnhancedJsonFormatter(logging.Formatter):
    """JSON formatter that groups ``extra`` fields and carries the correlation id."""

    def __init__(self, include_location: bool = True, include_process_info: bool = True):
        super().__init__()
        self.include_location = include_location
        self.include_process_info = include_process_info
        self.hostname = os.uname().nodename if hasattr(os, "uname") else "unknown"

    def format(self, record: logging.LogRecord) -> str:
        base: dict[str, Any] = {
            "timestamp": dt.datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "hostname": self.hostname,
        }

        if self.include_location:
            base.update(
                {
                    "module": record.module,
                    "function": record.funcName,
                    "line": record.lineno,
                }
            )

        if self.include_process_info:
            base.update(
                {
                    "process": record.process,
                    "thread": record.thread,
                    "thread_name": getattr(record, "threadName", "MainThread"),
                }
            )

        if record.exc_info:
            base["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info),
            }

        extra_fields: dict[str, Any] = {}
        performance_fields: dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key.startswith("_") or key in _STANDARD_RECORD_FIELDS or key in base:
                continue
            if key == "correlation_id":
                continue
            if key in _PERFORMANCE_FIELDS:
                performance_fields[key] = value
            else:
                extra_fields[key] = value

        if performance_fields:
            base["performance"] = performance_fields
        if extra_fields:
            base["extra"] = extra_fields

        correlation_id = getattr(record, "correlation_id", None)
        if correlation_id:
            base["correlation_id"] = correlation_id

        return json.dumps(
            base, ensure_ascii=False, default=self._json_serializer, separators=(",", ":")
        )

    def _json_serializer(self, obj: Any) -> str:
        if hasattr(obj, "__dict__"):
            return f"<{obj.__class__.__name__}>"
        return str(obj)


class InterceptHandler(logging.Handler):
    """Bridge stdlib records into loguru, keeping ``extra`` as bound fields."""

    def emit(self, record: logging.LogRecord) -> None:
        level: int | str
        try:
            level = loguru_logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if not key.startswith("_") and key not in _STANDARD_RECORD_FIELDS
        }
        extra.setdefault("logger_name", record.name)

        loguru_logger.bind(**extra).opt(depth=6, exception=record.exc_info).log(
            level, record.getMessage()
        )


def setup_json_logging(
    level: str = "INFO",
    include_location: bool = True,
    include_process_info: bool = True,
    use_loguru: bool = True,
    log_file: str | None = None,
    max_file_size: str = "100 MB",
    retention: str = "30 days",
) -> None:
    """Configure structured JSON logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        include_location: Include file/line information in logs
        include_process_info: Include process/thread information
        use_loguru: Route records through loguru sinks instead of stdlib handlers
        log_file: Optional log file path for persistent logging
        max_file_size: Maximum size per log file (loguru format)
        retention: Log retention period (loguru format)
    """
    lvl = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()

    if use_loguru:
        loguru_logger.remove()
        loguru_logger.add(
            sys.stdout,
            level=level.upper(),
            serialize=True,
            enqueue=True,
            backtrace=True,
            diagnose=False,
        )
        if log_file:
            loguru_logger.add(
                log_file,
                level=level.upper(),
                serialize=True,
                rotation=max_file_size,
                retention=retention,
                compression="gz",
                enqueue=True,
            )

        root.handlers.clear()
        root.setLevel(lvl)
        root.addHandler(InterceptHandler())
        for noisy_logger in _NOISY_LOGGERS:
            logging.getLogger(noisy_logger).setLevel(max(lvl, logging.INFO))

        loguru_logger.info(
            "logging_initialized",
            setup_config={"level": level, "backend": "loguru", "log_file": log_file},
        )
        return

    formatter = EnhancedJsonFormatter(
        include_location=include_location, include_process_info=include_process_info
    )
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root.handlers.clear()
    root.setLevel(lvl)
    root.addHandler(console_handler)

    if log_file:
        from logging.handlers import RotatingFileHandler

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=100 * 1024 * 1024,  # 100MB
            backupCount=5,
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    for noisy_logger in _NOISY_LOGGERS:
        logging.getLogger(noisy_logger).setLevel(max(lvl, logging.INFO))

    logging.getLogger(__name__).info(
        "logging_initialized",
        extra={"setup_config": {"level": level, "backend": "stdlib", "log_file": log_file}},
    )


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance by name, typically ``__name__`` of the caller."""
    return logging.getLogger(name)


def generate_correlation_id() -> str:
    """Generate a short correlation ID for tracing one sync call across log lines."""
    return uuid.uuid4().hex[:12]


def truncate_log_content(content: str | None, max_length: int = 1000) -> str | None:
    """Truncate large content (response bodies, id lists) before logging it.

    Args:
        content: The content to potentially truncate
        max_length: Maximum length before truncation

    Returns:
        Truncated content with a length marker, or the original content if short enough
    """
    if not content:
        return content
    if len(content) <= max_length:
        return content

    if max_length > 20:
        truncate_at = max_length - 15
        space_pos = content.rfind(" ", truncate_at - 50, truncate_at)
        if space_pos > 0:
            truncate_at = space_pos
        return f"{content[:truncate_at]}... [{len(content)} chars]"

    return content[:max_length]
