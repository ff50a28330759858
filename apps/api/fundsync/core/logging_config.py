"""
Logging configuration for FundSync.

Every record emitted while an ingestion cycle runs carries that cycle's id,
so the lines of one cron invocation can be grouped after the fact:
- text: ``2024-05-01 12:00:00 - INFO     - fundsync.services.scheduler - [3f2a9c] Batch 1: ...``
- json: one object per line with a top-level ``cycle_id`` key

Usage:
    from fundsync.core.logging_config import setup_logging
    setup_logging()
"""

import contextvars
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional, TextIO

from fundsync.core.config import settings

# Set by the scheduler for the duration of one ingestion cycle.
current_cycle_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "current_cycle_id", default=None
)

# LogRecord attributes that are not caller-supplied ``extra`` fields.
_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime", "taskName", "cycle_id"}

# Third-party loggers and the level they are held at.
_QUIET_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "uvicorn.access": logging.WARNING,
}


class CycleContextFilter(logging.Filter):
    """Stamps the active ingestion cycle id (or None) on each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "cycle_id"):
            record.cycle_id = current_cycle_id.get()
        return True


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record.

    ``cycle_id`` is always present (null outside a cycle); caller-supplied
    ``extra`` fields are nested under ``extra``.
    """

    def __init__(self, environment: Optional[str] = None):
        super().__init__()
        self.environment = environment or settings.environment

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "cycle_id": getattr(record, "cycle_id", None),
            "message": record.getMessage(),
            "environment": self.environment,
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra = {k: v for k, v in record.__dict__.items() if k not in _STANDARD_ATTRS}
        if extra:
            log_data["extra"] = extra

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """
    Human-readable lines for development, colored on a terminal.
    """

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True, stream: Optional[TextIO] = None):
        super().__init__()
        stream = stream or sys.stdout
        self.use_colors = use_colors and hasattr(stream, "isatty") and stream.isatty()

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")

        level = f"{record.levelname:8}"
        if self.use_colors:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"

        message = record.getMessage()
        cycle_id = getattr(record, "cycle_id", None)
        if cycle_id:
            message = f"[{cycle_id}] {message}"

        formatted = f"{timestamp} - {level} - {record.name} - {message}"
        if record.exc_info:
            formatted += f"\n{self.formatException(record.exc_info)}"
        return formatted


def build_handler(
    format_type: str,
    level: int,
    stream: Optional[TextIO] = None,
) -> logging.Handler:
    """Stream handler with the cycle filter and the requested formatter."""
    stream = stream or sys.stdout
    handler = logging.StreamHandler(stream)
    handler.setLevel(level)
    if format_type == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(TextFormatter(use_colors=not settings.is_production, stream=stream))
    handler.addFilter(CycleContextFilter())
    return handler


def setup_logging(
    level: Optional[str] = None,
    format_type: Optional[str] = None,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Configure application logging. Safe to call more than once; existing
    root handlers are replaced.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_type: "text" or "json"
        stream: Output stream, stdout by default
    """
    level = (level or settings.log_level).upper()
    format_type = format_type or settings.log_format
    numeric_level = getattr(logging, level)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.addHandler(build_handler(format_type, numeric_level, stream))

    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.should_echo_sql else logging.WARNING
    )

    logging.getLogger(__name__).info(
        f"Logging configured: level={level}, format={format_type}, "
        f"environment={settings.environment}"
    )
