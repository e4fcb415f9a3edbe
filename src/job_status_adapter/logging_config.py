"""
Logging setup for the adapter process.

Records carry structured fields in ``extra_data`` so the JSON formatter can
emit them as top-level keys; the plain formatter appends them as key=value.
"""
from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import logging.config
import sys
from typing import Any

from job_status_adapter import SERVICE_NAME


class JSONFormatter(logging.Formatter):
    """Render a log record as a single JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            log_entry.update(extra_data)
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, ensure_ascii=False, default=str)


class KeyValueFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extra_data = getattr(record, "extra_data", None)
        if not extra_data:
            return line
        fields = " ".join(f"{key}={value}" for key, value in extra_data.items())
        return f"{line} {fields}"


class StructuredLogger:
    """Thin wrapper that attaches keyword fields to every record."""

    def __init__(self, name: str, **bound: Any) -> None:
        self.logger = logging.getLogger(name)
        self._bound = {"service": SERVICE_NAME, **bound}

    def bind(self, **fields: Any) -> StructuredLogger:
        return StructuredLogger(self.logger.name, **{**self._bound, **fields})

    def _log(self, level: int, message: str, *, exc_info: bool = False, **fields: Any) -> None:
        extra_data = {**self._bound, **{k: v for k, v in fields.items() if v is not None}}
        self.logger.log(level, message, exc_info=exc_info, extra={"extra_data": extra_data})

    def debug(self, message: str, **fields: Any) -> None:
        self._log(logging.DEBUG, message, **fields)

    def info(self, message: str, **fields: Any) -> None:
        self._log(logging.INFO, message, **fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._log(logging.WARNING, message, **fields)

    def error(self, message: str, **fields: Any) -> None:
        self._log(logging.ERROR, message, **fields)

    def exception(self, message: str, **fields: Any) -> None:
        self._log(logging.ERROR, message, exc_info=True, **fields)

    def critical(self, message: str, **fields: Any) -> None:
        self._log(logging.CRITICAL, message, **fields)


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(name)


def configure_logging(log_level: str = "INFO", *, json_output: bool = False) -> None:
    """
    Install the process-wide handlers.

    Args:
        log_level: Level name for the root logger.
        json_output: Emit one JSON object per line instead of plain text.
    """
    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": JSONFormatter,
            },
            "standard": {
                "()": KeyValueFormatter,
                "fmt": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "stream": sys.stdout,
                "formatter": "json" if json_output else "standard",
                "level": log_level,
            },
        },
        "loggers": {
            # httpx logs every request at INFO
            "httpx": {"level": "WARNING"},
            "uvicorn.access": {"level": "WARNING"},
            "sqlalchemy.engine": {"level": "WARNING"},
        },
        "root": {
            "level": log_level,
            "handlers": ["console"],
        },
    }
    logging.config.dictConfig(config)
