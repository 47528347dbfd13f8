"""praxisauth logging utilities.

Every subsystem emits JSON logs to a rotating file so authorization decisions
can be shipped to a log aggregator next to the audit store, while the console
keeps Rich output for operators running the CLI.
"""

from __future__ import annotations

import json
import logging
import logging.config
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

STRUCTURED_FIELDS = (
    "request_id",
    "subject_id",
    "audit_id",
    "decision",
    "reason",
    "rule",
    "permission",
)


class JsonFormatter(logging.Formatter):
    """Format log records as JSON documents.

    Only a fixed set of ``extra`` keys is copied into the payload so that
    arbitrary objects attached to a record never leak into the log stream.
    """

    default_time_format = "%Y-%m-%dT%H:%M:%S"

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).strftime(
                self.default_time_format
            ),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack_info"] = self.formatStack(record.stack_info)
        for key in STRUCTURED_FIELDS:
            if key in record.__dict__:
                payload[key] = record.__dict__[key]
        return json.dumps(payload, ensure_ascii=False, default=str)


def _build_handlers(log_dir: Path, enable_rich: bool) -> Dict[str, Dict[str, Any]]:
    handlers: Dict[str, Dict[str, Any]] = {
        "file": {
            "class": "logging.handlers.RotatingFileHandler",
            "formatter": "json",
            "filename": str(log_dir / "praxisauth.log"),
            "maxBytes": 5 * 1024 * 1024,
            "backupCount": 5,
        }
    }
    if enable_rich:
        handlers["console"] = {
            "class": "rich.logging.RichHandler",
            "formatter": "rich",
            "level": "DEBUG",
            "rich_tracebacks": True,
            "show_path": False,
        }
    else:
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "formatter": "json",
        }
    return handlers


def configure_logging(*, level: str = "INFO", log_dir: Optional[Path] = None) -> None:
    """Configure global logging for praxisauth.

    Parameters
    ----------
    level:
        Minimum severity that should be emitted.
    log_dir:
        Directory for the rotating JSON log. Falls back to
        ``$PRAXISAUTH_LOG_DIR`` or ``.praxisauth/logs`` in the user's home.

    Safe to call repeatedly; ``dictConfig`` replaces the previous handlers.
    """

    log_dir = log_dir or Path(
        os.environ.get("PRAXISAUTH_LOG_DIR", Path.home() / ".praxisauth" / "logs")
    )
    log_dir.mkdir(parents=True, exist_ok=True)

    enable_rich = os.environ.get("PRAXISAUTH_RICH", "1") != "0"
    handlers = _build_handlers(log_dir, enable_rich)

    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": "praxisauth.utils.logging.JsonFormatter",
            },
            "rich": {
                "format": "%(message)s",
                "datefmt": "%H:%M:%S",
            },
        },
        "handlers": handlers,
        "root": {
            "level": level,
            "handlers": list(handlers.keys()),
        },
    }

    logging.config.dictConfig(config)


def get_logger(name: str) -> logging.Logger:
    """Return a logger bound to the shared configuration."""

    return logging.getLogger(name)


__all__ = ["configure_logging", "get_logger", "JsonFormatter"]
