from __future__ import annotations

import json
import logging
from logging.config import dictConfig
from typing import Any, Dict

# Attributes every LogRecord carries; anything else arrived through ``extra``.
_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

# Correlation fields lifted out of the context block so log queries can
# filter on them directly.
_PROMOTED = ("request_id", "media_ref", "anomaly")


class JSONFormatter(logging.Formatter):
    """One JSON object per line; ``extra`` fields land under ``context``."""

    def format(self, record: logging.LogRecord) -> str:  # pragma: no cover - formatting only
        data: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in _PROMOTED:
            value = getattr(record, field, None)
            if value is not None:
                data[field] = value
        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)

        context = {
            key: value
            for key, value in vars(record).items()
            if key not in _STANDARD_ATTRS and key not in _PROMOTED
        }
        if context:
            data["context"] = context
        return json.dumps(data, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Install the JSON handler on the root logger. Safe to call repeatedly."""

    config: Dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "request_context": {
                "()": "portal_media.logging_context.RequestContextFilter",
            }
        },
        "formatters": {
            "json": {
                "()": "portal_media.logging_utils.JSONFormatter",
                "datefmt": "%Y-%m-%dT%H:%M:%S%z",
            }
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "json",
                "filters": ["request_context"],
                "level": level,
            }
        },
        "loggers": {
            "httpx": {"level": "WARNING"},
            "aiosqlite": {"level": "WARNING"},
        },
        "root": {
            "handlers": ["default"],
            "level": level,
        },
    }
    dictConfig(config)
