"""Structured logging setup shared by the armhub services."""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Dict

import orjson

# LogRecord attributes that are not user-supplied ``extra`` fields.
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """Render each record as one JSON object, merging ``extra`` fields in."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key in _STANDARD_ATTRS or key.startswith("_"):
                continue
            payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return orjson.dumps(payload, default=repr).decode()


def configure_logging(level: str = "INFO", *, name: str = "armhub", json: bool = True) -> logging.Logger:
    """Install a single stream handler on the root logger and return ``name``'s logger."""

    root = logging.getLogger()
    root.handlers.clear()
    handler = logging.StreamHandler()
    if json:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(name)s %(levelname)s %(message)s"))
    root.addHandler(handler)
    root.setLevel(level.upper())
    return logging.getLogger(name)


__all__ = ["JsonFormatter", "configure_logging"]
