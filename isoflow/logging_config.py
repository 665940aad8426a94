"""Logging setup with JSON or text output."""

from __future__ import annotations

import json
import logging
import socket
import sys
from datetime import datetime, timezone

from isoflow.config import settings

# Attributes present on every LogRecord; anything else was passed via extra=
_RESERVED_ATTRS = set(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}


def _extra_fields(record: logging.LogRecord) -> dict:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def __init__(self, service: str = "isoflow"):
        super().__init__()
        self.service = service
        self.host = socket.gethostname()

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service,
            "host": self.host,
        }
        extra = _extra_fields(record)
        if extra:
            payload["extra"] = extra
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable single line format."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s %(levelname)-7s [%(name)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


def setup_logging(level: str | None = None, fmt: str | None = None) -> None:
    """Configure the root logger from settings.

    Replaces any handlers installed earlier so repeated calls (tests,
    the HTTP agent reloading) do not duplicate output.
    """
    level_name = (level or settings.log_level or "INFO").upper()
    fmt_name = (fmt or settings.log_format or "text").lower()

    handler = logging.StreamHandler(sys.stderr)
    if fmt_name == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(TextFormatter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level_name, logging.INFO))
