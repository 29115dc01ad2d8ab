"""Logging helpers for the serial chat relay."""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from logging import Handler
from logging.config import dictConfig
from logging.handlers import SysLogHandler
from pathlib import Path
from typing import Any

import msgspec

from .settings import RuntimeConfig

SYSLOG_SOCKET = Path("/dev/log")
SYSLOG_SOCKET_FALLBACK = Path("/var/run/log")

LOG_STREAM_ENV = "SERIALCHAT_LOG_STREAM"

# Attributes every LogRecord carries; anything else was passed via ``extra``.
_RECORD_ATTRIBUTES = frozenset(
    vars(logging.LogRecord("", logging.NOTSET, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}


def _hex(data: bytes | bytearray) -> str:
    return "[" + " ".join(f"{b:02X}" for b in data) + "]"


class StructuredLogFormatter(logging.Formatter):
    """One JSON object per line; ``serialchat.`` is dropped from logger names."""

    PREFIX = "serialchat."

    # Values msgspec cannot encode fall back to their str().
    _encoder = msgspec.json.Encoder(enc_hook=str)

    def format(self, record: logging.LogRecord) -> str:
        name = record.name.removeprefix(self.PREFIX)
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: dict[str, Any] = {
            "ts": created.strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "logger": name,
            "message": record.getMessage(),
        }

        extra = {}
        for key, value in vars(record).items():
            if key in _RECORD_ATTRIBUTES or key.startswith("_"):
                continue
            # Serial payloads read better as hex than as base64.
            extra[key] = _hex(value) if isinstance(value, (bytes, bytearray)) else value
        if extra:
            payload["extra"] = extra
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return self._encoder.encode(payload).decode("utf-8")


def _build_handler() -> Handler:
    if os.environ.get(LOG_STREAM_ENV):
        return logging.StreamHandler()

    for candidate in (SYSLOG_SOCKET, SYSLOG_SOCKET_FALLBACK):
        if candidate.exists():
            syslog_handler = SysLogHandler(
                address=str(candidate),
                facility=SysLogHandler.LOG_DAEMON,
            )
            syslog_handler.ident = "serialchat "
            return syslog_handler
    return logging.StreamHandler()


def configure_logging(config: RuntimeConfig) -> None:
    """Configure root logging based on runtime settings."""

    level_name = "DEBUG" if config.debug_logging else "INFO"

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "structured": {
                    "()": "serialchat.config.logging.StructuredLogFormatter",
                }
            },
            "handlers": {
                "serialchat": {
                    "()": _build_handler,
                    "level": level_name,
                    "formatter": "structured",
                }
            },
            "root": {
                "level": level_name,
                "handlers": ["serialchat"],
            },
            # Access logs go through the same structured handler.
            "loggers": {
                "uvicorn": {"level": level_name, "propagate": True},
                "uvicorn.access": {"level": "WARNING", "propagate": True},
            },
        }
    )

    logging.getLogger("serialchat").info("Logging configured at level %s", level_name)
