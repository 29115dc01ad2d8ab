"""Utility helpers shared across the serial chat relay."""

from __future__ import annotations

import logging
from typing import Final

from .config.const import (
    DEFAULT_DEBUG_LOGGING,
    DEFAULT_DEVICE_NAME,
    DEFAULT_DISCONNECT_POLL_INTERVAL,
    DEFAULT_HTTP_HOST,
    DEFAULT_HTTP_PORT,
    DEFAULT_HUB_CAPACITY,
    DEFAULT_METRICS_ENABLED,
    DEFAULT_SERIAL_BAUD,
    DEFAULT_SERIAL_OPEN_ATTEMPTS,
    DEFAULT_SERIAL_OPEN_RETRY_DELAY,
    DEFAULT_SERIAL_POLL_INTERVAL,
    DEFAULT_SERIAL_PORT,
    DEFAULT_SERIAL_READ_SIZE,
    DEFAULT_SERIAL_READ_TIMEOUT,
    DEFAULT_SERIAL_WRITE_TIMEOUT,
    DEFAULT_STATIC_DIR,
)

_TRUE_STRINGS: Final[frozenset[str]] = frozenset(
    {"1", "yes", "on", "true", "enable", "enabled"}
)


def parse_bool(value: object) -> bool:
    """Parse a boolean value safely from various types."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if value is None:
        return False
    s = str(value).lower().strip()
    return s in _TRUE_STRINGS


def parse_int(value: object, default: int) -> int:
    """Parse an integer value safely, handling floats and strings."""
    try:
        return int(float(value))  # type: ignore
    except (ValueError, TypeError):
        return default


def parse_float(value: object, default: float) -> float:
    """Parse a float value safely."""
    try:
        return float(value)  # type: ignore
    except (ValueError, TypeError):
        return default


def get_default_config() -> dict[str, str]:
    """Provide default relay configuration values as raw strings."""
    return {
        "serial_port": DEFAULT_SERIAL_PORT,
        "serial_baud": str(DEFAULT_SERIAL_BAUD),
        "serial_poll_interval": str(DEFAULT_SERIAL_POLL_INTERVAL),
        "serial_read_size": str(DEFAULT_SERIAL_READ_SIZE),
        "serial_read_timeout": str(DEFAULT_SERIAL_READ_TIMEOUT),
        "serial_write_timeout": str(DEFAULT_SERIAL_WRITE_TIMEOUT),
        "serial_open_attempts": str(DEFAULT_SERIAL_OPEN_ATTEMPTS),
        "serial_open_retry_delay": str(DEFAULT_SERIAL_OPEN_RETRY_DELAY),
        "device_name": DEFAULT_DEVICE_NAME,
        "hub_capacity": str(DEFAULT_HUB_CAPACITY),
        "http_host": DEFAULT_HTTP_HOST,
        "http_port": str(DEFAULT_HTTP_PORT),
        "static_dir": DEFAULT_STATIC_DIR,
        "disconnect_poll_interval": str(DEFAULT_DISCONNECT_POLL_INTERVAL),
        "debug": "1" if DEFAULT_DEBUG_LOGGING else "0",
        "metrics_enabled": "1" if DEFAULT_METRICS_ENABLED else "0",
    }


def log_hexdump(
    logger_instance: logging.Logger, level: int, label: str, data: bytes
) -> None:
    """Log binary data in hexadecimal format using syslog-friendly output.

    Format: [LABEL] LEN=10 HEX=00 01 02 ...
    """
    if not logger_instance.isEnabledFor(level):
        return

    hex_str = " ".join(f"{b:02X}" for b in data)
    logger_instance.log(level, "[%s] LEN=%d HEX=%s", label, len(data), hex_str)


__all__: Final[tuple[str, ...]] = (
    "get_default_config",
    "log_hexdump",
    "parse_bool",
    "parse_float",
    "parse_int",
)
