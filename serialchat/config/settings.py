"""Settings loader for the serial chat relay.

Configuration starts from built-in defaults and is overlaid with
``SERIALCHAT_*`` environment variables (``SERIALCHAT_SERIAL_PORT``,
``SERIALCHAT_HTTP_PORT`` ...). Command line flags parsed by the daemon are
applied last through the ``overrides`` mapping.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass

from ..common import get_default_config, parse_bool, parse_float, parse_int
from ..errors import ConfigError
from .const import (
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
    ENV_PREFIX,
    ROOM_MAX_LENGTH,
    USERNAME_MAX_LENGTH,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RuntimeConfig:
    """Strongly typed configuration for the relay."""

    serial_port: str = DEFAULT_SERIAL_PORT
    serial_baud: int = DEFAULT_SERIAL_BAUD
    serial_poll_interval: float = DEFAULT_SERIAL_POLL_INTERVAL
    serial_read_size: int = DEFAULT_SERIAL_READ_SIZE
    serial_read_timeout: float = DEFAULT_SERIAL_READ_TIMEOUT
    serial_write_timeout: float = DEFAULT_SERIAL_WRITE_TIMEOUT
    serial_open_attempts: int = DEFAULT_SERIAL_OPEN_ATTEMPTS
    serial_open_retry_delay: float = DEFAULT_SERIAL_OPEN_RETRY_DELAY
    device_name: str = DEFAULT_DEVICE_NAME
    hub_capacity: int = DEFAULT_HUB_CAPACITY
    http_host: str = DEFAULT_HTTP_HOST
    http_port: int = DEFAULT_HTTP_PORT
    static_dir: str = DEFAULT_STATIC_DIR
    disconnect_poll_interval: float = DEFAULT_DISCONNECT_POLL_INTERVAL
    debug_logging: bool = DEFAULT_DEBUG_LOGGING
    metrics_enabled: bool = DEFAULT_METRICS_ENABLED

    def __post_init__(self) -> None:
        self.serial_port = (self.serial_port or "").strip()
        if not self.serial_port:
            raise ConfigError("serial_port must be a non-empty device path")

        positive_int_fields = (
            "serial_baud",
            "serial_read_size",
            "serial_open_attempts",
            "hub_capacity",
        )
        for field_name in positive_int_fields:
            value = getattr(self, field_name)
            setattr(self, field_name, self._require_positive(field_name, int(value)))

        positive_float_fields = (
            "serial_poll_interval",
            "serial_read_timeout",
            "serial_write_timeout",
            "disconnect_poll_interval",
        )
        for field_name in positive_float_fields:
            value = getattr(self, field_name)
            setattr(
                self,
                field_name,
                self._require_positive_float(field_name, float(value)),
            )

        self.serial_open_retry_delay = max(0.0, float(self.serial_open_retry_delay))

        if not 0 < self.http_port <= 65535:
            raise ConfigError("http_port must be between 1 and 65535")

        self._validate_device_name()

        if self.serial_read_timeout >= self.serial_poll_interval:
            logger.warning(
                "serial_read_timeout (%.3fs) is not shorter than serial_poll_interval "
                "(%.3fs); writes may wait a full tick for the link.",
                self.serial_read_timeout,
                self.serial_poll_interval,
            )

    def _validate_device_name(self) -> None:
        name = (self.device_name or "").strip()
        if not name:
            raise ConfigError("device_name must not be empty")
        # The device identity doubles as room and username.
        limit = min(ROOM_MAX_LENGTH, USERNAME_MAX_LENGTH)
        if len(name) > limit:
            raise ConfigError(f"device_name must be at most {limit} characters")
        self.device_name = name

    @staticmethod
    def _require_positive(name: str, value: int) -> int:
        if value <= 0:
            raise ConfigError(f"{name} must be a positive integer")
        return value

    @staticmethod
    def _require_positive_float(name: str, value: float) -> float:
        if value <= 0.0:
            raise ConfigError(f"{name} must be a positive number")
        return value


def _load_raw_config(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    env = os.environ if environ is None else environ
    raw = get_default_config()
    for key in raw:
        value = env.get(f"{ENV_PREFIX}{key.upper()}")
        if value is not None:
            raw[key] = value
    return raw


def get_config_source(environ: Mapping[str, str] | None = None) -> str:
    """Return ``"environment"`` when any relay variable is set, else ``"defaults"``."""
    env = os.environ if environ is None else environ
    if any(name.startswith(ENV_PREFIX) for name in env):
        return "environment"
    return "defaults"


def load_runtime_config(
    overrides: Mapping[str, object] | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> RuntimeConfig:
    """Load configuration from defaults, environment and explicit overrides."""

    raw: dict[str, object] = dict(_load_raw_config(environ))
    if overrides:
        for key, value in overrides.items():
            if value is not None:
                raw[key] = value

    return RuntimeConfig(
        serial_port=str(raw.get("serial_port", DEFAULT_SERIAL_PORT)),
        serial_baud=parse_int(raw.get("serial_baud"), DEFAULT_SERIAL_BAUD),
        serial_poll_interval=parse_float(
            raw.get("serial_poll_interval"), DEFAULT_SERIAL_POLL_INTERVAL
        ),
        serial_read_size=parse_int(
            raw.get("serial_read_size"), DEFAULT_SERIAL_READ_SIZE
        ),
        serial_read_timeout=parse_float(
            raw.get("serial_read_timeout"), DEFAULT_SERIAL_READ_TIMEOUT
        ),
        serial_write_timeout=parse_float(
            raw.get("serial_write_timeout"), DEFAULT_SERIAL_WRITE_TIMEOUT
        ),
        serial_open_attempts=parse_int(
            raw.get("serial_open_attempts"), DEFAULT_SERIAL_OPEN_ATTEMPTS
        ),
        serial_open_retry_delay=parse_float(
            raw.get("serial_open_retry_delay"), DEFAULT_SERIAL_OPEN_RETRY_DELAY
        ),
        device_name=str(raw.get("device_name", DEFAULT_DEVICE_NAME)),
        hub_capacity=parse_int(raw.get("hub_capacity"), DEFAULT_HUB_CAPACITY),
        http_host=str(raw.get("http_host") or DEFAULT_HTTP_HOST).strip(),
        http_port=parse_int(raw.get("http_port"), DEFAULT_HTTP_PORT),
        static_dir=str(raw.get("static_dir") or DEFAULT_STATIC_DIR),
        disconnect_poll_interval=parse_float(
            raw.get("disconnect_poll_interval"), DEFAULT_DISCONNECT_POLL_INTERVAL
        ),
        debug_logging=parse_bool(raw.get("debug")),
        metrics_enabled=parse_bool(raw.get("metrics_enabled")),
    )


__all__ = ["RuntimeConfig", "get_config_source", "load_runtime_config"]
