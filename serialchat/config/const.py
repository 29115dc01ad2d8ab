"""Default values for the serial chat relay configuration."""

from __future__ import annotations

from typing import Final

DEFAULT_SERIAL_PORT: Final[str] = "/dev/ttyACM0"
DEFAULT_SERIAL_BAUD: Final[int] = 115200
DEFAULT_SERIAL_POLL_INTERVAL: Final[float] = 0.5
DEFAULT_SERIAL_READ_SIZE: Final[int] = 64
DEFAULT_SERIAL_READ_TIMEOUT: Final[float] = 0.05
DEFAULT_SERIAL_WRITE_TIMEOUT: Final[float] = 2.0
DEFAULT_SERIAL_OPEN_ATTEMPTS: Final[int] = 3
DEFAULT_SERIAL_OPEN_RETRY_DELAY: Final[float] = 1.0

DEFAULT_DEVICE_NAME: Final[str] = "Micro:bit"
DEFAULT_HUB_CAPACITY: Final[int] = 1024

DEFAULT_HTTP_HOST: Final[str] = "0.0.0.0"
DEFAULT_HTTP_PORT: Final[int] = 8000
DEFAULT_STATIC_DIR: Final[str] = "static"
DEFAULT_DISCONNECT_POLL_INTERVAL: Final[float] = 1.0

DEFAULT_DEBUG_LOGGING: Final[bool] = False
DEFAULT_METRICS_ENABLED: Final[bool] = False

ROOM_MAX_LENGTH: Final[int] = 30
USERNAME_MAX_LENGTH: Final[int] = 20

# Line terminator on the device link, both directions.
SERIAL_LINE_TERMINATOR: Final[bytes] = b"\n"

SUPERVISOR_DEFAULT_MIN_BACKOFF: Final[float] = 0.5
SUPERVISOR_DEFAULT_MAX_BACKOFF: Final[float] = 30.0
SUPERVISOR_DEFAULT_RESTART_INTERVAL: Final[float] = 60.0
SUPERVISOR_MIN_RESTART_WINDOW: Final[float] = 10.0

ENV_PREFIX: Final[str] = "SERIALCHAT_"

# Outbound lines waiting for the serial writer task.
DEFAULT_SERIAL_OUTBOX_SIZE: Final[int] = 256
