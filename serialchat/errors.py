"""Exception hierarchy for the serial chat relay."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for relay errors."""


class ConfigError(RelayError, ValueError):
    """Configuration values are missing or out of range."""


class HubClosedError(RelayError):
    """The broadcast hub (or the subscription) has been closed."""


class NoSubscribersError(RelayError):
    """A message was published while nobody was subscribed; it was dropped."""


class LaggedError(RelayError):
    """A subscription fell behind the retained history and skipped messages."""

    def __init__(self, skipped: int) -> None:
        super().__init__(f"subscription lagged; {skipped} message(s) skipped")
        self.skipped = skipped


class MessageValidationError(RelayError, ValueError):
    """An inbound chat message failed validation."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class SerialError(RelayError, OSError):
    """Base class for serial link failures."""


class SerialOpenError(SerialError):
    """The serial device could not be opened. Fatal at startup."""


class SerialReadError(SerialError):
    """A read from the serial device failed."""


class SerialWriteError(SerialError):
    """A write to the serial device failed or timed out."""


__all__ = [
    "ConfigError",
    "HubClosedError",
    "LaggedError",
    "MessageValidationError",
    "NoSubscribersError",
    "RelayError",
    "SerialError",
    "SerialOpenError",
    "SerialReadError",
    "SerialWriteError",
]
