"""Device transports for the serial chat relay."""

from .serial import SerialBridge, open_serial_bridge

__all__ = [
    "SerialBridge",
    "open_serial_bridge",
]
