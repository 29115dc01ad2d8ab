"""Chat message model shared by the HTTP layer, the hub and the serial bridge."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Annotated, Any

import msgspec

from .config.const import ROOM_MAX_LENGTH, USERNAME_MAX_LENGTH
from .errors import MessageValidationError

__all__ = [
    "Message",
    "lines_from_chunk",
]


class Message(msgspec.Struct, frozen=True):
    """One chat message.

    Messages carry no identifier or timestamp; ordering is the order in
    which they reach the hub. ``room`` is informational only and does not
    partition delivery.
    """

    room: Annotated[str, msgspec.Meta(max_length=ROOM_MAX_LENGTH)]
    username: Annotated[str, msgspec.Meta(max_length=USERNAME_MAX_LENGTH)]
    message: str

    @classmethod
    def from_form(cls, data: Mapping[str, Any]) -> Message:
        """Build a validated message from submitted form fields."""
        try:
            return msgspec.convert(dict(data), type=cls)
        except msgspec.ValidationError as exc:
            raise MessageValidationError(str(exc)) from exc

    @classmethod
    def from_device(cls, text: str, device_name: str) -> Message:
        # The device identity is both the room and the sender.
        return cls(room=device_name, username=device_name, message=text)

    def to_json(self) -> bytes:
        return msgspec.json.encode(self)


def lines_from_chunk(data: bytes) -> list[str]:
    """Split raw device output into trimmed, non-empty text lines.

    Invalid UTF-8 is replaced rather than rejected, so a noisy link still
    yields readable text.
    """
    text = data.decode("utf-8", errors="replace")
    return [line.strip() for line in text.splitlines() if line.strip()]
