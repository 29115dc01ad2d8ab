"""Relay services: publish/subscribe paths and task supervision."""

from .relay import MessageStream, RelayService
from .task_supervisor import supervise_task

__all__ = [
    "MessageStream",
    "RelayService",
    "supervise_task",
]
