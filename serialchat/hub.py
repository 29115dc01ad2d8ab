"""In-memory broadcast hub fanning chat messages out to subscribers.

The hub keeps a fixed-size ring of the most recent messages. Every
subscription owns a cursor (an absolute sequence number) into that ring, so
publishing is O(1) regardless of how many subscribers exist or how slow they
are. A subscription that falls more than ``capacity`` messages behind gets
:class:`~serialchat.errors.LaggedError` once and resumes from the oldest
message still retained.

All state is owned by the running asyncio loop; producers and consumers are
tasks on that loop, which keeps every update atomic without a lock.
"""

from __future__ import annotations

import asyncio
import logging
from types import TracebackType

from .config.const import DEFAULT_HUB_CAPACITY
from .errors import HubClosedError, LaggedError, NoSubscribersError
from .models import Message

logger = logging.getLogger("serialchat.hub")

__all__ = ["BroadcastHub", "Subscription"]


class BroadcastHub:
    """Multi-producer, multi-consumer message fan-out."""

    def __init__(self, capacity: int = DEFAULT_HUB_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be a positive integer")
        self._capacity = capacity
        self._slots: list[Message | None] = [None] * capacity
        # Sequence number the next published message will get.
        self._tail = 0
        self._subscriptions: set[Subscription] = set()
        self._closed = False
        self._wakeup = asyncio.Event()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def receiver_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, message: Message) -> int:
        """Make ``message`` visible to every current subscription.

        Returns the number of subscriptions the message was queued for.
        Raises :class:`NoSubscribersError` (message dropped) when nobody is
        listening and :class:`HubClosedError` once the hub is closed.
        """
        if self._closed:
            raise HubClosedError("hub is closed")
        receivers = len(self._subscriptions)
        if receivers == 0:
            raise NoSubscribersError("no active subscriptions; message dropped")

        self._slots[self._tail % self._capacity] = message
        self._tail += 1
        self._notify()
        return receivers

    def subscribe(self) -> Subscription:
        """Return a subscription that sees only messages published from now on."""
        if self._closed:
            raise HubClosedError("hub is closed")
        subscription = Subscription(self, self._tail)
        self._subscriptions.add(subscription)
        logger.debug("Subscription opened (receivers=%d)", len(self._subscriptions))
        return subscription

    def close(self) -> None:
        """Stop accepting messages; subscribers drain what is retained, then stop."""
        if self._closed:
            return
        self._closed = True
        logger.info("Broadcast hub closed (receivers=%d)", len(self._subscriptions))
        self._notify()

    def _notify(self) -> None:
        event = self._wakeup
        self._wakeup = asyncio.Event()
        event.set()

    def _detach(self, subscription: Subscription) -> None:
        self._subscriptions.discard(subscription)
        logger.debug("Subscription closed (receivers=%d)", len(self._subscriptions))


class Subscription:
    """A consumer's private cursor into a :class:`BroadcastHub`."""

    __slots__ = ("_hub", "_cursor", "_closed")

    def __init__(self, hub: BroadcastHub, cursor: int) -> None:
        self._hub = hub
        self._cursor = cursor
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        """Number of retained messages not yet received."""
        hub = self._hub
        oldest = max(0, hub._tail - hub._capacity)
        return hub._tail - max(self._cursor, oldest)

    def try_recv(self) -> Message | None:
        """Return the next message without waiting, or ``None`` if there is none."""
        if self._closed:
            raise HubClosedError("subscription is closed")
        hub = self._hub
        oldest = hub._tail - hub._capacity
        if self._cursor < oldest:
            skipped = oldest - self._cursor
            self._cursor = oldest
            raise LaggedError(skipped)
        if self._cursor < hub._tail:
            message = hub._slots[self._cursor % hub._capacity]
            self._cursor += 1
            assert message is not None
            return message
        if hub._closed:
            raise HubClosedError("hub is closed")
        return None

    async def recv(self) -> Message:
        """Wait for the next message.

        Cancelling a pending ``recv`` never consumes a message.
        """
        while True:
            # Grab the event before checking so a publish in between is not missed.
            wakeup = self._hub._wakeup
            message = self.try_recv()
            if message is not None:
                return message
            await wakeup.wait()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._hub._detach(self)
        # Wake a pending recv() on this subscription so it raises.
        self._hub._notify()

    def __enter__(self) -> Subscription:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()
