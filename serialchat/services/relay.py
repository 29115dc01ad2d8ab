"""Publish and subscribe paths between HTTP clients, the hub and the device."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from types import TracebackType
from typing import TYPE_CHECKING

from transitions import Machine

from ..config.const import DEFAULT_DISCONNECT_POLL_INTERVAL
from ..config.settings import RuntimeConfig
from ..errors import HubClosedError, LaggedError, NoSubscribersError, SerialWriteError
from ..hub import BroadcastHub, Subscription
from ..metrics import ORIGIN_HTTP, RelayMetrics
from ..models import Message
from ..transport.serial import SerialBridge

logger = logging.getLogger("serialchat.relay")

DisconnectCheck = Callable[[], Awaitable[bool]]

REASON_SHUTDOWN = "shutdown"
REASON_DISCONNECTED = "disconnected"
REASON_HUB_CLOSED = "hub-closed"
REASON_CLIENT_CLOSED = "closed"


class RelayService:
    """Composition of hub and serial bridge used by the web layer."""

    def __init__(
        self,
        hub: BroadcastHub,
        bridge: SerialBridge,
        config: RuntimeConfig,
        metrics: RelayMetrics | None = None,
    ) -> None:
        self.hub = hub
        self.bridge = bridge
        self.config = config
        self.metrics = metrics

    @property
    def subscriber_count(self) -> int:
        return self.hub.receiver_count

    async def publish(self, message: Message) -> int:
        """Fan ``message`` out to subscribers, then queue its text for the device.

        The two effects are independent: a failed device write never undoes
        delivery to subscribers, and a slow device never delays the caller.
        Returns the number of subscriptions the message reached.
        """
        delivered = 0
        try:
            delivered = self.hub.publish(message)
        except NoSubscribersError:
            logger.debug("No subscribers; chat message not broadcast")
            if self.metrics is not None:
                self.metrics.record_dropped(ORIGIN_HTTP)
        else:
            if self.metrics is not None:
                self.metrics.record_published(ORIGIN_HTTP)

        try:
            self.bridge.enqueue_line(message.message)
        except SerialWriteError as exc:
            logger.warning("Chat message not queued for device: %s", exc)
            if self.metrics is not None:
                self.metrics.serial_write_errors.inc()

        return delivered

    def open_stream(
        self,
        shutdown: asyncio.Event,
        *,
        is_disconnected: DisconnectCheck | None = None,
    ) -> MessageStream:
        """Subscribe now and return the stream for one client connection."""
        return MessageStream(
            self.hub.subscribe(),
            shutdown,
            is_disconnected=is_disconnected,
            disconnect_poll_interval=self.config.disconnect_poll_interval,
            metrics=self.metrics,
        )


class MessageStream:
    """Async iterator delivering hub messages to one client.

    States: ``active`` while messages flow, ``draining`` when a stop signal
    arrived together with a message (the message is still delivered), and
    ``closed`` once the stream has ended and its subscription is released.
    The stream ends on process shutdown, client disconnect or hub close;
    lag is skipped silently.
    """

    if TYPE_CHECKING:
        fsm_state: str
        drain: Callable[[], None]
        finish: Callable[[], None]

    STATE_ACTIVE = "active"
    STATE_DRAINING = "draining"
    STATE_CLOSED = "closed"

    def __init__(
        self,
        subscription: Subscription,
        shutdown: asyncio.Event,
        *,
        is_disconnected: DisconnectCheck | None = None,
        disconnect_poll_interval: float = DEFAULT_DISCONNECT_POLL_INTERVAL,
        metrics: RelayMetrics | None = None,
    ) -> None:
        self._subscription = subscription
        self._shutdown = shutdown
        self._is_disconnected = is_disconnected
        self._disconnect_poll_interval = disconnect_poll_interval
        self._metrics = metrics
        self._shutdown_task: asyncio.Task[bool] | None = None
        self._disconnect_task: asyncio.Task[None] | None = None
        self._pending_reason: str | None = None
        self.close_reason: str | None = None
        self.delivered = 0

        self.state_machine = Machine(
            model=self,
            states=[self.STATE_ACTIVE, self.STATE_DRAINING, self.STATE_CLOSED],
            initial=self.STATE_ACTIVE,
            ignore_invalid_triggers=True,
            model_attribute="fsm_state",
        )
        self.state_machine.add_transition(
            trigger="drain", source=self.STATE_ACTIVE, dest=self.STATE_DRAINING
        )
        self.state_machine.add_transition(
            trigger="finish",
            source=[self.STATE_ACTIVE, self.STATE_DRAINING],
            dest=self.STATE_CLOSED,
        )

    @property
    def closed(self) -> bool:
        return self.fsm_state == self.STATE_CLOSED

    def __aiter__(self) -> MessageStream:
        return self

    async def __anext__(self) -> Message:
        if self.fsm_state == self.STATE_DRAINING:
            self._close(self._pending_reason or REASON_SHUTDOWN)
        if self.closed:
            raise StopAsyncIteration

        self._start_watchers()
        while True:
            reason = self._stop_reason()
            if reason is not None:
                self._close(reason)
                raise StopAsyncIteration

            try:
                message = self._subscription.try_recv()
            except LaggedError as exc:
                self._on_lagged(exc)
                continue
            except HubClosedError:
                self._close(REASON_HUB_CLOSED)
                raise StopAsyncIteration
            if message is not None:
                return self._deliver(message)

            outcome = await self._wait_for_next()
            if outcome is not None:
                return outcome

    async def _wait_for_next(self) -> Message | None:
        recv_task = asyncio.ensure_future(self._subscription.recv())
        watchers = [t for t in (self._shutdown_task, self._disconnect_task) if t is not None]
        try:
            done, _ = await asyncio.wait(
                [recv_task, *watchers], return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if not recv_task.done():
                recv_task.cancel()

        reason = self._stop_reason()
        if recv_task not in done:
            await asyncio.gather(recv_task, return_exceptions=True)
            self._close(reason or REASON_SHUTDOWN)
            raise StopAsyncIteration

        try:
            message = recv_task.result()
        except LaggedError as exc:
            self._on_lagged(exc)
            return None
        except HubClosedError:
            self._close(REASON_HUB_CLOSED)
            raise StopAsyncIteration

        if reason is not None:
            # Hand out the message already received, end on the next step.
            self._pending_reason = reason
            self.drain()
        return self._deliver(message)

    def _deliver(self, message: Message) -> Message:
        self.delivered += 1
        return message

    def _on_lagged(self, exc: LaggedError) -> None:
        logger.warning("Event stream lagged; skipped %d message(s)", exc.skipped)
        if self._metrics is not None:
            self._metrics.record_lag(exc.skipped)

    def _stop_reason(self) -> str | None:
        if self._shutdown.is_set():
            return REASON_SHUTDOWN
        if self._disconnect_task is not None and self._disconnect_task.done():
            return REASON_DISCONNECTED
        return None

    def _start_watchers(self) -> None:
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self._shutdown.wait())
        if self._disconnect_task is None and self._is_disconnected is not None:
            self._disconnect_task = asyncio.ensure_future(self._watch_disconnect())

    async def _watch_disconnect(self) -> None:
        assert self._is_disconnected is not None
        while not await self._is_disconnected():
            await asyncio.sleep(self._disconnect_poll_interval)

    def _close(self, reason: str) -> None:
        if self.closed:
            return
        self.close_reason = reason
        self.finish()
        for task in (self._shutdown_task, self._disconnect_task):
            if task is not None and not task.done():
                task.cancel()
        self._subscription.close()
        logger.debug(
            "Event stream closed",
            extra={"reason": reason, "delivered": self.delivered},
        )

    async def aclose(self) -> None:
        """Release the subscription and helper tasks from any state."""
        self._close(self.close_reason or REASON_CLIENT_CLOSED)
        pending = [t for t in (self._shutdown_task, self._disconnect_task) if t is not None]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def __aenter__(self) -> MessageStream:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()


__all__ = [
    "MessageStream",
    "REASON_CLIENT_CLOSED",
    "REASON_DISCONNECTED",
    "REASON_HUB_CLOSED",
    "REASON_SHUTDOWN",
    "RelayService",
]
