"""Serial bridge between the chat hub and the attached microcontroller.

The link is opened once with pyserial-asyncio-fast and shared by two
background tasks: the poll loop (reads) and the writer task, which drains
lines queued by HTTP publishers. Both go through one :class:`asyncio.Lock`,
so a read and a write never overlap on the wire. The wire format is
newline-delimited UTF-8 text.
"""

from __future__ import annotations

import asyncio
import logging

# pyserial-asyncio-fast is a hard dependency; there is no fallback transport.
import serial
import serial_asyncio_fast  # type: ignore
import tenacity

from ..common import log_hexdump
from ..config.const import DEFAULT_SERIAL_OUTBOX_SIZE, SERIAL_LINE_TERMINATOR
from ..config.settings import RuntimeConfig
from ..errors import (
    HubClosedError,
    NoSubscribersError,
    SerialOpenError,
    SerialReadError,
    SerialWriteError,
)
from ..hub import BroadcastHub
from ..metrics import ORIGIN_DEVICE, RelayMetrics
from ..models import Message, lines_from_chunk

logger = logging.getLogger("serialchat.serial")

__all__ = ["SerialBridge", "open_serial_bridge"]


class SerialBridge:
    """Owns the serial link and turns device output into hub messages."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        config: RuntimeConfig,
        hub: BroadcastHub,
        metrics: RelayMetrics | None = None,
    ) -> None:
        self.reader = reader
        self.writer = writer
        self.config = config
        self.hub = hub
        self.metrics = metrics
        self._lock = asyncio.Lock()
        self._closed = False
        self._read_failing = False
        self._outbox: asyncio.Queue[str] = asyncio.Queue(maxsize=DEFAULT_SERIAL_OUTBOX_SIZE)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def write_line(self, text: str) -> None:
        """Send ``text`` followed by exactly one line terminator."""
        if self._closed:
            raise SerialWriteError("serial link is closed")
        if "\n" in text:
            # No escaping; the device sees one line per embedded newline.
            logger.debug("Outbound message contains embedded newlines")
        data = text.encode("utf-8") + SERIAL_LINE_TERMINATOR

        async with self._lock:
            try:
                self.writer.write(data)
                await asyncio.wait_for(
                    self.writer.drain(), timeout=self.config.serial_write_timeout
                )
            except asyncio.TimeoutError as exc:
                raise SerialWriteError(
                    f"write timed out after {self.config.serial_write_timeout}s"
                ) from exc
            except (serial.SerialException, OSError, RuntimeError) as exc:
                raise SerialWriteError(f"write failed: {exc}") from exc
        log_hexdump(logger, logging.DEBUG, "TX", data)

    @property
    def pending_writes(self) -> int:
        return self._outbox.qsize()

    def enqueue_line(self, text: str) -> None:
        """Queue ``text`` for the writer task and return immediately.

        Lines reach the device in the order they were queued. Raises
        :class:`SerialWriteError` when the link is closed or the queue is full.
        """
        if self._closed:
            raise SerialWriteError("serial link is closed")
        try:
            self._outbox.put_nowait(text)
        except asyncio.QueueFull as exc:
            raise SerialWriteError(
                f"outbound queue full ({self._outbox.maxsize} lines)"
            ) from exc

    async def run_writer(self) -> None:
        """Drain queued lines onto the wire, one at a time, forever."""
        logger.info("Serial writer started")
        try:
            while True:
                text = await self._outbox.get()
                try:
                    await self.write_line(text)
                except SerialWriteError as exc:
                    logger.warning("Could not forward chat message to device: %s", exc)
                    if self.metrics is not None:
                        self.metrics.serial_write_errors.inc()
                finally:
                    self._outbox.task_done()
        finally:
            logger.info("Serial writer stopped")

    async def flush(self, timeout: float) -> bool:
        """Wait until every queued line was handled; ``False`` on timeout."""
        try:
            await asyncio.wait_for(self._outbox.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Serial writer did not drain in %.1fs; %d line(s) dropped",
                timeout,
                self._outbox.qsize(),
            )
            return False
        return True

    async def read_chunk(self) -> bytes:
        """Read at most ``serial_read_size`` bytes, waiting briefly for data.

        Returns ``b""`` when nothing arrived within ``serial_read_timeout``.
        """
        async with self._lock:
            return await self._read_locked()

    async def _read_locked(self) -> bytes:
        if self._closed:
            raise SerialReadError("serial link is closed")
        if self.reader.at_eof():
            raise SerialReadError("serial device closed the link")
        try:
            data = await asyncio.wait_for(
                self.reader.read(self.config.serial_read_size),
                timeout=self.config.serial_read_timeout,
            )
        except asyncio.TimeoutError:
            return b""
        except (serial.SerialException, OSError) as exc:
            raise SerialReadError(f"read failed: {exc}") from exc
        if data:
            log_hexdump(logger, logging.DEBUG, "RX", data)
        return data

    async def poll_once(self) -> int:
        """Run one poll tick and return how many messages were published."""
        if self._lock.locked():
            logger.debug("Serial link busy; skipping poll tick")
            return 0

        try:
            chunk = await self.read_chunk()
        except SerialReadError as exc:
            if self.metrics is not None:
                self.metrics.serial_read_errors.inc()
            if not self._read_failing:
                logger.warning("Serial read failed: %s", exc)
                self._read_failing = True
            else:
                logger.debug("Serial read still failing: %s", exc)
            return 0

        if self._read_failing:
            logger.info("Serial reads recovered")
            self._read_failing = False

        published = 0
        for line in lines_from_chunk(chunk):
            if self._publish_line(line):
                published += 1
        return published

    def _publish_line(self, line: str) -> bool:
        message = Message.from_device(line, self.config.device_name)
        logger.info(
            "Device message received",
            extra={"username": message.username, "chars": len(line)},
        )
        try:
            self.hub.publish(message)
        except NoSubscribersError:
            logger.debug("No subscribers; device message dropped")
            if self.metrics is not None:
                self.metrics.record_dropped(ORIGIN_DEVICE)
            return False
        except HubClosedError:
            logger.debug("Hub closed; device message dropped")
            return False
        if self.metrics is not None:
            self.metrics.record_published(ORIGIN_DEVICE)
        return True

    async def run(self) -> None:
        """Poll the device forever at ``serial_poll_interval``."""
        logger.info(
            "Serial poll loop started",
            extra={"interval": self.config.serial_poll_interval},
        )
        try:
            while True:
                await self.poll_once()
                await asyncio.sleep(self.config.serial_poll_interval)
        finally:
            logger.info("Serial poll loop stopped")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (serial.SerialException, OSError) as exc:
            logger.debug("Error while closing serial link: %s", exc)
        logger.info("Serial link closed")


def _log_open_retry(retry_state: tenacity.RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Could not open serial device (attempt %d): %s",
        retry_state.attempt_number,
        exc,
    )


async def open_serial_bridge(
    config: RuntimeConfig,
    hub: BroadcastHub,
    metrics: RelayMetrics | None = None,
) -> SerialBridge:
    """Open the configured device and wrap it in a :class:`SerialBridge`.

    Raises :class:`SerialOpenError` once ``serial_open_attempts`` attempts
    have failed.
    """
    retryer = tenacity.AsyncRetrying(
        stop=tenacity.stop_after_attempt(config.serial_open_attempts),
        wait=tenacity.wait_fixed(config.serial_open_retry_delay),
        retry=tenacity.retry_if_exception_type((serial.SerialException, OSError)),
        before_sleep=_log_open_retry,
        reraise=True,
    )

    logger.info(
        "Opening serial device %s at %d baud",
        config.serial_port,
        config.serial_baud,
    )
    try:
        async for attempt in retryer:
            with attempt:
                reader, writer = await serial_asyncio_fast.open_serial_connection(
                    url=config.serial_port,
                    baudrate=config.serial_baud,
                )
    except (serial.SerialException, OSError) as exc:
        raise SerialOpenError(
            f"cannot open serial device {config.serial_port}: {exc}"
        ) from exc

    logger.info("Serial device %s opened", config.serial_port)
    return SerialBridge(reader, writer, config, hub, metrics)
