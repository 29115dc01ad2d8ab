"""Asyncio task supervision for long-running relay loops."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

import tenacity

from ..config.const import (
    SUPERVISOR_DEFAULT_MAX_BACKOFF,
    SUPERVISOR_DEFAULT_MIN_BACKOFF,
    SUPERVISOR_DEFAULT_RESTART_INTERVAL,
    SUPERVISOR_MIN_RESTART_WINDOW,
)
from ..metrics import RelayMetrics

_NEVER_RETRY: tuple[type[BaseException], ...] = (
    asyncio.CancelledError,
    SystemExit,
    KeyboardInterrupt,
    GeneratorExit,
)


class _RestartTracker:
    """Tracks run time and logging across tenacity attempts."""

    def __init__(
        self,
        name: str,
        log: logging.Logger,
        metrics: RelayMetrics | None,
        window: float,
    ) -> None:
        self.name = name
        self.log = log
        self.metrics = metrics
        self.window = window
        self.last_start_time = 0.0

    def mark_started(self) -> None:
        self.last_start_time = time.monotonic()

    def ran_long_enough(self) -> bool:
        if self.last_start_time <= 0:
            return False
        return (time.monotonic() - self.last_start_time) > self.window

    def before_sleep(self, retry_state: tenacity.RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        self.log.error("%s failed (%s); restarting in %.1fs", self.name, exc, delay)
        if self.metrics is not None:
            self.metrics.supervisor_restarts.labels(task=self.name).inc()


async def supervise_task(
    name: str,
    coro_factory: Callable[[], Awaitable[None]],
    *,
    fatal_exceptions: tuple[type[BaseException], ...] = (),
    min_backoff: float = SUPERVISOR_DEFAULT_MIN_BACKOFF,
    max_backoff: float = SUPERVISOR_DEFAULT_MAX_BACKOFF,
    max_restarts: int | None = None,
    restart_interval: float = SUPERVISOR_DEFAULT_RESTART_INTERVAL,
    metrics: RelayMetrics | None = None,
    logger: logging.Logger | None = None,
) -> None:
    """Run *coro_factory*, restarting it with exponential backoff when it fails.

    A clean return ends supervision. Exceptions listed in *fatal_exceptions*
    are re-raised immediately. When the task ran longer than
    *restart_interval* before failing, the backoff starts over.
    """
    log = logger or logging.getLogger("serialchat.supervisor")
    tracker = _RestartTracker(
        name, log, metrics, max(SUPERVISOR_MIN_RESTART_WINDOW, restart_interval)
    )

    while True:
        retryer = tenacity.AsyncRetrying(
            wait=tenacity.wait_exponential(multiplier=min_backoff, max=max_backoff),
            retry=tenacity.retry_if_not_exception_type(_NEVER_RETRY + fatal_exceptions),
            stop=(
                tenacity.stop_after_attempt(max_restarts + 1)
                if max_restarts is not None
                else tenacity.stop_never
            ),
            before_sleep=tracker.before_sleep,
            reraise=True,
        )
        try:
            async for attempt in retryer:
                with attempt:
                    tracker.mark_started()
                    await coro_factory()
                    log.warning("%s task exited cleanly; supervisor exiting", name)
                    return
        except asyncio.CancelledError:
            log.debug("%s supervisor cancelled", name)
            raise
        except fatal_exceptions as exc:
            log.critical("%s failed with fatal exception: %s", name, exc)
            raise
        except Exception:
            if tracker.ran_long_enough():
                log.info("%s was healthy long enough; resetting backoff", name)
                continue
            if max_restarts is not None:
                log.error("%s exceeded max restarts (%d); giving up", name, max_restarts)
            raise


__all__ = ["supervise_task"]
