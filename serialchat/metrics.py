"""Prometheus metrics for the serial chat relay."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import TYPE_CHECKING, Any

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, generate_latest
from prometheus_client.core import GaugeMetricFamily
from prometheus_client.registry import Collector

if TYPE_CHECKING:
    from .hub import BroadcastHub

logger = logging.getLogger("serialchat.metrics")

ORIGIN_HTTP = "http"
ORIGIN_DEVICE = "device"

__all__ = ["CONTENT_TYPE_LATEST", "ORIGIN_DEVICE", "ORIGIN_HTTP", "RelayMetrics"]


class _HubCollector(Collector):
    """Projects live hub state at scrape time."""

    def __init__(self, hub: BroadcastHub) -> None:
        self._hub = hub

    def collect(self) -> Iterator[Any]:
        subscribers = GaugeMetricFamily(
            "serialchat_subscribers",
            "Active event stream subscriptions",
        )
        subscribers.add_metric((), float(self._hub.receiver_count))
        yield subscribers

        capacity = GaugeMetricFamily(
            "serialchat_hub_capacity",
            "Retained history capacity of the broadcast hub",
        )
        capacity.add_metric((), float(self._hub.capacity))
        yield capacity


class RelayMetrics:
    """Counters for the relay, kept in a private registry."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self.published = Counter(
            "serialchat_messages_published",
            "Messages published to the broadcast hub",
            ("origin",),
            registry=self.registry,
        )
        self.dropped = Counter(
            "serialchat_messages_dropped",
            "Messages dropped because nobody was subscribed",
            ("origin",),
            registry=self.registry,
        )
        self.lagged = Counter(
            "serialchat_subscriber_lag_events",
            "Times a subscriber fell behind and skipped messages",
            registry=self.registry,
        )
        self.lag_skipped = Counter(
            "serialchat_subscriber_skipped_messages",
            "Messages skipped by lagging subscribers",
            registry=self.registry,
        )
        self.serial_read_errors = Counter(
            "serialchat_serial_read_errors",
            "Failed reads from the serial device",
            registry=self.registry,
        )
        self.serial_write_errors = Counter(
            "serialchat_serial_write_errors",
            "Failed writes to the serial device",
            registry=self.registry,
        )
        self.supervisor_restarts = Counter(
            "serialchat_supervisor_restarts",
            "Restarts of supervised background tasks",
            ("task",),
            registry=self.registry,
        )
        self._hub_collector: _HubCollector | None = None

    def bind_hub(self, hub: BroadcastHub) -> None:
        if self._hub_collector is not None:
            self.registry.unregister(self._hub_collector)
        self._hub_collector = _HubCollector(hub)
        self.registry.register(self._hub_collector)

    def record_published(self, origin: str) -> None:
        self.published.labels(origin=origin).inc()

    def record_dropped(self, origin: str) -> None:
        self.dropped.labels(origin=origin).inc()

    def record_lag(self, skipped: int) -> None:
        self.lagged.inc()
        self.lag_skipped.inc(skipped)

    def render(self) -> bytes:
        return generate_latest(self.registry)
