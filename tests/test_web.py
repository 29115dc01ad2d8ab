"""HTTP-level tests for the chat relay application."""

from __future__ import annotations

import asyncio
import dataclasses
from unittest.mock import MagicMock

import msgspec
import pytest
from httpx import ASGITransport, AsyncClient

from serialchat.config.settings import RuntimeConfig
from serialchat.errors import SerialWriteError
from serialchat.hub import BroadcastHub
from serialchat.metrics import RelayMetrics
from serialchat.models import Message
from serialchat.services.relay import RelayService
from serialchat.web.app import create_app
from serialchat.web.routes import EventStreamResponse

from tests.mocks import FakeSerialLink


def _relay(config: RuntimeConfig, hub: BroadcastHub, metrics: RelayMetrics | None = None) -> RelayService:
    bridge = MagicMock()
    bridge.enqueue_line = MagicMock()
    return RelayService(hub, bridge, config, metrics)


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def _events(body: str) -> list[dict]:
    return [
        msgspec.json.decode(chunk[len("data: "):])
        for chunk in body.split("\n\n")
        if chunk.startswith("data: ")
    ]


async def _wait_for_subscribers(hub: BroadcastHub, count: int) -> None:
    for _ in range(200):
        if hub.receiver_count >= count:
            return
        await asyncio.sleep(0.005)
    raise AssertionError(f"expected {count} subscribers, have {hub.receiver_count}")


@pytest.mark.asyncio
async def test_post_message_is_accepted_and_forwarded(
    runtime_config: RuntimeConfig, hub: BroadcastHub
) -> None:
    relay = _relay(runtime_config, hub)
    app = create_app(relay, asyncio.Event(), runtime_config)
    sub = hub.subscribe()

    async with _client(app) as ac:
        resp = await ac.post(
            "/message",
            data={"room": "lobby", "username": "alice", "message": "hello board"},
        )

    assert resp.status_code == 200
    assert resp.json() == {"status": "accepted", "delivered": 1}
    assert sub.try_recv() == Message(room="lobby", username="alice", message="hello board")
    relay.bridge.enqueue_line.assert_called_once_with("hello board")


@pytest.mark.asyncio
async def test_post_message_accepted_when_device_is_down(
    runtime_config: RuntimeConfig, hub: BroadcastHub
) -> None:
    relay = _relay(runtime_config, hub)
    relay.bridge.enqueue_line.side_effect = SerialWriteError("serial link is closed")
    app = create_app(relay, asyncio.Event(), runtime_config)

    async with _client(app) as ac:
        resp = await ac.post("/message", data={"room": "r", "username": "u", "message": "m"})

    assert resp.status_code == 200
    assert resp.json()["status"] == "accepted"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "form",
    [
        {"room": "r" * 31, "username": "alice", "message": "hi"},
        {"room": "lobby", "username": "u" * 21, "message": "hi"},
        {"room": "lobby", "message": "hi"},
    ],
)
async def test_post_message_rejects_invalid_form(
    runtime_config: RuntimeConfig, hub: BroadcastHub, form: dict[str, str]
) -> None:
    relay = _relay(runtime_config, hub)
    app = create_app(relay, asyncio.Event(), runtime_config)

    async with _client(app) as ac:
        resp = await ac.post("/message", data=form)

    assert resp.status_code == 422
    assert "detail" in resp.json()
    relay.bridge.enqueue_line.assert_not_called()


@pytest.mark.asyncio
async def test_events_stream_messages_until_shutdown(
    runtime_config: RuntimeConfig, hub: BroadcastHub
) -> None:
    shutdown = asyncio.Event()
    relay = _relay(runtime_config, hub)
    app = create_app(relay, shutdown, runtime_config)

    async with _client(app) as ac:
        request = asyncio.create_task(ac.get("/events"))
        await _wait_for_subscribers(hub, 1)

        await relay.publish(Message(room="lobby", username="alice", message="one"))
        hub.publish(Message.from_device("two", runtime_config.device_name))
        await asyncio.sleep(0.02)
        shutdown.set()
        resp = await asyncio.wait_for(request, timeout=2)

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["cache-control"] == "no-cache"
    assert _events(resp.text) == [
        {"room": "lobby", "username": "alice", "message": "one"},
        {"room": "Micro:bit", "username": "Micro:bit", "message": "two"},
    ]
    assert hub.receiver_count == 0


@pytest.mark.asyncio
async def test_shutdown_ends_all_open_event_streams(
    runtime_config: RuntimeConfig, hub: BroadcastHub
) -> None:
    shutdown = asyncio.Event()
    app = create_app(_relay(runtime_config, hub), shutdown, runtime_config)

    async with _client(app) as ac:
        requests = [asyncio.create_task(ac.get("/events")) for _ in range(3)]
        await _wait_for_subscribers(hub, 3)
        shutdown.set()
        responses = await asyncio.wait_for(asyncio.gather(*requests), timeout=2)

    assert [r.status_code for r in responses] == [200, 200, 200]
    assert all(r.text == "" for r in responses)


@pytest.mark.asyncio
async def test_events_unavailable_once_hub_closed(
    runtime_config: RuntimeConfig, hub: BroadcastHub
) -> None:
    app = create_app(_relay(runtime_config, hub), asyncio.Event(), runtime_config)
    hub.close()

    async with _client(app) as ac:
        resp = await ac.get("/events")

    assert resp.status_code == 503


@pytest.mark.asyncio
async def test_healthz_reports_subscribers(runtime_config: RuntimeConfig, hub: BroadcastHub) -> None:
    app = create_app(_relay(runtime_config, hub), asyncio.Event(), runtime_config)
    hub.subscribe()

    async with _client(app) as ac:
        resp = await ac.get("/healthz")

    assert resp.json() == {"status": "ok", "subscribers": 1}


@pytest.mark.asyncio
async def test_static_index_is_served(runtime_config: RuntimeConfig, hub: BroadcastHub) -> None:
    app = create_app(_relay(runtime_config, hub), asyncio.Event(), runtime_config)

    async with _client(app) as ac:
        resp = await ac.get("/")

    assert resp.status_code == 200
    assert "chat" in resp.text


@pytest.mark.asyncio
async def test_metrics_route_follows_config(
    runtime_config: RuntimeConfig, hub: BroadcastHub, metrics: RelayMetrics
) -> None:
    metrics.bind_hub(hub)
    hub.subscribe()

    disabled = create_app(_relay(runtime_config, hub, metrics), asyncio.Event(), runtime_config, metrics)
    async with _client(disabled) as ac:
        assert (await ac.get("/metrics")).status_code == 404

    enabled_config = dataclasses.replace(runtime_config, metrics_enabled=True)
    enabled = create_app(_relay(enabled_config, hub, metrics), asyncio.Event(), enabled_config, metrics)
    async with _client(enabled) as ac:
        resp = await ac.get("/metrics")

    assert resp.status_code == 200
    assert "serialchat_subscribers 1.0" in resp.text


@pytest.mark.asyncio
async def test_post_returns_while_device_write_hangs(
    runtime_config: RuntimeConfig, hub: BroadcastHub
) -> None:
    config = dataclasses.replace(runtime_config, serial_write_timeout=5.0)
    link = FakeSerialLink()
    link.writer.drain_delay = 60.0
    bridge = link.bridge(config, hub)
    app = create_app(RelayService(hub, bridge, config), asyncio.Event(), config)
    sub = hub.subscribe()
    writer = asyncio.create_task(bridge.run_writer())
    loop = asyncio.get_running_loop()

    try:
        async with _client(app) as ac:
            started = loop.time()
            for text in ("one", "two"):
                resp = await ac.post(
                    "/message", data={"room": "lobby", "username": "alice", "message": text}
                )
                assert resp.json() == {"status": "accepted", "delivered": 1}
            elapsed = loop.time() - started

        assert elapsed < 0.5
        assert [sub.try_recv().message for _ in range(2)] == ["one", "two"]
        for _ in range(100):
            if link.writer.writes:
                break
            await asyncio.sleep(0.005)
        assert link.writer.writes == [b"one\n"]
    finally:
        writer.cancel()
        with pytest.raises(asyncio.CancelledError):
            await writer


@pytest.mark.asyncio
async def test_event_response_cancelled_before_start_releases_subscription(
    runtime_config: RuntimeConfig, hub: BroadcastHub
) -> None:
    relay = _relay(runtime_config, hub)
    response = EventStreamResponse(relay.open_stream(asyncio.Event()))
    assert hub.receiver_count == 1
    never = asyncio.Event()

    async def receive() -> dict:
        await never.wait()
        return {"type": "http.disconnect"}

    async def send(message: dict) -> None:
        # The client is gone before the response head goes out.
        await never.wait()

    task = asyncio.create_task(response({"type": "http", "method": "GET"}, receive, send))
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert response.stream.closed
    assert hub.receiver_count == 0
