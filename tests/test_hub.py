"""Tests for the broadcast hub."""

from __future__ import annotations

import asyncio

import pytest

from serialchat.errors import HubClosedError, LaggedError, NoSubscribersError
from serialchat.hub import BroadcastHub
from serialchat.models import Message


def _msg(text: str) -> Message:
    return Message(room="lobby", username="alice", message=text)


def test_capacity_must_be_positive() -> None:
    with pytest.raises(ValueError):
        BroadcastHub(capacity=0)


def test_publish_without_subscribers_drops_message() -> None:
    hub = BroadcastHub(capacity=4)
    with pytest.raises(NoSubscribersError):
        hub.publish(_msg("lost"))

    sub = hub.subscribe()
    assert sub.try_recv() is None


def test_fan_out_reaches_every_subscriber_in_order() -> None:
    hub = BroadcastHub(capacity=16)
    subs = [hub.subscribe() for _ in range(3)]

    for i in range(5):
        assert hub.publish(_msg(f"m{i}")) == 3

    for sub in subs:
        received = [sub.try_recv() for _ in range(5)]
        assert [m.message for m in received if m] == [f"m{i}" for i in range(5)]
        assert sub.try_recv() is None


def test_subscription_never_sees_earlier_messages() -> None:
    hub = BroadcastHub(capacity=16)
    early = hub.subscribe()
    hub.publish(_msg("m1"))

    late = hub.subscribe()
    hub.publish(_msg("m2"))

    assert [early.try_recv(), early.try_recv()] == [_msg("m1"), _msg("m2")]
    assert late.try_recv() == _msg("m2")
    assert late.try_recv() is None


def test_lagging_subscriber_skips_forward_and_continues() -> None:
    hub = BroadcastHub(capacity=4)
    slow = hub.subscribe()

    for i in range(5):
        hub.publish(_msg(f"m{i}"))

    with pytest.raises(LaggedError) as excinfo:
        slow.try_recv()
    assert excinfo.value.skipped == 1

    # Resumes with the oldest retained message.
    assert [slow.try_recv().message for _ in range(4)] == ["m1", "m2", "m3", "m4"]

    hub.publish(_msg("m5"))
    assert slow.try_recv() == _msg("m5")


def test_pending_counts_retained_messages() -> None:
    hub = BroadcastHub(capacity=4)
    sub = hub.subscribe()
    for i in range(6):
        hub.publish(_msg(f"m{i}"))
    assert sub.pending == 4


def test_closed_subscription_is_detached() -> None:
    hub = BroadcastHub(capacity=4)
    with hub.subscribe() as sub:
        assert hub.receiver_count == 1
    assert sub.closed
    assert hub.receiver_count == 0
    with pytest.raises(HubClosedError):
        sub.try_recv()
    # Idempotent.
    sub.close()


def test_close_lets_subscribers_drain_then_ends() -> None:
    hub = BroadcastHub(capacity=4)
    sub = hub.subscribe()
    hub.publish(_msg("last"))
    hub.close()

    assert sub.try_recv() == _msg("last")
    with pytest.raises(HubClosedError):
        sub.try_recv()
    with pytest.raises(HubClosedError):
        hub.publish(_msg("late"))
    with pytest.raises(HubClosedError):
        hub.subscribe()


@pytest.mark.asyncio
async def test_recv_wakes_blocked_subscribers() -> None:
    hub = BroadcastHub(capacity=8)
    subs = [hub.subscribe() for _ in range(4)]
    waiters = [asyncio.create_task(sub.recv()) for sub in subs]
    await asyncio.sleep(0)
    assert not any(w.done() for w in waiters)

    hub.publish(_msg("wake"))
    results = await asyncio.wait_for(asyncio.gather(*waiters), timeout=1)
    assert results == [_msg("wake")] * 4


@pytest.mark.asyncio
async def test_cancelled_recv_does_not_consume_message() -> None:
    hub = BroadcastHub(capacity=8)
    sub = hub.subscribe()
    waiter = asyncio.create_task(sub.recv())
    await asyncio.sleep(0)
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    hub.publish(_msg("kept"))
    assert await asyncio.wait_for(sub.recv(), timeout=1) == _msg("kept")


@pytest.mark.asyncio
async def test_hub_close_unblocks_waiters() -> None:
    hub = BroadcastHub(capacity=8)
    sub = hub.subscribe()
    waiter = asyncio.create_task(sub.recv())
    await asyncio.sleep(0)

    hub.close()
    with pytest.raises(HubClosedError):
        await asyncio.wait_for(waiter, timeout=1)


@pytest.mark.asyncio
async def test_concurrent_producers_deliver_everything_once() -> None:
    hub = BroadcastHub(capacity=256)
    sub = hub.subscribe()

    async def producer(name: str) -> None:
        for i in range(50):
            hub.publish(Message(room="r", username=name, message=str(i)))
            await asyncio.sleep(0)

    await asyncio.gather(producer("a"), producer("b"), producer("c"))

    received = []
    while (message := sub.try_recv()) is not None:
        received.append(message)
    assert len(received) == 150
    for name in "abc":
        assert [m.message for m in received if m.username == name] == [str(i) for i in range(50)]
