from __future__ import annotations

import asyncio

import pytest

from racetimer.relay import BroadcastHub


@pytest.mark.asyncio
async def test_publish_reaches_every_other_peer() -> None:
    hub = BroadcastHub(buffer_size=10)
    alice, bob, carol = hub.subscribe(), hub.subscribe(), hub.subscribe()

    assert alice.publish("green flag") == 2

    assert await bob.get() == "green flag"
    assert await carol.get() == "green flag"
    assert alice.pending() == 0


@pytest.mark.asyncio
async def test_overflow_drops_oldest() -> None:
    hub = BroadcastHub(buffer_size=3)
    slow = hub.subscribe()
    for index in range(5):
        hub.publish(f"msg {index}")
    assert slow.dropped == 2
    assert [await slow.get() for _ in range(3)] == ["msg 2", "msg 3", "msg 4"]


@pytest.mark.asyncio
async def test_publish_without_subscribers_is_noop() -> None:
    hub = BroadcastHub()
    assert hub.publish("anyone?") == 0


@pytest.mark.asyncio
async def test_closed_subscription_stops_receiving() -> None:
    hub = BroadcastHub()
    peer = hub.subscribe()
    waiter = asyncio.create_task(peer.get())
    await asyncio.sleep(0)
    peer.close()
    assert await asyncio.wait_for(waiter, 1) is None
    assert len(hub) == 0
    assert hub.publish("late") == 0


@pytest.mark.asyncio
async def test_get_waits_for_next_message() -> None:
    hub = BroadcastHub()
    peer = hub.subscribe()
    waiter = asyncio.create_task(peer.get())
    await asyncio.sleep(0.01)
    assert not waiter.done()
    hub.publish("lap 1")
    assert await asyncio.wait_for(waiter, 1) == "lap 1"


def test_buffer_size_must_be_positive() -> None:
    with pytest.raises(ValueError):
        BroadcastHub(buffer_size=0)
