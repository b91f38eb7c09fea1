from __future__ import annotations

import asyncio
import threading
import time
from typing import Callable

import pytest

from racetimer.exceptions import ChannelClosedError, LinkIOError, LinkTimeoutError, NoDataError, PersistenceError
from racetimer.transponder.commands import CommandChannel, Increment, StartRace, StopRace
from racetimer.transponder.config import DetectorConfig, HostRuntime
from racetimer.transponder.frames import RawSample, decode_ns
from racetimer.transponder.worker import NodeEvent, TimerWorker


class ScriptedLink:
    """Returns queued rssi values (or raises queued errors), then NoData."""

    def __init__(self, samples=()):
        self._samples = list(samples)
        self.calls = 0
        self.closed = False
        self.gate: threading.Event | None = None

    def read_sample(self) -> RawSample:
        self.calls += 1
        if self.gate is not None:
            self.gate.wait(5)
        if not self._samples:
            time.sleep(0.005)
            raise NoDataError("No data received for 0x0D", code=0x0D)
        item = self._samples.pop(0)
        if isinstance(item, Exception):
            raise item
        return RawSample(lap_id=1, ms_val=0, rssi=item)

    def close(self) -> None:
        self.closed = True


class MemoryStore:
    def __init__(self, fail_nodes: bool = False):
        self.fail_nodes = fail_nodes
        self.nodes: list[tuple[int, int, float, int]] = []
        self.posts: list[tuple[str, str]] = []
        self.finished: dict[int, int] = {}

    async def insert_race(self, start_time: bytes) -> int:
        return 1

    async def finish_race(self, race_id: int, end_time: bytes) -> None:
        self.finished[race_id] = decode_ns(end_time)

    async def insert_node(self, peak: int, elapsed_ns: bytes, duration: float, race_id: int) -> int:
        if self.fail_nodes:
            raise PersistenceError("insert_node failed: disk I/O error")
        self.nodes.append((peak, decode_ns(elapsed_ns), duration, race_id))
        return len(self.nodes)

    async def insert_placeholder_post(self, title: str, content: str) -> int:
        self.posts.append((title, content))
        return len(self.posts)

    async def list_nodes(self, race_id=None):
        return []


RUNTIME = HostRuntime(queue_maxsize=8, error_backoff_sec=0.005, stats_log_interval=60.0)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def start(link, store, channel: CommandChannel | None = None, **kwargs):
    channel = channel or CommandChannel(RUNTIME.queue_maxsize)
    worker = TimerWorker(link, channel, store, DetectorConfig(threshold=3), RUNTIME, **kwargs)
    task = asyncio.create_task(worker.run())
    return worker, channel, task


async def stop(channel: CommandChannel, task: asyncio.Task) -> None:
    await channel.close()
    await asyncio.wait_for(task, 5)


def start_race(race_id: int = 7) -> StartRace:
    return StartRace(start_instant=time.monotonic_ns(), race_id=race_id)


@pytest.mark.asyncio
async def test_increment_and_get_count() -> None:
    store = MemoryStore()
    worker, channel, task = start(ScriptedLink(), store)
    for _ in range(3):
        await channel.send(Increment())
    assert await channel.get_count(timeout=1) == 3
    assert [title for title, _ in store.posts] == ["Post 1", "Post 2", "Post 3"]
    assert store.posts[0][1] == "This is the content of post 1"
    await stop(channel, task)


@pytest.mark.asyncio
async def test_race_events_are_persisted() -> None:
    store = MemoryStore()
    link = ScriptedLink([50, 51, 52, 60, 61, 70])
    worker, channel, task = start(link, store)

    await channel.send(start_race(7))
    await wait_until(lambda: len(store.nodes) >= 2)

    assert [node[0] for node in store.nodes[:2]] == [50, 60]
    assert all(node[3] == 7 for node in store.nodes)
    assert store.nodes[0][1] > 0
    assert store.nodes[1][1] >= store.nodes[0][1]
    await stop(channel, task)
    assert worker.stats()["events"] >= 2
    assert link.closed


@pytest.mark.asyncio
async def test_no_polling_without_race() -> None:
    link = ScriptedLink([50, 60])
    worker, channel, task = start(link, MemoryStore())
    await channel.send(Increment())
    await channel.get_count(timeout=1)
    await asyncio.sleep(0.05)
    assert link.calls == 0
    await stop(channel, task)


@pytest.mark.asyncio
async def test_start_then_stop_emits_nothing() -> None:
    store = MemoryStore()
    worker, channel, task = start(ScriptedLink(), store)
    await channel.send(start_race(3))
    await channel.send(StopRace())
    await channel.get_count(timeout=1)
    await asyncio.sleep(0.05)
    assert store.nodes == []
    assert 3 in store.finished
    assert worker.race is None
    await stop(channel, task)


@pytest.mark.asyncio
async def test_stop_discards_in_flight_sample() -> None:
    store = MemoryStore()
    link = ScriptedLink([50, 60, 70])
    link.gate = threading.Event()
    worker, channel, task = start(link, store)

    await channel.send(start_race(4))
    await wait_until(lambda: link.calls == 1)
    await channel.send(StopRace())
    await channel.get_count(timeout=1)
    link.gate.set()
    await wait_until(lambda: worker.stats()["discarded"] == 1)
    await asyncio.sleep(0.05)

    assert store.nodes == []
    assert link.calls == 1
    await stop(channel, task)


@pytest.mark.asyncio
async def test_hardware_errors_do_not_stop_the_loop() -> None:
    store = MemoryStore()
    link = ScriptedLink(
        [
            LinkTimeoutError("Read timeout for 0x0D after 5.0s", code=0x0D),
            50,
            LinkIOError("I/O error for 0x0D: device disconnected", code=0x0D),
            51,
            60,
        ]
    )
    worker, channel, task = start(link, store)
    await channel.send(start_race(5))
    await wait_until(lambda: len(store.nodes) == 1)
    assert store.nodes[0][0] == 50
    assert worker.stats()["hw_errors"] >= 2
    await stop(channel, task)


@pytest.mark.asyncio
async def test_persistence_failure_is_swallowed() -> None:
    store = MemoryStore(fail_nodes=True)
    link = ScriptedLink([50, 60, 70])
    worker, channel, task = start(link, store)
    await channel.send(start_race(6))
    await wait_until(lambda: worker.stats()["events"] == 2)
    assert worker.stats()["persist_errors"] == 2
    await channel.send(Increment())
    assert await channel.get_count(timeout=1) == 1
    await stop(channel, task)


@pytest.mark.asyncio
async def test_events_reach_callback() -> None:
    received: list[NodeEvent] = []
    link = ScriptedLink([80, 90])
    worker, channel, task = start(link, MemoryStore(), on_event=received.append)
    await channel.send(start_race(9))
    await wait_until(lambda: len(received) == 1)
    assert received[0].race_id == 9
    assert received[0].peak == 80
    assert received[0].node_id == 1
    assert received[0].as_dict()["type"] == "node"
    await stop(channel, task)


@pytest.mark.asyncio
async def test_start_race_replaces_active_race() -> None:
    store = MemoryStore()
    worker, channel, task = start(ScriptedLink(), store)
    await channel.send(start_race(1))
    await channel.send(start_race(2))
    await channel.get_count(timeout=1)
    assert worker.race is not None
    assert worker.race.race_id == 2
    assert list(store.finished) == [1]
    await stop(channel, task)


@pytest.mark.asyncio
async def test_full_queue_blocks_producer() -> None:
    channel = CommandChannel(maxsize=1)
    await channel.send(Increment())
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(channel.send(Increment()), 0.05)
    assert channel.qsize() == 1

    blocked = asyncio.create_task(channel.send(Increment()))
    await asyncio.sleep(0.02)
    assert not blocked.done()

    worker, channel, task = start(ScriptedLink(), MemoryStore(), channel=channel)
    await asyncio.wait_for(blocked, 1)
    assert await channel.get_count(timeout=1) == 2
    await stop(channel, task)


@pytest.mark.asyncio
async def test_get_count_after_worker_exit_fails() -> None:
    link = ScriptedLink()
    worker, channel, task = start(link, MemoryStore())
    await stop(channel, task)
    assert link.closed
    with pytest.raises(ChannelClosedError):
        await channel.get_count(timeout=1)


@pytest.mark.asyncio
async def test_pending_reply_fails_on_shutdown() -> None:
    channel = CommandChannel(maxsize=4)
    pending = asyncio.create_task(channel.get_count(timeout=1))
    await asyncio.sleep(0.01)
    channel.shutdown()
    with pytest.raises(ChannelClosedError):
        await pending


@pytest.mark.asyncio
async def test_unknown_command_is_rejected() -> None:
    worker = TimerWorker(ScriptedLink(), CommandChannel(), MemoryStore())
    with pytest.raises(TypeError):
        await worker.handle_command(object())  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_stale_poll_error_does_not_delay_next_race() -> None:
    store = MemoryStore()
    link = ScriptedLink([LinkIOError("I/O error for 0x0D: device disconnected", code=0x0D), 50, 60])
    link.gate = threading.Event()
    channel = CommandChannel(RUNTIME.queue_maxsize)
    slow_backoff = HostRuntime(queue_maxsize=8, error_backoff_sec=30.0, stats_log_interval=60.0)
    worker = TimerWorker(link, channel, store, DetectorConfig(threshold=3), slow_backoff)
    task = asyncio.create_task(worker.run())

    await channel.send(start_race(1))
    await wait_until(lambda: link.calls == 1)
    await channel.send(start_race(2))
    await channel.get_count(timeout=1)
    link.gate.set()

    await wait_until(lambda: len(store.nodes) == 1)
    assert store.nodes[0][0] == 50
    assert store.nodes[0][3] == 2
    assert worker.stats()["discarded"] == 1
    await stop(channel, task)
