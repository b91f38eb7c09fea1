from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from ..exceptions import ChannelClosedError, LinkError, NoDataError, PersistenceError
from .commands import Command, CommandChannel, GetCount, Increment, StartRace, StopRace
from .config import DetectorConfig, HostRuntime
from .detector import PeakDetector, PeakEvent
from .frames import encode_ns

logger = logging.getLogger(__name__)

COUNTER_MASK = 0xFFFFFFFF


@dataclass(frozen=True)
class RaceContext:
    race_id: int
    start_instant: int
    generation: int


@dataclass(frozen=True)
class NodeEvent:
    """A detector event bound to a race, as written to storage."""

    race_id: int
    peak: int
    elapsed_ns: int
    duration: float
    heartbeat: bool
    node_id: Optional[int] = None

    def as_dict(self) -> dict:
        return {
            "type": "node",
            "race_id": self.race_id,
            "node_id": self.node_id,
            "peak": self.peak,
            "time": self.elapsed_ns,
            "duration": self.duration,
            "heartbeat": self.heartbeat,
        }


class TimerWorker:
    """
    Single owner of the transponder link, the counter, the detector and the
    active race.

    ``run`` waits on the command channel and, while a race is active, on one
    outstanding sample read executed in a helper thread. Whichever finishes
    first is handled; when both are ready their order alternates.
    """

    def __init__(
        self,
        link,
        channel: CommandChannel,
        persistence,
        detector_config: Optional[DetectorConfig] = None,
        runtime: Optional[HostRuntime] = None,
        on_event: Optional[Callable[[NodeEvent], None]] = None,
        clock_ns: Callable[[], int] = time.monotonic_ns,
        wall_clock_ns: Callable[[], int] = time.time_ns,
    ):
        detector_config = detector_config or DetectorConfig()
        self.runtime = runtime or HostRuntime()
        self._link = link
        self._channel = channel
        self._persistence = persistence
        self._on_event = on_event
        self._clock_ns = clock_ns
        self._wall_clock_ns = wall_clock_ns
        self.detector = PeakDetector(
            threshold=detector_config.threshold,
            heartbeat_sec=detector_config.heartbeat_sec,
            clock=lambda: self._clock_ns() / 1e9,
        )
        self._counter = 0
        self._race: Optional[RaceContext] = None
        self._generation = 0
        self._backoff = 0.0
        self._prefer_hardware = False
        self._stats: Dict[str, int] = {
            "commands": 0,
            "samples": 0,
            "events": 0,
            "hw_errors": 0,
            "persist_errors": 0,
            "discarded": 0,
        }

    @property
    def race(self) -> Optional[RaceContext]:
        return self._race

    def stats(self) -> Dict[str, int]:
        return dict(self._stats)

    async def run(self) -> None:
        command_task: Optional[asyncio.Task] = None
        hardware_task: Optional[asyncio.Task] = None
        interval_sec = max(float(self.runtime.stats_log_interval), 1.0)
        next_log = time.monotonic() + interval_sec
        logger.info("Worker started")
        try:
            while True:
                if command_task is None:
                    command_task = asyncio.create_task(self._channel.receive())
                if hardware_task is None and self._race is not None:
                    hardware_task = asyncio.create_task(self._poll(self._race.generation, self._backoff))
                pending = {task for task in (command_task, hardware_task) if task is not None}
                done, _ = await asyncio.wait(
                    pending,
                    timeout=max(next_log - time.monotonic(), 0.0),
                    return_when=asyncio.FIRST_COMPLETED,
                )
                ordered = [command_task, hardware_task]
                if command_task in done and hardware_task in done:
                    if self._prefer_hardware:
                        ordered.reverse()
                    self._prefer_hardware = not self._prefer_hardware
                for task in ordered:
                    if task is None or task not in done:
                        continue
                    if task is command_task:
                        command_task = None
                        try:
                            command = task.result()
                        except ChannelClosedError:
                            logger.info("Command channel closed, stopping worker")
                            return
                        await self.handle_command(command)
                    else:
                        hardware_task = None
                        await self._handle_poll(task)
                if time.monotonic() >= next_log:
                    self._emit_stats("Worker stats")
                    next_log = time.monotonic() + interval_sec
        finally:
            self._channel.shutdown()
            for task in (command_task, hardware_task):
                if task is not None and not task.done():
                    task.cancel()
            await asyncio.to_thread(self._link.close)
            self._emit_stats("Final stats")

    async def _poll(self, generation: int, delay: float):
        if delay > 0:
            await asyncio.sleep(delay)
        try:
            sample = await asyncio.to_thread(self._link.read_sample)
        except Exception as exc:
            return generation, None, exc
        return generation, sample, None

    async def handle_command(self, command: Command) -> None:
        self._stats["commands"] += 1
        if isinstance(command, Increment):
            await self._increment()
        elif isinstance(command, GetCount):
            logger.debug("Sending current count (%d)", self._counter)
            if not command.reply.done():
                command.reply.set_result(self._counter)
        elif isinstance(command, StartRace):
            await self._start_race(command)
        elif isinstance(command, StopRace):
            await self._stop_race()
        else:
            raise TypeError(f"Unhandled command {command!r}")

    async def _increment(self) -> None:
        self._counter = (self._counter + 1) & COUNTER_MASK
        logger.info("Counter incremented to %d", self._counter)
        try:
            post_id = await self._persistence.insert_placeholder_post(
                f"Post {self._counter}", f"This is the content of post {self._counter}"
            )
        except PersistenceError as exc:
            self._stats["persist_errors"] += 1
            logger.error("Failed to create post: %s", exc)
            return
        logger.debug("Created post %s", post_id)

    async def _start_race(self, command: StartRace) -> None:
        if self._race is not None:
            logger.warning("Race %d still active, replacing with race %d", self._race.race_id, command.race_id)
            await self._finish(self._race)
        self._generation += 1
        self._race = RaceContext(
            race_id=command.race_id,
            start_instant=command.start_instant,
            generation=self._generation,
        )
        self.detector.reset()
        self._backoff = 0.0
        logger.info("Race %d started, polling transponder", command.race_id)

    async def _stop_race(self) -> None:
        if self._race is None:
            logger.info("Stop requested with no active race")
            return
        race = self._race
        self._race = None
        self._generation += 1
        await self._finish(race)
        logger.info("Race %d stopped", race.race_id)

    async def _finish(self, race: RaceContext) -> None:
        try:
            await self._persistence.finish_race(race.race_id, encode_ns(self._wall_clock_ns()))
        except PersistenceError as exc:
            self._stats["persist_errors"] += 1
            logger.error("Failed to record end of race %d: %s", race.race_id, exc)

    async def _handle_poll(self, task: asyncio.Task) -> None:
        generation, sample, error = task.result()
        race = self._race
        if race is None or race.generation != generation:
            # a stale result must not touch the back-off of the current race
            self._stats["discarded"] += 1
            logger.debug("Discarding poll result from a finished race: %s", error or sample)
            return
        if error is not None:
            self._stats["hw_errors"] += 1
            self._backoff = self.runtime.error_backoff_sec
            if isinstance(error, NoDataError):
                logger.debug("%s", error)
            elif isinstance(error, LinkError):
                logger.warning("Transponder error: %s", error)
            else:
                logger.error("Unexpected error while polling transponder", exc_info=error)
            return
        self._backoff = 0.0
        self._stats["samples"] += 1
        now_ns = self._clock_ns()
        event = self.detector.feed(sample.rssi, now=now_ns / 1e9)
        if event is not None:
            await self._record(race, event, max(now_ns - race.start_instant, 0))

    async def _record(self, race: RaceContext, event: PeakEvent, elapsed_ns: int) -> None:
        self._stats["events"] += 1
        logger.info(
            "Peak %d during %.3f s (race %d, t=%.3f s%s)",
            event.peak,
            event.duration,
            race.race_id,
            elapsed_ns / 1e9,
            ", heartbeat" if event.heartbeat else "",
        )
        node_id = None
        try:
            node_id = await self._persistence.insert_node(
                event.peak, encode_ns(elapsed_ns), event.duration, race.race_id
            )
        except PersistenceError as exc:
            self._stats["persist_errors"] += 1
            logger.error("Failed to store node for race %d: %s", race.race_id, exc)
        if self._on_event is not None:
            node_event = NodeEvent(
                race_id=race.race_id,
                peak=event.peak,
                elapsed_ns=elapsed_ns,
                duration=event.duration,
                heartbeat=event.heartbeat,
                node_id=node_id,
            )
            try:
                self._on_event(node_event)
            except Exception:
                logger.exception("Event callback failed")

    def _emit_stats(self, label: str) -> None:
        stats = self._stats
        logger.info(
            "%s: count=%d commands=%d samples=%d events=%d hw_errors=%d persist_errors=%d discarded=%d",
            label,
            self._counter,
            stats["commands"],
            stats["samples"],
            stats["events"],
            stats["hw_errors"],
            stats["persist_errors"],
            stats["discarded"],
        )
