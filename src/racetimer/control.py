"""Control-plane operations used by the HTTP surface."""
from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional

from .exceptions import ChannelClosedError, PersistenceError
from .persistence import NodeRecord, Persistence
from .transponder.commands import CommandChannel, Increment, StartRace, StopRace
from .transponder.frames import encode_ns

logger = logging.getLogger(__name__)


class ControlPlane:
    """
    Thin facade that turns caller requests into worker commands.

    Sends suspend while the command queue is full. ``get_count`` raises
    :class:`~racetimer.exceptions.ChannelClosedError` or ``TimeoutError`` when
    the worker cannot answer.
    """

    def __init__(
        self,
        channel: CommandChannel,
        persistence: Persistence,
        reply_timeout: Optional[float] = 5.0,
        clock_ns: Callable[[], int] = time.monotonic_ns,
        wall_clock_ns: Callable[[], int] = time.time_ns,
    ):
        self.channel = channel
        self.persistence = persistence
        self.reply_timeout = reply_timeout
        self._clock_ns = clock_ns
        self._wall_clock_ns = wall_clock_ns

    async def increment(self) -> None:
        await self.channel.send(Increment())

    async def get_count(self) -> int:
        return await self.channel.get_count(timeout=self.reply_timeout)

    async def start_race(self) -> int:
        race_id = await self.persistence.insert_race(encode_ns(self._wall_clock_ns()))
        try:
            await self.channel.send(StartRace(start_instant=self._clock_ns(), race_id=race_id))
        except ChannelClosedError:
            logger.warning("Worker gone, closing race %d without starting it", race_id)
            try:
                await self.persistence.finish_race(race_id, encode_ns(self._wall_clock_ns()))
            except PersistenceError as exc:
                logger.error("Race %d left without end time: %s", race_id, exc)
            raise
        logger.info("Requested start of race %d", race_id)
        return race_id

    async def stop_race(self) -> None:
        await self.channel.send(StopRace())

    async def debug(self, race_id: Optional[int] = None) -> List[NodeRecord]:
        return await self.persistence.list_nodes(race_id)
