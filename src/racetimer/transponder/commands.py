from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Union

from ..exceptions import ChannelClosedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Increment:
    pass


@dataclass(frozen=True)
class GetCount:
    reply: "asyncio.Future[int]" = field(repr=False)


@dataclass(frozen=True)
class StartRace:
    start_instant: int  # time.monotonic_ns() at race start
    race_id: int


@dataclass(frozen=True)
class StopRace:
    pass


Command = Union[Increment, GetCount, StartRace, StopRace]

_CLOSE = object()


class CommandChannel:
    """
    Bounded FIFO between control callers and the single worker.

    ``send`` suspends while the queue is full. Once the worker has gone away
    (``shutdown``) every send and every unanswered ``GetCount`` fails with
    :class:`ChannelClosedError`.
    """

    def __init__(self, maxsize: int = 32):
        self._queue: "asyncio.Queue[object]" = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    async def send(self, command: Command) -> None:
        if self._closed:
            raise ChannelClosedError("Command channel is closed")
        await self._queue.put(command)
        if self._closed:
            self._discard_pending()
            raise ChannelClosedError("Command channel closed while sending")

    async def get_count(self, timeout: Optional[float] = None) -> int:
        reply: "asyncio.Future[int]" = asyncio.get_running_loop().create_future()
        await self.send(GetCount(reply=reply))
        return await asyncio.wait_for(reply, timeout)

    async def receive(self) -> Command:
        item = await self._queue.get()
        if item is _CLOSE:
            raise ChannelClosedError("Command channel closed")
        return item  # type: ignore[return-value]

    async def close(self) -> None:
        """Ask the worker to stop after the commands already queued."""
        if self._closed:
            return
        await self._queue.put(_CLOSE)

    def shutdown(self) -> None:
        """Mark the channel dead and fail everything still waiting in it."""
        self._closed = True
        self._discard_pending()

    def _discard_pending(self) -> None:
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            if isinstance(item, GetCount) and not item.reply.done():
                item.reply.set_exception(ChannelClosedError("Worker exited before replying"))
            elif item is not _CLOSE:
                logger.debug("Dropping %r from closed channel", item)
