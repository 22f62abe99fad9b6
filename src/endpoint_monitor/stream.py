from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from . import config
from .models import ProbeResult

logger = logging.getLogger(__name__)

_CLOSED = object()


class Subscription:
    """One listener's view of the result stream.

    Iterate with ``async for``; iteration ends once the subscription or the
    stream is closed and the buffered results are drained.
    """

    def __init__(self, stream: "ResultStream", maxsize: int):
        self._stream = stream
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize + 1)
        self.maxsize = maxsize
        self.dropped = 0
        self.closed = False

    def _offer(self, result: ProbeResult):
        if self.closed:
            return
        if self._queue.qsize() >= self.maxsize:
            # slow consumer: the producer never waits, the oldest result goes
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                logger.warning(
                    "subscriber is falling behind; %d results dropped", self.dropped
                )
        self._queue.put_nowait(result)

    def _finish(self):
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(_CLOSED)

    def close(self):
        self._stream.unsubscribe(self)

    def pending(self) -> int:
        return self._queue.qsize() - (1 if self.closed else 0)

    def get_nowait(self) -> Optional[ProbeResult]:
        """Next buffered result, or None when nothing is waiting."""
        try:
            item = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    async def get(self) -> Optional[ProbeResult]:
        """Wait for the next result; None once the subscription is closed."""
        item = await self._queue.get()
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> ProbeResult:
        item = await self.get()
        if item is None:
            raise StopAsyncIteration
        return item


class ResultStream:
    """Broadcasts probe results, in publish order, to every subscriber."""

    def __init__(self):
        self._subscribers: List[Subscription] = []
        self.closed = False
        self.published = 0

    def subscribe(self, maxsize: int = config.SUBSCRIBER_QUEUE_SIZE) -> Subscription:
        sub = Subscription(self, maxsize)
        if self.closed:
            sub._finish()
        else:
            self._subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription):
        if sub in self._subscribers:
            self._subscribers.remove(sub)
        sub._finish()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, result: ProbeResult):
        if self.closed:
            return
        self.published += 1
        for sub in list(self._subscribers):
            sub._offer(result)

    def close(self):
        self.closed = True
        for sub in self._subscribers:
            sub._finish()
        self._subscribers.clear()
