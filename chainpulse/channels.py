"""In-process notification channels.

A Channel fans each published item out to every subscriber queue. Workers
own their queue and drain it at their own pace; publish never awaits, so a
slow consumer cannot stall the producer (the ingestion path in particular).
"""

from __future__ import annotations

import asyncio
from typing import Generic, TypeVar

from chainpulse.logger import get_logger

T = TypeVar("T")

log = get_logger(__name__)


class Channel(Generic[T]):
    """Fan-out of items to independent asyncio queues."""

    def __init__(self, name: str, maxsize: int = 0) -> None:
        self.name = name
        self._maxsize = maxsize
        self._queues: list[asyncio.Queue[T]] = []

    def subscribe(self) -> asyncio.Queue[T]:
        queue: asyncio.Queue[T] = asyncio.Queue(maxsize=self._maxsize)
        self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[T]) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    def publish(self, item: T) -> None:
        for queue in list(self._queues):
            try:
                queue.put_nowait(item)
            except asyncio.QueueFull:
                log.warning("channel_overflow", channel=self.name, dropped=1)

    @property
    def subscriber_count(self) -> int:
        return len(self._queues)
