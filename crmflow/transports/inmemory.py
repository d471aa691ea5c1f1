"""In-memory event transport for tests and single-process runs."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..contracts import DomainEvent
from .base import BaseTransport

RawEvent = Tuple[str, str]


class InMemoryTransport(BaseTransport[RawEvent]):
    """In-process queues keyed by topic.

    Raw messages are ``(topic, json)`` pairs; ``nack`` with ``requeue`` puts
    the event back at the head of its queue.
    """

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[RawEvent]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self.acked: List[RawEvent] = []
        self.dead_letters: List[RawEvent] = []

    async def publish(self, topic: str, event: DomainEvent) -> None:
        async with self._lock:
            self._queues[topic].append((topic, event.to_json()))

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawEvent, DomainEvent]]:
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            raw_message = None
            async with self._lock:
                if self._queues[topic]:
                    raw_message = self._queues[topic].popleft()
            if raw_message is not None:
                yield raw_message, DomainEvent.from_json(raw_message[1])
                continue

            await asyncio.sleep(0.05)

    async def ack(self, raw_message: RawEvent) -> None:
        self.acked.append(raw_message)

    async def nack(self, raw_message: RawEvent, requeue: bool = True) -> None:
        if requeue:
            async with self._lock:
                self._queues[raw_message[0]].appendleft(raw_message)
        else:
            self.dead_letters.append(raw_message)
