"""Redis transport for cross-process event delivery."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, List, Optional, Tuple

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from pydantic import ValidationError as PydanticValidationError

from ..config import RedisConfig
from ..contracts import DomainEvent
from .base import BaseTransport

logger = logging.getLogger(__name__)

RawEvent = Tuple[str, str]


class RedisTransport(BaseTransport[RawEvent]):
    """Redis lists used as queues, one per topic.

    Producers ``LPUSH`` and consumers ``BRPOP``, so each event goes to one
    listener. ``nack`` re-pushes the event for another consumer or, without
    ``requeue``, onto ``<queue>:dead`` for inspection.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        url: Optional[str] = None,
        block_timeout: int = 1,
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisTransport")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.url = url
        self.block_timeout = block_timeout
        self._redis: Optional[Any] = None

    @classmethod
    def from_config(cls, conf: RedisConfig) -> "RedisTransport":
        return cls(
            host=conf.host,
            port=conf.port,
            db=conf.db,
            password=conf.password,
            url=conf.url,
        )

    @staticmethod
    def queue_name(topic: str) -> str:
        return f"crmflow:{topic}"

    async def connect(self) -> None:
        if self.url:
            self._redis = redis.Redis.from_url(self.url, decode_responses=True)
        else:
            self._redis = redis.Redis(
                host=self.host,
                port=self.port,
                db=self.db,
                password=self.password,
                decode_responses=True,
            )
        await self._redis.ping()
        logger.info(f"Connected to Redis at {self.url or f'{self.host}:{self.port}/{self.db}'}")

    async def disconnect(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if self._redis is None:
            await self.connect()
        return self._redis

    async def publish(self, topic: str, event: DomainEvent) -> None:
        client = await self._client()
        await client.lpush(self.queue_name(topic), event.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawEvent, DomainEvent]]:
        """Pop events from the topic's list until ``lifespan`` expires."""
        client = await self._client()
        queue = self.queue_name(topic)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None

        while deadline is None or loop.time() < deadline:
            popped = await client.brpop(queue, timeout=self.block_timeout)
            if not popped:
                continue
            _, event_json = popped
            try:
                event = DomainEvent.from_json(event_json)
            except PydanticValidationError as e:
                logger.error(f"Dead-lettering malformed event on {queue}: {e}")
                await client.lpush(f"{queue}:dead", event_json)
                continue
            yield (queue, event_json), event

    async def ack(self, raw_message: RawEvent) -> None:
        """Nothing to do: BRPOP already removed the event."""

    async def nack(self, raw_message: RawEvent, requeue: bool = True) -> None:
        queue, event_json = raw_message
        client = await self._client()
        await client.lpush(queue if requeue else f"{queue}:dead", event_json)

    async def pending(self, topic: str) -> int:
        client = await self._client()
        return await client.llen(self.queue_name(topic))

    async def dead_letters(self, topic: str) -> List[str]:
        client = await self._client()
        return await client.lrange(f"{self.queue_name(topic)}:dead", 0, -1)
