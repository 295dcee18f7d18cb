"""Redis transport for cross-process event delivery."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Sequence, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import WorkflowEvent
from .base import BaseTransport

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_PREFIX = "sparkflow:"


class RedisTransport(BaseTransport[Tuple[str, str]]):
    """Redis lists used as one queue per event name."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        queue_prefix: str = DEFAULT_QUEUE_PREFIX,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.queue_prefix = queue_prefix
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, event: WorkflowEvent) -> None:
        """Push event onto the Redis list named after it."""
        if not self._redis:
            await self.connect()
        await self._redis.lpush(f"{self.queue_prefix}{event.name}", event.to_json())

    async def subscribe(
        self, topics: Sequence[str], lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, str], WorkflowEvent]]:
        """Blocking-pop events from the queues of ``topics``."""
        if not self._redis:
            await self.connect()

        queue_names = [f"{self.queue_prefix}{topic}" for topic in topics]
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            result = await self._redis.brpop(queue_names, timeout=1)
            if result:
                queue_name, message_json = result
                try:
                    event = WorkflowEvent.from_json(message_json)
                except ValidationError as e:
                    logger.error(f"Failed to parse event from {queue_name}: {e}")
                    continue
                yield (queue_name, message_json), event

            await asyncio.sleep(0.01)

    async def ack(self, raw_message: Tuple[str, str]) -> None:
        """No-op acknowledgment (message already consumed by BRPOP)."""
        pass

    async def nack(self, raw_message: Tuple[str, str], requeue: bool = True) -> None:
        if requeue:
            if not self._redis:
                await self.connect()
            queue_name, message_json = raw_message
            await self._redis.rpush(queue_name, message_json)
