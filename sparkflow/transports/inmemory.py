"""In-memory transport for tests and single-process use."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Sequence, Tuple

from ..contracts import WorkflowEvent
from .base import BaseTransport


class InMemoryTransport(BaseTransport[Tuple[str, WorkflowEvent]]):
    """Simple in-process queue per event name."""

    def __init__(self, poll_interval: float = 0.1) -> None:
        self._queues: Dict[str, Deque[Tuple[str, WorkflowEvent]]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self._poll_interval = poll_interval

    async def publish(self, event: WorkflowEvent) -> None:
        """Publish event to in-memory queue."""
        raw = (event.to_json(), event)
        async with self._lock:
            self._queues[event.name].append(raw)

    def pending(self, topic: str) -> list[WorkflowEvent]:
        """Events waiting on ``topic``, oldest first."""
        return [event for _, event in self._queues[topic]]

    async def subscribe(
        self, topics: Sequence[str], lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, WorkflowEvent], WorkflowEvent]]:
        """Subscribe to events on ``topics``.

        Args:
            topics: Event names to listen on.
            lifespan: Maximum time in seconds to keep listening. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            raw_message = None
            async with self._lock:
                for topic in topics:
                    if self._queues[topic]:
                        raw_message = self._queues[topic].popleft()
                        break
            if raw_message is not None:
                yield raw_message, raw_message[1]
                continue

            await asyncio.sleep(self._poll_interval)

    async def ack(self, raw_message: Tuple[str, WorkflowEvent]) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass

    async def nack(
        self, raw_message: Tuple[str, WorkflowEvent], requeue: bool = True
    ) -> None:
        if requeue:
            async with self._lock:
                self._queues[raw_message[1].name].append(raw_message)
