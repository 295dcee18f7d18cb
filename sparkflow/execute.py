"""Worker that executes workflows for events received over a transport."""

from __future__ import annotations

import logging
from typing import Optional

from .contracts import WorkflowEvent, WorkflowOutcome
from .errors import UnknownEventError
from .runtime import WorkflowEngine
from .transports import BaseTransport
from .workflows.registry import REGISTRY

logger = logging.getLogger(__name__)


class WorkflowExecutor:
    """Executes workflows by listening to transport events."""

    def __init__(self, transport: BaseTransport, engine: WorkflowEngine) -> None:
        self._transport = transport
        self._engine = engine
        self.handled_events: list[str] = []

    @property
    def topics(self) -> list[str]:
        return sorted(REGISTRY)

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Listen on every registered event name and run the matching workflow."""
        topics = self.topics
        if not topics:
            raise ValueError("No workflows registered")
        logger.info(f"Worker listening on {len(topics)} events")

        async for raw_message, event in self._transport.subscribe(
            topics, lifespan=lifespan
        ):
            try:
                await self.handle(event)
            except UnknownEventError as exc:
                logger.error(str(exc))
            except Exception as exc:
                # The run id is the event id, so a redelivery resumes this run.
                logger.exception(f"Failed to handle event {event.name} ({event.id}): {exc}")
                await self._transport.nack(raw_message)
                continue
            await self._transport.ack(raw_message)

    async def handle(self, event: WorkflowEvent) -> WorkflowOutcome:
        logger.info(f"Received event {event.name} ({event.id})")
        outcome = await self._engine.run(event)
        self.handled_events.append(event.id)
        return outcome
