"""Event dispatcher for sparkflow."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

from .contracts import WorkflowEvent
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class EventSender(Protocol):
    async def send(self, name: str, data: Optional[Dict[str, Any]] = None) -> str: ...


class EventDispatcher:
    """Publish named events for the worker to pick up."""

    def __init__(self, transport: BaseTransport) -> None:
        self._transport = transport

    async def send(self, name: str, data: Optional[Dict[str, Any]] = None) -> str:
        """Publish event ``name`` with ``data`` over the transport.

        Returns:
            Identifier of the published event, which also becomes the run id
            of the workflow it triggers.
        """
        event = WorkflowEvent(name=name, data=data or {})
        await self._transport.publish(event)
        logger.info(f"Dispatched event {name} ({event.id})")
        return event.id
