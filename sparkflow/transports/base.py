"""Interface shared by the event transports."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Sequence, Tuple, TypeVar

from ..contracts import WorkflowEvent

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Moves ``WorkflowEvent``s between dispatchers and workers.

    Each event is queued under its own name, so a worker listens on the
    names of the workflows it can run. Transports are async context managers
    that connect on entry and disconnect on exit.
    """

    async def connect(self) -> None:
        """Open the broker connection. Transports without one do nothing."""

    async def disconnect(self) -> None:
        """Close the broker connection. Transports without one do nothing."""

    async def __aenter__(self) -> "BaseTransport[RawMessageT]":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.disconnect()

    @abc.abstractmethod
    async def publish(self, event: WorkflowEvent) -> None:
        """Queue ``event`` under ``event.name``."""

    @abc.abstractmethod
    def subscribe(
        self, topics: Sequence[str], lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, WorkflowEvent]]:
        """Yield ``(raw_message, event)`` pairs for events named in ``topics``.

        Listening stops after ``lifespan`` seconds, or never when it is None.
        """

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Mark a received message as handled."""

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Reject a received message. Transports that cannot requeue just ack."""
        await self.ack(raw_message)
