"""Event transports.

Every transport keeps one queue per event name. The backend is chosen by the
``backend`` argument, then ``SPARKFLOW_TRANSPORT``, then ``transport.backend``
in the configuration file.
"""

from __future__ import annotations

import os
from typing import Optional

from ..config import SparkflowConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport

BACKENDS = ("inmemory", "redis")


def get_transport(
    backend: Optional[str] = None, config: Optional[SparkflowConfig] = None
) -> BaseTransport:
    """Build the transport selected for this process."""
    config = config or load_config()
    name = (backend or os.getenv("SPARKFLOW_TRANSPORT") or config.transport.backend).lower()
    if name not in BACKENDS:
        raise ValueError(f"Unsupported transport backend: {name}")

    if name == "inmemory":
        return InMemoryTransport(poll_interval=config.transport.poll_interval)

    from .redis import RedisTransport

    settings = config.transport.redis
    return RedisTransport(
        host=settings.host,
        port=settings.port,
        db=settings.db,
        password=settings.password,
        queue_prefix=settings.queue_prefix,
    )


__all__ = ["BACKENDS", "BaseTransport", "InMemoryTransport", "get_transport"]
