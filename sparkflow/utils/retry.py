from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

MAX_BACKOFF = 60.0


def compute_backoff(
    attempt: int, base: float = 2.0, jitter: float = 0.5, cap: float = MAX_BACKOFF
) -> float:
    """Seconds to wait before retry ``attempt`` (1-based) of a failing step.

    Doubles from one second and never exceeds ``cap`` before jitter is added.
    """
    delay = min(base ** max(attempt - 1, 0), cap)
    return delay + random.uniform(0, jitter)


async def schedule_retry(
    attempt: int, sleep: Optional[Callable[[float], Awaitable[None]]] = None
) -> float:
    """Wait out the backoff of ``attempt`` and return the delay used."""
    delay = compute_backoff(attempt)
    logger.debug(f"Retrying in {delay:.2f}s (attempt {attempt})")
    await (sleep or asyncio.sleep)(delay)
    return delay
