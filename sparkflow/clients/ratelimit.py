"""Self-tuning request throttle shared by all calls to one API."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]

LIST = "list"
OTHER = "other"

LOW_REMAINING_THRESHOLD = 5
RELAX_AFTER_REQUESTS = 20
RELAX_FACTOR = 0.8


class RateLimitState:
    """Minimum spacing between requests, adapted from server feedback.

    The delay starts at the floor of the endpoint class being called, doubles
    when the server signals pressure, and relaxes by 20% after a streak of
    requests made above the floor. It never exceeds ``max_delay``.

    One instance is shared by every caller of the same API; the
    wait-and-stamp section is serialized with an ``asyncio.Lock``.
    """

    def __init__(
        self,
        floors: Optional[Dict[str, float]] = None,
        max_delay: float = 5.0,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.floors = floors or {LIST: 3.0, OTHER: 0.25}
        self.max_delay = max_delay
        self.min_delay = self.floors[OTHER]
        self.last_request_time: Optional[float] = None
        self.request_count = 0
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()

    def floor(self, endpoint_class: str) -> float:
        return self.floors[endpoint_class]

    async def sleep(self, seconds: float) -> None:
        await self._sleep(seconds)

    async def acquire(self, endpoint_class: str) -> None:
        """Wait until a request of ``endpoint_class`` may be sent."""
        async with self._lock:
            floor = self.floor(endpoint_class)
            if self.min_delay < floor:
                self.min_delay = floor
                logger.info(f"Using {endpoint_class} endpoint rate limit: {floor}s delay")

            if self.last_request_time is not None:
                elapsed = self._clock() - self.last_request_time
                wait = self.min_delay - elapsed
                if wait > 0:
                    logger.info(f"Throttling request, waiting {wait:.3f}s")
                    await self._sleep(wait)

            self.last_request_time = self._clock()
            self.request_count += 1

    def observe_remaining(self, remaining: Optional[str]) -> None:
        """Back off when the server reports an almost exhausted quota."""
        if remaining is None:
            return
        try:
            value = int(remaining)
        except ValueError:
            return
        if value < LOW_REMAINING_THRESHOLD:
            self.min_delay = min(self.max_delay, self.min_delay * 2)
            logger.info(
                f"Rate limit getting low ({value} remaining), "
                f"increasing delay to {self.min_delay}s"
            )

    def rate_limited(self, endpoint_class: str) -> None:
        self.min_delay = max(
            self.min_delay, min(self.max_delay, self.floor(endpoint_class) * 2)
        )

    def network_error(self) -> None:
        self.min_delay = min(self.max_delay, self.min_delay * 2)
        logger.error(f"Network error, increasing delay to {self.min_delay}s")

    def relax(self, endpoint_class: str) -> None:
        """Cautiously shorten the delay after a streak of requests, never below the floor."""
        floor = self.floor(endpoint_class)
        if self.request_count > RELAX_AFTER_REQUESTS and self.min_delay > floor:
            self.min_delay = max(floor, self.min_delay * RELAX_FACTOR)
            self.request_count = 0
            logger.info(f"Adjusting delay to {self.min_delay}s")
