"""Minimum-interval gate for outbound lookups against rate-limited services."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from vigil.util.cancellation import CancellationToken

logger = logging.getLogger("vigil.rate_limit")


class IntervalGate:
    """Enforces a floor between consecutive external calls of one kind.

    The gate only delays callers that are about to hit the network; callers
    served from a cache never touch it.
    """

    def __init__(
        self,
        min_interval: float,
        name: str = "lookup",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.min_interval = min_interval
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self.last_call: Optional[float] = None

    def remaining(self) -> float:
        """Seconds left before the next call may go out."""
        if self.last_call is None:
            return 0.0
        elapsed = self._clock() - self.last_call
        return max(0.0, self.min_interval - elapsed)

    async def wait(self, token: Optional[CancellationToken] = None) -> float:
        if token is not None:
            token.raise_if_cancelled()
        delay = self.remaining()
        if delay > 0:
            logger.debug("Rate limiting %s lookup: waiting %.2fs", self.name, delay)
            await self._sleep(delay)
            if token is not None:
                token.raise_if_cancelled()
        return delay

    def mark(self) -> None:
        self.last_call = self._clock()

    def reset(self) -> None:
        self.last_call = None
