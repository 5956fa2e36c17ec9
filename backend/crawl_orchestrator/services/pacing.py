"""Submission pacing and cancellation for the batch dispatcher.

The dispatcher submits one scrape at a time. PacingPolicy inserts a fixed
rest of `interval` seconds after each submission finishes, so a slow
submission never shortens the pause before the next one.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable

from crawl_orchestrator.core.logging import get_logger

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class PacingPolicy:
    """Fixed delay between the end of one submission and the next.

    The first wait() returns immediately. After mark_done(), the next
    wait() returns no sooner than `interval` seconds later.

    Args:
        interval: Seconds to rest after each submission.
        clock: Monotonic clock, replaceable in tests.
        sleep: Awaitable sleep, replaceable in tests.
    """

    def __init__(
        self,
        interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if interval < 0:
            raise ValueError("interval must be >= 0")
        self._interval = interval
        self._clock = clock
        self._sleep = sleep
        self._last_done: float | None = None

    @property
    def interval(self) -> float:
        return self._interval

    def delay_needed(self) -> float:
        """Seconds the next wait() would sleep."""
        if self._last_done is None:
            return 0.0
        elapsed = self._clock() - self._last_done
        return max(0.0, self._interval - elapsed)

    async def wait(self) -> float:
        """Sleep until the next submission is allowed.

        Returns:
            The number of seconds slept.
        """
        delay = self.delay_needed()
        if delay > 0:
            logger.debug(
                "Pacing submission",
                extra={"delay_seconds": round(delay, 3)},
            )
            await self._sleep(delay)
        return delay

    def mark_done(self) -> None:
        """Record that a submission just finished, successful or not."""
        self._last_done = self._clock()


class CancellationToken:
    """Cooperative stop signal checked between competitors.

    Cancelling never interrupts a submission that is already in flight.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        if not self._cancelled:
            self._cancelled = True
            self._reason = reason
