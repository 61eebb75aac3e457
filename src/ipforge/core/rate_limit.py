"""Fixed-interval rate limiter for outbound registration calls."""

import asyncio
import time

import structlog

logger = structlog.get_logger()


class IntervalRateLimiter:
    """Enforces a minimum interval between consecutive calls.

    The first call never waits. Each later call sleeps until at least
    ``min_interval_seconds`` have passed since the previous call was released.
    """

    def __init__(self, min_interval_seconds: float) -> None:
        self.min_interval_seconds = max(0.0, min_interval_seconds)
        self._last_release: float | None = None
        self._lock = asyncio.Lock()

    async def wait(self) -> float:
        """Sleep as needed to respect the interval.

        Returns:
            Seconds actually slept (0.0 when no wait was needed)
        """
        async with self._lock:
            waited = 0.0
            if self._last_release is not None:
                elapsed = time.monotonic() - self._last_release
                remaining = self.min_interval_seconds - elapsed
                if remaining > 0:
                    logger.debug("rate_limiter.waiting", wait_seconds=round(remaining, 3))
                    await asyncio.sleep(remaining)
                    waited = remaining
            self._last_release = time.monotonic()
            return waited
