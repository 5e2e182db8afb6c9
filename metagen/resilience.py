"""
Pacing for the sequential dispatcher.

The inference gateway enforces a shared rate limit, so the dispatcher waits a
fixed interval between requests and an extra backoff after a 429.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .pipeline_config import config

logger = logging.getLogger(__name__)


@dataclass
class ThrottleConfig:
    """Configuration for dispatch pacing (seconds)"""
    interval_seconds: float = 2.0          # Delay between consecutive requests
    rate_limit_backoff_seconds: float = 5.0  # Extra delay after a 429

    @classmethod
    def from_settings(cls) -> 'ThrottleConfig':
        return cls(
            interval_seconds=config.throttle_interval,
            rate_limit_backoff_seconds=config.rate_limit_backoff,
        )


class DispatchThrottle:
    """
    Inter-request delay and rate-limit backoff.

    ``sleep`` is injectable so tests can run the dispatcher without waiting.
    """

    def __init__(self, throttle_config: Optional[ThrottleConfig] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.config = throttle_config or ThrottleConfig.from_settings()
        self._sleep = sleep

        # Metrics
        self._total_waits = 0
        self._total_backoffs = 0
        self._total_wait_seconds = 0.0
        self._last_request_at: Optional[float] = None

    async def _wait(self, seconds: float):
        if seconds <= 0:
            return
        start = time.monotonic()
        await self._sleep(seconds)
        self._total_wait_seconds += time.monotonic() - start

    async def wait_between_requests(self):
        """Called before every request except the first of a run"""
        self._total_waits += 1
        await self._wait(self.config.interval_seconds)

    async def backoff_after_rate_limit(self):
        self._total_backoffs += 1
        logger.warning("Rate limited by inference gateway, backing off %.1fs",
                       self.config.rate_limit_backoff_seconds)
        await self._wait(self.config.rate_limit_backoff_seconds)

    def mark_request(self):
        self._last_request_at = time.monotonic()

    def get_stats(self) -> dict:
        return {
            'interval_seconds': self.config.interval_seconds,
            'rate_limit_backoff_seconds': self.config.rate_limit_backoff_seconds,
            'total_waits': self._total_waits,
            'total_backoffs': self._total_backoffs,
            'total_wait_seconds': round(self._total_wait_seconds, 3),
            'last_request_at': self._last_request_at,
        }
