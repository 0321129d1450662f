"""
Permit gate for calls to the completion service.

A token bucket refilled at the configured requests-per-minute rate, plus an
exponential backoff window opened whenever the service answers HTTP 429.
Acquisition never blocks: when no permit is available the caller is expected
to take its deterministic path instead of waiting.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

from config import settings

logger = logging.getLogger(__name__)

BASE_BACKOFF_SECONDS = 30.0
MAX_BACKOFF_EXPONENT = 5


class CompletionRateLimiter:
    """Shared, thread-safe permit mechanism for completion calls"""

    def __init__(self, max_permits: int = 5, requests_per_minute: int = 10,
                 clock: Optional[Callable[[], float]] = None):
        self.max_permits = max_permits
        self.refill_per_second = requests_per_minute / 60.0
        self._clock = clock or time.monotonic
        self._permits = float(max_permits)
        self._last_refill = self._clock()
        self._consecutive_failures = 0
        self._backoff_until = 0.0
        self._lock = threading.Lock()

    def _refill(self, now: float) -> None:
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._permits = min(self.max_permits, self._permits + elapsed * self.refill_per_second)
            self._last_refill = now

    def try_acquire(self) -> bool:
        """
        Take one permit if available.

        Returns:
            False when the bucket is empty or a 429 backoff window is open
        """
        with self._lock:
            now = self._clock()
            if now < self._backoff_until:
                logger.debug(f"Completion call suppressed, backoff for {self._backoff_until - now:.1f}s")
                return False
            self._refill(now)
            if self._permits >= 1.0:
                self._permits -= 1.0
                return True
            logger.info("Completion permits exhausted, using deterministic path")
            return False

    def report_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0

    def report_rate_limited(self) -> float:
        """Record an HTTP 429 and return the backoff duration in seconds"""
        with self._lock:
            self._consecutive_failures += 1
            exponent = min(self._consecutive_failures - 1, MAX_BACKOFF_EXPONENT)
            backoff = BASE_BACKOFF_SECONDS * (2 ** exponent)
            self._backoff_until = self._clock() + backoff
            self._permits = 0.0
        logger.warning(
            f"Completion service rate limited, backing off {backoff:.0f}s",
            extra={"consecutive_failures": self._consecutive_failures},
        )
        return backoff

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            now = self._clock()
            self._refill(now)
            return {
                "available_permits": int(self._permits),
                "max_permits": self.max_permits,
                "consecutive_failures": self._consecutive_failures,
                "backoff_remaining_seconds": max(0.0, self._backoff_until - now),
            }


# Global instance
completion_rate_limiter = CompletionRateLimiter(
    max_permits=settings.GEMINI_MAX_PERMITS,
    requests_per_minute=settings.GEMINI_REQUESTS_PER_MINUTE,
)
