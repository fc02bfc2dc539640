"""
Throttling and exponential backoff for the primary provider.

One RateLimiter is created per process and shared by every sync, so all
primary-provider traffic funnels through a single gate.
"""
import logging
import threading
import time
from typing import Callable, Optional, TypeVar

from errors import RateLimited

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RateLimiter:
    """
    Single-slot throttle plus retry-on-RateLimited.

    acquire() blocks until min_interval has passed since the previous call
    through the gate started. Waiters queue on the lock and are released one
    at a time, each measuring against the timestamp left by the one before.
    """

    def __init__(
        self,
        min_interval: float = 5.0,
        max_attempts: int = 3,
        base_delay: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.min_interval = min_interval
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_call: Optional[float] = None

    def acquire(self) -> None:
        with self._lock:
            if self._last_call is not None:
                remaining = self.min_interval - (self._clock() - self._last_call)
                if remaining > 0:
                    logger.debug("Rate gate: waiting %.2fs", remaining)
                    self._sleep(remaining)
            self._last_call = self._clock()

    def pause(self) -> None:
        """Sleep one full interval without touching the gate."""
        self._sleep(self.min_interval)

    def backoff_delay(self, retry: int) -> float:
        return self.base_delay * (2 ** retry)

    def run(self, operation: Callable[[], T]) -> T:
        """
        Call operation, retrying on RateLimited with exponential backoff.

        The operation is expected to pass through acquire() itself for each
        request it makes. After max_attempts the last RateLimited is raised.
        """
        last_error: Optional[RateLimited] = None
        for attempt in range(self.max_attempts):
            if last_error is not None:
                delay = self.backoff_delay(attempt - 1)
                logger.warning(
                    "Rate limited (attempt %d/%d), retrying in %.0fs",
                    attempt, self.max_attempts, delay,
                )
                self._sleep(delay)
            try:
                return operation()
            except RateLimited as e:
                last_error = e

        logger.warning("Rate limited %d times in a row, giving up", self.max_attempts)
        raise last_error
