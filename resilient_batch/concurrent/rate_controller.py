"""
Rate controller for the batch execution engine.
Provides a token-bucket limiter shared by every worker that talks to the
same external service.
"""

import time
import threading
from typing import Dict, Any, Optional, Callable

from resilient_batch.utils.logging import get_logger
from resilient_batch.utils.errors import BatchCancelledError, ValidationError
from .cancellation import CancellationToken
from .models import RateLimiterState
from .thread_safe import ThreadSafeCounter


logger = get_logger(__name__)


class RateLimiter:
    """
    Token bucket bounding calls per second across all workers.

    The bucket holds at most `requests_per_second` tokens (never less than
    one) and refills continuously from elapsed time. A caller that finds the bucket empty
    reserves the next token (the balance may go negative) and sleeps until
    that token has been refilled, so concurrent callers queue up behind each
    other instead of all waking at once. The lock only guards the token
    arithmetic; it is never held while sleeping.
    """

    def __init__(
        self,
        requests_per_second: float,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize rate limiter.

        Args:
            requests_per_second: Bucket capacity and refill rate
            clock: Monotonic time source in seconds
        """
        if requests_per_second <= 0:
            raise ValidationError(
                "requests_per_second must be positive",
                {"requests_per_second": requests_per_second}
            )

        self.requests_per_second = float(requests_per_second)
        self._clock = clock
        self._lock = threading.Lock()

        self._capacity = max(1.0, self.requests_per_second)
        self._tokens = self._capacity
        self._last_refill_at = self._clock()

        self._total_acquired = ThreadSafeCounter()
        self._total_waits = ThreadSafeCounter()
        self._total_wait_seconds = 0.0

        logger.info(f"Rate limiter initialized: {self.requests_per_second} req/s")

    def _refill(self, now: float) -> None:
        elapsed = now - self._last_refill_at
        if elapsed > 0:
            self._tokens = min(self._capacity, self._tokens + elapsed * self.requests_per_second)
        self._last_refill_at = now

    def _reserve(self) -> float:
        """Take one token, returning how long the caller must wait for it."""
        with self._lock:
            self._refill(self._clock())
            self._tokens -= 1.0
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.requests_per_second

    def _refund(self) -> None:
        with self._lock:
            self._tokens = min(self._capacity, self._tokens + 1.0)

    def acquire(self, cancellation: Optional[CancellationToken] = None) -> float:
        """
        Block until a token is available and consume it.

        Args:
            cancellation: Optional token; cancelling it aborts the wait

        Returns:
            Seconds spent waiting

        Raises:
            BatchCancelledError: If cancelled while waiting. The reserved
                token is returned to the bucket.
        """
        wait_time = self._reserve()

        if wait_time > 0:
            logger.debug(f"Rate limit reached, waiting {wait_time:.3f}s")
            if cancellation is not None:
                if not cancellation.sleep(wait_time):
                    self._refund()
                    raise BatchCancelledError(
                        "Cancelled while waiting for rate limiter",
                        {"wait_seconds": wait_time}
                    )
            else:
                time.sleep(wait_time)

            self._total_waits.increment()
            with self._lock:
                self._total_wait_seconds += wait_time

        self._total_acquired.increment()
        return wait_time

    def try_acquire(self) -> bool:
        """
        Consume a token only if one is available right now.

        Returns:
            True if a token was consumed
        """
        with self._lock:
            self._refill(self._clock())
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                self._total_acquired.increment()
                return True
            return False

    def get_state(self) -> RateLimiterState:
        """Snapshot of the bucket after refilling to the current time."""
        with self._lock:
            self._refill(self._clock())
            return RateLimiterState(
                tokens=self._tokens,
                capacity=self._capacity,
                last_refill_at=self._last_refill_at
            )

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get rate limiter statistics.

        Returns:
            Dictionary with rate limiter statistics
        """
        state = self.get_state()
        with self._lock:
            total_wait_seconds = self._total_wait_seconds

        return {
            "requests_per_second_limit": self.requests_per_second,
            "available_tokens": state.tokens,
            "capacity": state.capacity,
            "total_acquired": self._total_acquired.get_value(),
            "total_waits": self._total_waits.get_value(),
            "total_wait_seconds": total_wait_seconds,
        }

    def __repr__(self) -> str:
        return f"RateLimiter(requests_per_second={self.requests_per_second})"
