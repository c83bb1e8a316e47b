"""
Thread-safe data structures shared by worker threads.
"""

import threading
from collections import deque
from typing import Any, Optional, Set, List, Tuple


class ThreadSafeCounter:
    """Thread-safe counter with atomic operations and a high-water mark."""

    def __init__(self, initial_value: int = 0):
        """
        Initialize counter with initial value.

        Args:
            initial_value: Starting value for the counter
        """
        self._value = initial_value
        self._peak = initial_value
        self._lock = threading.Lock()

    def increment(self, amount: int = 1) -> int:
        """
        Atomically increment counter and return new value.

        Args:
            amount: Amount to increment by (default: 1)

        Returns:
            New counter value after increment
        """
        with self._lock:
            self._value += amount
            if self._value > self._peak:
                self._peak = self._value
            return self._value

    def decrement(self, amount: int = 1) -> int:
        """
        Atomically decrement counter and return new value.

        Args:
            amount: Amount to decrement by (default: 1)

        Returns:
            New counter value after decrement
        """
        with self._lock:
            self._value -= amount
            return self._value

    def get_value(self) -> int:
        """Get current counter value."""
        with self._lock:
            return self._value

    def get_peak(self) -> int:
        """Highest value the counter has reached since creation."""
        with self._lock:
            return self._peak

    def __repr__(self) -> str:
        return f"ThreadSafeCounter(value={self.get_value()}, peak={self.get_peak()})"


class ThreadSafeSet:
    """Thread-safe set implementation."""

    def __init__(self, initial_items: Optional[Set[Any]] = None):
        """
        Initialize thread-safe set.

        Args:
            initial_items: Optional initial items for the set
        """
        self._set: Set[Any] = set(initial_items) if initial_items else set()
        self._lock = threading.RLock()

    def add(self, item: Any) -> bool:
        """
        Add item to set.

        Returns:
            True if item was added (wasn't already present)
        """
        with self._lock:
            if item not in self._set:
                self._set.add(item)
                return True
            return False

    def discard(self, item: Any) -> None:
        """Remove item from set if present."""
        with self._lock:
            self._set.discard(item)

    def __contains__(self, item: Any) -> bool:
        with self._lock:
            return item in self._set

    def __len__(self) -> int:
        with self._lock:
            return len(self._set)

    def to_list(self) -> List[Any]:
        """Copy of the current contents."""
        with self._lock:
            return list(self._set)

    def __repr__(self) -> str:
        return f"ThreadSafeSet(size={len(self)})"


class DispatchQueue:
    """
    FIFO of (index, item) pairs shared by the workers of one batch run.

    `next()` is the single dispatch point: it refuses to hand out work once
    the queue has been stopped or the cancellation token is set. Results are
    written into pre-allocated slots so the output keeps the input order.
    """

    def __init__(self, items: List[Any], cancellation=None):
        self._pending = deque(enumerate(items))
        self._results: List[Optional[Any]] = [None] * len(items)
        self._cancellation = cancellation
        self._lock = threading.Lock()
        self._stopped = False
        self._stop_reason: Optional[str] = None
        self._dispatched = 0

    def next(self) -> Optional[Tuple[int, Any]]:
        """Next (index, item) to run, or None when nothing may be dispatched."""
        with self._lock:
            if self._stopped or not self._pending:
                return None
            if self._cancellation is not None and self._cancellation.is_cancelled:
                return None
            self._dispatched += 1
            return self._pending.popleft()

    def stop(self, reason: str) -> None:
        """Stop dispatching new items; in-flight items are unaffected."""
        with self._lock:
            if not self._stopped:
                self._stopped = True
                self._stop_reason = reason

    @property
    def stopped(self) -> bool:
        with self._lock:
            return self._stopped

    @property
    def stop_reason(self) -> Optional[str]:
        with self._lock:
            return self._stop_reason

    @property
    def dispatched_count(self) -> int:
        with self._lock:
            return self._dispatched

    def has_pending(self) -> bool:
        with self._lock:
            return bool(self._pending)

    def drain(self) -> List[Tuple[int, Any]]:
        """Remove and return every item that was never dispatched."""
        with self._lock:
            remaining = list(self._pending)
            self._pending.clear()
            return remaining

    def record(self, index: int, result: Any) -> None:
        with self._lock:
            self._results[index] = result

    def results(self) -> List[Optional[Any]]:
        with self._lock:
            return list(self._results)
