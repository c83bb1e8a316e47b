"""
Cooperative cancellation shared between the caller and worker threads.
"""

import threading
from typing import Optional

from resilient_batch.utils.logging import get_logger
from resilient_batch.utils.errors import BatchCancelledError


logger = get_logger(__name__)


class CancellationToken:
    """
    Shared cancellation flag with a cancellation-aware delay.

    Workers poll `is_cancelled` before dispatching new items. Backoff and
    rate-limit waits go through `sleep()` so that `cancel()` wakes them
    immediately instead of letting a timer run out.
    """

    def __init__(self):
        self._event = threading.Event()
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        """Request cancellation. Idempotent."""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()
            logger.info(f"Cancellation requested: {reason}")

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def sleep(self, seconds: float) -> bool:
        """
        Wait for `seconds` unless cancelled first.

        Returns:
            True if the full delay elapsed, False if cancellation pre-empted it
        """
        if seconds <= 0:
            return not self._event.is_set()
        return not self._event.wait(timeout=seconds)

    def raise_if_cancelled(self) -> None:
        """
        Raises:
            BatchCancelledError: If cancellation has been requested
        """
        if self._event.is_set():
            raise BatchCancelledError(self._reason or "cancelled")

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.is_cancelled})"
