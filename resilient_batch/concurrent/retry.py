"""
Retry controller: failure classification and exponential backoff with jitter.
"""

import random
import time
import socket
from dataclasses import dataclass
from typing import Any, Callable, Optional

import requests

from resilient_batch.utils.logging import get_logger
from resilient_batch.utils.errors import (
    TransientError,
    PermanentError,
    BatchCancelledError
)
from .cancellation import CancellationToken
from .models import ErrorKind, RetryConfig


logger = get_logger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})
QUOTA_MARKERS = ("rate limit", "ratelimit", "quota", "too many requests")

Classifier = Callable[[BaseException], ErrorKind]


@dataclass
class RetryOutcome:
    """Result of running one unit of work through the retry controller."""
    success: bool
    attempts: int
    value: Any = None
    error: Optional[BaseException] = None
    error_kind: Optional[ErrorKind] = None
    cancelled: bool = False

    @property
    def error_message(self) -> Optional[str]:
        if self.error is None:
            return None
        return str(self.error) or type(self.error).__name__


def calculate_backoff_delay(
    attempt_index: int,
    base_delay: float,
    max_delay: float,
    jitter_ratio: float = 0.3,
    rng: Optional[random.Random] = None
) -> float:
    """
    Exponential backoff with proportional jitter.

    delay = min(base_delay * 2**attempt_index + jitter, max_delay) where
    jitter is uniform in [0, jitter_ratio * exponential term).

    Args:
        attempt_index: Zero-based index of the attempt that just failed
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for any single delay, in seconds
        jitter_ratio: Maximum jitter as a fraction of the exponential term
        rng: Random source (module-level random if None)
    """
    exponential = base_delay * (2 ** attempt_index)
    jitter = (rng or random).random() * jitter_ratio * exponential
    return min(exponential + jitter, max_delay)


def classify_http_status(status_code: int, body: str = "") -> ErrorKind:
    """Classify an HTTP error status."""
    if status_code in RETRYABLE_STATUS_CODES or 500 <= status_code < 600:
        return ErrorKind.TRANSIENT
    # Quota exhaustion is reported as 403 by some APIs (e.g. Google Drive)
    if status_code == 403 and any(marker in body.lower() for marker in QUOTA_MARKERS):
        return ErrorKind.TRANSIENT
    return ErrorKind.PERMANENT


def default_classifier(error: BaseException) -> ErrorKind:
    """
    Decide whether retrying the identical call can plausibly succeed.

    Unknown exception types are treated as transient.
    """
    if isinstance(error, PermanentError):
        return ErrorKind.PERMANENT

    if isinstance(error, TransientError):
        return ErrorKind.TRANSIENT

    if isinstance(error, requests.HTTPError) and error.response is not None:
        return classify_http_status(error.response.status_code, error.response.text or "")

    if isinstance(error, (requests.ConnectionError, requests.Timeout)):
        return ErrorKind.TRANSIENT

    if isinstance(error, (TimeoutError, socket.timeout, ConnectionError)):
        return ErrorKind.TRANSIENT

    if isinstance(error, (ValueError, TypeError, KeyError, NotImplementedError)):
        return ErrorKind.PERMANENT

    return ErrorKind.TRANSIENT


class RetryController:
    """
    Runs a unit of work up to `max_attempts` times.

    Permanent failures stop immediately. Transient failures back off before
    the next attempt. Backoff waits go through the cancellation token, so a
    cancel pre-empts a pending retry.
    """

    def __init__(
        self,
        retry_config: Optional[RetryConfig] = None,
        classify: Optional[Classifier] = None,
        sleep: Optional[Callable[[float], Any]] = None,
        rng: Optional[random.Random] = None
    ):
        """
        Args:
            retry_config: Attempt and backoff settings
            classify: Maps an exception to transient/permanent
            sleep: Delay function, mostly for tests. Defaults to the
                cancellation token's wait, or time.sleep without one.
            rng: Random source for jitter
        """
        self.retry_config = retry_config or RetryConfig()
        self.classify = classify or default_classifier
        self._sleep = sleep
        self._rng = rng

    def _wait(self, delay: float, cancellation: Optional[CancellationToken]) -> bool:
        """Returns False if cancellation pre-empted the delay."""
        if self._sleep is not None:
            self._sleep(delay)
            return not (cancellation is not None and cancellation.is_cancelled)
        if cancellation is not None:
            return cancellation.sleep(delay)
        time.sleep(delay)
        return True

    def _next_delay(self, attempt_index: int, error: BaseException) -> float:
        config = self.retry_config
        delay = calculate_backoff_delay(
            attempt_index,
            config.base_delay,
            config.max_delay,
            config.jitter_ratio,
            self._rng
        )
        # Set by RateLimitedError and by the HTTP client on 429/503 responses
        retry_after = getattr(error, "retry_after", None)
        if retry_after:
            delay = min(max(delay, retry_after), config.max_delay)
        return delay

    def execute(
        self,
        fn: Callable[[], Any],
        cancellation: Optional[CancellationToken] = None,
        before_attempt: Optional[Callable[[], Any]] = None,
        label: str = "operation"
    ) -> RetryOutcome:
        """
        Run `fn` with retries.

        Args:
            fn: Zero-argument callable performing the work
            cancellation: Token checked during backoff and rate-limit waits
            before_attempt: Hook run before every attempt (e.g. rate limiter)
            label: Identifier used in log messages

        Returns:
            RetryOutcome carrying the attempt count on every path
        """
        max_attempts = self.retry_config.max_attempts
        attempts = 0
        last_error: Optional[BaseException] = None
        last_kind: Optional[ErrorKind] = None

        for attempt_index in range(max_attempts):
            try:
                if before_attempt is not None:
                    before_attempt()
            except BatchCancelledError as e:
                return RetryOutcome(
                    success=False,
                    attempts=attempts,
                    error=last_error or e,
                    error_kind=last_kind,
                    cancelled=True
                )

            attempts += 1
            try:
                value = fn()
            except BatchCancelledError as e:
                return RetryOutcome(success=False, attempts=attempts, error=e, cancelled=True)
            except Exception as e:
                last_error = e
                last_kind = self.classify(e)

                logger.warning(
                    f"Attempt {attempts}/{max_attempts} failed for {label} "
                    f"({last_kind.value}): {type(e).__name__}: {e}"
                )

                if last_kind == ErrorKind.PERMANENT:
                    break

                if attempt_index < max_attempts - 1:
                    delay = self._next_delay(attempt_index, e)
                    logger.debug(f"Retrying {label} in {delay:.2f}s")
                    if not self._wait(delay, cancellation):
                        logger.info(f"Backoff for {label} pre-empted by cancellation after {attempts} attempts")
                        return RetryOutcome(
                            success=False,
                            attempts=attempts,
                            error=e,
                            error_kind=last_kind,
                            cancelled=True
                        )
                continue

            if attempts > 1:
                logger.info(f"{label} succeeded after {attempts} attempts")
            return RetryOutcome(success=True, attempts=attempts, value=value)

        logger.error(
            f"{label} failed after {attempts} attempts "
            f"({last_kind.value if last_kind else 'unknown'}): {last_error}"
        )
        return RetryOutcome(
            success=False,
            attempts=attempts,
            error=last_error,
            error_kind=last_kind
        )


def with_retry(
    fn: Callable[[], Any],
    classify: Optional[Classifier] = None,
    retry_config: Optional[RetryConfig] = None,
    cancellation: Optional[CancellationToken] = None,
    before_attempt: Optional[Callable[[], Any]] = None,
    sleep: Optional[Callable[[float], Any]] = None,
    rng: Optional[random.Random] = None,
    label: str = "operation"
) -> RetryOutcome:
    """Functional shortcut for `RetryController(...).execute(fn, ...)`."""
    controller = RetryController(retry_config, classify, sleep=sleep, rng=rng)
    return controller.execute(fn, cancellation=cancellation, before_attempt=before_attempt, label=label)
