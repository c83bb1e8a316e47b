"""
HTTP client with token-bucket rate limiting and classified retries.
"""

from typing import Any, Callable, Dict, Optional, Union

import requests

from resilient_batch.concurrent.cancellation import CancellationToken
from resilient_batch.concurrent.models import ErrorKind, RetryConfig
from resilient_batch.concurrent.rate_controller import RateLimiter
from resilient_batch.concurrent.retry import RetryController, classify_http_status, default_classifier
from resilient_batch.utils.logging import get_logger
from resilient_batch.utils.errors import BatchCancelledError


logger = get_logger(__name__)


def classify_http_error(error: BaseException) -> ErrorKind:
    """
    Classify a failed HTTP call.

    Responses are judged by status code and body; transport errors and
    anything else fall through to the default classifier.
    """
    if isinstance(error, requests.HTTPError) and error.response is not None:
        response = error.response
        return classify_http_status(response.status_code, response.text or "")
    return default_classifier(error)


def parse_retry_after(response: requests.Response) -> Optional[float]:
    """Seconds from a numeric Retry-After header, if present."""
    retry_after = response.headers.get("Retry-After")
    if retry_after:
        try:
            return max(0.0, float(retry_after))
        except ValueError:
            # HTTP-date form is not supported; fall back to backoff
            pass
    return None


class RateLimitedClient:
    """
    `requests` session wrapper for calling a quota-limited API.

    Every attempt, including each retry, first takes a token from the
    limiter. Non-2xx responses raise `requests.HTTPError`; the retry
    controller decides from the status code whether to try again.
    """

    def __init__(
        self,
        requests_per_second: float = 1.0,
        retry_config: Optional[RetryConfig] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
        rate_limiter: Optional[RateLimiter] = None,
        classify: Optional[Callable[[BaseException], ErrorKind]] = None,
        sleep: Optional[Callable[[float], Any]] = None
    ):
        """
        Initialize HTTP client.

        Args:
            requests_per_second: Token bucket rate (ignored if `rate_limiter` is given)
            retry_config: Retry configuration
            timeout: Request timeout in seconds
            session: Session to send requests through
            rate_limiter: Limiter shared with other clients of the same service
            classify: Failure classifier (classify_http_error if None)
            sleep: Override for backoff sleeping (tests)
        """
        self.timeout = timeout
        self.rate_limiter = rate_limiter or RateLimiter(requests_per_second)
        self.retry_controller = RetryController(
            retry_config,
            classify or classify_http_error,
            sleep=sleep
        )
        self.session = session or requests.Session()
        self._owns_session = session is None

    def acquire(self, cancellation: Optional[CancellationToken] = None) -> float:
        """Take one token from the limiter. Returns seconds spent waiting."""
        return self.rate_limiter.acquire(cancellation)

    def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        logger.debug(f"HTTP {method} {url}")
        response = self.session.request(method, url, **kwargs)
        try:
            response.raise_for_status()
        except requests.HTTPError as e:
            e.retry_after = parse_retry_after(response)
            raise
        return response

    def request(
        self,
        method: str,
        url: str,
        cancellation: Optional[CancellationToken] = None,
        **kwargs
    ) -> requests.Response:
        """
        Perform a request with rate limiting and retries.

        Args:
            method: HTTP method
            url: URL to request
            cancellation: Token that aborts rate-limit and backoff waits
            **kwargs: Passed through to `requests.Session.request`

        Returns:
            Successful response

        Raises:
            requests.HTTPError: Final non-2xx response
            requests.RequestException: Final transport error
            BatchCancelledError: If cancelled before a response was obtained
        """
        kwargs.setdefault("timeout", self.timeout)

        outcome = self.retry_controller.execute(
            lambda: self._send(method, url, **kwargs),
            cancellation=cancellation,
            before_attempt=lambda: self.acquire(cancellation),
            label=f"{method} {url}"
        )

        if outcome.success:
            return outcome.value

        if outcome.cancelled:
            raise BatchCancelledError(
                f"Request cancelled: {method} {url}",
                {"attempts": outcome.attempts}
            )

        logger.error(
            f"HTTP request failed: {method} {url} "
            f"(attempts: {outcome.attempts}, error: {outcome.error_message})"
        )
        raise outcome.error

    def get(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        **kwargs
    ) -> requests.Response:
        return self.request("GET", url, params=params, **kwargs)

    def post(
        self,
        url: str,
        data: Optional[Union[Dict[str, Any], str]] = None,
        json: Optional[Any] = None,
        **kwargs
    ) -> requests.Response:
        return self.request("POST", url, data=data, json=json, **kwargs)

    def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._owns_session:
            self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
