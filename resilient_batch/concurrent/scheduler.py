"""
Batch scheduler: fans work items out over a bounded worker pool.
"""

import time
import traceback
from typing import Any, Callable, Dict, List, Optional

from resilient_batch.utils.logging import get_logger
from resilient_batch.utils.errors import ValidationError
from .cancellation import CancellationToken
from .models import ErrorKind, ItemStatus, ProcessingConfig, ProcessingResult, WorkItem
from .monitoring import ProgressAggregator
from .rate_controller import RateLimiter
from .retry import Classifier, RetryController, RetryOutcome
from .thread_pool import WorkerPool
from .thread_safe import DispatchQueue, ThreadSafeCounter, ThreadSafeSet


logger = get_logger(__name__)

ExecFunction = Callable[[Any], Any]
ResultHook = Callable[[ProcessingResult], None]


def validate_items(items: List[WorkItem]) -> None:
    """
    Raises:
        ValidationError: If any item id is empty or appears twice
    """
    seen = set()
    duplicates = []
    for item in items:
        if not item.id:
            raise ValidationError("Work item id must not be empty", {"item": repr(item)})
        if item.id in seen:
            duplicates.append(item.id)
        seen.add(item.id)

    if duplicates:
        raise ValidationError(
            "Work item ids must be unique within a batch",
            {"duplicate_ids": sorted(set(duplicates))}
        )


class BatchScheduler:
    """
    Runs a list of work items with bounded parallelism.

    `min(concurrency, len(items))` worker threads pull from one FIFO queue.
    Every item goes through the retry controller and, when configured, the
    shared rate limiter before each attempt. The returned list is ordered
    like the input list.

    With `stop_on_error`, the first failed result stops dispatching; items
    already running finish, and items never dispatched get no result.
    Cancellation also stops dispatching, but undispatched items are
    returned as cancelled results.
    """

    def __init__(
        self,
        config: Optional[ProcessingConfig] = None,
        rate_limiter: Optional[RateLimiter] = None,
        classify: Optional[Classifier] = None,
        retry_sleep: Optional[Callable[[float], Any]] = None
    ):
        """
        Initialize batch scheduler.

        Args:
            config: Processing configuration
            rate_limiter: Shared limiter; one is created from
                `config.rate_limit` when omitted
            classify: Failure classifier for the retry controller
            retry_sleep: Override for backoff sleeping (tests)
        """
        self.config = config or ProcessingConfig()
        if rate_limiter is None and self.config.rate_limit:
            rate_limiter = RateLimiter(self.config.rate_limit)
        self.rate_limiter = rate_limiter
        self.retry_controller = RetryController(self.config.retry, classify, sleep=retry_sleep)

        self._in_flight = ThreadSafeCounter()
        self._in_flight_ids = ThreadSafeSet()
        self._last_pool: Optional[WorkerPool] = None

    def run(
        self,
        items: List[WorkItem],
        exec_fn: ExecFunction,
        progress: Optional[ProgressAggregator] = None,
        cancellation: Optional[CancellationToken] = None,
        on_result: Optional[ResultHook] = None
    ) -> List[ProcessingResult]:
        """
        Execute every item and return their results in input order.

        Args:
            items: Work items; ids must be unique
            exec_fn: Called with each item's payload
            progress: Aggregator receiving progress events
            cancellation: Cooperative cancellation token
            on_result: Called from the worker thread with every finished,
                non-cancelled result before its completion event

        Returns:
            One result per produced item, ordered like `items`

        Raises:
            ValidationError: On duplicate ids or a non-callable exec_fn
        """
        if not callable(exec_fn):
            raise ValidationError("exec_fn must be callable", {"exec_fn": repr(exec_fn)})
        validate_items(items)

        if not items:
            logger.info("No items to process")
            return []

        cancellation = cancellation or CancellationToken()
        progress = progress or ProgressAggregator(len(items))
        dispatch_queue = DispatchQueue(items, cancellation)
        pool_size = min(self.config.concurrency, len(items))

        def process_item(index: int, item: WorkItem) -> ProcessingResult:
            return self._process_item(index, item, exec_fn, dispatch_queue, progress, cancellation, on_result)

        logger.info(
            f"Processing {len(items)} items with {pool_size} workers "
            f"(stop_on_error={self.config.stop_on_error}, rate_limit={self.config.rate_limit})"
        )
        start_time = time.monotonic()
        progress.batch_started()

        pool = WorkerPool(
            size=pool_size,
            dispatch_queue=dispatch_queue,
            item_processor=process_item,
            cancellation=cancellation,
            delay_between_requests=self.config.delay_between_requests
        )
        self._last_pool = pool
        pool.run()

        undispatched = dispatch_queue.drain()
        if undispatched:
            if dispatch_queue.stopped:
                logger.warning(
                    f"{len(undispatched)} items not dispatched: {dispatch_queue.stop_reason}"
                )
            else:
                logger.info(f"{len(undispatched)} items cancelled before dispatch")
                for index, item in undispatched:
                    result = ProcessingResult.cancelled(item.id, error=cancellation.reason)
                    dispatch_queue.record(index, result)
                    progress.item_finished(result)

        progress.batch_completed()
        results = [r for r in dispatch_queue.results() if r is not None]

        succeeded = sum(1 for r in results if r.status == ItemStatus.SUCCEEDED)
        failed = sum(1 for r in results if r.status == ItemStatus.FAILED)
        cancelled = sum(1 for r in results if r.status == ItemStatus.CANCELLED)
        logger.info(
            f"Batch finished in {time.monotonic() - start_time:.2f}s: "
            f"{succeeded} succeeded, {failed} failed, {cancelled} cancelled, "
            f"{len(items) - len(results)} not dispatched"
        )
        return results

    def _process_item(
        self,
        index: int,
        item: WorkItem,
        exec_fn: ExecFunction,
        dispatch_queue: DispatchQueue,
        progress: ProgressAggregator,
        cancellation: CancellationToken,
        on_result: Optional[ResultHook]
    ) -> ProcessingResult:
        self._in_flight.increment()
        self._in_flight_ids.add(item.id)
        progress.item_started(item.id)
        start_time = time.monotonic()

        before_attempt = None
        if self.rate_limiter is not None:
            def before_attempt():
                self.rate_limiter.acquire(cancellation)

        try:
            try:
                outcome = self.retry_controller.execute(
                    lambda: exec_fn(item.payload),
                    cancellation=cancellation,
                    before_attempt=before_attempt,
                    label=f"item {item.id}"
                )
            except Exception as e:
                # Raised outside exec_fn, e.g. by the classifier
                logger.error(f"Retry handling failed for item {item.id}: {type(e).__name__}: {e}")
                logger.debug(traceback.format_exc())
                outcome = RetryOutcome(
                    success=False,
                    attempts=1,
                    error=e,
                    error_kind=ErrorKind.PERMANENT
                )

            if outcome.success:
                result = ProcessingResult(
                    id=item.id,
                    success=True,
                    status=ItemStatus.SUCCEEDED,
                    attempts=outcome.attempts,
                    value=outcome.value
                )
            elif outcome.cancelled:
                result = ProcessingResult.cancelled(
                    item.id,
                    attempts=outcome.attempts,
                    error=outcome.error_message
                )
            else:
                result = ProcessingResult(
                    id=item.id,
                    success=False,
                    status=ItemStatus.FAILED,
                    attempts=outcome.attempts,
                    error=outcome.error_message or "Unknown error",
                    error_kind=outcome.error_kind
                )
                logger.error(
                    f"Item {item.id} failed after {outcome.attempts} attempts: {result.error}"
                )
                if self.config.stop_on_error:
                    dispatch_queue.stop(f"stop_on_error after item {item.id} failed")

            result.duration_seconds = time.monotonic() - start_time

            if on_result is not None and not result.is_cancelled:
                try:
                    on_result(result)
                except Exception as e:
                    logger.error(f"Result hook failed for item {item.id} (attempts={result.attempts}): {e}")

            dispatch_queue.record(index, result)
        finally:
            self._in_flight_ids.discard(item.id)
            self._in_flight.decrement()

        progress.item_finished(result)
        return result

    def in_flight_ids(self) -> List[str]:
        """Ids of items currently executing."""
        return self._in_flight_ids.to_list()

    def get_statistics(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "concurrency": self.config.concurrency,
            "in_flight": self._in_flight.get_value(),
            "peak_in_flight": self._in_flight.get_peak(),
        }
        if self._last_pool is not None:
            stats["workers"] = self._last_pool.get_stats()
        if self.rate_limiter is not None:
            stats["rate_limiter"] = self.rate_limiter.get_statistics()
        return stats
