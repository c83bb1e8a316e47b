"""
Batch processing entry points.

`process_batch` runs a list of work items once. `ResumableBatchRunner`
ties the scheduler to a checkpoint manager so that an interrupted batch can
be resumed without reprocessing finished items.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from resilient_batch.concurrent.cancellation import CancellationToken
from resilient_batch.concurrent.models import ItemStatus, ProcessingConfig, ProcessingResult, WorkItem
from resilient_batch.concurrent.monitoring import ProgressAggregator, ProgressListener
from resilient_batch.concurrent.rate_controller import RateLimiter
from resilient_batch.concurrent.retry import Classifier
from resilient_batch.concurrent.scheduler import BatchScheduler, ExecFunction, ResultHook, validate_items
from resilient_batch.services.checkpoint_manager import CheckpointManager
from resilient_batch.utils.logging import get_logger, log_operation
from resilient_batch.utils.errors import BatchFatalError, CheckpointError, ValidationError, handle_error


logger = get_logger(__name__)

Preflight = Callable[[], Any]


def create_work_items(payloads: Iterable[Any], id_prefix: str = "item") -> List[WorkItem]:
    """Wrap payloads as work items with ids `<prefix>-0`, `<prefix>-1`, ..."""
    return [WorkItem(id=f"{id_prefix}-{index}", payload=payload) for index, payload in enumerate(payloads)]


def generate_batch_id() -> str:
    """New batch id of the form `batch-<epoch millis>`."""
    return f"batch-{int(time.time() * 1000)}"


def _check_inputs(items: List[WorkItem], exec_fn: ExecFunction) -> None:
    if not callable(exec_fn):
        raise ValidationError("exec_fn must be callable", {"exec_fn": repr(exec_fn)})
    validate_items(items)


def _run_preflight(preflight: Optional[Preflight]) -> None:
    """
    Raises:
        BatchFatalError: If the preflight check fails
    """
    if preflight is None:
        return
    try:
        preflight()
    except BatchFatalError:
        raise
    except Exception as e:
        logger.error(f"Preflight check failed, aborting batch: {e}")
        raise BatchFatalError(
            f"Preflight check failed: {e}",
            {"error_type": type(e).__name__}
        ) from e


@log_operation("process_batch")
def process_batch(
    items: List[WorkItem],
    exec_fn: ExecFunction,
    config: Optional[ProcessingConfig] = None,
    on_progress: Optional[ProgressListener] = None,
    *,
    cancellation: Optional[CancellationToken] = None,
    rate_limiter: Optional[RateLimiter] = None,
    classify: Optional[Classifier] = None,
    preflight: Optional[Preflight] = None,
    on_result: Optional[ResultHook] = None
) -> List[ProcessingResult]:
    """
    Execute a batch of work items.

    Args:
        items: Work items with unique ids
        exec_fn: Called with each item's payload
        config: Processing configuration (defaults if None)
        on_progress: Listener receiving every progress event
        cancellation: Token the caller can use to cancel the batch
        rate_limiter: Shared limiter; built from `config.rate_limit` if None
        classify: Failure classifier (default_classifier if None)
        preflight: Check run once before any item starts
        on_result: Hook called with each finished, non-cancelled result

    Returns:
        Results ordered like `items`

    Raises:
        ValidationError: On duplicate ids or a non-callable exec_fn
        BatchFatalError: If `preflight` fails
    """
    _check_inputs(items, exec_fn)
    _run_preflight(preflight)

    progress = ProgressAggregator(len(items), [on_progress] if on_progress else None)
    scheduler = BatchScheduler(config, rate_limiter=rate_limiter, classify=classify)
    return scheduler.run(
        items,
        exec_fn,
        progress=progress,
        cancellation=cancellation,
        on_result=on_result
    )


@dataclass
class BatchRun:
    """Outcome of starting or resuming a checkpointed batch."""
    batch_id: str
    results: List[ProcessingResult] = field(default_factory=list)
    total_items: int = 0

    @property
    def is_complete(self) -> bool:
        finished = sum(1 for r in self.results if r.status != ItemStatus.CANCELLED)
        return finished == self.total_items

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.status == ItemStatus.SUCCEEDED)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.status == ItemStatus.FAILED)


class ResumableBatchRunner:
    """
    Runs batches with a checkpoint written per finished item.

    Every non-cancelled result is saved as soon as its item finishes and is
    marked `persisted` only once that write has returned. Cancelled results
    are never saved, so a later `resume` picks those items up again.
    """

    def __init__(
        self,
        checkpoint_manager: CheckpointManager,
        config: Optional[ProcessingConfig] = None,
        rate_limiter: Optional[RateLimiter] = None,
        classify: Optional[Classifier] = None
    ):
        """
        Args:
            checkpoint_manager: Checkpoint persistence
            config: Processing configuration used for every run
            rate_limiter: Limiter shared across runs of this runner
            classify: Failure classifier
        """
        self.checkpoint_manager = checkpoint_manager
        self.config = config or ProcessingConfig()
        if rate_limiter is None and self.config.rate_limit:
            rate_limiter = RateLimiter(self.config.rate_limit)
        self.rate_limiter = rate_limiter
        self.classify = classify

    def _make_result_hook(self, batch_id: str, on_result: Optional[ResultHook]) -> ResultHook:
        def save(result: ProcessingResult) -> None:
            try:
                self.checkpoint_manager.save_result(batch_id, result.id, result)
                result.persisted = True
            except CheckpointError as e:
                handle_error(
                    e,
                    logger,
                    {"batch_id": batch_id, "item_id": result.id, "attempts": result.attempts},
                    reraise=False
                )
            if on_result is not None:
                on_result(result)
        return save

    def _execute(
        self,
        batch_id: str,
        items: List[WorkItem],
        exec_fn: ExecFunction,
        total: int,
        on_progress: Optional[ProgressListener],
        cancellation: Optional[CancellationToken],
        on_result: Optional[ResultHook]
    ) -> List[ProcessingResult]:
        if not items:
            return []
        progress = ProgressAggregator(len(items), [on_progress] if on_progress else None)
        scheduler = BatchScheduler(self.config, rate_limiter=self.rate_limiter, classify=self.classify)
        logger.info(f"Running {len(items)} of {total} items for batch {batch_id}")
        return scheduler.run(
            items,
            exec_fn,
            progress=progress,
            cancellation=cancellation,
            on_result=self._make_result_hook(batch_id, on_result)
        )

    def start(
        self,
        items: List[WorkItem],
        exec_fn: ExecFunction,
        batch_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        on_progress: Optional[ProgressListener] = None,
        cancellation: Optional[CancellationToken] = None,
        preflight: Optional[Preflight] = None,
        on_result: Optional[ResultHook] = None
    ) -> BatchRun:
        """
        Checkpoint a new batch, then process it.

        Input validation and `preflight` run before anything is persisted.

        Raises:
            ValidationError: On duplicate ids or a non-callable exec_fn
            BatchFatalError: If `preflight` fails
            CheckpointError: If the batch cannot be created
        """
        _check_inputs(items, exec_fn)
        _run_preflight(preflight)

        batch_id = batch_id or generate_batch_id()
        self.checkpoint_manager.create_batch(batch_id, items, metadata)

        results = self._execute(batch_id, items, exec_fn, len(items), on_progress, cancellation, on_result)
        run = BatchRun(batch_id=batch_id, results=results, total_items=len(items))
        logger.info(
            f"Batch {batch_id}: {run.succeeded} succeeded, {run.failed} failed, "
            f"{len(items) - run.succeeded - run.failed} left for resume"
        )
        return run

    def resume(
        self,
        batch_id: str,
        exec_fn: ExecFunction,
        on_progress: Optional[ProgressListener] = None,
        cancellation: Optional[CancellationToken] = None,
        preflight: Optional[Preflight] = None,
        on_result: Optional[ResultHook] = None
    ) -> BatchRun:
        """
        Process only the items of `batch_id` that have no persisted result.

        Returns:
            BatchRun whose results merge the persisted results with the new
            ones, in original item order

        Raises:
            CheckpointError: If the batch does not exist
            BatchFatalError: If `preflight` fails
        """
        if not callable(exec_fn):
            raise ValidationError("exec_fn must be callable", {"exec_fn": repr(exec_fn)})

        loaded = self.checkpoint_manager.load_batch(batch_id)
        persisted_ids = {result.id for result in loaded.results}
        unprocessed = [item for item in loaded.items if item.id not in persisted_ids]

        if not unprocessed:
            logger.info(f"Batch {batch_id} is already complete")
            return BatchRun(batch_id=batch_id, results=list(loaded.results), total_items=len(loaded.items))

        _run_preflight(preflight)
        logger.info(
            f"Resuming batch {batch_id}: {len(persisted_ids)} done, {len(unprocessed)} remaining"
        )

        new_results = self._execute(
            batch_id, unprocessed, exec_fn, len(loaded.items), on_progress, cancellation, on_result
        )

        merged: Dict[str, ProcessingResult] = {result.id: result for result in loaded.results}
        for result in new_results:
            merged[result.id] = result

        ordered = [merged[item.id] for item in loaded.items if item.id in merged]
        return BatchRun(batch_id=batch_id, results=ordered, total_items=len(loaded.items))

    def pending_batches(self):
        """Checkpoints of batches that still have unprocessed items, oldest first."""
        return self.checkpoint_manager.get_pending_batches()

    def discard(self, batch_id: str) -> bool:
        """Delete a batch and everything persisted for it."""
        return self.checkpoint_manager.delete_batch(batch_id)
