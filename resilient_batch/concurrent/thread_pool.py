"""
Worker threads for the batch execution engine.
"""

import threading
import time
import traceback
from typing import Callable, Dict, List, Any

from resilient_batch.utils.logging import get_logger
from .cancellation import CancellationToken
from .models import ItemStatus, ProcessingResult, WorkItem, WorkerState, WorkerStatus
from .thread_safe import DispatchQueue


logger = get_logger(__name__)

ItemProcessor = Callable[[int, WorkItem], ProcessingResult]


class WorkerThread(threading.Thread):
    """Worker thread pulling items from the dispatch queue until it is drained."""

    def __init__(
        self,
        worker_id: str,
        dispatch_queue: DispatchQueue,
        item_processor: ItemProcessor,
        cancellation: CancellationToken,
        delay_between_requests: float = 0.0
    ):
        """
        Initialize worker thread.

        Args:
            worker_id: Unique identifier for this worker
            dispatch_queue: Queue to pull (index, item) pairs from
            item_processor: Runs one item and returns its result
            cancellation: Shared cancellation token
            delay_between_requests: Pause after each item, in seconds
        """
        super().__init__(name=f"BatchWorker-{worker_id}", daemon=True)

        self.worker_id = worker_id
        self.dispatch_queue = dispatch_queue
        self.item_processor = item_processor
        self.cancellation = cancellation
        self.delay_between_requests = delay_between_requests

        self.status = WorkerStatus(worker_id=worker_id)
        self.logger = get_logger(f"{__name__}.{worker_id}")

    def run(self) -> None:
        """Main worker loop."""
        self.logger.debug(f"Worker {self.worker_id} starting")
        self.status.state = WorkerState.IDLE

        try:
            while True:
                entry = self.dispatch_queue.next()
                if entry is None:
                    break

                index, item = entry
                self._process_item(index, item)

                if self.delay_between_requests > 0 and self.dispatch_queue.has_pending():
                    self.cancellation.sleep(self.delay_between_requests)
        finally:
            self.status.state = WorkerState.STOPPED
            self.logger.debug(
                f"Worker {self.worker_id} stopped: "
                f"{self.status.items_completed} completed, {self.status.items_failed} failed"
            )

    def _process_item(self, index: int, item: WorkItem) -> None:
        self.status.start_item(item.id)
        start_time = time.monotonic()

        try:
            result = self.item_processor(index, item)
        except Exception as e:
            # Engine fault; execution errors are isolated by the processor
            self.logger.error(f"Worker {self.worker_id} crashed on item {item.id}: {e}")
            self.logger.debug(traceback.format_exc())
            result = ProcessingResult(
                id=item.id,
                success=False,
                status=ItemStatus.FAILED,
                attempts=0,
                error=f"Internal processing error: {e}",
                duration_seconds=time.monotonic() - start_time
            )
            self.dispatch_queue.record(index, result)

        self.status.finish_item(result)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "state": self.status.state.value,
            "current_item": self.status.current_item,
            "items_completed": self.status.items_completed,
            "items_failed": self.status.items_failed,
            "items_cancelled": self.status.items_cancelled,
            "average_item_time": self.status.get_average_item_time(),
            "is_alive": self.is_alive(),
        }


class WorkerPool:
    """Fixed-size set of worker threads sharing one dispatch queue."""

    def __init__(
        self,
        size: int,
        dispatch_queue: DispatchQueue,
        item_processor: ItemProcessor,
        cancellation: CancellationToken,
        delay_between_requests: float = 0.0
    ):
        self.size = size
        self.workers: List[WorkerThread] = [
            WorkerThread(
                worker_id=f"worker-{i}",
                dispatch_queue=dispatch_queue,
                item_processor=item_processor,
                cancellation=cancellation,
                delay_between_requests=delay_between_requests
            )
            for i in range(size)
        ]

    def run(self) -> None:
        """Start every worker and block until all of them have exited."""
        logger.debug(f"Starting worker pool with {self.size} workers")
        for worker in self.workers:
            worker.start()
        for worker in self.workers:
            worker.join()

    def get_stats(self) -> List[Dict[str, Any]]:
        return [worker.get_stats() for worker in self.workers]
