"""
Progress aggregation for batch runs.
Turns scheduler activity into structured progress events for an observer
such as a UI. The aggregator never influences scheduling.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from resilient_batch.utils.logging import get_logger
from .models import ItemStatus, ProcessingResult


logger = get_logger(__name__)


class ProgressEventType(Enum):
    """Kinds of progress event."""
    BATCH_STARTED = "batch_started"
    ITEM_STARTED = "item_started"
    ITEM_COMPLETED = "item_completed"
    ITEM_FAILED = "item_failed"
    ITEM_CANCELLED = "item_cancelled"
    BATCH_COMPLETED = "batch_completed"


@dataclass(frozen=True)
class ProgressEvent:
    """One progress notification with the counters as of that moment."""
    type: ProgressEventType
    total: int
    completed: int
    successful: int
    failed: int
    cancelled: int
    in_progress_ids: Tuple[str, ...]
    item_id: Optional[str] = None
    result: Optional[ProcessingResult] = None
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class ProgressSnapshot:
    """Detailed progress information."""
    total: int
    completed: int
    successful: int
    failed: int
    cancelled: int
    in_progress: int
    queued: int
    progress_percentage: float
    throughput_per_second: float
    average_item_duration: float
    estimated_completion_time: Optional[datetime]


ProgressListener = Callable[[ProgressEvent], None]


class ProgressAggregator:
    """
    Counts item outcomes and fans events out to listeners.

    Events are built under the counter lock and queued in that order. One
    thread at a time drains the queue and calls the listeners outside the
    counter lock, so for any one item `item_started` reaches listeners before
    its terminal event and a slow listener never blocks other workers from
    recording progress. Listener exceptions are logged and dropped.
    """

    def __init__(self, total: int, listeners: Optional[List[ProgressListener]] = None):
        self.total = total
        self._listeners: List[ProgressListener] = list(listeners or [])
        self._lock = threading.RLock()
        self._dispatch_lock = threading.Lock()
        self._pending_events = deque()

        self._successful = 0
        self._failed = 0
        self._cancelled = 0
        self._in_progress: Dict[str, float] = {}
        self._durations: List[float] = []
        self._started_at: Optional[float] = None
        self._finished_at: Optional[float] = None

    def add_listener(self, listener: ProgressListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    @property
    def completed(self) -> int:
        with self._lock:
            return self._successful + self._failed

    def batch_started(self) -> None:
        with self._lock:
            self._started_at = time.monotonic()
            self._emit(ProgressEventType.BATCH_STARTED)
        self._dispatch()

    def item_started(self, item_id: str) -> None:
        with self._lock:
            self._in_progress[item_id] = time.monotonic()
            self._emit(ProgressEventType.ITEM_STARTED, item_id=item_id)
        self._dispatch()

    def item_finished(self, result: ProcessingResult) -> None:
        """Record a terminal result and emit the matching event."""
        with self._lock:
            started = self._in_progress.pop(result.id, None)
            if started is not None:
                self._durations.append(time.monotonic() - started)

            if result.status == ItemStatus.SUCCEEDED:
                self._successful += 1
                event_type = ProgressEventType.ITEM_COMPLETED
            elif result.status == ItemStatus.CANCELLED:
                self._cancelled += 1
                event_type = ProgressEventType.ITEM_CANCELLED
            else:
                self._failed += 1
                event_type = ProgressEventType.ITEM_FAILED

            self._emit(event_type, item_id=result.id, result=result)
        self._dispatch()

    def batch_completed(self) -> None:
        with self._lock:
            self._finished_at = time.monotonic()
            self._emit(ProgressEventType.BATCH_COMPLETED)
        self._dispatch()

    def _emit(
        self,
        event_type: ProgressEventType,
        item_id: Optional[str] = None,
        result: Optional[ProcessingResult] = None
    ) -> None:
        """Queue an event; callers hold the counter lock."""
        event = ProgressEvent(
            type=event_type,
            total=self.total,
            completed=self._successful + self._failed,
            successful=self._successful,
            failed=self._failed,
            cancelled=self._cancelled,
            in_progress_ids=tuple(self._in_progress),
            item_id=item_id,
            result=result
        )
        self._pending_events.append(event)

    def _dispatch(self) -> None:
        """Deliver queued events unless another thread is already doing so."""
        while True:
            if not self._dispatch_lock.acquire(blocking=False):
                return
            try:
                while True:
                    with self._lock:
                        if not self._pending_events:
                            break
                        event = self._pending_events.popleft()
                        listeners = list(self._listeners)
                    for listener in listeners:
                        try:
                            listener(event)
                        except Exception as e:
                            logger.error(f"Progress listener raised on {event.type.value}: {e}")
            finally:
                self._dispatch_lock.release()

            # An event queued while the lock was being released
            with self._lock:
                if not self._pending_events:
                    return

    def snapshot(self) -> ProgressSnapshot:
        """Current counters plus throughput and an ETA."""
        with self._lock:
            completed = self._successful + self._failed
            finished = completed + self._cancelled
            in_progress = len(self._in_progress)
            queued = max(0, self.total - finished - in_progress)

            elapsed = 0.0
            if self._started_at is not None:
                end = self._finished_at if self._finished_at is not None else time.monotonic()
                elapsed = end - self._started_at

            throughput = completed / elapsed if elapsed > 0 else 0.0
            average = sum(self._durations) / len(self._durations) if self._durations else 0.0
            percentage = (finished / self.total * 100.0) if self.total > 0 else 100.0

            eta = None
            remaining = self.total - finished
            if throughput > 0 and remaining > 0 and self._finished_at is None:
                eta = datetime.now() + timedelta(seconds=remaining / throughput)

            return ProgressSnapshot(
                total=self.total,
                completed=completed,
                successful=self._successful,
                failed=self._failed,
                cancelled=self._cancelled,
                in_progress=in_progress,
                queued=queued,
                progress_percentage=percentage,
                throughput_per_second=throughput,
                average_item_duration=average,
                estimated_completion_time=eta
            )


class EventRecorder:
    """Listener that keeps every event it receives."""

    def __init__(self):
        self._events: List[ProgressEvent] = []
        self._lock = threading.Lock()

    def __call__(self, event: ProgressEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> List[ProgressEvent]:
        with self._lock:
            return list(self._events)

    def of_type(self, event_type: ProgressEventType) -> List[ProgressEvent]:
        return [e for e in self.events if e.type == event_type]

    def for_item(self, item_id: str) -> List[ProgressEvent]:
        return [e for e in self.events if e.item_id == item_id]

    @property
    def last(self) -> Optional[ProgressEvent]:
        events = self.events
        return events[-1] if events else None
