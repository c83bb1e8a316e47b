"""
Data models for the batch execution engine.
"""

from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List
from datetime import datetime
from enum import Enum

from resilient_batch.utils.errors import ValidationError


class ItemStatus(Enum):
    """Terminal status of a work item."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ErrorKind(Enum):
    """Failure classification used by the retry controller."""
    TRANSIENT = "transient"
    PERMANENT = "permanent"


@dataclass(frozen=True)
class WorkItem:
    """One unit of independent input, e.g. one document."""
    id: str
    payload: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "payload": self.payload}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkItem":
        return cls(id=data["id"], payload=data.get("payload"))


@dataclass
class ProcessingResult:
    """Outcome of a single work item."""
    id: str
    success: bool
    status: ItemStatus
    attempts: int = 0
    value: Any = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    duration_seconds: float = 0.0
    persisted: bool = False

    @property
    def is_cancelled(self) -> bool:
        return self.status == ItemStatus.CANCELLED

    @classmethod
    def cancelled(cls, item_id: str, attempts: int = 0, error: Optional[str] = None) -> "ProcessingResult":
        """Result for an item that was cancelled before it could finish."""
        return cls(
            id=item_id,
            success=False,
            status=ItemStatus.CANCELLED,
            attempts=attempts,
            error=error or "cancelled"
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for the checkpoint store; `persisted` is never stored."""
        return {
            "id": self.id,
            "success": self.success,
            "status": self.status.value,
            "attempts": self.attempts,
            "value": self.value,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "duration_seconds": self.duration_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], persisted: bool = True) -> "ProcessingResult":
        error_kind = data.get("error_kind")
        return cls(
            id=data["id"],
            success=data["success"],
            status=ItemStatus(data.get("status", "succeeded" if data["success"] else "failed")),
            attempts=data.get("attempts", 0),
            value=data.get("value"),
            error=data.get("error"),
            error_kind=ErrorKind(error_kind) if error_kind else None,
            duration_seconds=data.get("duration_seconds", 0.0),
            persisted=persisted
        )


@dataclass(frozen=True)
class BatchJob:
    """A named collection of work items. Immutable once created."""
    batch_id: str
    items: List[WorkItem]
    created_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_items(self) -> int:
        return len(self.items)

    def header_dict(self) -> Dict[str, Any]:
        """Header record; items are stored separately."""
        return {
            "batch_id": self.batch_id,
            "total_items": self.total_items,
            "created_at": self.created_at.isoformat(),
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class Checkpoint:
    """Derived view of how far a batch has progressed."""
    batch_id: str
    total_items: int
    completed_items: int
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def remaining_items(self) -> int:
        return self.total_items - self.completed_items

    @property
    def is_complete(self) -> bool:
        return self.completed_items >= self.total_items


@dataclass(frozen=True)
class RateLimiterState:
    """Snapshot of a token bucket."""
    tokens: float
    capacity: float
    last_refill_at: float


@dataclass
class RetryConfig:
    """Retry and backoff settings. Delays are in seconds."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter_ratio: float = 0.3

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """
        Validate retry parameters.

        Raises:
            ValidationError: If configuration is invalid
        """
        errors = []

        if self.max_attempts < 1:
            errors.append("max_attempts must be at least 1")

        if self.base_delay < 0:
            errors.append("base_delay must not be negative")

        if self.max_delay < self.base_delay:
            errors.append("max_delay must be greater than or equal to base_delay")

        if not (0.0 <= self.jitter_ratio <= 1.0):
            errors.append("jitter_ratio must be between 0.0 and 1.0")

        if errors:
            raise ValidationError(
                "Retry configuration validation failed",
                {"errors": errors}
            )


@dataclass
class ProcessingConfig:
    """Configuration for a batch run."""
    concurrency: int = 5
    stop_on_error: bool = False
    delay_between_requests: float = 0.0
    rate_limit: Optional[float] = None
    retry: RetryConfig = field(default_factory=RetryConfig)

    def __post_init__(self):
        if isinstance(self.retry, dict):
            self.retry = RetryConfig(**self.retry)
        self.validate()

    def validate(self) -> None:
        """
        Validate configuration parameters.

        Raises:
            ValidationError: If configuration is invalid
        """
        errors = []

        if not (1 <= self.concurrency <= 100):
            errors.append("concurrency must be between 1 and 100")

        if self.delay_between_requests < 0:
            errors.append("delay_between_requests must not be negative")

        if self.rate_limit is not None and self.rate_limit <= 0:
            errors.append("rate_limit must be positive when set")

        if errors:
            raise ValidationError(
                "Processing configuration validation failed",
                {"errors": errors}
            )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProcessingConfig":
        data = dict(data)
        retry = data.pop("retry", None) or {}
        return cls(retry=RetryConfig(**retry), **data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "concurrency": self.concurrency,
            "stop_on_error": self.stop_on_error,
            "delay_between_requests": self.delay_between_requests,
            "rate_limit": self.rate_limit,
            "retry": {
                "max_attempts": self.retry.max_attempts,
                "base_delay": self.retry.base_delay,
                "max_delay": self.retry.max_delay,
                "jitter_ratio": self.retry.jitter_ratio,
            },
        }


class WorkerState(Enum):
    """Worker thread state."""
    STARTING = "starting"
    IDLE = "idle"
    WORKING = "working"
    STOPPED = "stopped"


@dataclass
class WorkerStatus:
    """Status information for a worker thread."""
    worker_id: str
    state: WorkerState = WorkerState.STARTING
    current_item: Optional[str] = None
    items_completed: int = 0
    items_failed: int = 0
    items_cancelled: int = 0
    total_execution_time: float = 0.0
    last_activity: datetime = field(default_factory=datetime.now)

    def start_item(self, item_id: str) -> None:
        """Mark worker as working on an item."""
        self.state = WorkerState.WORKING
        self.current_item = item_id
        self.last_activity = datetime.now()

    def finish_item(self, result: ProcessingResult) -> None:
        """Record the outcome of the current item."""
        if result.status == ItemStatus.SUCCEEDED:
            self.items_completed += 1
        elif result.status == ItemStatus.CANCELLED:
            self.items_cancelled += 1
        else:
            self.items_failed += 1
        self.total_execution_time += result.duration_seconds
        self.state = WorkerState.IDLE
        self.current_item = None
        self.last_activity = datetime.now()

    def get_average_item_time(self) -> float:
        """Get average execution time per finished item."""
        finished = self.items_completed + self.items_failed
        if finished > 0:
            return self.total_execution_time / finished
        return 0.0
