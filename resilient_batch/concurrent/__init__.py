"""
Concurrent batch execution primitives.

Main Components:
- BatchScheduler: Bounded worker pool over a FIFO dispatch queue
- RetryController: Failure classification and exponential backoff
- RateLimiter: Token bucket shared by all workers of one client
- ProgressAggregator: Structured progress events for observers
- CancellationToken: Cooperative cancellation and cancellable delays
"""

from .models import (
    WorkItem,
    ProcessingResult,
    ItemStatus,
    ErrorKind,
    BatchJob,
    Checkpoint,
    RateLimiterState,
    RetryConfig,
    ProcessingConfig,
    WorkerState,
    WorkerStatus
)

from .thread_safe import (
    ThreadSafeCounter,
    ThreadSafeSet,
    DispatchQueue
)

from .cancellation import CancellationToken
from .rate_controller import RateLimiter
from .retry import (
    RetryController,
    RetryOutcome,
    with_retry,
    calculate_backoff_delay,
    classify_http_status,
    default_classifier
)
from .monitoring import (
    ProgressAggregator,
    ProgressEvent,
    ProgressEventType,
    ProgressSnapshot,
    EventRecorder
)
from .thread_pool import WorkerPool, WorkerThread
from .scheduler import BatchScheduler, validate_items

__all__ = [
    # Core models
    'WorkItem',
    'ProcessingResult',
    'ItemStatus',
    'ErrorKind',
    'BatchJob',
    'Checkpoint',
    'RateLimiterState',
    'RetryConfig',
    'ProcessingConfig',
    'WorkerState',
    'WorkerStatus',

    # Thread-safe utilities
    'ThreadSafeCounter',
    'ThreadSafeSet',
    'DispatchQueue',

    # Main components
    'CancellationToken',
    'RateLimiter',
    'RetryController',
    'RetryOutcome',
    'with_retry',
    'calculate_backoff_delay',
    'classify_http_status',
    'default_classifier',
    'WorkerPool',
    'WorkerThread',
    'BatchScheduler',
    'validate_items',

    # Progress
    'ProgressAggregator',
    'ProgressEvent',
    'ProgressEventType',
    'ProgressSnapshot',
    'EventRecorder'
]
