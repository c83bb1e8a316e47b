"""
Property-based tests for scheduler execution.

**Feature: resilient-batch, Property 1: Result order preservation**
**Feature: resilient-batch, Property 2: Bounded concurrency**
"""

import random
import threading
import time

import pytest
from hypothesis import given, strategies as st, settings

from resilient_batch.concurrent.cancellation import CancellationToken
from resilient_batch.concurrent.models import (
    ErrorKind,
    ItemStatus,
    ProcessingConfig,
    RetryConfig,
    WorkItem
)
from resilient_batch.concurrent.monitoring import EventRecorder, ProgressEventType
from resilient_batch.concurrent.rate_controller import RateLimiter
from resilient_batch.concurrent.scheduler import BatchScheduler, validate_items
from resilient_batch.services.batch_processor import create_work_items, process_batch
from resilient_batch.utils.errors import BatchFatalError, PermanentError, TransientError, ValidationError


FAST_RETRY = RetryConfig(max_attempts=3, base_delay=0.001, max_delay=0.005)


class ConcurrencyTracker:
    """Execution function recording how many calls overlap."""

    def __init__(self, duration: float = 0.01):
        self.duration = duration
        self.current = 0
        self.max_seen = 0
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, payload):
        with self._lock:
            self.current += 1
            self.max_seen = max(self.max_seen, self.current)
            self.calls.append(payload)
        try:
            time.sleep(self.duration)
            return payload
        finally:
            with self._lock:
                self.current -= 1


class TestSchedulerExecutionProperties:
    """Ordering, concurrency and failure isolation of the scheduler."""

    @given(
        payloads=st.lists(st.integers(min_value=-1000, max_value=1000), min_size=1, max_size=30),
        concurrency=st.integers(min_value=1, max_value=8),
        seed=st.integers(min_value=0, max_value=1000)
    )
    @settings(max_examples=15, deadline=30000)
    def test_results_preserve_input_order(self, payloads, concurrency, seed):
        """
        **Feature: resilient-batch, Property 1: Result order preservation**

        For N items and concurrency K, the i-th result belongs to the i-th item.
        """
        rng = random.Random(seed)
        delays = [rng.uniform(0, 0.003) for _ in payloads]
        items = create_work_items(list(zip(payloads, delays)))

        def exec_fn(payload):
            value, delay = payload
            time.sleep(delay)
            return value * 2

        config = ProcessingConfig(concurrency=concurrency, retry=FAST_RETRY)
        results = BatchScheduler(config).run(items, exec_fn)

        assert [r.id for r in results] == [item.id for item in items]
        assert [r.value for r in results] == [p * 2 for p in payloads]
        assert all(r.status == ItemStatus.SUCCEEDED for r in results)
        assert all(r.attempts == 1 for r in results)

    @given(
        item_count=st.integers(min_value=1, max_value=25),
        concurrency=st.integers(min_value=1, max_value=6)
    )
    @settings(max_examples=10, deadline=30000)
    def test_concurrency_never_exceeds_limit(self, item_count, concurrency):
        """
        **Feature: resilient-batch, Property 2: Bounded concurrency**

        The number of simultaneously executing items never exceeds K.
        """
        tracker = ConcurrencyTracker(duration=0.005)
        scheduler = BatchScheduler(ProcessingConfig(concurrency=concurrency, retry=FAST_RETRY))

        results = scheduler.run(create_work_items(range(item_count)), tracker)

        assert len(results) == item_count
        assert tracker.max_seen <= concurrency
        assert scheduler.get_statistics()["peak_in_flight"] <= concurrency
        assert len(scheduler.get_statistics()["workers"]) == min(concurrency, item_count)

    def test_scenario_all_succeed_with_three_workers(self):
        """10 items, concurrency 3, all succeed first time."""
        tracker = ConcurrencyTracker(duration=0.02)
        results = process_batch(
            create_work_items(range(10)),
            tracker,
            ProcessingConfig(concurrency=3, retry=FAST_RETRY)
        )

        assert len(results) == 10
        assert all(r.success for r in results)
        assert tracker.max_seen <= 3
        assert sorted(tracker.calls) == list(range(10))

    def test_scenario_stop_on_error_sequential(self):
        """stop_on_error, concurrency 1, item 2 of 5 fails permanently."""
        calls = []

        def exec_fn(payload):
            calls.append(payload)
            if payload == 1:
                raise PermanentError("malformed document")
            return payload

        results = process_batch(
            create_work_items(range(5)),
            exec_fn,
            ProcessingConfig(concurrency=1, stop_on_error=True, retry=FAST_RETRY)
        )

        assert calls == [0, 1]
        assert len(results) == 2
        assert [r.id for r in results] == ["item-0", "item-1"]
        assert results[0].status == ItemStatus.SUCCEEDED
        assert results[1].status == ItemStatus.FAILED
        assert results[1].attempts == 1
        assert results[1].error_kind == ErrorKind.PERMANENT

    def test_stop_on_error_parallel_lets_in_flight_items_finish(self):
        started = threading.Event()
        release = threading.Event()

        def exec_fn(payload):
            if payload == 0:
                started.set()
                release.wait(timeout=5)
                return payload
            if payload == 1:
                started.wait(timeout=5)
                raise PermanentError("bad")
            return payload

        def on_result(result):
            # Runs after the failing item has stopped dispatch
            if result.id == "item-1":
                release.set()

        results = process_batch(
            create_work_items(range(10)),
            exec_fn,
            ProcessingConfig(concurrency=2, stop_on_error=True, retry=FAST_RETRY),
            on_result=on_result
        )

        assert [r.id for r in results] == ["item-0", "item-1"]
        assert results[0].status == ItemStatus.SUCCEEDED
        assert results[1].status == ItemStatus.FAILED

    def test_classifier_errors_finish_item_as_failed(self):
        recorder = EventRecorder()
        hooked = []

        def classify(error):
            raise KeyError("no rule for this error")

        def exec_fn(payload):
            if payload == 0:
                raise RuntimeError("remote failure")
            return payload

        results = process_batch(
            create_work_items(range(3)),
            exec_fn,
            ProcessingConfig(concurrency=1, stop_on_error=True, retry=FAST_RETRY),
            on_progress=recorder,
            classify=classify,
            on_result=lambda result: hooked.append(result.id)
        )

        assert [r.id for r in results] == ["item-0"]
        assert results[0].status == ItemStatus.FAILED
        assert "no rule for this error" in results[0].error
        assert [e.type for e in recorder.for_item("item-0")] == [
            ProgressEventType.ITEM_STARTED,
            ProgressEventType.ITEM_FAILED,
        ]
        assert recorder.last.type == ProgressEventType.BATCH_COMPLETED
        assert recorder.last.in_progress_ids == ()
        assert hooked == ["item-0"]

    def test_failures_are_isolated_without_stop_on_error(self):
        def exec_fn(payload):
            if payload % 3 == 0:
                raise ValueError(f"bad payload {payload}")
            return payload

        results = process_batch(
            create_work_items(range(9)),
            exec_fn,
            ProcessingConfig(concurrency=3, retry=FAST_RETRY)
        )

        assert len(results) == 9
        failed = [r for r in results if r.status == ItemStatus.FAILED]
        assert [r.id for r in failed] == ["item-0", "item-3", "item-6"]
        assert all(r.error == f"bad payload {int(r.id.split('-')[1])}" for r in failed)
        assert all(r.success for r in results if r not in failed)

    def test_transient_failures_are_retried(self):
        attempts = {}
        lock = threading.Lock()

        def exec_fn(payload):
            with lock:
                attempts[payload] = attempts.get(payload, 0) + 1
                count = attempts[payload]
            if count < 3:
                raise TransientError("try again")
            return payload

        results = process_batch(
            create_work_items(range(4)),
            exec_fn,
            ProcessingConfig(concurrency=2, retry=FAST_RETRY)
        )

        assert all(r.success for r in results)
        assert all(r.attempts == 3 for r in results)

    def test_cancellation_marks_undispatched_items_cancelled(self):
        token = CancellationToken()

        def exec_fn(payload):
            if payload == 2:
                token.cancel("user pressed stop")
            return payload

        results = process_batch(
            create_work_items(range(6)),
            exec_fn,
            ProcessingConfig(concurrency=1, retry=FAST_RETRY),
            cancellation=token
        )

        assert len(results) == 6
        assert [r.status for r in results[:3]] == [ItemStatus.SUCCEEDED] * 3
        assert all(r.status == ItemStatus.CANCELLED for r in results[3:])
        assert all(r.attempts == 0 for r in results[3:])
        assert results[3].error == "user pressed stop"

    def test_cancellation_preempts_backoff_of_in_flight_item(self):
        token = CancellationToken()
        retry = RetryConfig(max_attempts=5, base_delay=30.0, max_delay=30.0)

        def exec_fn(payload):
            token.cancel()
            raise TransientError("remote unavailable")

        start = time.monotonic()
        results = process_batch(
            create_work_items(range(3)),
            exec_fn,
            ProcessingConfig(concurrency=1, retry=retry),
            cancellation=token
        )

        assert time.monotonic() - start < 5.0
        assert [r.status for r in results] == [ItemStatus.CANCELLED] * 3
        assert results[0].attempts == 1

    def test_rate_limited_batch(self):
        limiter = RateLimiter(20)
        start = time.monotonic()
        results = process_batch(
            create_work_items(range(30)),
            lambda payload: payload,
            ProcessingConfig(concurrency=5, retry=FAST_RETRY),
            rate_limiter=limiter
        )

        assert len(results) == 30
        assert time.monotonic() - start >= 30 / 20 - 1 - 0.02
        assert limiter.get_statistics()["total_acquired"] == 30

    def test_delay_between_requests(self):
        start = time.monotonic()
        process_batch(
            create_work_items(range(4)),
            lambda payload: payload,
            ProcessingConfig(concurrency=1, delay_between_requests=0.05, retry=FAST_RETRY)
        )

        # Three pauses between four sequential items
        assert time.monotonic() - start >= 0.14

    def test_result_hook_runs_once_per_item(self):
        seen = []
        lock = threading.Lock()

        def hook(result):
            with lock:
                seen.append(result.id)
            if result.id == "item-1":
                raise RuntimeError("hook failure")

        results = process_batch(
            create_work_items(range(5)),
            lambda payload: payload,
            ProcessingConfig(concurrency=2, retry=FAST_RETRY),
            on_result=hook
        )

        assert sorted(seen) == [f"item-{i}" for i in range(5)]
        assert all(r.success for r in results)
        assert not any(r.persisted for r in results)

    def test_empty_batch(self):
        assert process_batch([], lambda payload: payload) == []

    def test_duplicate_ids_are_fatal(self):
        items = [WorkItem("a", 1), WorkItem("b", 2), WorkItem("a", 3)]
        calls = []

        with pytest.raises(ValidationError) as exc_info:
            process_batch(items, calls.append)

        assert exc_info.value.details["duplicate_ids"] == ["a"]
        assert calls == []

    def test_non_callable_exec_fn_is_fatal(self):
        with pytest.raises(ValidationError):
            process_batch(create_work_items(range(3)), "not callable")

    def test_failed_preflight_aborts_before_any_item(self):
        calls = []

        def preflight():
            raise ConnectionError("API key rejected")

        with pytest.raises(BatchFatalError) as exc_info:
            process_batch(create_work_items(range(3)), calls.append, preflight=preflight)

        assert "API key rejected" in str(exc_info.value)
        assert calls == []

    def test_validate_items_rejects_empty_id(self):
        with pytest.raises(ValidationError):
            validate_items([WorkItem("", None)])

    def test_create_work_items_ids(self):
        items = create_work_items(["a", "b", "c"], id_prefix="doc")
        assert [i.id for i in items] == ["doc-0", "doc-1", "doc-2"]
        assert [i.payload for i in items] == ["a", "b", "c"]
