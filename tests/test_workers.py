"""Iteration ledger, worker lanes and arrival dispatch."""

from __future__ import annotations

import threading
import time

import pytest

from vuload.context import current
from vuload.metrics import MetricSink
from vuload.workers import (
    IterationRunner,
    IterationTracker,
    LoopingWorker,
    WorkerPool,
    dispatch_arrivals,
)


def test_tracker_counts_completed_iterations():
    tracker = IterationTracker()
    committed = []

    handle = tracker.begin()
    assert tracker.in_flight == 1
    assert tracker.finish(handle, commit=lambda: committed.append(handle.iteration_id))

    stats = tracker.stats()
    assert (stats.started, stats.completed, stats.cancelled) == (1, 1, 0)
    assert committed == [handle.iteration_id]
    assert tracker.wait_idle(0)


def test_cancelled_iteration_cannot_also_complete():
    tracker = IterationTracker()
    handle = tracker.begin()
    committed = []

    assert tracker.cancel_inflight() == 1
    assert handle.interrupt.is_set()
    assert not tracker.finish(handle, commit=lambda: committed.append(1))

    stats = tracker.stats()
    assert (stats.started, stats.completed, stats.cancelled) == (1, 0, 1)
    assert stats.in_flight == 0
    assert committed == []


def test_wait_idle_times_out_while_iterations_run():
    tracker = IterationTracker()
    tracker.begin()
    started = time.monotonic()

    assert not tracker.wait_idle(0.05)
    assert time.monotonic() - started >= 0.04


def test_runner_records_workload_errors_as_completed_iterations():
    sink = MetricSink()
    sink.start()
    tracker = IterationTracker()

    def broken() -> None:
        raise RuntimeError("boom")

    result = IterationRunner("s", broken, sink, tracker).run_once()

    assert result is not None
    assert result.error == "RuntimeError: boom"
    assert tracker.stats().completed == 1
    assert tracker.stats().failed == 1
    assert sink.total("iterations") == 1


def test_runner_binds_an_iteration_recorder():
    sink = MetricSink()
    sink.start()
    seen = []

    IterationRunner("s", lambda: seen.append(current()), sink, IterationTracker()).run_once()

    assert seen[0] is not None
    assert seen[0].scenario == "s"
    assert current() is None


def test_looping_worker_runs_back_to_back_until_retired():
    sink = MetricSink()
    sink.start()
    tracker = IterationTracker()
    runner = IterationRunner("s", lambda: time.sleep(0.01), sink, tracker)
    worker = LoopingWorker(runner, threading.Event(), name="vu-1")

    worker.start()
    time.sleep(0.1)
    worker.retire()
    worker.join(timeout=1)

    assert not worker.is_alive()
    stats = tracker.stats()
    assert stats.completed >= 3
    assert stats.in_flight == 0


def test_dispatch_drops_exactly_the_overflow_each_tick():
    release = threading.Event()
    pool = WorkerPool(5, lambda: release.wait(timeout=5), name="test")
    pool.start()
    try:
        for _ in range(3):
            release.clear()
            assert dispatch_arrivals(pool, 8) == (5, 3)
            assert pool.busy == 5
            release.set()
            assert pool.wait_idle(2)
    finally:
        release.set()
        pool.shutdown()


def test_dispatch_with_nothing_due_starts_nothing():
    pool = WorkerPool(2, lambda: None)
    pool.start()
    try:
        assert dispatch_arrivals(pool, 0) == (0, 0)
        assert dispatch_arrivals(pool, -3) == (0, 0)
    finally:
        pool.shutdown()


def test_pool_refuses_work_after_shutdown():
    pool = WorkerPool(1, lambda: None)
    pool.start()
    pool.shutdown()

    assert not pool.try_submit()
    with pytest.raises(ValueError):
        WorkerPool(0, lambda: None)
