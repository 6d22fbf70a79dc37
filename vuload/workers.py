from __future__ import annotations

import dataclasses
import itertools
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from .config import Workload
from .context import IterationRecorder, bind
from .metrics import MetricSink
from .results import IterationResult, IterationStats

LOGGER = logging.getLogger("vuload.workers")

_RUN = object()
_SHUTDOWN = object()


@dataclass
class IterationHandle:
    iteration_id: int
    started_at: float
    interrupt: threading.Event = field(default_factory=threading.Event)


class IterationTracker:
    """Ledger of started iterations; each one ends completed or cancelled, never both."""

    def __init__(self) -> None:
        self._condition = threading.Condition()
        self._stats = IterationStats()
        self._in_flight: dict[int, IterationHandle] = {}
        self._ids = itertools.count(1)

    @property
    def in_flight(self) -> int:
        with self._condition:
            return len(self._in_flight)

    def begin(self) -> IterationHandle:
        with self._condition:
            handle = IterationHandle(iteration_id=next(self._ids), started_at=time.monotonic())
            self._in_flight[handle.iteration_id] = handle
            self._stats.started += 1
            return handle

    def finish(
        self,
        handle: IterationHandle,
        failed: bool = False,
        commit: Callable[[], None] | None = None,
    ) -> bool:
        """Mark ``handle`` completed and run ``commit`` atomically with it.

        Returns False (and skips ``commit``) if the iteration was already
        cancelled.
        """
        with self._condition:
            if self._in_flight.pop(handle.iteration_id, None) is None:
                return False
            if commit is not None:
                commit()
            self._stats.completed += 1
            if failed:
                self._stats.failed += 1
            self._condition.notify_all()
            return True

    def cancel_inflight(self) -> int:
        with self._condition:
            handles = list(self._in_flight.values())
            self._in_flight.clear()
            for handle in handles:
                handle.interrupt.set()
            self._stats.cancelled += len(handles)
            self._condition.notify_all()
        return len(handles)

    def wait_idle(self, timeout_s: float) -> bool:
        deadline = time.monotonic() + max(timeout_s, 0.0)
        with self._condition:
            while self._in_flight:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._condition.wait(timeout=remaining)
            return True

    def stats(self) -> IterationStats:
        with self._condition:
            return dataclasses.replace(self._stats)


class IterationRunner:
    """Runs one workload iteration and forwards its result to the sink."""

    def __init__(
        self,
        scenario: str,
        workload: Workload,
        sink: MetricSink,
        tracker: IterationTracker,
    ) -> None:
        self._scenario = scenario
        self._workload = workload
        self._sink = sink
        self._tracker = tracker

    @property
    def tracker(self) -> IterationTracker:
        return self._tracker

    def run_once(self) -> IterationResult | None:
        handle = self._tracker.begin()
        recorder = IterationRecorder(scenario=self._scenario, interrupt=handle.interrupt)
        error: str | None = None
        started = time.perf_counter()
        with bind(recorder):
            try:
                self._workload()
            except Exception as exc:  # noqa: BLE001
                error = f"{type(exc).__name__}: {exc}"
                LOGGER.warning("Iteration in scenario %s raised %s", self._scenario, error)
        result = recorder.build_result(time.perf_counter() - started, error)

        accepted = self._tracker.finish(
            handle,
            failed=error is not None,
            commit=lambda: self._sink.record_iteration(result, self._scenario),
        )
        if not accepted:
            LOGGER.debug(
                "Discarding result of cancelled iteration %d in %s",
                handle.iteration_id,
                self._scenario,
            )
            return None
        return result


class LoopingWorker(threading.Thread):
    """A virtual user: runs iterations back to back until retired or halted."""

    def __init__(self, runner: IterationRunner, halt: threading.Event, name: str) -> None:
        super().__init__(name=name, daemon=True)
        self._runner = runner
        self._halt = halt
        self._retire = threading.Event()

    @property
    def retiring(self) -> bool:
        return self._retire.is_set()

    def retire(self) -> None:
        """Stop after the current iteration."""
        self._retire.set()

    def run(self) -> None:
        while not self._retire.is_set() and not self._halt.is_set():
            self._runner.run_once()


class WorkerPool:
    """Fixed set of pre-started slots that run ``job`` on demand.

    ``try_submit`` never queues: it claims an idle slot or reports failure.
    """

    def __init__(self, capacity: int, job: Callable[[], Any], name: str = "pool") -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._job = job
        self._name = name
        self._queue: queue.Queue[object] = queue.Queue()
        self._condition = threading.Condition()
        self._idle = capacity
        self._closed = False
        self._threads = [
            threading.Thread(target=self._serve, name=f"{name}-{index}", daemon=True)
            for index in range(capacity)
        ]

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def idle(self) -> int:
        with self._condition:
            return self._idle

    @property
    def busy(self) -> int:
        with self._condition:
            return self._capacity - self._idle

    def start(self) -> None:
        for thread in self._threads:
            thread.start()

    def try_submit(self) -> bool:
        with self._condition:
            if self._closed or self._idle == 0:
                return False
            self._idle -= 1
        self._queue.put(_RUN)
        return True

    def wait_idle(self, timeout_s: float) -> bool:
        deadline = time.monotonic() + max(timeout_s, 0.0)
        with self._condition:
            while self._idle < self._capacity:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._condition.wait(timeout=remaining)
            return True

    def shutdown(self) -> None:
        """Refuse new work and let every slot exit once its current job returns."""
        with self._condition:
            if self._closed:
                return
            self._closed = True
        for _ in self._threads:
            self._queue.put(_SHUTDOWN)

    def _serve(self) -> None:
        while True:
            item = self._queue.get()
            if item is _SHUTDOWN:
                return
            try:
                self._job()
            except Exception:  # noqa: BLE001
                LOGGER.exception("Job failed in %s", self._name)
            finally:
                with self._condition:
                    self._idle += 1
                    self._condition.notify_all()


def dispatch_arrivals(pool: WorkerPool, due: int) -> tuple[int, int]:
    """Start up to ``due`` iterations on free slots. Returns ``(started, dropped)``."""
    due = max(due, 0)
    started = 0
    while started < due and pool.try_submit():
        started += 1
    return started, due - started


__all__ = [
    "IterationHandle",
    "IterationRunner",
    "IterationTracker",
    "LoopingWorker",
    "WorkerPool",
    "dispatch_arrivals",
]
