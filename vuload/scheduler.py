from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Any

import pandas as pd

from .clock import Clock, MonotonicClock, RunClock
from .config import RunPlan, Scenario
from .errors import CapacityOverflow
from .executors import (
    ARRIVAL_RATE,
    ExecutorStrategy,
    RampingArrivalRateStrategy,
    TargetSample,
    build_strategy,
)
from .metrics import MetricSink, MetricSnapshot
from .thresholds import Verdict, evaluate_thresholds
from .workers import (
    IterationRunner,
    IterationTracker,
    LoopingWorker,
    WorkerPool,
    dispatch_arrivals,
)

LOGGER = logging.getLogger("vuload.scheduler")

DEFAULT_TICK_INTERVAL_S = 0.05
DEFAULT_OVERFLOW_GRACE_S = 5.0
DEFAULT_TIMELINE_INTERVAL_S = 1.0

TIMELINE_COLUMNS = [
    "scenario",
    "run_elapsed_s",
    "scenario_elapsed_s",
    "target",
    "active_workers",
    "started",
    "dropped",
    "in_flight",
]

# Absorbs float error in the pacing integral so an exact whole number is not lost.
_PACING_EPSILON = 1e-9


@dataclass
class ScenarioStats:
    name: str
    executor: str
    exec_name: str | None = None
    start_offset_s: float = 0.0
    started: int = 0
    completed: int = 0
    cancelled: int = 0
    failed: int = 0
    dropped: int = 0
    peak_workers: int = 0
    ran: bool = False
    stopped_early: bool = False
    overflow: CapacityOverflow | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "executor": self.executor,
            "exec": self.exec_name,
            "start_offset_s": self.start_offset_s,
            "started": self.started,
            "completed": self.completed,
            "cancelled": self.cancelled,
            "failed": self.failed,
            "dropped": self.dropped,
            "peak_workers": self.peak_workers,
            "ran": self.ran,
            "stopped_early": self.stopped_early,
            "capacity_overflow": str(self.overflow) if self.overflow else None,
        }


class TimelineCollector:
    """Thread-safe store of per-scenario timeline samples."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rows: list[dict[str, Any]] = []

    def record(self, **row: Any) -> None:
        with self._lock:
            self._rows.append(row)

    def build_dataframe(self) -> pd.DataFrame:
        with self._lock:
            rows = list(self._rows)
        if not rows:
            return pd.DataFrame(columns=TIMELINE_COLUMNS)
        df = pd.DataFrame(rows, columns=TIMELINE_COLUMNS)
        return df.sort_values(["run_elapsed_s", "scenario"]).reset_index(drop=True)


@dataclass(frozen=True)
class RunResult:
    snapshot: MetricSnapshot
    verdict: Verdict
    scenarios: tuple[ScenarioStats, ...]
    timeline: pd.DataFrame = field(repr=False, compare=False)
    started_at: float
    finished_at: float
    stopped: bool = False
    discarded_samples: int = 0

    @property
    def passed(self) -> bool:
        return self.verdict.passed

    @property
    def duration_s(self) -> float:
        return max(self.finished_at - self.started_at, 0.0)

    def scenario(self, name: str) -> ScenarioStats:
        for stats in self.scenarios:
            if stats.name == name:
                return stats
        raise KeyError(name)


class _ScenarioController:
    """Control loop for one scenario; owns its strategy state and worker lanes."""

    def __init__(
        self,
        scenario: Scenario,
        sink: MetricSink,
        run_clock: RunClock,
        stop_event: threading.Event,
        timeline: TimelineCollector,
        clock: Clock,
        tick_interval_s: float,
        overflow_grace_s: float,
        timeline_interval_s: float,
    ) -> None:
        self.scenario = scenario
        self.strategy: ExecutorStrategy = build_strategy(scenario.executor)
        self.stats = ScenarioStats(
            name=scenario.name,
            executor=scenario.executor.executor_name,
            exec_name=scenario.exec_name,
            start_offset_s=scenario.start_offset_s,
        )
        self._sink = sink
        self._run_clock = run_clock
        self._stop_event = stop_event
        self._timeline = timeline
        self._clock = clock
        self._tick = tick_interval_s
        self._overflow_grace = overflow_grace_s
        self._timeline_interval = timeline_interval_s

        self._scenario_clock = RunClock(clock)
        self._halt = threading.Event()
        self._tracker = IterationTracker()
        self._runner = IterationRunner(scenario.name, scenario.workload, sink, self._tracker)
        self._workers: list[LoopingWorker] = []
        self._worker_ids = 0
        self._pool: WorkerPool | None = None
        self._issued = 0
        self._dropped = 0
        self._overflow_since: float | None = None
        self._overflow_dropped = 0
        self._next_sample_at = 0.0
        self._active_lock = threading.Lock()
        self._active = 0
        self._allocated = 0

    @property
    def active_workers(self) -> int:
        with self._active_lock:
            return self._active

    @property
    def allocated_workers(self) -> int:
        with self._active_lock:
            return self._allocated

    def run(self) -> None:
        if self._run_clock.wait_until(self.scenario.start_offset_s, self._stop_event):
            LOGGER.info("Scenario %s not started: run stopped first", self.scenario.name)
            return
        self.stats.ran = True
        self._scenario_clock.start()
        LOGGER.info(
            "Scenario %s started (%s, %.1fs)",
            self.scenario.name,
            self.stats.executor,
            self.strategy.total_duration,
        )
        if self.strategy.kind == ARRIVAL_RATE:
            self._pool = WorkerPool(
                self.strategy.max_workers,
                self._runner.run_once,
                name=f"{self.scenario.name}-slot",
            )
            self._pool.start()
        self._set_allocated(self.strategy.max_workers)
        try:
            self._drive()
        finally:
            self._wind_down()

    def _drive(self) -> None:
        while True:
            elapsed = self._scenario_clock.elapsed()
            sample = self.strategy.sample(elapsed)
            if sample.done:
                if self._pool is not None:
                    # Iterations due since the previous tick still get issued.
                    self._step_arrivals(self.strategy.total_duration)
                break
            if self._stop_event.is_set():
                self.stats.stopped_early = True
                break
            if self._pool is not None:
                self._step_arrivals(elapsed)
            else:
                self._step_concurrency(sample)
            self._maybe_sample(elapsed, sample)
            self._clock.wait(self._stop_event, self._tick)
        self._maybe_sample(self._scenario_clock.elapsed(), sample, force=True)

    def _step_concurrency(self, sample: TargetSample) -> None:
        desired = min(int(math.floor(sample.value)), self.strategy.max_workers)
        while len(self._workers) < desired:
            self._worker_ids += 1
            worker = LoopingWorker(
                self._runner, self._halt, name=f"{self.scenario.name}-vu-{self._worker_ids}"
            )
            self._workers.append(worker)
            worker.start()
        while len(self._workers) > desired:
            self._workers.pop().retire()
        self._set_active(len(self._workers))

    def _step_arrivals(self, elapsed: float) -> None:
        assert isinstance(self.strategy, RampingArrivalRateStrategy)
        assert self._pool is not None
        expected = int(math.floor(self.strategy.expected_iterations(elapsed) + _PACING_EPSILON))
        due = expected - self._issued
        if due > 0:
            # Dropped iterations count as issued: they are never retried.
            self._issued = expected
            _, dropped = dispatch_arrivals(self._pool, due)
            if dropped:
                self._dropped += dropped
                self._sink.record_dropped(self.scenario.name, dropped)
                self._track_overflow(elapsed, dropped)
        if self._pool.idle > 0:
            self._overflow_since = None
            self._overflow_dropped = 0
        self._set_active(self._pool.busy)

    def _track_overflow(self, elapsed: float, dropped: int) -> None:
        if self._overflow_since is None:
            self._overflow_since = elapsed
        self._overflow_dropped += dropped
        sustained = elapsed - self._overflow_since
        if self.stats.overflow is None and sustained >= self._overflow_grace:
            overflow = CapacityOverflow(self.scenario.name, self._overflow_dropped, sustained)
            self.stats.overflow = overflow
            LOGGER.warning("%s; consider raising preAllocatedVUs", overflow)

    def _maybe_sample(self, elapsed: float, sample: TargetSample, force: bool = False) -> None:
        if not force and elapsed < self._next_sample_at:
            return
        self._next_sample_at = elapsed + self._timeline_interval
        self._timeline.record(
            scenario=self.scenario.name,
            run_elapsed_s=round(self._run_clock.elapsed(), 3),
            scenario_elapsed_s=round(elapsed, 3),
            target=sample.value,
            active_workers=self.active_workers,
            started=self._tracker.stats().started,
            dropped=self._dropped,
            in_flight=self._tracker.in_flight,
        )
        self._sink.set_gauge("vus", self.active_workers, self.scenario.name)

    def _wind_down(self) -> None:
        self._halt.set()
        for worker in self._workers:
            worker.retire()
        if self._pool is not None:
            self._pool.shutdown()

        grace = self.scenario.graceful_stop_s
        if not self._tracker.wait_idle(grace):
            cancelled = self._tracker.cancel_inflight()
            if cancelled:
                LOGGER.warning(
                    "Scenario %s: %d iteration(s) still running after %.1fs graceful stop; cancelled",
                    self.scenario.name,
                    cancelled,
                    grace,
                )
                self._sink.record_interrupted(self.scenario.name, cancelled)
        self._workers.clear()
        self._set_active(0)
        self._sink.set_gauge("vus", 0, self.scenario.name)

        tracked = self._tracker.stats()
        self.stats.started = tracked.started
        self.stats.completed = tracked.completed
        self.stats.cancelled = tracked.cancelled
        self.stats.failed = tracked.failed
        self.stats.dropped = self._dropped
        LOGGER.info(
            "Scenario %s finished: %d completed, %d cancelled, %d dropped",
            self.scenario.name,
            tracked.completed,
            tracked.cancelled,
            self._dropped,
        )

    def _set_active(self, count: int) -> None:
        with self._active_lock:
            self._active = count
        self.stats.peak_workers = max(self.stats.peak_workers, count)

    def _set_allocated(self, count: int) -> None:
        with self._active_lock:
            self._allocated = count
        self._sink.set_gauge("vus_max", count, self.scenario.name)


class Scheduler:
    """Runs every scenario of a plan on its own control thread and judges the result."""

    def __init__(
        self,
        plan: RunPlan,
        sink: MetricSink | None = None,
        tick_interval: float = DEFAULT_TICK_INTERVAL_S,
        overflow_grace: float = DEFAULT_OVERFLOW_GRACE_S,
        timeline_interval: float = DEFAULT_TIMELINE_INTERVAL_S,
        max_duration: float | None = None,
        clock: Clock | None = None,
    ) -> None:
        if tick_interval <= 0:
            raise ValueError("tick_interval must be > 0")
        self._plan = plan
        self._clock = clock or MonotonicClock()
        self._sink = sink or MetricSink(clock=self._clock)
        self._tick = tick_interval
        self._max_duration = max_duration
        self._stop_event = threading.Event()
        self._run_clock = RunClock(self._clock)
        self._timeline = TimelineCollector()
        self._controllers = [
            _ScenarioController(
                scenario,
                sink=self._sink,
                run_clock=self._run_clock,
                stop_event=self._stop_event,
                timeline=self._timeline,
                clock=self._clock,
                tick_interval_s=tick_interval,
                overflow_grace_s=overflow_grace,
                timeline_interval_s=timeline_interval,
            )
            for scenario in plan
        ]

    @property
    def sink(self) -> MetricSink:
        return self._sink

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Stop issuing iterations; in-flight ones get their graceful stop."""
        if not self._stop_event.is_set():
            LOGGER.info("Stop requested; winding down scenarios")
        self._stop_event.set()

    def run(self) -> RunResult:
        started_at = time.time()
        self._sink.start()
        self._run_clock.start()
        LOGGER.info(
            "Starting run: %d scenario(s), scheduled duration %.1fs",
            len(self._controllers),
            self._plan.duration_s,
        )
        threads = [
            threading.Thread(
                target=controller.run, name=f"scenario-{controller.scenario.name}", daemon=True
            )
            for controller in self._controllers
        ]
        for thread in threads:
            thread.start()

        while any(thread.is_alive() for thread in threads):
            if (
                self._max_duration is not None
                and not self._stop_event.is_set()
                and self._run_clock.elapsed() >= self._max_duration
            ):
                LOGGER.warning("Max duration of %.1fs reached", self._max_duration)
                self.stop()
            self._update_run_gauges()
            for thread in threads:
                thread.join(timeout=self._tick)
                if thread.is_alive():
                    break

        self._sink.set_gauge("vus", 0)
        self._sink.freeze()
        snapshot = self._sink.snapshot()
        verdict = evaluate_thresholds(self._plan.thresholds, snapshot)
        finished_at = time.time()
        if self._sink.discarded:
            LOGGER.debug("%d late sample(s) discarded after freeze", self._sink.discarded)
        LOGGER.info(
            "Run finished in %.1fs: thresholds %s",
            finished_at - started_at,
            "passed" if verdict.passed else "FAILED",
        )
        return RunResult(
            snapshot=snapshot,
            verdict=verdict,
            scenarios=tuple(controller.stats for controller in self._controllers),
            timeline=self._timeline.build_dataframe(),
            started_at=started_at,
            finished_at=finished_at,
            stopped=self._stop_event.is_set(),
            discarded_samples=self._sink.discarded,
        )

    def _update_run_gauges(self) -> None:
        self._sink.set_gauge(
            "vus", sum(controller.active_workers for controller in self._controllers)
        )
        self._sink.set_gauge(
            "vus_max", sum(controller.allocated_workers for controller in self._controllers)
        )


__all__ = [
    "DEFAULT_OVERFLOW_GRACE_S",
    "DEFAULT_TICK_INTERVAL_S",
    "DEFAULT_TIMELINE_INTERVAL_S",
    "RunResult",
    "ScenarioStats",
    "Scheduler",
    "TimelineCollector",
    "dispatch_arrivals",
]
