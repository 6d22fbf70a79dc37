"""End-to-end scheduling runs with short, local workloads."""

from __future__ import annotations

import threading
import time

import pytest

import vuload
from vuload.config import (
    ConstantConcurrency,
    RampingArrivalRate,
    RampingConcurrency,
    RunPlan,
    Scenario,
    Stage,
)
from vuload.context import current
from vuload.errors import ErrorKind
from vuload.results import RequestOutcome
from vuload.scheduler import TIMELINE_COLUMNS, Scheduler
from vuload.thresholds import parse_threshold


def _plan(*scenarios: Scenario, thresholds=()) -> RunPlan:
    return RunPlan(scenarios=tuple(scenarios), thresholds=tuple(thresholds))


def _assert_every_iteration_accounted(result) -> None:
    for stats in result.scenarios:
        assert stats.started == stats.completed + stats.cancelled


def test_constant_concurrency_runs_back_to_back_iterations():
    scenario = Scenario(
        name="steady",
        executor=ConstantConcurrency(count=10, duration_s=1.0),
        workload=lambda: time.sleep(0.1),
        graceful_stop_s=2.0,
    )

    result = Scheduler(_plan(scenario), tick_interval=0.01).run()

    stats = result.scenario("steady")
    assert 80 <= stats.completed <= 120
    assert stats.dropped == 0
    assert stats.cancelled == 0
    assert stats.peak_workers == 10
    assert result.snapshot.value("iterations", "count") == stats.completed
    assert result.snapshot.get("dropped_iterations") is None
    assert result.snapshot.value("vus_max", "max") == 10
    _assert_every_iteration_accounted(result)


def test_stop_cancels_iterations_that_outlive_graceful_stop():
    scenario = Scenario(
        name="slow",
        executor=ConstantConcurrency(count=3, duration_s=30.0),
        workload=lambda: vuload.sleep(10),
        graceful_stop_s=0.2,
    )
    scheduler = Scheduler(_plan(scenario), tick_interval=0.01)
    timer = threading.Timer(0.3, scheduler.stop)
    timer.start()

    started = time.monotonic()
    result = scheduler.run()
    timer.cancel()

    assert time.monotonic() - started < 5
    assert result.stopped
    stats = result.scenario("slow")
    assert stats.stopped_early
    assert stats.started == 3
    assert stats.cancelled == 3
    assert stats.completed == 0
    assert result.snapshot.value("interrupted_iterations", "count") == 3
    assert result.snapshot.get("iterations") is None
    _assert_every_iteration_accounted(result)


def test_iterations_finishing_within_graceful_stop_complete():
    scenario = Scenario(
        name="short",
        executor=ConstantConcurrency(count=2, duration_s=0.2),
        workload=lambda: time.sleep(0.3),
        graceful_stop_s=2.0,
    )

    result = Scheduler(_plan(scenario), tick_interval=0.01).run()

    stats = result.scenario("short")
    assert stats.completed == 2
    assert stats.cancelled == 0


def test_arrival_rate_overflow_is_dropped_and_reported():
    scenario = Scenario(
        name="burst",
        executor=RampingArrivalRate(
            pre_allocated=2, time_unit_s=1.0, stages=(Stage(1.0, 40),), start_rate=40
        ),
        workload=lambda: vuload.sleep(0.5),
        graceful_stop_s=1.0,
    )

    result = Scheduler(_plan(scenario), tick_interval=0.01, overflow_grace=0.2).run()

    stats = result.scenario("burst")
    assert stats.dropped > 0
    assert stats.started + stats.dropped == 40
    assert stats.started <= 6
    assert stats.overflow is not None
    assert stats.overflow.scenario == "burst"
    assert result.snapshot.value("dropped_iterations", "count") == stats.dropped
    assert result.snapshot.value("dropped_iterations{scenario:burst}", "count") == stats.dropped
    _assert_every_iteration_accounted(result)


def test_arrival_rate_within_capacity_drops_nothing():
    scenario = Scenario(
        name="paced",
        executor=RampingArrivalRate(
            pre_allocated=5, time_unit_s=1.0, stages=(Stage(1.0, 20),), start_rate=20
        ),
        workload=lambda: None,
    )

    result = Scheduler(_plan(scenario), tick_interval=0.01).run()

    stats = result.scenario("paced")
    assert stats.dropped == 0
    assert stats.started == 20
    assert stats.completed == 20
    assert stats.overflow is None


def test_arrival_rate_issues_iterations_due_after_the_last_tick():
    scenario = Scenario(
        name="coarse",
        executor=RampingArrivalRate(
            pre_allocated=50, time_unit_s=1.0, stages=(Stage(1.0, 20),), start_rate=20
        ),
        workload=lambda: None,
    )

    result = Scheduler(_plan(scenario), tick_interval=0.3).run()

    stats = result.scenario("coarse")
    assert stats.started + stats.dropped == 20
    assert stats.completed == stats.started
    _assert_every_iteration_accounted(result)


def test_ramping_concurrency_follows_stage_targets():
    scenario = Scenario(
        name="ramp",
        executor=RampingConcurrency(start_count=0, stages=(Stage(0.3, 4), Stage(0.3, 0))),
        workload=lambda: time.sleep(0.02),
        graceful_stop_s=1.0,
    )

    result = Scheduler(_plan(scenario), tick_interval=0.01, timeline_interval=0.05).run()

    stats = result.scenario("ramp")
    assert 1 <= stats.peak_workers <= 4
    assert stats.completed > 0
    assert list(result.timeline.columns) == TIMELINE_COLUMNS
    assert result.timeline["target"].max() <= 4
    _assert_every_iteration_accounted(result)


def test_scenarios_start_at_their_offsets():
    marks: dict[str, float] = {}
    origin = time.monotonic()

    def stamp(name: str):
        def workload() -> None:
            marks.setdefault(name, time.monotonic() - origin)
            time.sleep(0.01)

        return workload

    plan = _plan(
        Scenario("early", ConstantConcurrency(1, 0.2), stamp("early")),
        Scenario("late", ConstantConcurrency(1, 0.2), stamp("late"), start_offset_s=0.3),
    )

    result = Scheduler(plan, tick_interval=0.01).run()

    assert marks["late"] >= 0.3
    assert marks["early"] < marks["late"]
    assert all(stats.ran for stats in result.scenarios)


def test_max_duration_stops_the_run_and_skips_pending_scenarios():
    plan = _plan(
        Scenario("long", ConstantConcurrency(1, 60.0), lambda: vuload.sleep(0.02), graceful_stop_s=1),
        Scenario("never", ConstantConcurrency(1, 1.0), lambda: None, start_offset_s=30.0),
    )

    result = Scheduler(plan, tick_interval=0.01, max_duration=0.3).run()

    assert result.stopped
    assert result.duration_s < 5
    assert result.scenario("long").stopped_early
    assert not result.scenario("never").ran
    assert result.scenario("never").started == 0


def test_thresholds_decide_the_verdict():
    def failing_workload() -> None:
        current().add_request(RequestOutcome(500, 1.0, ErrorKind.STATUS))
        time.sleep(0.01)

    scenario = Scenario("api", ConstantConcurrency(2, 0.2), failing_workload)
    plan = _plan(
        scenario,
        thresholds=[
            parse_threshold("http_req_failed", "rate<0.1"),
            parse_threshold("http_req_duration", "p(95)<2000"),
        ],
    )

    result = Scheduler(plan, tick_interval=0.01).run()

    assert not result.passed
    assert [item.rule.base_metric for item in result.verdict.failures] == ["http_req_failed"]


def test_scheduler_rejects_non_positive_tick():
    scenario = Scenario("s", ConstantConcurrency(1, 1.0), lambda: None)
    with pytest.raises(ValueError):
        Scheduler(_plan(scenario), tick_interval=0)
