"""Target curves of the executor strategies."""

from __future__ import annotations

import itertools
import random

import pytest

from vuload.config import ConstantConcurrency, RampingArrivalRate, RampingConcurrency, Stage
from vuload.executors import (
    ARRIVAL_RATE,
    CONCURRENCY,
    ConstantConcurrencyStrategy,
    ExecutorStrategy,
    RampingArrivalRateStrategy,
    RampingConcurrencyStrategy,
    StageTimeline,
    build_strategy,
)


def _random_stages(rng: random.Random) -> tuple[Stage, ...]:
    return tuple(
        Stage(duration_s=rng.uniform(0.1, 120.0), target=float(rng.randint(0, 200)))
        for _ in range(rng.randint(1, 8))
    )


def test_boundary_values_equal_stage_targets_exactly():
    rng = random.Random(1234)
    for _ in range(200):
        stages = _random_stages(rng)
        timeline = StageTimeline(rng.randint(0, 50), stages)
        boundaries = list(itertools.accumulate(stage.duration_s for stage in stages))
        for boundary, stage in zip(boundaries, stages):
            assert timeline.value_at(boundary) == stage.target


def test_interpolates_linearly_inside_a_stage():
    timeline = StageTimeline(0, (Stage(10, 20), Stage(10, 0)))

    assert timeline.value_at(0) == 0
    assert timeline.value_at(5) == pytest.approx(10)
    assert timeline.value_at(15) == pytest.approx(10)
    assert timeline.value_at(25) == 0


def test_zero_duration_stage_is_an_instant_jump():
    leading = StageTimeline(0, (Stage(0, 10), Stage(10, 10)))
    assert leading.value_at(0) == 10
    assert leading.value_at(5) == 10

    middle = StageTimeline(0, (Stage(10, 5), Stage(0, 20), Stage(10, 20)))
    assert middle.value_at(9.999) == pytest.approx(5, abs=1e-3)
    assert middle.value_at(10) == 20
    assert middle.value_at(15) == 20


def test_done_is_reported_at_total_duration_and_never_before():
    rng = random.Random(99)
    for _ in range(100):
        stages = _random_stages(rng)
        total = sum(stage.duration_s for stage in stages)
        strategy = RampingConcurrencyStrategy(RampingConcurrency(start_count=0, stages=stages))
        assert strategy.total_duration == pytest.approx(total)
        for fraction in (0.0, 0.25, 0.5, 0.999):
            assert not strategy.sample(total * fraction).done
        assert strategy.sample(strategy.total_duration).done
        assert strategy.sample(strategy.total_duration + 1).done


def test_constant_strategy_holds_count_until_done():
    strategy = ConstantConcurrencyStrategy(ConstantConcurrency(count=7, duration_s=10))

    assert strategy.kind == CONCURRENCY
    assert strategy.max_workers == 7
    assert strategy.sample(0).value == 7
    assert not strategy.sample(9.999).done
    assert strategy.sample(10).done


def test_ramping_concurrency_worker_ceiling_is_the_floored_peak():
    strategy = RampingConcurrencyStrategy(
        RampingConcurrency(start_count=1, stages=(Stage(5, 2.5), Stage(5, 1)))
    )
    assert strategy.max_workers == 2


def test_arrival_rate_expected_iterations_integrates_the_rate():
    ramp = RampingArrivalRateStrategy(
        RampingArrivalRate(pre_allocated=5, time_unit_s=1, stages=(Stage(10, 10),))
    )
    assert ramp.kind == ARRIVAL_RATE
    assert ramp.max_workers == 5
    assert ramp.expected_iterations(0) == 0
    assert ramp.expected_iterations(10) == pytest.approx(50)
    assert ramp.expected_iterations(5) == pytest.approx(12.5)
    assert ramp.expected_iterations(20) == pytest.approx(50)

    steady = RampingArrivalRateStrategy(
        RampingArrivalRate(pre_allocated=5, time_unit_s=60, stages=(Stage(120, 30),), start_rate=30)
    )
    assert steady.expected_iterations(60) == pytest.approx(30)
    assert steady.sample(60).value == 30


def test_build_strategy_dispatches_on_config_type():
    assert isinstance(build_strategy(ConstantConcurrency(1, 1)), ConstantConcurrencyStrategy)
    assert isinstance(
        build_strategy(RampingConcurrency(0, (Stage(1, 1),))), RampingConcurrencyStrategy
    )
    assert isinstance(
        build_strategy(RampingArrivalRate(1, 1, (Stage(1, 1),))), RampingArrivalRateStrategy
    )


def test_strategy_without_worker_bound_cannot_be_built():
    class Unbounded(ExecutorStrategy):
        @property
        def total_duration(self) -> float:
            return 1.0

        def sample(self, elapsed_s):
            return None

    with pytest.raises(TypeError):
        Unbounded()
