from __future__ import annotations

import bisect
import itertools
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Sequence

from .config import (
    ConstantConcurrency,
    ExecutorConfig,
    RampingArrivalRate,
    RampingConcurrency,
    Stage,
)
from .errors import ConfigurationError

CONCURRENCY = "concurrency"
ARRIVAL_RATE = "arrival-rate"


@dataclass(frozen=True)
class TargetSample:
    value: float
    done: bool


class ExecutorStrategy(ABC):
    """Decides, for an elapsed scenario time, how much work should be in flight."""

    kind: str = CONCURRENCY

    @property
    @abstractmethod
    def total_duration(self) -> float: ...

    @abstractmethod
    def sample(self, elapsed_s: float) -> TargetSample: ...

    @property
    @abstractmethod
    def max_workers(self) -> int:
        """Upper bound on the worker lanes this strategy can ask for."""


class ConstantConcurrencyStrategy(ExecutorStrategy):
    def __init__(self, config: ConstantConcurrency) -> None:
        self._count = config.count
        self._duration = config.duration_s

    @property
    def total_duration(self) -> float:
        return self._duration

    @property
    def max_workers(self) -> int:
        return self._count

    def sample(self, elapsed_s: float) -> TargetSample:
        if elapsed_s >= self._duration:
            return TargetSample(value=float(self._count), done=True)
        return TargetSample(value=float(self._count), done=False)


class StageTimeline:
    """Piecewise-linear curve through ``start`` and each stage's target.

    Boundaries are the cumulative stage durations. Inside a stage the value is
    interpolated from the previous boundary value; exactly on a boundary the
    value is that stage's target. A zero-duration stage has no interior, so
    the curve jumps straight to its target.
    """

    def __init__(self, start: float, stages: Sequence[Stage]) -> None:
        if not stages:
            raise ConfigurationError("stage list must not be empty")
        self._starts = [float(start)] + [float(stage.target) for stage in stages]
        self._durations = [float(stage.duration_s) for stage in stages]
        self._boundaries = [0.0] + list(itertools.accumulate(self._durations))
        # Area under the curve up to each boundary, for arrival pacing.
        self._areas = [0.0]
        for index, duration in enumerate(self._durations):
            segment = duration * (self._starts[index] + self._starts[index + 1]) / 2.0
            self._areas.append(self._areas[-1] + segment)

    @property
    def total_duration(self) -> float:
        return self._boundaries[-1]

    @property
    def peak(self) -> float:
        return max(self._starts)

    @property
    def boundaries(self) -> list[float]:
        return list(self._boundaries)

    def value_at(self, t: float) -> float:
        if t <= 0:
            return self._starts[0] if self._durations[0] > 0 else self._value_after_jumps(0)
        if t >= self.total_duration:
            return self._starts[-1]
        index = bisect.bisect_right(self._boundaries, t) - 1
        begin = self._boundaries[index]
        duration = self._durations[index]
        start_value = self._starts[index]
        end_value = self._starts[index + 1]
        return start_value + (end_value - start_value) * (t - begin) / duration

    def area_until(self, t: float) -> float:
        """Integral of the curve from 0 to ``t``."""
        if t <= 0:
            return 0.0
        if t >= self.total_duration:
            return self._areas[-1]
        index = bisect.bisect_right(self._boundaries, t) - 1
        begin = self._boundaries[index]
        start_value = self._starts[index]
        current = self.value_at(t)
        return self._areas[index] + (t - begin) * (start_value + current) / 2.0

    def _value_after_jumps(self, index: int) -> float:
        # Leading zero-duration stages apply immediately at t = 0.
        while index < len(self._durations) and self._durations[index] == 0:
            index += 1
        return self._starts[index]


class RampingConcurrencyStrategy(ExecutorStrategy):
    def __init__(self, config: RampingConcurrency) -> None:
        self._timeline = StageTimeline(config.start_count, config.stages)

    @property
    def total_duration(self) -> float:
        return self._timeline.total_duration

    @property
    def max_workers(self) -> int:
        return int(math.floor(self._timeline.peak))

    @property
    def timeline(self) -> StageTimeline:
        return self._timeline

    def sample(self, elapsed_s: float) -> TargetSample:
        return TargetSample(
            value=self._timeline.value_at(elapsed_s),
            done=elapsed_s >= self._timeline.total_duration,
        )


class RampingArrivalRateStrategy(ExecutorStrategy):
    """Iteration starts per ``time_unit``, independent of how many workers are busy."""

    kind = ARRIVAL_RATE

    def __init__(self, config: RampingArrivalRate) -> None:
        self._timeline = StageTimeline(config.start_rate, config.stages)
        self._time_unit = config.time_unit_s
        self._pre_allocated = config.pre_allocated

    @property
    def total_duration(self) -> float:
        return self._timeline.total_duration

    @property
    def max_workers(self) -> int:
        return self._pre_allocated

    @property
    def time_unit(self) -> float:
        return self._time_unit

    def sample(self, elapsed_s: float) -> TargetSample:
        return TargetSample(
            value=self._timeline.value_at(elapsed_s),
            done=elapsed_s >= self._timeline.total_duration,
        )

    def expected_iterations(self, elapsed_s: float) -> float:
        """Iterations that should have been started by ``elapsed_s``."""
        return self._timeline.area_until(elapsed_s) / self._time_unit


def build_strategy(config: ExecutorConfig) -> ExecutorStrategy:
    if isinstance(config, ConstantConcurrency):
        return ConstantConcurrencyStrategy(config)
    if isinstance(config, RampingConcurrency):
        return RampingConcurrencyStrategy(config)
    if isinstance(config, RampingArrivalRate):
        return RampingArrivalRateStrategy(config)
    raise ConfigurationError(f"unsupported executor config: {config!r}")


__all__ = [
    "ARRIVAL_RATE",
    "CONCURRENCY",
    "ConstantConcurrencyStrategy",
    "ExecutorStrategy",
    "RampingArrivalRateStrategy",
    "RampingConcurrencyStrategy",
    "StageTimeline",
    "TargetSample",
    "build_strategy",
]
