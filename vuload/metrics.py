from __future__ import annotations

import itertools
import logging
import math
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Mapping

from .clock import Clock, MonotonicClock
from .results import IterationResult, RequestOutcome

LOGGER = logging.getLogger("vuload.metrics")

DEFAULT_RELATIVE_ACCURACY = 0.01
DEFAULT_MAX_BINS = 2048
DEFAULT_SHARDS = 16

# Values at or below this are counted in the zero bucket of the sketch.
_MIN_INDEXABLE = 1e-9


class MetricType(str, Enum):
    COUNTER = "counter"
    GAUGE = "gauge"
    RATE = "rate"
    TREND = "trend"


BUILTIN_METRICS: dict[str, MetricType] = {
    "http_reqs": MetricType.COUNTER,
    "http_req_duration": MetricType.TREND,
    "http_req_failed": MetricType.RATE,
    "checks": MetricType.RATE,
    "iterations": MetricType.COUNTER,
    "iteration_duration": MetricType.TREND,
    "dropped_iterations": MetricType.COUNTER,
    "interrupted_iterations": MetricType.COUNTER,
    "vus": MetricType.GAUGE,
    "vus_max": MetricType.GAUGE,
}

TREND_PERCENTILES: tuple[float, ...] = (90.0, 95.0, 99.0)


def metric_key(name: str, scenario: str | None = None) -> str:
    if scenario is None:
        return name
    return f"{name}{{scenario:{scenario}}}"


def percentile_label(percentile: float) -> str:
    text = f"{percentile:g}"
    return f"p({text})"


class QuantileSketch:
    """Log-bucketed quantile sketch with a relative error guarantee.

    Every positive value lands in bucket ``ceil(log_gamma(value))`` where
    ``gamma = (1 + alpha) / (1 - alpha)``. The representative of a bucket is
    within ``alpha`` (relative) of every value it holds, so any quantile
    estimate is within ``alpha`` of the true sample at that rank, regardless
    of how many samples were added. Memory is bounded by ``max_bins``; once
    exceeded the lowest buckets are collapsed, which only degrades the
    accuracy of the lowest quantiles.
    """

    def __init__(
        self,
        relative_accuracy: float = DEFAULT_RELATIVE_ACCURACY,
        max_bins: int = DEFAULT_MAX_BINS,
    ) -> None:
        if not 0 < relative_accuracy < 1:
            raise ValueError("relative_accuracy must be between 0 and 1")
        if max_bins < 1:
            raise ValueError("max_bins must be >= 1")
        self.relative_accuracy = relative_accuracy
        self.max_bins = max_bins
        self._gamma = (1 + relative_accuracy) / (1 - relative_accuracy)
        self._log_gamma = math.log(self._gamma)
        self._bins: dict[int, int] = {}
        self._zero_count = 0
        self.count = 0

    @property
    def bin_count(self) -> int:
        return len(self._bins) + (1 if self._zero_count else 0)

    def add(self, value: float, count: int = 1) -> None:
        if value <= _MIN_INDEXABLE:
            self._zero_count += count
        else:
            key = math.ceil(math.log(value) / self._log_gamma)
            self._bins[key] = self._bins.get(key, 0) + count
            if len(self._bins) > self.max_bins:
                self._collapse()
        self.count += count

    def merge(self, other: QuantileSketch) -> None:
        if not math.isclose(other.relative_accuracy, self.relative_accuracy):
            raise ValueError("cannot merge sketches with different accuracy")
        for key, count in other._bins.items():
            self._bins[key] = self._bins.get(key, 0) + count
        self._zero_count += other._zero_count
        self.count += other.count
        while len(self._bins) > self.max_bins:
            self._collapse()

    def copy(self) -> QuantileSketch:
        clone = QuantileSketch(self.relative_accuracy, self.max_bins)
        clone._bins = dict(self._bins)
        clone._zero_count = self._zero_count
        clone.count = self.count
        return clone

    def quantile(self, q: float) -> float | None:
        if not 0 <= q <= 1:
            raise ValueError("quantile must be within [0, 1]")
        if self.count == 0:
            return None
        rank = q * (self.count - 1)
        running = self._zero_count
        if running > rank:
            return 0.0
        key = None
        for key in sorted(self._bins):
            running += self._bins[key]
            if running > rank:
                return self._representative(key)
        return self._representative(key) if key is not None else 0.0

    def _representative(self, key: int) -> float:
        return 2.0 * self._gamma**key / (self._gamma + 1.0)

    def _collapse(self) -> None:
        lowest, second = sorted(self._bins)[:2]
        self._bins[second] += self._bins.pop(lowest)


class _Aggregate:
    metric_type: MetricType

    def merge(self, other: _Aggregate) -> None:
        raise NotImplementedError

    def copy(self) -> _Aggregate:
        raise NotImplementedError


class _CounterAggregate(_Aggregate):
    metric_type = MetricType.COUNTER

    def __init__(self) -> None:
        self.count = 0.0

    def add(self, value: float) -> None:
        self.count += value

    def merge(self, other: _Aggregate) -> None:
        assert isinstance(other, _CounterAggregate)
        self.count += other.count

    def copy(self) -> _CounterAggregate:
        clone = _CounterAggregate()
        clone.count = self.count
        return clone


class _RateAggregate(_Aggregate):
    metric_type = MetricType.RATE

    def __init__(self) -> None:
        self.trues = 0
        self.total = 0
        self.per_second: dict[int, list[int]] = {}

    def add(self, value: bool, second: int) -> None:
        bucket = self.per_second.setdefault(second, [0, 0])
        if value:
            self.trues += 1
            bucket[0] += 1
        self.total += 1
        bucket[1] += 1

    def merge(self, other: _Aggregate) -> None:
        assert isinstance(other, _RateAggregate)
        self.trues += other.trues
        self.total += other.total
        for second, (trues, total) in other.per_second.items():
            bucket = self.per_second.setdefault(second, [0, 0])
            bucket[0] += trues
            bucket[1] += total

    def copy(self) -> _RateAggregate:
        clone = _RateAggregate()
        clone.merge(self)
        return clone


class _TrendAggregate(_Aggregate):
    metric_type = MetricType.TREND

    def __init__(self, relative_accuracy: float) -> None:
        self.sketch = QuantileSketch(relative_accuracy)
        self.total = 0.0
        self.minimum = math.inf
        self.maximum = -math.inf

    @property
    def count(self) -> int:
        return self.sketch.count

    def add(self, value: float) -> None:
        self.sketch.add(value)
        self.total += value
        self.minimum = min(self.minimum, value)
        self.maximum = max(self.maximum, value)

    def merge(self, other: _Aggregate) -> None:
        assert isinstance(other, _TrendAggregate)
        self.sketch.merge(other.sketch)
        self.total += other.total
        self.minimum = min(self.minimum, other.minimum)
        self.maximum = max(self.maximum, other.maximum)

    def copy(self) -> _TrendAggregate:
        clone = _TrendAggregate(self.sketch.relative_accuracy)
        clone.merge(self)
        return clone


@dataclass(frozen=True)
class MetricAggregate:
    """Frozen view of one metric (optionally scoped to a scenario)."""

    name: str
    metric_type: MetricType
    values: Mapping[str, float]
    scenario: str | None = None
    sketch: QuantileSketch | None = field(default=None, repr=False, compare=False)
    per_second: Mapping[int, tuple[int, int]] = field(
        default_factory=dict, repr=False, compare=False
    )

    @property
    def key(self) -> str:
        return metric_key(self.name, self.scenario)

    @property
    def has_samples(self) -> bool:
        if self.metric_type is MetricType.GAUGE:
            return "value" in self.values
        return self.values.get("count", self.values.get("total", 0)) > 0

    def get(self, aggregation: str) -> float | None:
        if aggregation in self.values:
            return self.values[aggregation]
        if aggregation.startswith("p(") and self.sketch is not None:
            percentile = float(aggregation[2:-1])
            return self.percentile(percentile)
        return None

    def percentile(self, percentile: float) -> float | None:
        if self.sketch is None:
            return None
        estimate = self.sketch.quantile(percentile / 100.0)
        if estimate is None:
            return None
        return min(max(estimate, self.values["min"]), self.values["max"])

    def windowed_rate(self, window_s: float, end_s: float) -> float | None:
        """Rate over the whole one-second buckets inside ``[end_s - window_s, end_s]``.

        A bucket that starts before the window opens is left out.
        """
        first = math.ceil(end_s - window_s)
        trues = total = 0
        for second, (second_trues, second_total) in self.per_second.items():
            if second >= first:
                trues += second_trues
                total += second_total
        if total == 0:
            return None
        return trues / total


@dataclass(frozen=True)
class MetricSnapshot:
    aggregates: Mapping[str, MetricAggregate]
    duration_s: float

    def __iter__(self) -> Iterator[MetricAggregate]:
        return iter(self.aggregates.values())

    def __contains__(self, key: object) -> bool:
        return key in self.aggregates

    def get(self, key: str) -> MetricAggregate | None:
        return self.aggregates.get(key)

    def value(self, key: str, aggregation: str) -> float | None:
        aggregate = self.aggregates.get(key)
        if aggregate is None:
            return None
        return aggregate.get(aggregation)

    def scenarios(self) -> list[str]:
        return sorted({agg.scenario for agg in self if agg.scenario is not None})


class _Shard:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.aggregates: dict[tuple[str, str | None], _Aggregate] = {}


class MetricSink:
    """Concurrent accumulator for per-request and per-iteration outcomes.

    Writers are spread over ``shards`` independent lock-protected maps (each
    thread sticks to one shard), so a worker only ever waits for another
    worker's single aggregate update. Aggregates are merged when read.
    """

    def __init__(
        self,
        shards: int = DEFAULT_SHARDS,
        relative_accuracy: float = DEFAULT_RELATIVE_ACCURACY,
        clock: Clock | None = None,
    ) -> None:
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._clock = clock or MonotonicClock()
        self._relative_accuracy = relative_accuracy
        self._shards = [_Shard() for _ in range(shards)]
        self._shard_counter = itertools.count()
        self._local = threading.local()
        self._gauge_lock = threading.Lock()
        self._gauges: dict[tuple[str, str | None], dict[str, float]] = {}
        self._frozen = threading.Event()
        self._started_at: float | None = None
        self._ended_at: float | None = None
        self._discarded = 0

    @property
    def frozen(self) -> bool:
        return self._frozen.is_set()

    @property
    def discarded(self) -> int:
        return self._discarded

    def start(self) -> None:
        self._started_at = self._clock.now()

    def freeze(self) -> None:
        if self._frozen.is_set():
            return
        self._ended_at = self._clock.now()
        self._frozen.set()
        for shard in self._shards:
            # Waits out any writer that entered the shard before the flag was set.
            with shard.lock:
                pass
        LOGGER.debug("Metric sink frozen after %.2fs", self.elapsed())

    def elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        end = self._ended_at if self._ended_at is not None else self._clock.now()
        return max(end - self._started_at, 0.0)

    def add_counter(self, name: str, value: float = 1.0, scenario: str | None = None) -> None:
        with self._writable_shard() as shard:
            if shard is None:
                return
            aggregate = self._aggregate(shard, name, scenario, _CounterAggregate)
            aggregate.add(value)

    def add_rate(self, name: str, value: bool, scenario: str | None = None) -> None:
        second = int(self.elapsed())
        with self._writable_shard() as shard:
            if shard is None:
                return
            aggregate = self._aggregate(shard, name, scenario, _RateAggregate)
            aggregate.add(value, second)

    def add_trend(self, name: str, value: float, scenario: str | None = None) -> None:
        with self._writable_shard() as shard:
            if shard is None:
                return
            aggregate = self._aggregate(shard, name, scenario, _TrendAggregate)
            aggregate.add(value)

    def set_gauge(self, name: str, value: float, scenario: str | None = None) -> None:
        if self.frozen:
            return
        with self._gauge_lock:
            gauge = self._gauges.setdefault((name, scenario), {})
            gauge["value"] = value
            gauge["min"] = min(gauge.get("min", value), value)
            gauge["max"] = max(gauge.get("max", value), value)

    def record_request(self, outcome: RequestOutcome, scenario: str | None = None) -> None:
        second = int(self.elapsed())
        with self._writable_shard() as shard:
            if shard is None:
                return
            self._aggregate(shard, "http_reqs", scenario, _CounterAggregate).add(1)
            self._aggregate(shard, "http_req_duration", scenario, _TrendAggregate).add(
                outcome.duration_ms
            )
            self._aggregate(shard, "http_req_failed", scenario, _RateAggregate).add(
                outcome.failed, second
            )

    def record_iteration(self, result: IterationResult, scenario: str | None = None) -> None:
        for outcome in result.requests:
            self.record_request(outcome, scenario)
        second = int(self.elapsed())
        with self._writable_shard() as shard:
            if shard is None:
                return
            checks = self._aggregate(shard, "checks", scenario, _RateAggregate)
            for check in result.checks:
                checks.add(check.passed, second)
                self._aggregate(
                    shard, f"checks::{check.name}", scenario, _RateAggregate
                ).add(check.passed, second)
            self._aggregate(shard, "iterations", scenario, _CounterAggregate).add(1)
            self._aggregate(shard, "iteration_duration", scenario, _TrendAggregate).add(
                result.elapsed_s * 1000.0
            )

    def record_dropped(self, scenario: str | None, count: int = 1) -> None:
        if count > 0:
            self.add_counter("dropped_iterations", count, scenario)

    def record_interrupted(self, scenario: str | None, count: int = 1) -> None:
        if count > 0:
            self.add_counter("interrupted_iterations", count, scenario)

    def total(self, name: str) -> float:
        """Current total of a counter (or sample count of a trend/rate) across shards."""
        merged = _totals(self._collect()).get((name, None))
        if isinstance(merged, _CounterAggregate):
            return merged.count
        if isinstance(merged, _RateAggregate):
            return float(merged.total)
        if isinstance(merged, _TrendAggregate):
            return float(merged.count)
        return 0.0

    def snapshot(self) -> MetricSnapshot:
        duration = self.elapsed()
        collected = self._collect()
        aggregates: dict[str, MetricAggregate] = {}
        for (name, scenario), aggregate in _totals(collected).items():
            view = _freeze_aggregate(name, scenario, aggregate, duration)
            aggregates[view.key] = view
        for (name, scenario), aggregate in collected.items():
            if scenario is None:
                continue
            view = _freeze_aggregate(name, scenario, aggregate, duration)
            aggregates[view.key] = view

        with self._gauge_lock:
            gauges = {key: dict(values) for key, values in self._gauges.items()}
        for (name, scenario), values in gauges.items():
            view = MetricAggregate(
                name=name, metric_type=MetricType.GAUGE, values=values, scenario=scenario
            )
            aggregates[view.key] = view
        return MetricSnapshot(aggregates=aggregates, duration_s=duration)

    def _collect(self) -> dict[tuple[str, str | None], _Aggregate]:
        merged: dict[tuple[str, str | None], _Aggregate] = {}
        for shard in self._shards:
            with shard.lock:
                items = [(key, agg.copy()) for key, agg in shard.aggregates.items()]
            for key, aggregate in items:
                if key in merged:
                    merged[key].merge(aggregate)
                else:
                    merged[key] = aggregate
        return merged

    def _writable_shard(self) -> _ShardGuard:
        return _ShardGuard(self, self._shard())

    def _count_discarded(self) -> None:
        with self._gauge_lock:
            self._discarded += 1

    def _shard(self) -> _Shard:
        shard = getattr(self._local, "shard", None)
        if shard is None:
            shard = self._shards[next(self._shard_counter) % len(self._shards)]
            self._local.shard = shard
        return shard

    def _aggregate(self, shard: _Shard, name: str, scenario: str | None, factory) -> _Aggregate:
        key = (name, scenario)
        aggregate = shard.aggregates.get(key)
        if aggregate is None:
            if factory is _TrendAggregate:
                aggregate = _TrendAggregate(self._relative_accuracy)
            else:
                aggregate = factory()
            shard.aggregates[key] = aggregate
        return aggregate


class _ShardGuard:
    """Holds a shard lock for one update; yields None once the sink is frozen."""

    def __init__(self, sink: MetricSink, shard: _Shard) -> None:
        self._sink = sink
        self._shard = shard

    def __enter__(self) -> _Shard | None:
        self._shard.lock.acquire()
        if self._sink._frozen.is_set():
            self._sink._count_discarded()
            return None
        return self._shard

    def __exit__(self, exc_type, exc, tb) -> None:
        self._shard.lock.release()


def _totals(
    collected: Mapping[tuple[str, str | None], _Aggregate],
) -> dict[tuple[str, str | None], _Aggregate]:
    totals: dict[tuple[str, str | None], _Aggregate] = {}
    for (name, _scenario), aggregate in collected.items():
        key = (name, None)
        if key in totals:
            totals[key].merge(aggregate)
        else:
            totals[key] = aggregate.copy()
    return totals


def _freeze_aggregate(
    name: str, scenario: str | None, aggregate: _Aggregate, duration_s: float
) -> MetricAggregate:
    if isinstance(aggregate, _CounterAggregate):
        rate = aggregate.count / duration_s if duration_s > 0 else 0.0
        return MetricAggregate(
            name=name,
            metric_type=MetricType.COUNTER,
            values={"count": aggregate.count, "rate": rate},
            scenario=scenario,
        )
    if isinstance(aggregate, _RateAggregate):
        rate = aggregate.trues / aggregate.total if aggregate.total else 0.0
        return MetricAggregate(
            name=name,
            metric_type=MetricType.RATE,
            values={
                "rate": rate,
                "passes": float(aggregate.trues),
                "fails": float(aggregate.total - aggregate.trues),
                "total": float(aggregate.total),
            },
            scenario=scenario,
            per_second={
                second: (trues, total)
                for second, (trues, total) in aggregate.per_second.items()
            },
        )
    assert isinstance(aggregate, _TrendAggregate)
    if aggregate.count == 0:
        values = {"count": 0.0}
        return MetricAggregate(
            name=name, metric_type=MetricType.TREND, values=values, scenario=scenario
        )
    sketch = aggregate.sketch.copy()
    values = {
        "count": float(aggregate.count),
        "avg": aggregate.total / aggregate.count,
        "min": aggregate.minimum,
        "max": aggregate.maximum,
    }
    view = MetricAggregate(
        name=name,
        metric_type=MetricType.TREND,
        values=values,
        scenario=scenario,
        sketch=sketch,
    )
    values["med"] = view.percentile(50.0) or 0.0
    for percentile in TREND_PERCENTILES:
        values[percentile_label(percentile)] = view.percentile(percentile) or 0.0
    return view


__all__ = [
    "BUILTIN_METRICS",
    "MetricAggregate",
    "MetricSink",
    "MetricSnapshot",
    "MetricType",
    "QuantileSketch",
    "metric_key",
    "percentile_label",
]
