from __future__ import annotations

import logging
import operator
import re
from dataclasses import dataclass
from typing import Callable, Iterable

from .errors import ConfigurationError
from .metrics import BUILTIN_METRICS, MetricSnapshot, MetricType, metric_key

LOGGER = logging.getLogger("vuload.thresholds")

_EXPRESSION = re.compile(
    r"^\s*(?P<aggregation>avg|min|max|med|count|rate|value|p\(\s*(?P<percentile>\d+(?:\.\d+)?)\s*\))"
    r"\s*(?P<operator><=|>=|==|!=|<|>)\s*"
    r"(?P<bound>-?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?)\s*$"
)
_SELECTOR = re.compile(r"^(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?:\{scenario:(?P<scenario>[^{}]+)\})?$")

OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}

VALID_AGGREGATIONS: dict[MetricType, frozenset[str]] = {
    MetricType.TREND: frozenset({"avg", "min", "max", "med", "count", "p"}),
    MetricType.RATE: frozenset({"rate"}),
    MetricType.COUNTER: frozenset({"count", "rate"}),
    MetricType.GAUGE: frozenset({"value", "min", "max"}),
}


@dataclass(frozen=True)
class ThresholdRule:
    """A pass/fail rule such as ``http_req_duration: p(95)<2000``."""

    metric: str
    expression: str
    aggregation: str
    operator: str
    bound: float
    base_metric: str
    scenario: str | None = None
    window_s: float | None = None

    @property
    def key(self) -> str:
        return metric_key(self.base_metric, self.scenario)

    def compare(self, observed: float) -> bool:
        return OPERATORS[self.operator](observed, self.bound)

    def describe(self) -> str:
        text = f"{self.key}: {self.expression}"
        if self.window_s is not None:
            text += f" (window {self.window_s:g}s)"
        return text


def parse_threshold(metric: str, expression: str, window_s: float | None = None) -> ThresholdRule:
    selector = _SELECTOR.match(metric.replace(" ", ""))
    if selector is None:
        raise ConfigurationError(f"invalid threshold metric selector {metric!r}")
    base_metric = selector.group("name")
    scenario = selector.group("scenario")
    metric_type = BUILTIN_METRICS.get(base_metric)
    if metric_type is None:
        raise ConfigurationError(f"threshold on unknown metric {base_metric!r}")

    if not isinstance(expression, str):
        raise ConfigurationError(f"threshold for {metric!r} must be a string")
    match = _EXPRESSION.match(expression)
    if match is None:
        raise ConfigurationError(f"cannot parse threshold {expression!r} for {metric!r}")

    aggregation = match.group("aggregation").replace(" ", "")
    family = "p" if match.group("percentile") is not None else aggregation
    if family not in VALID_AGGREGATIONS[metric_type]:
        raise ConfigurationError(
            f"aggregation {aggregation!r} is not available on {metric_type.value} metric {base_metric!r}"
        )
    if family == "p":
        percentile = float(match.group("percentile"))
        if not 0 <= percentile <= 100:
            raise ConfigurationError(f"percentile out of range in {expression!r}")
        aggregation = f"p({percentile:g})"
    if window_s is not None:
        if metric_type is not MetricType.RATE:
            raise ConfigurationError(
                f"windowed thresholds are only supported on rate metrics, not {base_metric!r}"
            )
        if window_s <= 0:
            raise ConfigurationError(f"threshold window for {metric!r} must be > 0")

    return ThresholdRule(
        metric=metric,
        expression=expression.strip(),
        aggregation=aggregation,
        operator=match.group("operator"),
        bound=float(match.group("bound")),
        base_metric=base_metric,
        scenario=scenario,
        window_s=window_s,
    )


@dataclass(frozen=True)
class ThresholdResult:
    rule: ThresholdRule
    observed: float | None
    passed: bool

    @property
    def no_data(self) -> bool:
        return self.observed is None


@dataclass(frozen=True)
class Verdict:
    results: tuple[ThresholdResult, ...]

    @property
    def passed(self) -> bool:
        return all(result.passed for result in self.results)

    @property
    def failures(self) -> list[ThresholdResult]:
        return [result for result in self.results if not result.passed]

    def for_metric(self, key: str) -> list[ThresholdResult]:
        return [result for result in self.results if result.rule.key == key]


def evaluate_rule(rule: ThresholdRule, snapshot: MetricSnapshot) -> ThresholdResult:
    aggregate = snapshot.get(rule.key)
    observed: float | None = None
    if aggregate is not None and aggregate.has_samples:
        if rule.window_s is not None:
            observed = aggregate.windowed_rate(rule.window_s, snapshot.duration_s)
        else:
            observed = aggregate.get(rule.aggregation)
    if observed is None:
        LOGGER.warning("Threshold %s has no data; not counted as a failure", rule.describe())
        return ThresholdResult(rule=rule, observed=None, passed=True)
    return ThresholdResult(rule=rule, observed=observed, passed=rule.compare(observed))


def evaluate_thresholds(
    rules: Iterable[ThresholdRule], snapshot: MetricSnapshot
) -> Verdict:
    results = tuple(evaluate_rule(rule, snapshot) for rule in rules)
    for result in results:
        if not result.passed:
            LOGGER.info(
                "Threshold crossed: %s (observed %.4f)", result.rule.describe(), result.observed
            )
    return Verdict(results=results)


__all__ = [
    "ThresholdResult",
    "ThresholdRule",
    "Verdict",
    "evaluate_rule",
    "evaluate_thresholds",
    "parse_threshold",
]
