from __future__ import annotations

import importlib
import json
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping, Sequence, Union

from .errors import ConfigurationError
from .thresholds import ThresholdRule, parse_threshold

Workload = Callable[[], Any]

DEFAULT_GRACEFUL_STOP_S = 30.0

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Any, field_name: str = "duration") -> float:
    """Convert ``"1m30s"``, ``"500ms"``, ``"2h"`` or a number of seconds to seconds."""
    if isinstance(value, bool):
        raise ConfigurationError(f"{field_name}: expected a duration, got {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip().replace(" ", "")
        if not text:
            raise ConfigurationError(f"{field_name}: empty duration")
        try:
            seconds = float(text)
        except ValueError:
            position = 0
            seconds = 0.0
            for match in _DURATION_PART.finditer(text):
                if match.start() != position:
                    break
                seconds += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
                position = match.end()
            if position != len(text):
                raise ConfigurationError(
                    f"{field_name}: cannot parse duration {value!r}"
                ) from None
    else:
        raise ConfigurationError(f"{field_name}: expected a duration, got {value!r}")
    if not math.isfinite(seconds) or seconds < 0:
        raise ConfigurationError(f"{field_name}: duration must be >= 0, got {value!r}")
    return seconds


def format_duration(seconds: float) -> str:
    if seconds < 1 and seconds > 0:
        return f"{seconds * 1000:g}ms"
    minutes, secs = divmod(seconds, 60.0)
    hours, minutes = divmod(int(minutes), 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs:g}s")
    return "".join(parts)


@dataclass(frozen=True)
class Stage:
    duration_s: float
    target: float

    def __post_init__(self) -> None:
        if self.duration_s < 0:
            raise ConfigurationError(f"stage duration must be >= 0, got {self.duration_s}")
        if self.target < 0:
            raise ConfigurationError(f"stage target must be >= 0, got {self.target}")


def _validate_stages(stages: Sequence[Stage], owner: str) -> None:
    if not stages:
        raise ConfigurationError(f"{owner}: stages must not be empty")
    if sum(stage.duration_s for stage in stages) <= 0:
        raise ConfigurationError(f"{owner}: stages must span a positive duration")


@dataclass(frozen=True)
class ConstantConcurrency:
    count: int
    duration_s: float

    executor_name = "constant-vus"

    def __post_init__(self) -> None:
        if self.count < 1:
            raise ConfigurationError(f"constant-vus: vus must be >= 1, got {self.count}")
        if self.duration_s <= 0:
            raise ConfigurationError("constant-vus: duration must be > 0")

    @property
    def total_duration_s(self) -> float:
        return self.duration_s


@dataclass(frozen=True)
class RampingConcurrency:
    start_count: int
    stages: tuple[Stage, ...]

    executor_name = "ramping-vus"

    def __post_init__(self) -> None:
        if self.start_count < 0:
            raise ConfigurationError("ramping-vus: startVUs must be >= 0")
        _validate_stages(self.stages, self.executor_name)

    @property
    def total_duration_s(self) -> float:
        return sum(stage.duration_s for stage in self.stages)


@dataclass(frozen=True)
class RampingArrivalRate:
    pre_allocated: int
    time_unit_s: float
    stages: tuple[Stage, ...]
    start_rate: float = 0.0

    executor_name = "ramping-arrival-rate"

    def __post_init__(self) -> None:
        if self.pre_allocated < 1:
            raise ConfigurationError("ramping-arrival-rate: preAllocatedVUs must be >= 1")
        if self.time_unit_s <= 0:
            raise ConfigurationError("ramping-arrival-rate: timeUnit must be > 0")
        if self.start_rate < 0:
            raise ConfigurationError("ramping-arrival-rate: startRate must be >= 0")
        _validate_stages(self.stages, self.executor_name)

    @property
    def total_duration_s(self) -> float:
        return sum(stage.duration_s for stage in self.stages)


ExecutorConfig = Union[ConstantConcurrency, RampingConcurrency, RampingArrivalRate]


@dataclass(frozen=True)
class Scenario:
    """A named workload bound to an executor and a start offset."""

    name: str
    executor: ExecutorConfig
    workload: Workload
    start_offset_s: float = 0.0
    graceful_stop_s: float = DEFAULT_GRACEFUL_STOP_S
    exec_name: str | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigurationError("scenario name must not be empty")
        if not callable(self.workload):
            raise ConfigurationError(f"scenario {self.name!r}: workload is not callable")
        if self.start_offset_s < 0:
            raise ConfigurationError(f"scenario {self.name!r}: startTime must be >= 0")
        if self.graceful_stop_s < 0:
            raise ConfigurationError(f"scenario {self.name!r}: gracefulStop must be >= 0")

    @property
    def end_offset_s(self) -> float:
        return self.start_offset_s + self.executor.total_duration_s


@dataclass(frozen=True)
class RunPlan:
    """Ordered scenarios plus thresholds; built once before the run."""

    scenarios: tuple[Scenario, ...]
    thresholds: tuple[ThresholdRule, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not self.scenarios:
            raise ConfigurationError("run plan must define at least one scenario")
        seen: set[str] = set()
        for scenario in self.scenarios:
            if scenario.name in seen:
                raise ConfigurationError(f"duplicate scenario name: {scenario.name!r}")
            seen.add(scenario.name)
        for rule in self.thresholds:
            if rule.scenario is not None and rule.scenario not in seen:
                raise ConfigurationError(
                    f"threshold {rule.metric!r} refers to unknown scenario {rule.scenario!r}"
                )

    def __iter__(self) -> Iterator[Scenario]:
        return iter(self.scenarios)

    @property
    def duration_s(self) -> float:
        """Scheduled end of the last scenario, graceful stops excluded."""
        return max(scenario.end_offset_s for scenario in self.scenarios)


def resolve_workload(name: str, registry: Mapping[str, Workload] | None = None) -> Workload:
    """Look ``name`` up in ``registry`` or import it from ``module:function``."""
    if registry and name in registry:
        return registry[name]
    if ":" in name:
        module_name, _, attribute = name.partition(":")
        try:
            module = importlib.import_module(module_name)
        except ImportError as exc:
            raise ConfigurationError(f"cannot import workload module {module_name!r}") from exc
        workload = getattr(module, attribute, None)
        if workload is None or not callable(workload):
            raise ConfigurationError(f"workload {name!r} is not a callable")
        return workload
    raise ConfigurationError(f"unknown workload {name!r}")


def _stages_from(raw: Any, owner: str) -> tuple[Stage, ...]:
    if not isinstance(raw, list) or not raw:
        raise ConfigurationError(f"{owner}: stages must be a non-empty list")
    stages = []
    for index, item in enumerate(raw):
        if not isinstance(item, Mapping) or "duration" not in item or "target" not in item:
            raise ConfigurationError(f"{owner}: stage {index} needs duration and target")
        stages.append(
            Stage(
                duration_s=parse_duration(item["duration"], f"{owner}.stages[{index}].duration"),
                target=_number(item["target"], f"{owner}.stages[{index}].target"),
            )
        )
    return tuple(stages)


def _number(value: Any, field_name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"{field_name}: expected a number, got {value!r}")
    return float(value)


def _integer(value: Any, field_name: str) -> int:
    number = _number(value, field_name)
    if not number.is_integer():
        raise ConfigurationError(f"{field_name}: expected an integer, got {value!r}")
    return int(number)


def executor_from_dict(raw: Mapping[str, Any], owner: str) -> ExecutorConfig:
    kind = raw.get("executor")
    if kind == "constant-vus":
        return ConstantConcurrency(
            count=_integer(raw.get("vus", 1), f"{owner}.vus"),
            duration_s=parse_duration(raw.get("duration"), f"{owner}.duration"),
        )
    if kind == "ramping-vus":
        return RampingConcurrency(
            start_count=_integer(raw.get("startVUs", 1), f"{owner}.startVUs"),
            stages=_stages_from(raw.get("stages"), owner),
        )
    if kind == "ramping-arrival-rate":
        return RampingArrivalRate(
            pre_allocated=_integer(raw.get("preAllocatedVUs"), f"{owner}.preAllocatedVUs"),
            time_unit_s=parse_duration(raw.get("timeUnit", "1s"), f"{owner}.timeUnit"),
            stages=_stages_from(raw.get("stages"), owner),
            start_rate=_number(raw.get("startRate", 0), f"{owner}.startRate"),
        )
    raise ConfigurationError(f"{owner}: unsupported executor {kind!r}")


def scenario_from_dict(
    name: str,
    raw: Mapping[str, Any],
    registry: Mapping[str, Workload] | None = None,
) -> Scenario:
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"scenario {name!r} must be an object")
    exec_name = raw.get("exec", name)
    if not isinstance(exec_name, str):
        raise ConfigurationError(f"scenario {name!r}: exec must be a string")
    return Scenario(
        name=name,
        executor=executor_from_dict(raw, name),
        workload=resolve_workload(exec_name, registry),
        start_offset_s=parse_duration(raw.get("startTime", 0), f"{name}.startTime"),
        graceful_stop_s=parse_duration(
            raw.get("gracefulStop", DEFAULT_GRACEFUL_STOP_S), f"{name}.gracefulStop"
        ),
        exec_name=exec_name,
    )


def thresholds_from_dict(raw: Mapping[str, Any]) -> tuple[ThresholdRule, ...]:
    if not isinstance(raw, Mapping):
        raise ConfigurationError("thresholds must be an object keyed by metric")
    rules: list[ThresholdRule] = []
    for metric, expressions in raw.items():
        if isinstance(expressions, (str, Mapping)):
            expressions = [expressions]
        if not isinstance(expressions, list):
            raise ConfigurationError(f"thresholds for {metric!r} must be a list")
        for item in expressions:
            if isinstance(item, str):
                rules.append(parse_threshold(metric, item))
            elif isinstance(item, Mapping) and "threshold" in item:
                window = item.get("window")
                rules.append(
                    parse_threshold(
                        metric,
                        item["threshold"],
                        window_s=None if window is None else parse_duration(window, "window"),
                    )
                )
            else:
                raise ConfigurationError(f"invalid threshold entry for {metric!r}: {item!r}")
    return tuple(rules)


def plan_from_dict(
    data: Mapping[str, Any], registry: Mapping[str, Workload] | None = None
) -> RunPlan:
    if not isinstance(data, Mapping):
        raise ConfigurationError("run plan must be an object")
    raw_scenarios = data.get("scenarios")
    scenarios: list[Scenario] = []
    if isinstance(raw_scenarios, Mapping):
        for name, raw in raw_scenarios.items():
            scenarios.append(scenario_from_dict(name, raw, registry))
    elif isinstance(raw_scenarios, list):
        for index, raw in enumerate(raw_scenarios):
            if not isinstance(raw, Mapping) or not isinstance(raw.get("name"), str):
                raise ConfigurationError(f"scenario #{index} needs a name")
            scenarios.append(scenario_from_dict(raw["name"], raw, registry))
    else:
        raise ConfigurationError("run plan needs a 'scenarios' object or list")
    thresholds = thresholds_from_dict(data.get("thresholds") or {})
    return RunPlan(scenarios=tuple(scenarios), thresholds=thresholds)


def _reject_duplicate_keys(pairs: list[tuple[str, Any]]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in pairs:
        if key in result:
            raise ConfigurationError(f"duplicate key {key!r} in run plan")
        result[key] = value
    return result


def load_plan(
    path: str | Path | None, registry: Mapping[str, Workload] | None = None
) -> RunPlan:
    if registry is None:
        from .workloads import WORKLOADS

        registry = WORKLOADS
    if not path:
        return default_run_plan(registry)
    plan_path = Path(path)
    try:
        text = plan_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"cannot read run plan {plan_path}: {exc}") from exc
    try:
        data = json.loads(text, object_pairs_hook=_reject_duplicate_keys)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"run plan {plan_path} is not valid JSON: {exc}") from exc
    return plan_from_dict(data, registry)


DEFAULT_PLAN: dict[str, Any] = {
    "scenarios": {
        "constant_load": {
            "executor": "constant-vus",
            "vus": 50,
            "duration": "1m",
            "exec": "constant_load_scenario",
            "startTime": "0s",
        },
        "ramp_up": {
            "executor": "ramping-vus",
            "startVUs": 0,
            "stages": [
                {"duration": "30s", "target": 20},
                {"duration": "30s", "target": 50},
                {"duration": "30s", "target": 0},
            ],
            "exec": "ramp_up_scenario",
            "startTime": "1m",
        },
        "stress_test": {
            "executor": "ramping-arrival-rate",
            "preAllocatedVUs": 50,
            "timeUnit": "1s",
            "stages": [
                {"duration": "30s", "target": 10},
                {"duration": "1m", "target": 50},
                {"duration": "30s", "target": 0},
            ],
            "exec": "stress_test_scenario",
            "startTime": "2m30s",
        },
    },
    "thresholds": {
        "http_req_duration": ["p(95)<2000"],
        "http_req_failed": ["rate<0.1"],
    },
}


def default_run_plan(registry: Mapping[str, Workload] | None = None) -> RunPlan:
    """Constant load, ramp-up and stress scenarios against the public demo API."""
    if registry is None:
        from .workloads import WORKLOADS

        registry = WORKLOADS
    return plan_from_dict(DEFAULT_PLAN, registry)


__all__ = [
    "ConstantConcurrency",
    "DEFAULT_PLAN",
    "ExecutorConfig",
    "RampingArrivalRate",
    "RampingConcurrency",
    "RunPlan",
    "Scenario",
    "Stage",
    "Workload",
    "default_run_plan",
    "format_duration",
    "load_plan",
    "parse_duration",
    "plan_from_dict",
    "resolve_workload",
]
