from __future__ import annotations

import contextlib
import logging
import threading
import time
from typing import Any, Callable, Iterator, Mapping

from .results import CheckResult, IterationResult, RequestOutcome

LOGGER = logging.getLogger("vuload.context")

_local = threading.local()


class IterationRecorder:
    """Collects the requests and checks made by one workload iteration."""

    def __init__(self, scenario: str | None = None, interrupt: threading.Event | None = None) -> None:
        self.scenario = scenario
        self.interrupt = interrupt or threading.Event()
        self._requests: list[RequestOutcome] = []
        self._checks: list[CheckResult] = []

    def add_request(self, outcome: RequestOutcome) -> None:
        self._requests.append(outcome)

    def add_check(self, name: str, passed: bool) -> None:
        self._checks.append(CheckResult(name=name, passed=passed))

    def build_result(self, elapsed_s: float, error: str | None = None) -> IterationResult:
        return IterationResult(
            requests=tuple(self._requests),
            checks=tuple(self._checks),
            elapsed_s=elapsed_s,
            error=error,
        )


def current() -> IterationRecorder | None:
    return getattr(_local, "recorder", None)


@contextlib.contextmanager
def bind(recorder: IterationRecorder) -> Iterator[IterationRecorder]:
    previous = current()
    _local.recorder = recorder
    try:
        yield recorder
    finally:
        _local.recorder = previous


def check(value: Any, checks: Mapping[str, Callable[[Any], Any]]) -> bool:
    """Evaluate named predicates against ``value`` and record each outcome.

    A predicate that raises counts as failed. Returns True only if every
    predicate passed.
    """
    recorder = current()
    all_passed = True
    for name, predicate in checks.items():
        try:
            passed = bool(predicate(value))
        except Exception as exc:  # noqa: BLE001
            LOGGER.debug("check %r raised %r", name, exc)
            passed = False
        if recorder is not None:
            recorder.add_check(name, passed)
        all_passed = all_passed and passed
    return all_passed


def sleep(seconds: float) -> None:
    """Pause the current iteration; returns early if the iteration is interrupted."""
    recorder = current()
    if recorder is None:
        time.sleep(max(seconds, 0.0))
        return
    recorder.interrupt.wait(timeout=max(seconds, 0.0))


__all__ = ["IterationRecorder", "bind", "check", "current", "sleep"]
