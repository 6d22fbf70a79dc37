from __future__ import annotations

from dataclasses import dataclass

from .errors import ErrorKind


@dataclass(frozen=True)
class RequestOutcome:
    status_code: int
    duration_ms: float
    error: ErrorKind | None = None
    method: str = "GET"
    url: str = ""
    name: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class CheckResult:
    name: str
    passed: bool


@dataclass(frozen=True)
class IterationResult:
    """Everything one workload execution produced."""

    requests: tuple[RequestOutcome, ...] = ()
    checks: tuple[CheckResult, ...] = ()
    elapsed_s: float = 0.0
    error: str | None = None

    @property
    def checks_passed(self) -> int:
        return sum(1 for check in self.checks if check.passed)

    @property
    def checks_failed(self) -> int:
        return sum(1 for check in self.checks if not check.passed)


@dataclass
class IterationStats:
    started: int = 0
    completed: int = 0
    cancelled: int = 0
    failed: int = 0

    @property
    def in_flight(self) -> int:
        return self.started - self.completed - self.cancelled


__all__ = ["CheckResult", "IterationResult", "IterationStats", "RequestOutcome"]
