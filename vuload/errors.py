from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    STATUS = "status"
    OTHER = "other"


class VuloadError(Exception):
    """Base class for errors raised by vuload."""


class ConfigurationError(VuloadError):
    """Raised when a run plan is invalid. Always reported before the run starts."""


class RequestError(VuloadError):
    """A request did not produce a usable response."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class CapacityOverflow(VuloadError):
    """An arrival-rate scenario demanded more iterations than its slots could start."""

    def __init__(self, scenario: str, dropped: int, sustained_s: float) -> None:
        super().__init__(
            f"scenario {scenario!r} dropped {dropped} iteration(s); "
            f"overflow sustained for {sustained_s:.1f}s"
        )
        self.scenario = scenario
        self.dropped = dropped
        self.sustained_s = sustained_s


__all__ = [
    "CapacityOverflow",
    "ConfigurationError",
    "ErrorKind",
    "RequestError",
    "VuloadError",
]
