"""
Shared pytest fixtures for the vuload test suite.

Provides a manually advanced clock, a metric sink bound to it, a registry
of trivial workloads and a fake ``requests.Session`` so that no test ever
touches the network.
"""

from __future__ import annotations

import datetime as dt
import json
import threading
from typing import Any, Callable

import pytest

from vuload.metrics import MetricSink


class FakeClock:
    """Clock whose time only moves when a test advances it."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._lock = threading.Lock()

    def now(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._now += seconds

    def wait(self, event: threading.Event, timeout: float) -> bool:
        self.advance(max(timeout, 0.0))
        return event.is_set()


class FakeResponse:
    """Minimal stand-in for ``requests.Response``."""

    def __init__(
        self,
        status_code: int = 200,
        payload: Any = None,
        elapsed_ms: float = 10.0,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.status_code = status_code
        self.content = json.dumps(payload if payload is not None else {}).encode("utf-8")
        self.headers = headers or {"Content-Type": "application/json"}
        self.elapsed = dt.timedelta(milliseconds=elapsed_ms)


class FakeSession:
    """Records every request and answers through ``responder``."""

    def __init__(self, responder: Callable[..., FakeResponse], calls: list, lock: threading.Lock) -> None:
        self._responder = responder
        self._calls = calls
        self._lock = lock

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        with self._lock:
            self._calls.append({"method": method, "url": url, **kwargs})
        return self._responder(method, url, **kwargs)

    def close(self) -> None:
        pass


class FakeTransport:
    """Session factory for ``HttpClient`` with a shared call log."""

    def __init__(self, responder: Callable[..., FakeResponse] | None = None) -> None:
        self.calls: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self.responder = responder or (lambda method, url, **kwargs: FakeResponse())

    def __call__(self) -> FakeSession:
        return FakeSession(self.responder, self.calls, self._lock)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sink(fake_clock: FakeClock) -> MetricSink:
    metric_sink = MetricSink(clock=fake_clock)
    metric_sink.start()
    return metric_sink


@pytest.fixture
def registry() -> dict[str, Callable[[], None]]:
    return {"noop": lambda: None}


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def make_response() -> type[FakeResponse]:
    return FakeResponse
