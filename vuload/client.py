from __future__ import annotations

import concurrent.futures
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Sequence

import requests

from . import context
from .errors import ErrorKind, RequestError
from .results import RequestOutcome

LOGGER = logging.getLogger("vuload.client")

DEFAULT_TIMEOUT_S = 60.0
DEFAULT_BATCH_WORKERS = 32


@dataclass(frozen=True)
class Timings:
    duration: float


@dataclass
class Response:
    """Response snapshot handed to workloads and checks."""

    status: int
    url: str
    method: str
    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)
    duration_ms: float = 0.0
    error: ErrorKind | None = None
    error_message: str | None = None

    @property
    def timings(self) -> Timings:
        return Timings(duration=self.duration_ms)

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.body)


BatchItem = Sequence[Any]


class HttpClient:
    """``requests`` wrapper that records a RequestOutcome per call.

    Each thread gets its own ``requests.Session``. Responses outside
    ``expected_statuses`` (2xx by default) and transport errors become failed
    outcomes; they never raise into the workload. ``batch`` calls share one
    long-lived executor so its threads keep their sessions between calls.
    """

    def __init__(
        self,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        expected_statuses: Iterable[int] = range(200, 300),
        session_factory: Callable[[], requests.Session] = requests.Session,
        batch_workers: int = DEFAULT_BATCH_WORKERS,
    ) -> None:
        self._timeout_s = timeout_s
        self._expected = frozenset(expected_statuses)
        self._session_factory = session_factory
        self._batch_workers = max(batch_workers, 1)
        self._local = threading.local()
        self._lock = threading.Lock()
        self._executor: concurrent.futures.ThreadPoolExecutor | None = None
        self._sessions: list[requests.Session] = []

    def get(self, url: str, options: Mapping[str, Any] | None = None) -> Response:
        return self.request("GET", url, options=options)

    def post(
        self, url: str, body: Any = None, options: Mapping[str, Any] | None = None
    ) -> Response:
        return self.request("POST", url, body=body, options=options)

    def request(
        self,
        method: str,
        url: str,
        body: Any = None,
        options: Mapping[str, Any] | None = None,
    ) -> Response:
        response, outcome = self._send(method, url, body, options)
        self._record(outcome)
        return response

    def batch(self, items: Iterable[BatchItem]) -> list[Response]:
        """Send requests in parallel; responses come back in input order.

        Each item is ``(method, url)`` or ``(method, url, body, options)``.
        """
        normalised = [_normalise_batch_item(item) for item in items]
        if not normalised:
            return []
        pool = self._batch_executor()
        futures = [pool.submit(self._send, *item) for item in normalised]
        pairs = [future.result() for future in futures]
        # Recorded here because the recorder is bound to the calling thread.
        for _, outcome in pairs:
            self._record(outcome)
        return [response for response, _ in pairs]

    def close(self) -> None:
        """Stop the batch executor and close every session this client opened."""
        with self._lock:
            executor, self._executor = self._executor, None
            sessions, self._sessions = self._sessions, []
            self._local = threading.local()
        if executor is not None:
            executor.shutdown(wait=False)
        for session in sessions:
            session.close()

    def _batch_executor(self) -> concurrent.futures.ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = concurrent.futures.ThreadPoolExecutor(
                    max_workers=self._batch_workers, thread_name_prefix="vuload-batch"
                )
            return self._executor

    def _session(self) -> requests.Session:
        local = self._local
        session = getattr(local, "session", None)
        if session is None:
            session = self._session_factory()
            local.session = session
            with self._lock:
                self._sessions.append(session)
        return session

    def _send(
        self,
        method: str,
        url: str,
        body: Any = None,
        options: Mapping[str, Any] | None = None,
    ) -> tuple[Response, RequestOutcome]:
        options = dict(options or {})
        name = options.pop("name", None)
        started = time.perf_counter()
        try:
            raw = self._perform(method, url, body, options)
        except RequestError as exc:
            duration_ms = (time.perf_counter() - started) * 1000.0
            LOGGER.debug("%s %s failed: %s", method, url, exc)
            response = Response(
                status=0,
                url=url,
                method=method,
                duration_ms=duration_ms,
                error=exc.kind,
                error_message=str(exc),
            )
        else:
            duration_ms = raw.elapsed.total_seconds() * 1000.0 if raw.elapsed else (
                (time.perf_counter() - started) * 1000.0
            )
            error = None if raw.status_code in self._expected else ErrorKind.STATUS
            response = Response(
                status=raw.status_code,
                url=url,
                method=method,
                body=raw.content or b"",
                headers=dict(raw.headers),
                duration_ms=duration_ms,
                error=error,
            )
        outcome = RequestOutcome(
            status_code=response.status,
            duration_ms=response.duration_ms,
            error=response.error,
            method=method,
            url=url,
            name=name,
        )
        return response, outcome

    def _perform(
        self, method: str, url: str, body: Any, options: Mapping[str, Any]
    ) -> requests.Response:
        kwargs: dict[str, Any] = {
            "headers": options.get("headers"),
            "timeout": options.get("timeout", self._timeout_s),
        }
        if isinstance(body, (str, bytes)):
            kwargs["data"] = body
        elif body is not None:
            kwargs["json"] = body
        try:
            return self._session().request(method, url, **kwargs)
        except requests.Timeout as exc:
            raise RequestError(ErrorKind.TIMEOUT, f"request timed out: {exc}") from exc
        except requests.ConnectionError as exc:
            raise RequestError(ErrorKind.CONNECTION, f"connection failed: {exc}") from exc
        except requests.RequestException as exc:
            raise RequestError(ErrorKind.OTHER, f"request failed: {exc}") from exc

    @staticmethod
    def _record(outcome: RequestOutcome) -> None:
        recorder = context.current()
        if recorder is not None:
            recorder.add_request(outcome)


def _normalise_batch_item(item: BatchItem) -> tuple[str, str, Any, Mapping[str, Any] | None]:
    if len(item) == 2:
        method, url = item
        return str(method).upper(), url, None, None
    if len(item) == 3:
        method, url, body = item
        return str(method).upper(), url, body, None
    if len(item) == 4:
        method, url, body, options = item
        return str(method).upper(), url, body, options
    raise ValueError(f"batch item must have 2-4 elements, got {item!r}")


http = HttpClient()

__all__ = ["HttpClient", "Response", "Timings", "http"]
