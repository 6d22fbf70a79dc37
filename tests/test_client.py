"""HTTP client adapter, checks and the built-in workloads, all against a fake transport."""

from __future__ import annotations

import threading
import time

import pytest
import requests

from vuload import workloads
from vuload.client import HttpClient
from vuload.context import IterationRecorder, bind, check, current, sleep
from vuload.errors import ErrorKind


def test_get_records_outcome_into_current_iteration(fake_transport, make_response):
    fake_transport.responder = lambda method, url, **kwargs: make_response(200, {"id": 3}, 42.0)
    client = HttpClient(session_factory=fake_transport)
    recorder = IterationRecorder("s")

    with bind(recorder):
        response = client.get("http://api.test/users/3", {"name": "user"})

    result = recorder.build_result(0.1)
    assert response.status == 200
    assert response.json() == {"id": 3}
    assert response.timings.duration == pytest.approx(42.0)
    assert len(result.requests) == 1
    outcome = result.requests[0]
    assert outcome.url == "http://api.test/users/3"
    assert outcome.name == "user"
    assert not outcome.failed
    assert "name" not in fake_transport.calls[0]


@pytest.mark.parametrize(
    ("status", "failed"),
    [(201, False), (204, False), (302, True), (304, True), (404, True), (503, True)],
)
def test_statuses_outside_2xx_are_failed(fake_transport, make_response, status, failed):
    fake_transport.responder = lambda method, url, **kwargs: make_response(status)
    client = HttpClient(session_factory=fake_transport)

    response = client.get("http://api.test/")

    assert (response.error is ErrorKind.STATUS) is failed


@pytest.mark.parametrize(
    ("exception", "kind"),
    [
        (requests.Timeout("slow"), ErrorKind.TIMEOUT),
        (requests.ConnectionError("refused"), ErrorKind.CONNECTION),
        (requests.TooManyRedirects("loop"), ErrorKind.OTHER),
    ],
)
def test_transport_errors_become_failed_outcomes(fake_transport, exception, kind):
    def responder(method, url, **kwargs):
        raise exception

    fake_transport.responder = responder
    client = HttpClient(session_factory=fake_transport)
    recorder = IterationRecorder()

    with bind(recorder):
        response = client.get("http://api.test/")

    assert response.status == 0
    assert response.error is kind
    assert recorder.build_result(0).requests[0].error is kind


def test_post_sends_strings_as_data_and_objects_as_json(fake_transport):
    client = HttpClient(session_factory=fake_transport)

    client.post("http://api.test/posts", '{"a": 1}', {"headers": {"Content-Type": "application/json"}})
    client.post("http://api.test/posts", {"a": 1})

    raw, structured = fake_transport.calls
    assert raw["data"] == '{"a": 1}'
    assert raw["headers"] == {"Content-Type": "application/json"}
    assert structured["json"] == {"a": 1}
    assert "data" not in structured


def test_batch_keeps_order_and_records_in_calling_iteration(fake_transport, make_response):
    def responder(method, url, **kwargs):
        # Later items answer first.
        time.sleep(0.05 if url.endswith("/1") else 0.0)
        return make_response(200, {"url": url})

    fake_transport.responder = responder
    client = HttpClient(session_factory=fake_transport)
    recorder = IterationRecorder()
    urls = [f"http://api.test/{index}" for index in (1, 2, 3)]

    with bind(recorder):
        responses = client.batch([("GET", url) for url in urls])

    assert [response.json()["url"] for response in responses] == urls
    assert len(recorder.build_result(0).requests) == 3
    assert client.batch([]) == []
    with pytest.raises(ValueError):
        client.batch([("GET",)])


def test_client_keeps_one_session_per_thread(fake_transport):
    created = []

    def factory():
        session = fake_transport()
        created.append(session)
        return session

    client = HttpClient(session_factory=factory)
    client.get("http://api.test/")
    client.get("http://api.test/")
    worker = threading.Thread(target=client.get, args=("http://api.test/",))
    worker.start()
    worker.join()

    assert len(created) == 2


def test_repeated_batches_reuse_executor_sessions(fake_transport):
    created = []
    closed = []

    def factory():
        session = fake_transport()
        session.close = lambda: closed.append(session)
        created.append(session)
        return session

    client = HttpClient(session_factory=factory, batch_workers=3)
    for _ in range(20):
        client.batch([("GET", f"http://api.test/{index}") for index in range(3)])

    assert len(fake_transport.calls) == 60
    assert 1 <= len(created) <= 3

    client.close()
    assert {id(session) for session in closed} == {id(session) for session in created}


def test_check_records_each_named_predicate():
    recorder = IterationRecorder()

    with bind(recorder):
        passed = check(
            5,
            {
                "is five": lambda value: value == 5,
                "is even": lambda value: value % 2 == 0,
                "raises": lambda value: value["missing"],
            },
        )

    result = recorder.build_result(0)
    assert not passed
    assert [(item.name, item.passed) for item in result.checks] == [
        ("is five", True),
        ("is even", False),
        ("raises", False),
    ]
    assert (result.checks_passed, result.checks_failed) == (1, 2)


def test_check_outside_an_iteration_still_evaluates():
    assert current() is None
    assert check("x", {"truthy": bool})


def test_sleep_returns_early_when_iteration_is_interrupted():
    interrupt = threading.Event()
    interrupt.set()
    started = time.monotonic()

    with bind(IterationRecorder(interrupt=interrupt)):
        sleep(5)

    assert time.monotonic() - started < 1


@pytest.fixture
def demo_api(monkeypatch, fake_transport, make_response):
    def responder(method, url, **kwargs):
        if url.endswith("/posts") and method == "POST":
            return make_response(201, {"id": 101})
        if "comments" in url:
            return make_response(200, [{"id": 1}, {"id": 2}])
        return make_response(200, {"id": 1})

    fake_transport.responder = responder
    monkeypatch.setattr(workloads, "http", HttpClient(session_factory=fake_transport))
    monkeypatch.setattr(workloads, "sleep", lambda seconds: None)
    monkeypatch.setenv("BASE_URL", "http://demo.test/")
    return fake_transport


@pytest.mark.parametrize(
    ("name", "requests_made", "checks_made"),
    [
        ("constant_load_scenario", 1, 3),
        ("ramp_up_scenario", 1, 3),
        ("stress_test_scenario", 3, 9),
    ],
)
def test_builtin_workloads_pass_their_checks(demo_api, name, requests_made, checks_made):
    recorder = IterationRecorder()

    with bind(recorder):
        workloads.WORKLOADS[name]()

    result = recorder.build_result(0)
    assert len(result.requests) == requests_made
    assert len(result.checks) == checks_made
    assert result.checks_failed == 0
    assert all(call["url"].startswith("http://demo.test/") for call in demo_api.calls)
