"""Built-in workloads against the public jsonplaceholder demo API."""

from __future__ import annotations

import json
import os
import random
from typing import Any

from .client import Response, http
from .config import Workload
from .context import check, sleep

DEFAULT_BASE_URL = "https://jsonplaceholder.typicode.com"


def base_url() -> str:
    return os.environ.get("BASE_URL", DEFAULT_BASE_URL).rstrip("/")


def _json_field(response: Response, key: str) -> Any:
    payload = response.json()
    if isinstance(payload, dict):
        return payload.get(key)
    return None


def _has_valid_data(response: Response) -> bool:
    payload = response.json()
    return isinstance(payload, list) or (isinstance(payload, dict) and "id" in payload)


def constant_load_scenario() -> None:
    """Fetch a random user."""
    user_id = random.randint(1, 10)
    response = http.get(f"{base_url()}/users/{user_id}")
    check(
        response,
        {
            "status is 200": lambda r: r.status == 200,
            "response time < 500ms": lambda r: r.timings.duration < 500,
            "has user data": lambda r: _json_field(r, "id") is not None,
        },
    )
    sleep(1)


def ramp_up_scenario() -> None:
    """Create a post."""
    payload = json.dumps(
        {
            "title": "Test Post Load",
            "body": "This is a test post for load testing",
            "userId": 1,
        }
    )
    response = http.post(
        f"{base_url()}/posts",
        payload,
        {"headers": {"Content-Type": "application/json"}},
    )
    check(
        response,
        {
            "status is 201": lambda r: r.status == 201,
            "response time < 1s": lambda r: r.timings.duration < 1000,
            "post created": lambda r: _json_field(r, "id") is not None,
        },
    )
    sleep(1)


def stress_test_scenario() -> None:
    """Hit users, posts and comments in one parallel batch."""
    url = base_url()
    responses = http.batch(
        [
            ("GET", f"{url}/users/1"),
            ("GET", f"{url}/posts/1"),
            ("GET", f"{url}/comments?postId=1"),
        ]
    )
    for response in responses:
        check(
            response,
            {
                "status is 200": lambda r: r.status == 200,
                "response time < 2s": lambda r: r.timings.duration < 2000,
                "has valid data": _has_valid_data,
            },
        )
    sleep(2)


WORKLOADS: dict[str, Workload] = {
    "constant_load_scenario": constant_load_scenario,
    "ramp_up_scenario": ramp_up_scenario,
    "stress_test_scenario": stress_test_scenario,
}

__all__ = [
    "DEFAULT_BASE_URL",
    "WORKLOADS",
    "base_url",
    "constant_load_scenario",
    "ramp_up_scenario",
    "stress_test_scenario",
]
