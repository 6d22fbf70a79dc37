"""
Virtual-user load runner.

This package schedules workload functions over constant, ramping and
arrival-rate executors, aggregates request and check outcomes into k6-style
metrics, and judges the run against declarative thresholds. Workloads use
``vuload.http``, ``vuload.check`` and ``vuload.sleep`` to record into the
iteration they run in.
"""

from .client import http
from .config import RunPlan, Scenario, default_run_plan, load_plan
from .context import check, sleep
from .errors import ConfigurationError, VuloadError
from .metrics import MetricSink
from .scheduler import RunResult, Scheduler

__all__ = [
    "ConfigurationError",
    "MetricSink",
    "RunPlan",
    "RunResult",
    "Scenario",
    "Scheduler",
    "VuloadError",
    "check",
    "default_run_plan",
    "http",
    "load_plan",
    "sleep",
]
