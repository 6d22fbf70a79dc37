from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
from pathlib import Path

from .client import http
from .config import RunPlan, format_duration, load_plan
from .errors import ConfigurationError
from .report import render_text, write_reports
from .scheduler import (
    DEFAULT_OVERFLOW_GRACE_S,
    DEFAULT_TICK_INTERVAL_S,
    DEFAULT_TIMELINE_INTERVAL_S,
    Scheduler,
)

LOGGER = logging.getLogger("vuload")

EXIT_PASSED = 0
EXIT_THRESHOLDS_FAILED = 1
EXIT_CONFIG_ERROR = 2


def _optional_float(value: str | None) -> float | None:
    if value in (None, ""):
        return None
    return float(value)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="vuload virtual-user load runner")
    parser.add_argument(
        "--plan-path",
        default=os.environ.get("VULOAD_PLAN_PATH"),
        help="JSON run plan; the built-in three-scenario plan is used when omitted",
    )
    parser.add_argument(
        "--output-dir",
        default=os.environ.get("VULOAD_OUTPUT_DIR", "vuload-results"),
        help="Directory for summary.txt/html/json and timeline artefacts",
    )
    parser.add_argument(
        "--base-url",
        default=os.environ.get("BASE_URL"),
        help="Override the target base URL used by the built-in workloads",
    )
    parser.add_argument(
        "--tick-interval",
        type=float,
        default=float(os.environ.get("VULOAD_TICK_INTERVAL", DEFAULT_TICK_INTERVAL_S)),
        help="Scheduler control loop tick in seconds",
    )
    parser.add_argument(
        "--max-duration",
        type=float,
        default=_optional_float(os.environ.get("VULOAD_MAX_DURATION")),
        help="Stop the whole run after this many seconds",
    )
    parser.add_argument(
        "--overflow-grace",
        type=float,
        default=DEFAULT_OVERFLOW_GRACE_S,
        help="Seconds of sustained dropped iterations before capacity overflow is reported",
    )
    parser.add_argument(
        "--timeline-interval",
        type=float,
        default=DEFAULT_TIMELINE_INTERVAL_S,
        help="Seconds between timeline samples",
    )
    parser.add_argument(
        "--no-chart",
        action="store_true",
        help="Skip rendering timeline.png",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print the planned scenarios and thresholds without running them",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("VULOAD_LOG_LEVEL", "INFO"),
        help="Logging level",
    )
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)

    if args.base_url:
        # Read by the built-in workloads on every iteration.
        os.environ["BASE_URL"] = args.base_url

    try:
        plan = load_plan(args.plan_path)
    except ConfigurationError as exc:
        LOGGER.error("Invalid run plan: %s", exc)
        return EXIT_CONFIG_ERROR

    if args.dry_run:
        _print_plan(plan)
        return EXIT_PASSED

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    LOGGER.info("Run output directory: %s", output_dir)

    try:
        scheduler = Scheduler(
            plan,
            tick_interval=args.tick_interval,
            overflow_grace=args.overflow_grace,
            timeline_interval=args.timeline_interval,
            max_duration=args.max_duration,
        )
    except ValueError as exc:
        LOGGER.error("Invalid scheduler settings: %s", exc)
        return EXIT_CONFIG_ERROR

    previous_handler = signal.getsignal(signal.SIGINT)

    def _handle_interrupt(signum, frame) -> None:
        LOGGER.warning("Interrupted; stopping scenarios (press Ctrl+C again to abort)")
        signal.signal(signal.SIGINT, previous_handler)
        scheduler.stop()

    signal.signal(signal.SIGINT, _handle_interrupt)
    try:
        result = scheduler.run()
    finally:
        signal.signal(signal.SIGINT, previous_handler)
        http.close()

    write_reports(result, output_dir, chart=not args.no_chart)
    print(render_text(result))
    return EXIT_PASSED if result.passed else EXIT_THRESHOLDS_FAILED


def _print_plan(plan: RunPlan) -> None:
    for scenario in plan:
        executor = scenario.executor
        print(
            f"Scenario: {scenario.name} ({executor.executor_name}, exec={scenario.exec_name}, "
            f"start={format_duration(scenario.start_offset_s)}, "
            f"duration={format_duration(executor.total_duration_s)}, "
            f"gracefulStop={format_duration(scenario.graceful_stop_s)})"
        )
        for stage in getattr(executor, "stages", ()):
            print(f"  - {format_duration(stage.duration_s)} -> {stage.target:g}")
    for rule in plan.thresholds:
        print(f"Threshold: {rule.describe()}")
    print(f"Scheduled duration: {format_duration(plan.duration_s)}")


if __name__ == "__main__":
    sys.exit(main())
