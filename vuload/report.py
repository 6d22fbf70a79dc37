from __future__ import annotations

import datetime as dt
import html
import json
import logging
from pathlib import Path
from typing import Any

import pandas as pd

from .charts import render_timeline_chart
from .metrics import MetricAggregate, MetricType, TREND_PERCENTILES, percentile_label
from .scheduler import RunResult
from .thresholds import ThresholdResult

LOGGER = logging.getLogger("vuload.report")

CHECK_PREFIX = "checks::"
PASS_MARK = "✓"
FAIL_MARK = "✗"

TREND_COLUMNS = ["avg", "min", "med", "max"] + [percentile_label(p) for p in TREND_PERCENTILES]


def format_ms(value: float) -> str:
    if value >= 1000:
        return f"{value / 1000:.2f}s"
    if value >= 1:
        return f"{value:.2f}ms"
    return f"{value * 1000:.2f}µs"


def _threshold_entry(result: ThresholdResult) -> dict[str, Any]:
    return {
        "metric": result.rule.key,
        "threshold": result.rule.expression,
        "window_s": result.rule.window_s,
        "observed": result.observed,
        "ok": result.passed,
        "no_data": result.no_data,
    }


def build_summary(result: RunResult) -> dict[str, Any]:
    """JSON-serialisable summary of a finished run."""
    metrics: dict[str, Any] = {}
    for aggregate in sorted(result.snapshot, key=lambda agg: agg.key):
        values = dict(aggregate.values)
        metrics[aggregate.key] = {
            "type": aggregate.metric_type.value,
            "values": values,
            "thresholds": [
                _threshold_entry(item) for item in result.verdict.for_metric(aggregate.key)
            ],
        }
    return {
        "state": {
            "started_at": dt.datetime.fromtimestamp(result.started_at, dt.timezone.utc).isoformat(),
            "finished_at": dt.datetime.fromtimestamp(result.finished_at, dt.timezone.utc).isoformat(),
            "duration_s": round(result.duration_s, 3),
            "stopped": result.stopped,
            "discarded_samples": result.discarded_samples,
        },
        "passed": result.passed,
        "thresholds": [_threshold_entry(item) for item in result.verdict.results],
        "scenarios": [stats.to_dict() for stats in result.scenarios],
        "metrics": metrics,
    }


def _describe_values(aggregate: MetricAggregate) -> str:
    values = aggregate.values
    if aggregate.metric_type is MetricType.TREND:
        if not aggregate.has_samples:
            return "no data"
        if aggregate.name.endswith("duration"):
            return " ".join(f"{column}={format_ms(values[column])}" for column in TREND_COLUMNS)
        return " ".join(f"{column}={values[column]:.2f}" for column in TREND_COLUMNS)
    if aggregate.metric_type is MetricType.RATE:
        return (
            f"{values['rate'] * 100:.2f}% {PASS_MARK} {int(values['passes'])} "
            f"{FAIL_MARK} {int(values['fails'])}"
        )
    if aggregate.metric_type is MetricType.COUNTER:
        return f"{values['count']:g} {values['rate']:.2f}/s"
    return f"{values['value']:g} min={values['min']:g} max={values['max']:g}"


def _check_lines(result: RunResult, indent: str) -> list[str]:
    lines = []
    for aggregate in sorted(result.snapshot, key=lambda agg: agg.key):
        if aggregate.scenario is not None or not aggregate.name.startswith(CHECK_PREFIX):
            continue
        name = aggregate.name[len(CHECK_PREFIX):]
        passes = int(aggregate.values["passes"])
        fails = int(aggregate.values["fails"])
        if fails == 0:
            lines.append(f"{indent}{PASS_MARK} {name}")
        else:
            lines.append(f"{indent}{FAIL_MARK} {name}")
            lines.append(
                f"{indent}  ↳ {aggregate.values['rate'] * 100:.0f}% "
                f"- {PASS_MARK} {passes} / {FAIL_MARK} {fails}"
            )
    return lines


def _threshold_lines(results: list[ThresholdResult], indent: str) -> list[str]:
    lines = []
    for item in results:
        status = "no data" if item.no_data else ("ok" if item.passed else "crossed")
        lines.append(f"{indent}{item.rule.expression} ({status})")
    return lines


def render_text(result: RunResult, indent: str = " ") -> str:
    """Plain-text end-of-run summary in the layout load testers are used to."""
    lines: list[str] = []
    for stats in result.scenarios:
        overflow = f" [{stats.overflow}]" if stats.overflow else ""
        lines.append(
            f"{indent}scenario {stats.name}: {stats.executor}, "
            f"{stats.completed} complete, {stats.cancelled} interrupted, "
            f"{stats.dropped} dropped{overflow}"
        )
    lines.append("")
    lines.extend(_check_lines(result, indent * 4))
    lines.append("")

    rows = [
        aggregate
        for aggregate in sorted(result.snapshot, key=lambda agg: agg.key)
        if not aggregate.name.startswith(CHECK_PREFIX)
        and (aggregate.scenario is None or result.verdict.for_metric(aggregate.key))
    ]
    width = max((len(aggregate.key) for aggregate in rows), default=0) + 3
    for aggregate in rows:
        thresholds = result.verdict.for_metric(aggregate.key)
        mark = " "
        if thresholds:
            mark = PASS_MARK if all(item.passed for item in thresholds) else FAIL_MARK
        label = aggregate.key.ljust(width, ".")
        lines.append(f"{indent}{mark} {label}: {_describe_values(aggregate)}")
        lines.extend(_threshold_lines(thresholds, indent * 5))
    missing = sorted(
        {item.rule.key for item in result.verdict.results if item.rule.key not in result.snapshot}
    )
    for key in missing:
        lines.append(f"{indent}{PASS_MARK} {key.ljust(width, '.')}: no data")
        lines.extend(_threshold_lines(result.verdict.for_metric(key), indent * 5))

    lines.append("")
    verdict = "PASSED" if result.passed else "FAILED"
    lines.append(f"{indent}thresholds {verdict} after {result.duration_s:.1f}s")
    return "\n".join(lines) + "\n"


def metrics_dataframe(result: RunResult) -> pd.DataFrame:
    rows = []
    for aggregate in sorted(result.snapshot, key=lambda agg: agg.key):
        row: dict[str, Any] = {"metric": aggregate.key, "type": aggregate.metric_type.value}
        row.update(aggregate.values)
        rows.append(row)
    return pd.DataFrame(rows)


def render_html(result: RunResult) -> str:
    metrics_table = metrics_dataframe(result).to_html(
        index=False, na_rep="", float_format=lambda value: f"{value:.3f}"
    )
    thresholds_table = pd.DataFrame(
        [_threshold_entry(item) for item in result.verdict.results],
        columns=["metric", "threshold", "window_s", "observed", "ok", "no_data"],
    ).to_html(index=False, na_rep="")
    scenarios_table = pd.DataFrame([stats.to_dict() for stats in result.scenarios]).to_html(
        index=False, na_rep=""
    )
    verdict = "PASSED" if result.passed else "FAILED"
    return (
        "<!DOCTYPE html>\n<html><head><meta charset=\"utf-8\">"
        "<title>vuload summary</title>"
        "<style>body{font-family:sans-serif;margin:2em}"
        "table{border-collapse:collapse;margin-bottom:2em}"
        "td,th{border:1px solid #ccc;padding:4px 8px}</style></head><body>\n"
        f"<h1>Run {html.escape(verdict)}</h1>\n"
        f"<p>Duration {result.duration_s:.1f}s</p>\n"
        f"<h2>Thresholds</h2>\n{thresholds_table}\n"
        f"<h2>Scenarios</h2>\n{scenarios_table}\n"
        f"<h2>Metrics</h2>\n{metrics_table}\n"
        "</body></html>\n"
    )


def write_reports(result: RunResult, output_dir: Path, chart: bool = True) -> dict[str, Path]:
    output_dir.mkdir(parents=True, exist_ok=True)
    written: dict[str, Path] = {}

    text_path = output_dir / "summary.txt"
    text_path.write_text(render_text(result), encoding="utf-8")
    written["text"] = text_path

    html_path = output_dir / "summary.html"
    html_path.write_text(render_html(result), encoding="utf-8")
    written["html"] = html_path

    json_path = output_dir / "summary.json"
    with open(json_path, "w", encoding="utf-8") as f:
        json.dump(build_summary(result), f, indent=2)
    written["json"] = json_path

    timeline_path = output_dir / "timeline.csv"
    result.timeline.to_csv(timeline_path, index=False)
    written["timeline"] = timeline_path

    if chart:
        chart_path = render_timeline_chart(result.timeline, output_dir / "timeline.png")
        if chart_path is not None:
            written["chart"] = chart_path

    for kind, path in written.items():
        LOGGER.info("Wrote %s report to %s", kind, path)
    return written


__all__ = [
    "build_summary",
    "format_ms",
    "metrics_dataframe",
    "render_html",
    "render_text",
    "write_reports",
]
