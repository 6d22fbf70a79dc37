from __future__ import annotations

import logging
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

LOGGER = logging.getLogger("vuload.charts")

sns.set_style("whitegrid")
plt.rcParams["figure.dpi"] = 100
plt.rcParams["savefig.dpi"] = 150
plt.rcParams["font.size"] = 10
plt.rcParams["axes.labelsize"] = 11
plt.rcParams["axes.titlesize"] = 13
plt.rcParams["legend.fontsize"] = 9

SCENARIO_COLORS = ["#2E86AB", "#A23B72", "#F18F01", "#C73E1D", "#6A994E"]


def render_timeline_chart(timeline: pd.DataFrame, chart_path: Path) -> Path | None:
    """Plot active workers, target and dropped iterations per scenario over run time."""
    if timeline.empty:
        LOGGER.warning("No timeline samples; skipping chart %s", chart_path)
        return None

    scenarios = list(dict.fromkeys(timeline["scenario"]))
    palette = {
        name: SCENARIO_COLORS[index % len(SCENARIO_COLORS)]
        for index, name in enumerate(scenarios)
    }

    fig, (ax_workers, ax_dropped) = plt.subplots(
        2, 1, figsize=(12, 8), sharex=True, gridspec_kw={"height_ratios": [3, 1]}
    )

    sns.lineplot(
        data=timeline,
        x="run_elapsed_s",
        y="active_workers",
        hue="scenario",
        hue_order=scenarios,
        palette=palette,
        linewidth=2.0,
        ax=ax_workers,
    )
    for name in scenarios:
        subset = timeline[timeline["scenario"] == name]
        ax_workers.plot(
            subset["run_elapsed_s"],
            subset["target"],
            linestyle="--",
            linewidth=1.2,
            color=palette[name],
            alpha=0.7,
        )
    ax_workers.set_ylabel("Active workers (solid) / target (dashed)", fontweight="semibold")
    ax_workers.set_title("Scenario timeline", fontweight="bold", pad=15)
    ax_workers.set_ylim(bottom=0)
    ax_workers.legend(title="Scenario", loc="upper left", frameon=True)

    dropped = timeline.pivot_table(
        index="run_elapsed_s", columns="scenario", values="dropped", aggfunc="max"
    ).ffill()
    if dropped.to_numpy().size and np.nanmax(dropped.to_numpy()) > 0:
        for name in dropped.columns:
            ax_dropped.step(
                dropped.index, dropped[name], where="post", color=palette[name], label=name
            )
        ax_dropped.legend(loc="upper left", frameon=True)
    else:
        ax_dropped.text(
            0.5, 0.5, "no dropped iterations", ha="center", va="center",
            transform=ax_dropped.transAxes, color="#808080",
        )
    ax_dropped.set_xlabel("Run time (s)", fontweight="semibold")
    ax_dropped.set_ylabel("Dropped (cumulative)", fontweight="semibold")
    ax_dropped.grid(True, alpha=0.3, linestyle="--")

    plt.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    LOGGER.info("Rendering chart %s", chart_path)
    return chart_path


__all__ = ["render_timeline_chart"]
