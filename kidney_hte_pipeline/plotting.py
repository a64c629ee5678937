"""Point-range figures for stratum-specific treatment effects."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import pandas as pd

PALETTE = {
    "axis": "#434C5E",
    "title": "#4C566A",
    "grid": "#D8DEE9",
    "point": "#5E81AC",
    "overall": "#BF616A",
}


@dataclass
class PlotTheme:
    background: str = "#FFFFFF"
    axis: str = PALETTE["axis"]
    title: str = PALETTE["title"]
    grid: str = PALETTE["grid"]
    point: str = PALETTE["point"]
    overall: str = PALETTE["overall"]


def apply_theme(ax: plt.Axes, theme: PlotTheme | None = None) -> None:
    theme = theme or PlotTheme()
    ax.figure.set_facecolor(theme.background)
    ax.set_facecolor(theme.background)
    ax.tick_params(colors=theme.axis, labelsize=10)
    ax.xaxis.label.set_color(theme.axis)
    ax.yaxis.label.set_color(theme.axis)
    ax.title.set_color(theme.title)
    for spine in ax.spines.values():
        spine.set_color(theme.axis)
    ax.grid(axis="y", color=theme.grid, alpha=0.4)


def point_range_plot(
    raw: pd.DataFrame,
    *,
    title: str,
    ylabel: str,
    out_path: Path,
    theme: PlotTheme | None = None,
) -> Path:
    """Stratum estimates with intervals against the overall estimate line and its shaded CI."""
    theme = theme or PlotTheme()
    overall = raw.loc[raw["stratum"] == "Overall"].iloc[0]
    strata = raw.loc[raw["stratum"] != "Overall"].reset_index(drop=True)

    fig, ax = plt.subplots(figsize=(6, 4))
    ax.axhspan(overall["ci_low"], overall["ci_high"], color=theme.overall, alpha=0.12, label="Overall 95% CI")
    ax.axhline(overall["estimate"], color=theme.overall, linestyle="--", linewidth=1.2, label="Overall")
    ax.axhline(0.0, color=theme.axis, linewidth=0.6, alpha=0.6)
    x = range(len(strata))
    ax.errorbar(
        x,
        strata["estimate"],
        # percentile intervals need not contain the point estimate
        yerr=[(strata["estimate"] - strata["ci_low"]).clip(lower=0), (strata["ci_high"] - strata["estimate"]).clip(lower=0)],
        fmt="o",
        color=theme.point,
        ecolor=theme.point,
        capsize=4,
    )
    ax.set_xticks(list(x))
    ax.set_xticklabels(strata["stratum"].tolist())
    ax.set_ylabel(ylabel)
    ax.set_title(title, fontsize=11)
    apply_theme(ax, theme)
    ax.legend(frameon=False, fontsize=9)
    fig.tight_layout()

    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(out_path, dpi=150, facecolor=theme.background)
    plt.close(fig)
    return out_path
