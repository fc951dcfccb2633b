"""Shared plotting style settings for deterministic figure outputs."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

import matplotlib
import matplotlib.pyplot as plt
import numpy as np


@dataclass(frozen=True)
class PlotStyle:
    """Centralized plotting defaults used across report figures."""

    dpi: int = 150
    figsize_pair: tuple[float, float] = (10.0, 4.6)
    figsize_triple: tuple[float, float] = (12.0, 4.4)
    s_point: float = 28.0
    alpha_point: float = 0.85
    legend_fontsize: int = 8
    axis_label_fontsize: int = 10
    title_fontsize: int = 11
    group_colors: tuple[str, ...] = ("#1f77b4", "#d62728", "#2ca02c", "#9467bd")
    threshold_color: str = "#555555"


DEFAULT_PLOT_STYLE = PlotStyle()


def apply_plot_style(style: PlotStyle = DEFAULT_PLOT_STYLE) -> None:
    """Apply deterministic matplotlib rcParams for report plots."""
    plt.rcParams.update(
        {
            "figure.dpi": style.dpi,
            "savefig.dpi": style.dpi,
            "savefig.facecolor": "white",
            "font.family": "DejaVu Sans",
            "axes.titlesize": style.title_fontsize,
            "axes.labelsize": style.axis_label_fontsize,
            "legend.fontsize": style.legend_fontsize,
            "axes.grid": False,
            "axes.spines.top": False,
            "axes.spines.right": False,
        }
    )


def group_color_map(levels: list[str], style: PlotStyle = DEFAULT_PLOT_STYLE) -> dict[str, str]:
    colors = style.group_colors
    return {str(level): colors[i % len(colors)] for i, level in enumerate(levels)}


def plot_style_dict(style: PlotStyle = DEFAULT_PLOT_STYLE) -> dict[str, Any]:
    """Return style + dependency versions for run manifests."""
    d = asdict(style)
    d["matplotlib_version"] = str(matplotlib.__version__)
    d["numpy_version"] = str(np.__version__)
    return d
