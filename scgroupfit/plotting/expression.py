"""Library-total boxplots and DE statistic diagnostics."""

from __future__ import annotations

from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from scgroupfit.plotting.styles import DEFAULT_PLOT_STYLE, PlotStyle, group_color_map
from scgroupfit.plotting.utils import save_figure


def plot_library_boxplots(
    totals: pd.DataFrame,
    out_png: Path,
    *,
    levels: list[str] | None = None,
    style: PlotStyle = DEFAULT_PLOT_STYLE,
) -> Path:
    """Per-group boxplots of column sums, one panel per matrix in `totals`."""
    for col in ("matrix", "group", "total"):
        if col not in totals.columns:
            raise KeyError(f"Totals table missing column '{col}'.")
    matrices = list(pd.unique(totals["matrix"]))
    if levels is None:
        levels = list(pd.unique(totals["group"].astype(str)))
    colors = group_color_map(levels, style)

    fig, axes = plt.subplots(1, len(matrices), figsize=style.figsize_triple, squeeze=False)
    for ax, name in zip(axes[0], matrices):
        block = totals[totals["matrix"] == name]
        data = [
            block.loc[block["group"].astype(str) == level, "total"].to_numpy(dtype=float)
            for level in levels
        ]
        bp = ax.boxplot(data, patch_artist=True, widths=0.6)
        ax.set_xticks(np.arange(1, len(levels) + 1))
        ax.set_xticklabels(levels)
        for patch, level in zip(bp["boxes"], levels):
            patch.set_facecolor(colors[level])
            patch.set_alpha(0.6)
        ax.set_title(str(name).replace("_", " "))
        ax.set_ylabel("library total")
    fig.tight_layout()
    return save_figure(fig, Path(out_png), style=style)


def plot_corrected_statistics(
    de_tables: dict[str, pd.DataFrame],
    out_png: Path,
    *,
    threshold: float = 1.96,
    style: PlotStyle = DEFAULT_PLOT_STYLE,
) -> Path:
    """Raw Z against BH-corrected Z per fit, with the significance band."""
    fig, axes = plt.subplots(1, len(de_tables), figsize=style.figsize_pair, squeeze=False)
    for ax, (name, de) in zip(axes[0], de_tables.items()):
        z = de["Z"].to_numpy(dtype=float)
        cz = de["cZ"].to_numpy(dtype=float)
        sig = np.abs(cz) > float(threshold)
        ax.scatter(z[~sig], cz[~sig], s=6, color="#999999", alpha=0.6, label="n.s.")
        ax.scatter(z[sig], cz[sig], s=8, color="#d62728", alpha=0.8, label=f"|cZ| > {threshold:g}")
        for y in (-float(threshold), float(threshold)):
            ax.axhline(y, color=style.threshold_color, linestyle="--", linewidth=0.8)
        ax.set_title(f"{name.replace('_', ' ')} fit")
        ax.set_xlabel("Z")
        ax.set_ylabel("corrected Z")
        ax.legend(frameon=False, loc="upper left")
    fig.tight_layout()
    return save_figure(fig, Path(out_png), style=style)
