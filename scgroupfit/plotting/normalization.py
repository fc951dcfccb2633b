"""Fit-derived vs median-ratio size factor scatter plots."""

from __future__ import annotations

from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from scipy.stats import spearmanr

from scgroupfit.plotting.styles import DEFAULT_PLOT_STYLE, PlotStyle, group_color_map
from scgroupfit.plotting.utils import save_figure


def _safe_spearman(x: np.ndarray, y: np.ndarray) -> float:
    mask = np.isfinite(x) & np.isfinite(y)
    if int(mask.sum()) < 3:
        return float("nan")
    x_sub = x[mask]
    y_sub = y[mask]
    if np.allclose(x_sub, x_sub[0]) or np.allclose(y_sub, y_sub[0]):
        return float("nan")
    return float(spearmanr(x_sub, y_sub).correlation)


def plot_size_factor_comparison(
    table: pd.DataFrame,
    out_png: Path,
    *,
    fit_columns: tuple[str, ...] = ("within_group", "overall"),
    reference_column: str = "median_ratio",
    group_column: str = "group",
    levels: list[str] | None = None,
    style: PlotStyle = DEFAULT_PLOT_STYLE,
) -> Path:
    """One log-log panel per fit: fit size factor against the reference factor."""
    missing = [c for c in (*fit_columns, reference_column, group_column) if c not in table.columns]
    if missing:
        raise KeyError(f"Size factor table missing columns: {', '.join(missing)}")
    groups = table[group_column].astype(str)
    if levels is None:
        levels = list(pd.unique(groups))
    colors = group_color_map(levels, style)

    fig, axes = plt.subplots(1, len(fit_columns), figsize=style.figsize_pair, squeeze=False)
    ref = table[reference_column].to_numpy(dtype=float)
    for ax, col in zip(axes[0], fit_columns):
        vals = table[col].to_numpy(dtype=float)
        for level in levels:
            mask = (groups == level).to_numpy()
            ax.scatter(
                ref[mask],
                vals[mask],
                s=style.s_point,
                alpha=style.alpha_point,
                color=colors[level],
                label=level,
                edgecolors="white",
                linewidths=0.4,
            )
        ax.set_xscale("log")
        ax.set_yscale("log")
        rho = _safe_spearman(ref, vals)
        ax.set_title(f"{col.replace('_', ' ')} fit (Spearman rho={rho:.2f})")
        ax.set_xlabel("median-ratio size factor")
        ax.set_ylabel("exp(corr_a)")
        ax.legend(frameon=False, loc="upper left")
    fig.tight_layout()
    return save_figure(fig, Path(out_png), style=style)
