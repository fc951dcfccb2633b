"""Expression magnitudes and the discretized magnitude prior."""

from __future__ import annotations

import numpy as np
import pandas as pd
from scipy.ndimage import gaussian_filter1d

from scgroupfit.core.types import ErrorModelFit, ExpressionPrior, PriorConfig


def _params_for(fit: ErrorModelFit, cells: pd.Index) -> pd.DataFrame:
    missing = pd.Index(cells).difference(fit.params.index)
    if len(missing) > 0:
        raise KeyError(f"No error model for cells: {', '.join(map(str, missing[:5]))}")
    return fit.params.loc[cells]


def expression_magnitude(fit: ErrorModelFit, counts: pd.DataFrame) -> pd.DataFrame:
    """Log-scale expression magnitude, `(log(count) - corr_a) / corr_b`, per cell.

    Zero counts map to -inf; exponentiate to get depth-adjusted counts.
    """
    params = _params_for(fit, counts.columns)
    a = params["corr_a"].to_numpy(dtype=float)
    b = params["corr_b"].to_numpy(dtype=float)
    with np.errstate(divide="ignore"):
        logy = np.log(counts.to_numpy(dtype=float))
    mag = (logy - a[None, :]) / b[None, :]
    return pd.DataFrame(mag, index=counts.index, columns=counts.columns)


def expression_prior(
    fit: ErrorModelFit,
    counts: pd.DataFrame,
    config: PriorConfig | None = None,
) -> ExpressionPrior:
    """Smoothed histogram of finite magnitudes on a fixed-size grid."""
    cfg = config or PriorConfig()
    n_grid = int(cfg.n_grid)
    if n_grid < 2:
        raise ValueError("n_grid must be at least 2.")
    q = float(cfg.max_quantile)
    if not 0.5 < q <= 1.0:
        raise ValueError("max_quantile must be in (0.5, 1].")

    mag = expression_magnitude(fit, counts).to_numpy()
    vals = mag[np.isfinite(mag)]
    if vals.size == 0:
        raise ValueError("No detected counts; cannot estimate an expression prior.")
    lo = float(np.quantile(vals, 1.0 - q))
    hi = float(np.quantile(vals, q))
    if hi <= lo:
        hi = lo + 1.0

    grid = np.linspace(lo, hi, n_grid)
    step = float(grid[1] - grid[0])
    edges = np.concatenate([[grid[0] - step / 2.0], grid + step / 2.0])
    hist, _ = np.histogram(np.clip(vals, lo, hi), bins=edges)
    dens = hist.astype(float)
    if float(cfg.bandwidth) > 0:
        dens = gaussian_filter1d(dens, sigma=float(cfg.bandwidth) / step, mode="nearest")
    dens = np.maximum(dens, 0.0) + float(cfg.pseudo_count)
    dens /= dens.sum()
    return ExpressionPrior(grid=grid, log_density=np.log(dens))
