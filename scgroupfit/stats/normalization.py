"""Per-cell size factors and depth-adjusted count totals."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pandas as pd

from scgroupfit.core.types import ErrorModelFit

if TYPE_CHECKING:
    from scgroupfit.models.base import ErrorModelEstimator


def fit_size_factors(fit: ErrorModelFit) -> pd.Series:
    """Exponentiated log-scale size factor (`corr_a`) of each cell."""
    return np.exp(fit.params["corr_a"].astype(float)).rename("size_factor")


def median_ratio_size_factors(counts: pd.DataFrame, ignore_zeros: bool = False) -> pd.Series:
    """Median-of-ratios size factors (EBSeq `MedianNorm`).

    Args:
        counts: Genes x cells count matrix.
        ignore_zeros: When False, only genes detected in every cell contribute.
            When True, zeros are dropped per gene before the geometric mean and
            per cell before the median.

    Returns:
        Size factor per cell, indexed like `counts.columns`.
    """
    X = counts.to_numpy(dtype=float)
    with np.errstate(divide="ignore"):
        logx = np.log(X)
    if ignore_zeros:
        logx_nz = np.where(X > 0, logx, np.nan)
        usable = np.isfinite(logx_nz).any(axis=1)
        if not usable.any():
            raise ValueError("Every gene is zero in every cell; cannot compute size factors.")
        log_geo = np.nanmean(logx_nz[usable], axis=1)
        ratios = np.where(X[usable] > 0, X[usable] / np.exp(log_geo)[:, None], np.nan)
        sf = np.nanmedian(ratios, axis=0)
    else:
        usable = (X > 0).all(axis=1)
        if not usable.any():
            raise ValueError(
                "No gene is detected in every cell; use ignore_zeros=True for sparse data."
            )
        log_geo = logx[usable].mean(axis=1)
        sf = np.median(X[usable] / np.exp(log_geo)[:, None], axis=0)
    return pd.Series(sf, index=counts.columns, name="median_ratio")


def size_factor_table(
    fits: dict[str, ErrorModelFit],
    reference: pd.Series,
    groups: pd.Series | None = None,
) -> pd.DataFrame:
    """Fit-derived factors next to the reference factors, one row per cell."""
    out = pd.DataFrame({"median_ratio": reference})
    for name, fit in fits.items():
        out[name] = fit_size_factors(fit).reindex(out.index)
    if groups is not None:
        out.insert(0, "group", groups.reindex(out.index).astype(str))
    out.index.name = "cell"
    return out


def adjusted_counts(
    estimator: ErrorModelEstimator, fit: ErrorModelFit, counts: pd.DataFrame
) -> pd.DataFrame:
    """Depth-adjusted counts: the exponentiated expression magnitude."""
    return np.exp(estimator.expression_magnitude(fit, counts))


def library_totals(matrices: dict[str, pd.DataFrame], groups: pd.Series) -> pd.DataFrame:
    """Long table of per-cell column sums, one block per named matrix."""
    rows = []
    for name, mat in matrices.items():
        totals = mat.sum(axis=0)
        rows.append(
            pd.DataFrame(
                {
                    "cell": totals.index.astype(str),
                    "matrix": name,
                    "group": groups.reindex(totals.index).astype(str).to_numpy(),
                    "total": totals.to_numpy(dtype=float),
                }
            )
        )
    return pd.concat(rows, ignore_index=True)
