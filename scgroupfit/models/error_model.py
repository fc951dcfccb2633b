"""Per-cell error model fitting: logistic failure component + negative binomial."""

from __future__ import annotations

from typing import Any

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy.optimize import minimize
from scipy.special import gammaln
from sklearn.linear_model import LogisticRegression

from scgroupfit.core.types import ERROR_MODEL_COLUMNS, ErrorModelConfig, ErrorModelFit
from scgroupfit.core.utils import child_seeds

SHARED_SET = "all"
ETA_CLIP = 30.0
SLOPE_BOUNDS = (0.1, 3.0)
INTERCEPT_BOUNDS = (-20.0, 20.0)
MIN_THETA = 1e-3


def fitting_sets(counts: pd.DataFrame, groups: pd.Series | None) -> dict[str, pd.Index]:
    """Cells fitted together: one set per group level, or a single shared set."""
    if groups is None:
        return {SHARED_SET: counts.columns}
    if not isinstance(groups.dtype, pd.CategoricalDtype):
        groups = groups.astype("category")
    extra = groups.index.difference(counts.columns)
    missing = counts.columns.difference(groups.index)
    if len(extra) > 0 or len(missing) > 0:
        bad = list(map(str, list(missing[:3]) + list(extra[:3])))
        raise KeyError(f"Group labels and count columns disagree on cells: {', '.join(bad)}")
    sets: dict[str, pd.Index] = {}
    for level in groups.cat.categories:
        cells = groups.index[groups == level]
        if len(cells) == 0:
            raise ValueError(f"Group '{level}' has no cells to fit.")
        sets[str(level)] = cells
    return sets


def reference_magnitude(sub: pd.DataFrame) -> pd.Series:
    """Log of the depth-normalized mean count per gene within a fitting set."""
    totals = sub.sum(axis=0).to_numpy(dtype=float)
    med = float(np.median(totals))
    if med <= 0:
        raise ValueError("Median library total is zero; cannot normalize depth.")
    depth = np.maximum(totals / med, 1e-12)
    mean = (sub.to_numpy(dtype=float) / depth[None, :]).mean(axis=1)
    with np.errstate(divide="ignore"):
        ref = np.log(mean)
    return pd.Series(ref, index=sub.index, name="reference")


def robust_genes(sub: pd.DataFrame, detection: float) -> pd.Index:
    frac = (sub > 0).mean(axis=1)
    keep = (frac >= float(detection)) & (frac > 0)
    return sub.index[keep.to_numpy()]


def _fit_failure(x: np.ndarray, failed: np.ndarray) -> tuple[float, float]:
    n_fail = int(failed.sum())
    if n_fail == 0 or n_fail == failed.size:
        rate = (n_fail + 0.5) / (failed.size + 1.0)
        return float(np.log(rate / (1.0 - rate))), 0.0
    clf = LogisticRegression(C=1e4, max_iter=1000)
    clf.fit(x.reshape(-1, 1), failed.astype(int))
    return float(clf.intercept_[0]), float(clf.coef_[0, 0])


def nb_logpmf(y: np.ndarray, log_mu: np.ndarray, theta: np.ndarray) -> np.ndarray:
    """Negative binomial log pmf with mean exp(log_mu) and size theta."""
    log_theta = np.log(theta)
    log_denom = np.logaddexp(log_theta, log_mu)
    return (
        gammaln(y + theta)
        - gammaln(theta)
        - gammaln(y + 1.0)
        + theta * (log_theta - log_denom)
        + y * (log_mu - log_denom)
    )


def _fit_amplified(
    y: np.ndarray, x: np.ndarray, *, linear: bool, max_theta: float
) -> tuple[float, float, float]:
    logy = np.log(y)
    if linear and np.ptp(x) > 0:
        b0, a0 = np.polyfit(x, logy, 1)
        b0 = float(np.clip(b0, *SLOPE_BOUNDS))
    else:
        b0 = 1.0
        a0 = float(np.mean(logy - x))
    a0 = float(np.clip(a0, *INTERCEPT_BOUNDS))
    theta_bounds = (np.log(MIN_THETA), np.log(float(max_theta)))

    def _nll(params: np.ndarray) -> float:
        if linear:
            a, b, log_theta = params
        else:
            a, log_theta = params
            b = 1.0
        log_mu = np.clip(a + b * x, -ETA_CLIP, ETA_CLIP)
        theta = np.exp(log_theta)
        return -float(np.sum(nb_logpmf(y, log_mu, theta)))

    if linear:
        x0 = np.array([a0, b0, 0.0])
        bounds = [INTERCEPT_BOUNDS, SLOPE_BOUNDS, theta_bounds]
    else:
        x0 = np.array([a0, 0.0])
        bounds = [INTERCEPT_BOUNDS, theta_bounds]
    res = minimize(_nll, x0, method="L-BFGS-B", bounds=bounds)
    if not np.all(np.isfinite(res.x)):
        raise RuntimeError(f"Negative binomial fit diverged: {res.message}")
    if linear:
        a, b, log_theta = res.x
    else:
        a, log_theta = res.x
        b = 1.0
    return float(a), float(b), float(np.exp(log_theta))


def fit_cell(
    cell: str,
    y: np.ndarray,
    ref: np.ndarray,
    config: ErrorModelConfig,
    seed: int,
) -> dict[str, Any]:
    """Fit one cell's error model against its fitting set's robust genes."""
    rng = np.random.default_rng(int(seed))
    y = np.asarray(y, dtype=float)
    x = np.asarray(ref, dtype=float)
    if x.size > int(config.max_genes):
        idx = np.sort(rng.choice(x.size, size=int(config.max_genes), replace=False))
        y = y[idx]
        x = x[idx]

    detected = y > 0
    n_det = int(detected.sum())
    if n_det < int(config.min_nonfailed):
        raise ValueError(
            f"Cell '{cell}' detects {n_det} robust genes; at least "
            f"{config.min_nonfailed} are required to fit its error model."
        )

    conc_a, conc_b = _fit_failure(x, ~detected)
    corr_a, corr_b, corr_theta = _fit_amplified(
        y[detected], x[detected], linear=bool(config.linear_fit), max_theta=config.max_theta
    )
    return {
        "cell": str(cell),
        "conc_a": conc_a,
        "conc_b": conc_b,
        "fail_r": float(config.fail_rate),
        "corr_a": corr_a,
        "corr_b": corr_b,
        "corr_theta": corr_theta,
        "n_genes": int(x.size),
        "n_detected": n_det,
    }


def fit_error_models(
    counts: pd.DataFrame,
    groups: pd.Series | None = None,
    *,
    rng: np.random.Generator,
    config: ErrorModelConfig | None = None,
) -> ErrorModelFit:
    """Fit per-cell error models, independently per group when `groups` is given.

    Args:
        counts: Filtered genes x cells count matrix.
        groups: Ordered categorical labels per cell; None shares one robust
            gene set across all cells.
        rng: Source of per-cell seeds for robust-gene subsampling.
        config: Fitting options; `n_jobs` is handed to joblib.

    Returns:
        ErrorModelFit with one parameter row per cell, in column order of `counts`.
    """
    cfg = config or ErrorModelConfig()
    if not 0.0 <= float(cfg.robust_detection) <= 1.0:
        raise ValueError("robust_detection must be in [0, 1].")
    if int(cfg.max_genes) <= 0:
        raise ValueError("max_genes must be positive.")
    if float(cfg.fail_rate) <= 0:
        raise ValueError("fail_rate must be positive.")

    sets = fitting_sets(counts, groups)
    tasks: list[tuple[str, np.ndarray, np.ndarray]] = []
    robust: dict[str, pd.Index] = {}
    references: dict[str, pd.Series] = {}
    for name, cells in sets.items():
        sub = counts.loc[:, cells]
        ref = reference_magnitude(sub)
        genes = robust_genes(sub, cfg.robust_detection)
        if len(genes) < int(cfg.min_nonfailed):
            raise ValueError(
                f"Fitting set '{name}' has {len(genes)} robust genes "
                f"(robust_detection={cfg.robust_detection})."
            )
        robust[name] = genes
        references[name] = ref.loc[genes]
        Y = sub.loc[genes].to_numpy(dtype=float)
        x = ref.loc[genes].to_numpy(dtype=float)
        for j, cell in enumerate(cells):
            tasks.append((str(cell), Y[:, j], x))

    seeds = child_seeds(rng, len(tasks))
    rows = Parallel(n_jobs=int(cfg.n_jobs))(
        delayed(fit_cell)(cell, y, x, cfg, int(seed))
        for (cell, y, x), seed in zip(tasks, seeds)
    )
    table = pd.DataFrame(rows).set_index("cell")
    table.index.name = "cell"
    params = table.loc[counts.columns.astype(str), list(ERROR_MODEL_COLUMNS)]
    return ErrorModelFit(
        params=params,
        groups=None if groups is None else groups.loc[counts.columns],
        robust_genes=robust,
        config=cfg,
        reference=references,
    )
