"""Bootstrap posterior test for expression differences between two groups."""

from __future__ import annotations

import logging
import warnings

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy.special import gammaln, logsumexp
from scipy.stats import norm

from scgroupfit.core.types import (
    DE_COLUMNS,
    BatchDifferenceResult,
    DifferenceConfig,
    ErrorModelFit,
    ExpressionPrior,
)
from scgroupfit.core.utils import child_seeds
from scgroupfit.models.error_model import ETA_CLIP

LN2 = float(np.log(2.0))
Z_EPS = 1e-15
CONFOUNDED_POLICIES = ("zero", "raise")


def _as_two_level(groups: pd.Series, cells: pd.Index) -> tuple[np.ndarray, list[str]]:
    if not isinstance(groups.dtype, pd.CategoricalDtype):
        groups = groups.astype("category")
    levels = [str(c) for c in groups.cat.categories]
    if len(levels) != 2:
        raise ValueError(f"Exactly two group levels are required; got {levels}.")
    missing = pd.Index(cells).difference(groups.index)
    if len(missing) > 0:
        raise KeyError(f"Cells without a group label: {', '.join(map(str, missing[:5]))}")
    codes = groups.loc[cells].cat.codes.to_numpy()
    if (codes < 0).any():
        raise ValueError("Group labels contain missing values.")
    for k, level in enumerate(levels):
        if not (codes == k).any():
            raise ValueError(f"Group '{level}' has no cells.")
    return codes.astype(int), levels


def cell_loglik(y: np.ndarray, params: dict[str, np.ndarray], grid: np.ndarray) -> np.ndarray:
    """Per-cell log-likelihood of one gene's counts over the magnitude grid.

    Mixture of a Poisson failure component (rate `fail_r`) and a negative
    binomial whose mean is `exp(corr_a + corr_b * m)`; the failure weight is
    logistic in m. Returns shape (n_cells, n_grid).
    """
    yc = np.asarray(y, dtype=float)[:, None]
    m = np.asarray(grid, dtype=float)[None, :]

    eta = np.clip(params["conc_a"][:, None] + params["conc_b"][:, None] * m, -ETA_CLIP, ETA_CLIP)
    log_fail = -np.logaddexp(0.0, -eta)
    log_ok = -np.logaddexp(0.0, eta)

    fail_r = params["fail_r"][:, None]
    log_pois = yc * np.log(fail_r) - fail_r - gammaln(yc + 1.0)

    theta = params["corr_theta"][:, None]
    log_theta = np.log(theta)
    log_mu = np.clip(params["corr_a"][:, None] + params["corr_b"][:, None] * m, -ETA_CLIP, ETA_CLIP)
    log_denom = np.logaddexp(log_theta, log_mu)
    log_nb = (
        gammaln(yc + theta)
        - gammaln(theta)
        - gammaln(yc + 1.0)
        + theta * (log_theta - log_denom)
        + yc * (log_mu - log_denom)
    )
    return np.logaddexp(log_fail + log_pois, log_ok + log_nb)


def bootstrap_weights(rng: np.random.Generator, n_cells: int, n_rand: int) -> np.ndarray:
    """Resample-with-replacement multiplicities, shape (n_rand, n_cells)."""
    return rng.multinomial(int(n_cells), np.full(int(n_cells), 1.0 / int(n_cells)), size=int(n_rand))


def group_posterior(loglik: np.ndarray, log_prior: np.ndarray, weights: np.ndarray) -> np.ndarray:
    lp = weights @ loglik + log_prior[None, :]
    lp -= logsumexp(lp, axis=1, keepdims=True)
    post = np.exp(lp).mean(axis=0)
    return post / post.sum()


def difference_distribution(post1: np.ndarray, post2: np.ndarray) -> np.ndarray:
    """Posterior of m1 - m2 on offsets (k - (n - 1)) * step, k = 0..2n-2."""
    dist = np.clip(np.convolve(post1, post2[::-1]), 0.0, None)
    return dist / dist.sum()


def summarize_difference(dist: np.ndarray, step: float) -> dict[str, float]:
    """MLE, 95% interval, conservative estimate (log2) and Z for one gene."""
    n = (dist.size + 1) // 2
    offsets = (np.arange(dist.size) - (n - 1)) * float(step) / LN2
    cdf = np.cumsum(dist)
    last = dist.size - 1
    lb = float(offsets[min(int(np.searchsorted(cdf, 0.025)), last)])
    ub = float(offsets[min(int(np.searchsorted(cdf, 0.975)), last)])
    mle = float(offsets[int(np.argmax(dist))])
    if lb > 0:
        ce = lb
    elif ub < 0:
        ce = ub
    else:
        ce = 0.0
    p_pos = float(dist[n:].sum() + 0.5 * dist[n - 1])
    z = float(norm.ppf(np.clip(p_pos, Z_EPS, 1.0 - Z_EPS)))
    return {"lb": lb, "mle": mle, "ub": ub, "ce": ce, "Z": z, "cZ": z}


ZERO_SUMMARY = {"lb": 0.0, "mle": 0.0, "ub": 0.0, "ce": 0.0, "Z": 0.0, "cZ": 0.0}


def _difference_chunk(
    Y: np.ndarray,
    params: dict[str, np.ndarray],
    grid: np.ndarray,
    log_prior: np.ndarray,
    codes: np.ndarray,
    strata: list[tuple[np.ndarray, np.ndarray, float]] | None,
    n_rand: int,
    seeds: np.ndarray,
    compute_plain: bool = True,
) -> tuple[list[dict[str, float]] | None, list[dict[str, float]] | None]:
    step = float(grid[1] - grid[0])
    idx1 = np.flatnonzero(codes == 0)
    idx2 = np.flatnonzero(codes == 1)
    plain: list[dict[str, float]] | None = [] if compute_plain else None
    adjusted: list[dict[str, float]] | None = [] if strata is not None else None

    for g in range(Y.shape[0]):
        rng = np.random.default_rng(int(seeds[g]))
        # Plain weights are always drawn so batch draws match across modes.
        w1 = bootstrap_weights(rng, idx1.size, n_rand)
        w2 = bootstrap_weights(rng, idx2.size, n_rand)
        L = None
        if plain is not None:
            L = cell_loglik(Y[g], params, grid)
            post1 = group_posterior(L[idx1], log_prior, w1)
            post2 = group_posterior(L[idx2], log_prior, w2)
            plain.append(summarize_difference(difference_distribution(post1, post2), step))

        if adjusted is None:
            continue
        if not strata:
            adjusted.append(dict(ZERO_SUMMARY))
            continue
        if L is None:
            L = cell_loglik(Y[g], params, grid)
        mix = None
        total_w = 0.0
        for b1, b2, weight in strata:
            p1 = group_posterior(L[b1], log_prior, bootstrap_weights(rng, b1.size, n_rand))
            p2 = group_posterior(L[b2], log_prior, bootstrap_weights(rng, b2.size, n_rand))
            d = difference_distribution(p1, p2) * weight
            mix = d if mix is None else mix + d
            total_w += weight
        adjusted.append(summarize_difference(mix / total_w, step))
    return plain, adjusted


def _batch_strata(
    codes: np.ndarray, batch: pd.Series, cells: pd.Index
) -> list[tuple[np.ndarray, np.ndarray, float]]:
    missing = pd.Index(cells).difference(batch.index)
    if len(missing) > 0:
        raise KeyError(f"Cells without a batch label: {', '.join(map(str, missing[:5]))}")
    b = batch.loc[cells].astype(str).to_numpy()
    strata = []
    for level in pd.unique(b):
        in_b = b == level
        b1 = np.flatnonzero(in_b & (codes == 0))
        b2 = np.flatnonzero(in_b & (codes == 1))
        if b1.size > 0 and b2.size > 0:
            strata.append((b1, b2, float(min(b1.size, b2.size))))
    return strata


def expression_difference(
    fit: ErrorModelFit,
    counts: pd.DataFrame,
    prior: ExpressionPrior,
    groups: pd.Series,
    *,
    rng: np.random.Generator,
    config: DifferenceConfig | None = None,
    batch: pd.Series | None = None,
    logger: logging.Logger | None = None,
    plain: pd.DataFrame | None = None,
    stacklevel: int = 2,
) -> pd.DataFrame | BatchDifferenceResult:
    """Per-gene posterior difference between the two group levels.

    Effect sizes are log2 fold changes of the first level over the second;
    `Z` is positive when the first level is higher. With `batch`, group
    contrasts are also taken within each batch that holds both groups and
    pooled into `batch_adjusted`.

    A `plain` table from an earlier run with the same `rng` seed is reused as
    `results` instead of recomputing it; it is only read when `batch` is
    given. `stacklevel` is forwarded to the confounding `RuntimeWarning`.
    """
    cfg = config or DifferenceConfig()
    if cfg.on_confounded not in CONFOUNDED_POLICIES:
        raise ValueError(
            f"on_confounded must be one of {CONFOUNDED_POLICIES}; got '{cfg.on_confounded}'."
        )
    n_rand = int(cfg.n_randomizations)
    if n_rand <= 0:
        raise ValueError("n_randomizations must be positive.")

    cells = counts.columns
    missing = cells.difference(fit.params.index)
    if len(missing) > 0:
        raise KeyError(f"No error model for cells: {', '.join(map(str, missing[:5]))}")
    codes, levels = _as_two_level(groups, cells)
    table = fit.params.loc[cells]
    params = {col: table[col].to_numpy(dtype=float) for col in table.columns}

    strata = None
    confounded = False
    if batch is not None:
        strata = _batch_strata(codes, batch, cells)
        confounded = not strata
        if confounded:
            msg = (
                "Batch labels are completely confounded with groups "
                f"({levels[0]} vs {levels[1]}); no within-batch contrast exists."
            )
            if cfg.on_confounded == "raise":
                raise ValueError(msg)
            if logger is not None:
                logger.warning("%s Batch-adjusted effects set to zero.", msg)
            warnings.warn(
                msg + " Batch-adjusted effects set to zero.",
                RuntimeWarning,
                stacklevel=stacklevel,
            )

    reuse = batch is not None and plain is not None
    if reuse:
        missing_genes = counts.index.difference(plain.index)
        if len(missing_genes) > 0:
            raise KeyError(
                f"Plain results lack genes: {', '.join(map(str, missing_genes[:5]))}"
            )

    Y = counts.to_numpy(dtype=float)
    seeds = child_seeds(rng, Y.shape[0])
    chunk = max(1, int(cfg.chunk_size))
    bounds = [(s, min(s + chunk, Y.shape[0])) for s in range(0, Y.shape[0], chunk)]
    parts = Parallel(n_jobs=int(cfg.n_jobs))(
        delayed(_difference_chunk)(
            Y[s:e],
            params,
            prior.grid,
            prior.log_density,
            codes,
            strata,
            n_rand,
            seeds[s:e],
            not reuse,
        )
        for s, e in bounds
    )

    if reuse:
        results = plain.loc[counts.index, list(DE_COLUMNS)].copy()
    else:
        plain_rows = [row for rows, _ in parts for row in rows]
        results = pd.DataFrame(plain_rows, index=counts.index, columns=list(DE_COLUMNS))
    if batch is None:
        return results

    adj_rows = [row for _, rows in parts for row in rows]
    adjusted = pd.DataFrame(adj_rows, index=counts.index, columns=list(DE_COLUMNS))
    effect = results[["mle", "ce"]] - adjusted[["mle", "ce"]]
    return BatchDifferenceResult(
        results=results,
        batch_adjusted=adjusted,
        batch_effect=effect,
        confounded=confounded,
    )
