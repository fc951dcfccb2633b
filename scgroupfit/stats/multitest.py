"""Multiple-testing correction and DE summaries."""

from __future__ import annotations

import numpy as np
import pandas as pd
from scipy.stats import norm

from scgroupfit.core.types import DESummary

DEFAULT_Z_THRESHOLD = 1.96


def bh_fdr(pvals: np.ndarray) -> np.ndarray:
    arr = np.asarray(pvals, dtype=float)
    flat = arr.ravel()
    q = np.ones_like(flat)
    finite = np.isfinite(flat)
    if np.any((flat[finite] < 0.0) | (flat[finite] > 1.0)):
        raise ValueError("p-values must be in [0,1] or NaN.")
    if np.any(finite):
        p = flat[finite]
        m = int(p.size)
        order = np.argsort(p, kind="mergesort")
        ranked = p[order]
        ranks = np.arange(1, m + 1, dtype=float)
        adj = ranked * (float(m) / ranks)
        adj = np.minimum.accumulate(adj[::-1])[::-1]
        adj = np.clip(adj, 0.0, 1.0)
        q_valid = np.empty_like(adj)
        q_valid[order] = adj
        q[finite] = q_valid
    return q.reshape(arr.shape)


def z_to_pvalue(z: np.ndarray) -> np.ndarray:
    """Two-sided p-value of a standard normal statistic."""
    return 2.0 * norm.sf(np.abs(np.asarray(z, dtype=float)))


def corrected_z(z: np.ndarray) -> np.ndarray:
    """BH-adjust two-sided p-values of `z` and map back to signed normal scores.

    Magnitudes never increase, the sign of `z` is kept, and genes with an
    adjusted p of 1 map to 0.
    """
    arr = np.asarray(z, dtype=float)
    q = bh_fdr(z_to_pvalue(arr))
    return norm.isf(q / 2.0) * np.sign(arr)


def correct_z_scores(de: pd.DataFrame) -> pd.DataFrame:
    """Overwrite `de["cZ"]` in place with the corrected statistic and return `de`."""
    if "Z" not in de.columns:
        raise KeyError("DE table has no 'Z' column.")
    de["cZ"] = corrected_z(de["Z"].to_numpy(dtype=float))
    return de


def summarize_de(
    de: pd.DataFrame,
    label: str,
    threshold: float = DEFAULT_Z_THRESHOLD,
    column: str = "cZ",
) -> DESummary:
    """Count significant genes and the share lower in the first group level."""
    if column not in de.columns:
        raise KeyError(f"DE table has no '{column}' column.")
    cz = de[column].to_numpy(dtype=float)
    thr = float(threshold)
    sig = np.abs(cz) > thr
    n_sig = int(sig.sum())
    n_down = int((cz < -thr).sum())
    prop = float(n_down) / float(n_sig) if n_sig > 0 else 0.0
    return DESummary(
        label=str(label),
        n_significant=n_sig,
        n_down=n_down,
        prop_down=prop,
        threshold=thr,
        metadata={"n_genes": int(cz.size), "n_up": int(n_sig - n_down)},
    )


def summaries_frame(summaries: list[DESummary]) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {
                "fit": s.label,
                "n_genes": s.metadata.get("n_genes"),
                "n_significant": s.n_significant,
                "n_down": s.n_down,
                "n_up": s.metadata.get("n_up"),
                "prop_down": s.prop_down,
                "threshold": s.threshold,
            }
            for s in summaries
        ]
    )
