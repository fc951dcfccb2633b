"""Count-matrix loading, validation and detection filtering."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pandas as pd
import scipy.sparse as sp

from scgroupfit.core.types import FilterReport, FilterThresholds

N_ESC = 20
N_MEF = 20
N_HOUSEKEEPING = 1500
N_VARIABLE = 3500
N_ALL_ZERO = 1500
N_SINGLE_READ = 700
N_SINGLE_CELL = 555
N_UNDETECTED = N_ALL_ZERO + N_SINGLE_READ + N_SINGLE_CELL
DE_FRACTION = 0.10
DE_LOG2FC = 2.0


def _get_scanpy():
    import scanpy as sc

    return sc


def _nb_draw(rng: np.random.Generator, mu: np.ndarray, theta: float) -> np.ndarray:
    mu = np.maximum(np.asarray(mu, dtype=float), 1e-8)
    p = float(theta) / (float(theta) + mu)
    return rng.negative_binomial(float(theta), p).astype(np.int64)


def es_mef_small(seed: int = 0) -> pd.DataFrame:
    """Bundled 40-cell example: 20 ESC and 20 MEF cells (genes x cells).

    The matrix is simulated deterministically from `seed`. Every cell detects
    all housekeeping genes, every variable gene is detected in at least two
    cells, and exactly `N_UNDETECTED` genes fail the default detection filter.
    """
    rng = np.random.default_rng(int(seed))
    cells = [f"ESC_{i + 1:02d}" for i in range(N_ESC)] + [
        f"MEF_{i + 1:02d}" for i in range(N_MEF)
    ]
    n_cells = len(cells)
    is_esc = np.arange(n_cells) < N_ESC
    depth = rng.lognormal(mean=0.0, sigma=0.35, size=n_cells)

    hk_mu = rng.lognormal(mean=2.5, sigma=1.0, size=N_HOUSEKEEPING)
    housekeeping = _nb_draw(rng, hk_mu[:, None] * depth[None, :], theta=4.0) + 1

    base_mu = rng.lognormal(mean=0.5, sigma=1.5, size=N_VARIABLE)
    log2fc = np.zeros(N_VARIABLE, dtype=float)
    n_de = int(round(DE_FRACTION * N_VARIABLE))
    de_idx = rng.choice(N_VARIABLE, size=n_de, replace=False)
    log2fc[de_idx] = np.where(np.arange(n_de) % 2 == 0, DE_LOG2FC, -DE_LOG2FC)
    effect = np.where(is_esc[None, :], np.exp2(log2fc)[:, None], 1.0)
    mu = base_mu[:, None] * depth[None, :] * effect
    variable = _nb_draw(rng, mu, theta=1.0)
    p_drop = 1.0 / (1.0 + mu)
    variable[rng.random(variable.shape) < p_drop] = 0
    picks = np.argsort(rng.random((N_VARIABLE, n_cells)), axis=1)[:, :2]
    rows = np.arange(N_VARIABLE)[:, None]
    variable[rows, picks] = np.maximum(variable[rows, picks], 1)

    undetected = np.zeros((N_UNDETECTED, n_cells), dtype=np.int64)
    single_read_rows = np.arange(N_ALL_ZERO, N_ALL_ZERO + N_SINGLE_READ)
    undetected[single_read_rows, rng.integers(0, n_cells, size=N_SINGLE_READ)] = 1
    single_cell_rows = np.arange(N_ALL_ZERO + N_SINGLE_READ, N_UNDETECTED)
    undetected[single_cell_rows, rng.integers(0, n_cells, size=N_SINGLE_CELL)] = (
        rng.integers(2, 20, size=N_SINGLE_CELL)
    )

    X = np.vstack([housekeeping, variable, undetected])
    X = X[rng.permutation(X.shape[0])]
    genes = [f"Gene{i + 1:05d}" for i in range(X.shape[0])]
    return pd.DataFrame(X, index=pd.Index(genes, name="gene"), columns=pd.Index(cells, name="cell"))


def validate_counts(counts: pd.DataFrame) -> pd.DataFrame:
    """Check a genes x cells count table and return it with an int64 dtype."""
    if not isinstance(counts, pd.DataFrame):
        raise ValueError(f"counts must be a pandas DataFrame, got {type(counts).__name__}.")
    if counts.shape[0] == 0 or counts.shape[1] == 0:
        raise ValueError(f"counts must be non-empty; received shape {counts.shape}.")
    if counts.index.has_duplicates:
        dup = counts.index[counts.index.duplicated()].unique()[:5]
        raise ValueError(f"Duplicate gene identifiers: {', '.join(map(str, dup))}.")
    if counts.columns.has_duplicates:
        dup = counts.columns[counts.columns.duplicated()].unique()[:5]
        raise ValueError(f"Duplicate cell identifiers: {', '.join(map(str, dup))}.")
    values = counts.to_numpy(dtype=float)
    if not np.isfinite(values).all():
        raise ValueError("counts contain NaN/inf values.")
    if (values < 0).any():
        raise ValueError("counts must be non-negative.")
    if not np.array_equal(values, np.round(values)):
        raise ValueError("counts must be integers.")
    out = counts.astype(np.int64)
    out.index = out.index.astype(str)
    out.columns = out.columns.astype(str)
    return out


def load_counts(path: str | Path, layer: str | None = None) -> pd.DataFrame:
    """Load a genes x cells count matrix from CSV/TSV or `.h5ad`.

    Args:
        path: Delimited text with genes as rows and cells as columns, or an
            AnnData file (cells x genes, transposed on load).
        layer: AnnData layer holding raw counts; `X` is used when None.

    Returns:
        Validated genes x cells count DataFrame.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Count matrix not found: {p}")
    suffix = p.suffix.lower()
    if suffix in {".csv", ".tsv", ".txt"}:
        sep = "," if suffix == ".csv" else "\t"
        df = pd.read_csv(p, sep=sep, index_col=0)
    elif suffix == ".h5ad":
        adata = _get_scanpy().read_h5ad(p)
        if layer is not None:
            if layer not in adata.layers:
                raise KeyError(f"Layer '{layer}' not found in adata.layers.")
            X = adata.layers[layer]
        else:
            X = adata.X
        dense = X.toarray() if sp.issparse(X) else np.asarray(X)
        df = pd.DataFrame(
            dense.T,
            index=pd.Index(adata.var_names.astype(str), name="gene"),
            columns=pd.Index(adata.obs_names.astype(str), name="cell"),
        )
    else:
        raise ValueError(
            f"Unsupported count matrix format '{suffix}' for '{p}'. Use .csv, .tsv or .h5ad."
        )
    return validate_counts(df)


def clean_counts(
    counts: pd.DataFrame,
    thresholds: FilterThresholds | None = None,
) -> tuple[pd.DataFrame, FilterReport]:
    """Drop low-library cells, then low-read and rarely detected genes.

    Cells are kept when they detect more than `min_lib_size` genes; genes are
    kept with more than `min_reads` total reads seen in more than
    `min_detected` cells. Passes repeat until the matrix stops shrinking, so
    filtering a filtered matrix is a no-op.
    """
    th = thresholds or FilterThresholds()
    mat = validate_counts(counts)
    n_genes_in, n_cells_in = mat.shape

    n_passes = 0
    while True:
        n_passes += 1
        cells_ok = (mat > 0).sum(axis=0) > int(th.min_lib_size)
        out = mat.loc[:, cells_ok]
        genes_ok = (out.sum(axis=1) > int(th.min_reads)) & (
            (out > 0).sum(axis=1) > int(th.min_detected)
        )
        out = out.loc[genes_ok]
        if out.shape == mat.shape:
            break
        mat = out

    if mat.shape[0] == 0 or mat.shape[1] == 0:
        raise ValueError(
            f"Filtering removed every {'cell' if mat.shape[1] == 0 else 'gene'} "
            f"(min_lib_size={th.min_lib_size}, min_reads={th.min_reads}, "
            f"min_detected={th.min_detected})."
        )

    report = FilterReport(
        n_cells_in=int(n_cells_in),
        n_genes_in=int(n_genes_in),
        n_cells_removed=int(n_cells_in - mat.shape[1]),
        n_genes_removed=int(n_genes_in - mat.shape[0]),
        n_passes=int(n_passes),
    )
    return mat, report
