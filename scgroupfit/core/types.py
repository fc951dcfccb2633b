"""Typed configuration and result containers for scgroupfit core operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd

ERROR_MODEL_COLUMNS = ("conc_a", "conc_b", "fail_r", "corr_a", "corr_b", "corr_theta")
DE_COLUMNS = ("lb", "mle", "ub", "ce", "Z", "cZ")


@dataclass(frozen=True)
class FilterThresholds:
    """Cell and gene detection thresholds; all comparisons are strict."""

    min_lib_size: int = 1000
    min_reads: int = 1
    min_detected: int = 1


@dataclass(frozen=True)
class FilterReport:
    n_cells_in: int
    n_genes_in: int
    n_cells_removed: int
    n_genes_removed: int
    n_passes: int = 1


@dataclass(frozen=True)
class ErrorModelConfig:
    """Per-cell error model fitting options."""

    linear_fit: bool = True
    robust_detection: float = 0.2
    max_genes: int = 2000
    min_nonfailed: int = 5
    fail_rate: float = 0.1
    max_theta: float = 1e3
    n_jobs: int = 1


@dataclass(frozen=True)
class PriorConfig:
    n_grid: int = 400
    max_quantile: float = 1.0 - 1e-3
    bandwidth: float = 0.1
    pseudo_count: float = 1.0


@dataclass(frozen=True)
class DifferenceConfig:
    """Posterior difference options.

    - `on_confounded`: "zero" returns a degenerate all-zero batch-adjusted
      table when no batch contains both groups; "raise" rejects the design.
    """

    n_randomizations: int = 100
    n_jobs: int = 1
    chunk_size: int = 200
    on_confounded: str = "zero"


@dataclass(frozen=True)
class ErrorModelFit:
    """Output of `ErrorModelEstimator.fit`.

    - `params`: one row per cell, columns `ERROR_MODEL_COLUMNS`.
    - `groups`: labels used to split fitting sets, or None for a shared fit.
    - `robust_genes`: fitting-set name -> genes used as the reference.
    - `reference`: fitting-set name -> log reference magnitude of those genes.
    """

    params: pd.DataFrame
    groups: pd.Series | None
    robust_genes: dict[str, pd.Index]
    config: ErrorModelConfig
    reference: dict[str, pd.Series] = field(default_factory=dict)

    @property
    def cells(self) -> pd.Index:
        return self.params.index

    @property
    def within_group(self) -> bool:
        return self.groups is not None


@dataclass(frozen=True)
class ExpressionPrior:
    """Discretized prior over natural-log expression magnitude."""

    grid: np.ndarray
    log_density: np.ndarray

    @property
    def step(self) -> float:
        if self.grid.size < 2:
            raise ValueError("Prior grid must contain at least two points.")
        return float(self.grid[1] - self.grid[0])

    @property
    def density(self) -> np.ndarray:
        return np.exp(self.log_density)


@dataclass(frozen=True)
class BatchDifferenceResult:
    results: pd.DataFrame
    batch_adjusted: pd.DataFrame
    batch_effect: pd.DataFrame
    confounded: bool


@dataclass(frozen=True)
class DESummary:
    label: str
    n_significant: int
    n_down: int
    prop_down: float
    threshold: float
    metadata: dict[str, Any] = field(default_factory=dict)
