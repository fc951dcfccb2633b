"""Statistical utilities for scgroupfit."""

from scgroupfit.stats.multitest import (
    bh_fdr,
    correct_z_scores,
    corrected_z,
    summarize_de,
    z_to_pvalue,
)
from scgroupfit.stats.normalization import (
    adjusted_counts,
    fit_size_factors,
    library_totals,
    median_ratio_size_factors,
    size_factor_table,
)

__all__ = [
    "bh_fdr",
    "z_to_pvalue",
    "corrected_z",
    "correct_z_scores",
    "summarize_de",
    "fit_size_factors",
    "median_ratio_size_factors",
    "size_factor_table",
    "adjusted_counts",
    "library_totals",
]
