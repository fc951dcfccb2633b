"""Core data subpackage."""

from scgroupfit.core.counts import clean_counts, es_mef_small, load_counts, validate_counts
from scgroupfit.core.labels import PrefixLabeler, align_counts_to_groups, assign_groups
from scgroupfit.core.types import (
    BatchDifferenceResult,
    DESummary,
    DifferenceConfig,
    ErrorModelConfig,
    ErrorModelFit,
    ExpressionPrior,
    FilterReport,
    FilterThresholds,
    PriorConfig,
)

__all__ = [
    "FilterThresholds",
    "FilterReport",
    "ErrorModelConfig",
    "PriorConfig",
    "DifferenceConfig",
    "ErrorModelFit",
    "ExpressionPrior",
    "BatchDifferenceResult",
    "DESummary",
    "es_mef_small",
    "load_counts",
    "validate_counts",
    "clean_counts",
    "PrefixLabeler",
    "assign_groups",
    "align_counts_to_groups",
]
