"""scgroupfit public API."""

from scgroupfit._version import __version__
from scgroupfit.config import PipelineConfig, load_config
from scgroupfit.core.counts import clean_counts, es_mef_small, load_counts
from scgroupfit.core.labels import PrefixLabeler, assign_groups
from scgroupfit.models.base import ErrorModelEstimator, MixtureErrorModel
from scgroupfit.stats.multitest import correct_z_scores, summarize_de


def run_pipeline(*args, **kwargs):
    """Lazy wrapper to avoid importing plotting and report dependencies at import time."""
    from scgroupfit.pipeline.workflow import run_pipeline as _run_pipeline

    return _run_pipeline(*args, **kwargs)


__all__ = [
    "__version__",
    "PipelineConfig",
    "load_config",
    "es_mef_small",
    "load_counts",
    "clean_counts",
    "PrefixLabeler",
    "assign_groups",
    "ErrorModelEstimator",
    "MixtureErrorModel",
    "correct_z_scores",
    "summarize_de",
    "run_pipeline",
]
