from __future__ import annotations

import os

import matplotlib
import numpy as np
import pandas as pd
import pytest

os.environ.setdefault("MPLBACKEND", "Agg")
matplotlib.use("Agg", force=True)

from scgroupfit.core.counts import clean_counts, es_mef_small
from scgroupfit.core.labels import assign_groups
from scgroupfit.core.types import ErrorModelConfig


@pytest.fixture(scope="session")
def example_counts() -> pd.DataFrame:
    return es_mef_small(seed=0)


@pytest.fixture(scope="session")
def small_counts(example_counts) -> pd.DataFrame:
    """First 120 genes surviving the default filter, all 40 cells."""
    filtered, _ = clean_counts(example_counts)
    return filtered.iloc[:120].copy()


@pytest.fixture(scope="session")
def small_groups(small_counts) -> pd.Series:
    return assign_groups(small_counts.columns)


@pytest.fixture()
def fast_fit_config() -> ErrorModelConfig:
    return ErrorModelConfig(max_genes=150)


@pytest.fixture()
def rng() -> np.random.Generator:
    return np.random.default_rng(7)
