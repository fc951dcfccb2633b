from __future__ import annotations

import numpy as np
import pandas as pd
import pytest
from scipy.stats import nbinom

from scgroupfit.core.types import ERROR_MODEL_COLUMNS, ErrorModelConfig
from scgroupfit.models.base import MixtureErrorModel
from scgroupfit.models.error_model import (
    SHARED_SET,
    SLOPE_BOUNDS,
    fit_cell,
    fit_error_models,
    fitting_sets,
    nb_logpmf,
    robust_genes,
)


def test_nb_logpmf_matches_scipy():
    y = np.array([0.0, 1.0, 4.0, 20.0])
    mu = np.array([0.5, 2.0, 4.0, 15.0])
    theta = np.array([0.7, 1.0, 5.0, 30.0])
    expected = nbinom.logpmf(y, theta, theta / (theta + mu))
    np.testing.assert_allclose(nb_logpmf(y, np.log(mu), theta), expected, rtol=1e-10)


def test_fits_one_row_per_cell_for_both_modes(small_counts, small_groups, fast_fit_config):
    est = MixtureErrorModel()
    within = est.fit(small_counts, small_groups, rng=np.random.default_rng(1), config=fast_fit_config)
    overall = est.fit(small_counts, None, rng=np.random.default_rng(1), config=fast_fit_config)

    for fit in (within, overall):
        assert list(fit.params.columns) == list(ERROR_MODEL_COLUMNS)
        assert list(fit.cells) == list(small_counts.columns)
        assert len(fit.params) == 40
        assert np.isfinite(fit.params.to_numpy()).all()
        assert (fit.params["corr_theta"] > 0).all()
        assert fit.params["corr_b"].between(*SLOPE_BOUNDS).all()
        assert (fit.params["fail_r"] == fast_fit_config.fail_rate).all()

    assert within.within_group and not overall.within_group
    assert set(within.robust_genes) == {"ESC", "MEF"}
    assert set(overall.robust_genes) == {SHARED_SET}


def test_fit_is_reproducible_and_independent_of_n_jobs(small_counts, small_groups):
    cfg = ErrorModelConfig(max_genes=30)
    a = fit_error_models(small_counts, small_groups, rng=np.random.default_rng(5), config=cfg)
    b = fit_error_models(small_counts, small_groups, rng=np.random.default_rng(5), config=cfg)
    c = fit_error_models(
        small_counts,
        small_groups,
        rng=np.random.default_rng(5),
        config=ErrorModelConfig(max_genes=30, n_jobs=2),
    )
    pd.testing.assert_frame_equal(a.params, b.params)
    pd.testing.assert_frame_equal(a.params, c.params)


def test_group_specific_gene_changes_robust_sets(small_counts, small_groups):
    extra = pd.DataFrame(
        [[8 if c.startswith("ESC") else 0 for c in small_counts.columns]],
        index=["esc_only"],
        columns=small_counts.columns,
    )
    counts = pd.concat([small_counts, extra])
    sets = fitting_sets(counts, small_groups)
    assert list(sets) == ["ESC", "MEF"]

    assert "esc_only" in robust_genes(counts.loc[:, sets["ESC"]], 0.6)
    assert "esc_only" not in robust_genes(counts.loc[:, sets["MEF"]], 0.6)
    assert "esc_only" not in robust_genes(counts, 0.6)

    cfg = ErrorModelConfig(robust_detection=0.6, max_genes=150)
    within = fit_error_models(counts, small_groups, rng=np.random.default_rng(0), config=cfg)
    overall = fit_error_models(counts, None, rng=np.random.default_rng(0), config=cfg)
    assert "esc_only" in within.robust_genes["ESC"]
    assert "esc_only" not in overall.robust_genes[SHARED_SET]


def test_offset_only_fit_keeps_unit_slope(small_counts, small_groups):
    cfg = ErrorModelConfig(linear_fit=False, max_genes=150)
    fit = fit_error_models(small_counts, small_groups, rng=np.random.default_rng(2), config=cfg)
    assert np.allclose(fit.params["corr_b"], 1.0)


def test_cell_with_too_few_detections_is_rejected():
    y = np.array([0, 0, 3, 0, 1, 0, 0, 0], dtype=float)
    ref = np.linspace(-1.0, 2.0, y.size)
    with pytest.raises(ValueError, match="detects 2 robust genes"):
        fit_cell("bad_cell", y, ref, ErrorModelConfig(min_nonfailed=5), seed=0)


def test_labels_must_cover_count_columns(small_counts, small_groups):
    with pytest.raises(KeyError, match="disagree"):
        fitting_sets(small_counts, small_groups.iloc[:-1])
    with pytest.raises(ValueError, match="robust_detection"):
        fit_error_models(
            small_counts,
            None,
            rng=np.random.default_rng(0),
            config=ErrorModelConfig(robust_detection=1.5),
        )
