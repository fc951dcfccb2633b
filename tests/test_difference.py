from __future__ import annotations

import logging
import warnings
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from scgroupfit.core.types import (
    DE_COLUMNS,
    BatchDifferenceResult,
    DifferenceConfig,
    ErrorModelConfig,
    PriorConfig,
)
from scgroupfit.models.base import MixtureErrorModel
from scgroupfit.models.difference import (
    LN2,
    difference_distribution,
    expression_difference,
    summarize_difference,
)
from scgroupfit.models.prior import expression_magnitude, expression_prior

FAST_PRIOR = PriorConfig(n_grid=60)
FAST_DIFF = DifferenceConfig(n_randomizations=12, chunk_size=25)


@pytest.fixture(scope="module")
def fitted(small_counts, small_groups):
    est = MixtureErrorModel()
    fit = est.fit(
        small_counts,
        small_groups,
        rng=np.random.default_rng(11),
        config=ErrorModelConfig(max_genes=150),
    )
    prior = est.expression_prior(fit, small_counts, FAST_PRIOR)
    return est, fit, prior


def test_magnitude_is_log_scale_and_zero_maps_to_minus_inf(fitted, small_counts):
    _, fit, _ = fitted
    mag = expression_magnitude(fit, small_counts)
    assert mag.shape == small_counts.shape
    zeros = small_counts.to_numpy() == 0
    assert np.isneginf(mag.to_numpy()[zeros]).all()
    assert np.isfinite(mag.to_numpy()[~zeros]).all()

    cell = small_counts.columns[0]
    gene = small_counts.index[small_counts[cell] > 0][0]
    a, b = fit.params.loc[cell, ["corr_a", "corr_b"]]
    expected = (np.log(small_counts.loc[gene, cell]) - a) / b
    assert np.isclose(mag.loc[gene, cell], expected)


def test_prior_is_normalized_on_requested_grid(fitted, small_counts):
    _, fit, prior = fitted
    assert prior.grid.size == FAST_PRIOR.n_grid
    assert np.isclose(prior.step, prior.grid[1] - prior.grid[0])
    assert np.all(np.diff(prior.grid) > 0)
    assert np.isclose(prior.density.sum(), 1.0)
    assert np.all(prior.density > 0)
    with pytest.raises(ValueError, match="n_grid"):
        expression_prior(fit, small_counts, PriorConfig(n_grid=1))


def test_summarize_difference_point_mass():
    step = 0.1
    n = 21
    dist = np.zeros(2 * n - 1)
    dist[n - 1 + 4] = 1.0
    out = summarize_difference(dist, step)
    expected = 4 * step / LN2
    assert np.isclose(out["mle"], expected)
    assert np.isclose(out["lb"], expected)
    assert np.isclose(out["ub"], expected)
    assert np.isclose(out["ce"], expected)
    assert out["Z"] > 7.0
    assert np.isclose(out["Z"], -summarize_difference(dist[::-1], step)["Z"], atol=0.05)


def test_summarize_difference_symmetric_has_zero_effect():
    post = np.exp(-0.5 * np.linspace(-3, 3, 31) ** 2)
    post /= post.sum()
    dist = difference_distribution(post, post)
    assert dist.size == 61
    assert np.isclose(dist.sum(), 1.0)
    out = summarize_difference(dist, 0.2)
    assert out["mle"] == 0.0
    assert out["ce"] == 0.0
    assert out["lb"] < 0 < out["ub"]
    assert abs(out["Z"]) < 1e-6


def test_difference_table_direction_and_determinism(fitted, small_counts, small_groups):
    est, fit, prior = fitted
    up_in_esc = pd.DataFrame(
        [[60 if c.startswith("ESC") else 0 for c in small_counts.columns]],
        index=["esc_high"],
        columns=small_counts.columns,
    )
    counts = pd.concat([small_counts.iloc[:30], up_in_esc])
    de = est.expression_difference(
        fit, counts, prior, small_groups, rng=np.random.default_rng(3), config=FAST_DIFF
    )
    assert list(de.columns) == list(DE_COLUMNS)
    assert list(de.index) == list(counts.index)
    assert (de["lb"] <= de["ub"]).all()
    assert de.loc["esc_high", "mle"] > 0
    assert de.loc["esc_high", "Z"] > 1.96

    again = est.expression_difference(
        fit,
        counts,
        prior,
        small_groups,
        rng=np.random.default_rng(3),
        config=DifferenceConfig(n_randomizations=12, chunk_size=7, n_jobs=2),
    )
    pd.testing.assert_frame_equal(de, again)


def test_confounded_batch_gives_zero_adjusted_effects(fitted, small_counts, small_groups, caplog):
    _, fit, prior = fitted
    counts = small_counts.iloc[:25]
    plain = expression_difference(
        fit, counts, prior, small_groups, rng=np.random.default_rng(9), config=FAST_DIFF
    )
    caplog.set_level(logging.WARNING)
    with pytest.warns(RuntimeWarning, match="confounded"):
        res = expression_difference(
            fit,
            counts,
            prior,
            small_groups,
            rng=np.random.default_rng(9),
            config=FAST_DIFF,
            batch=small_groups.astype(str),
            logger=logging.getLogger("scgroupfit.test"),
        )
    assert isinstance(res, BatchDifferenceResult)
    assert res.confounded
    assert np.all(np.abs(res.batch_adjusted["mle"].to_numpy()) < 1e-6)
    pd.testing.assert_frame_equal(res.results, plain)
    pd.testing.assert_frame_equal(res.batch_effect, plain[["mle", "ce"]])
    assert "confounded" in caplog.text


def test_confounded_batch_can_be_rejected(fitted, small_counts, small_groups):
    _, fit, prior = fitted
    with pytest.raises(ValueError, match="confounded"):
        expression_difference(
            fit,
            small_counts.iloc[:5],
            prior,
            small_groups,
            rng=np.random.default_rng(0),
            config=DifferenceConfig(n_randomizations=4, on_confounded="raise"),
            batch=small_groups.astype(str),
        )


def test_balanced_batch_is_not_confounded(fitted, small_counts, small_groups):
    _, fit, prior = fitted
    batch = pd.Series(
        ["b1" if i % 2 == 0 else "b2" for i in range(len(small_groups))],
        index=small_groups.index,
    )
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        res = expression_difference(
            fit,
            small_counts.iloc[:10],
            prior,
            small_groups,
            rng=np.random.default_rng(4),
            config=FAST_DIFF,
            batch=batch,
        )
    assert not res.confounded
    assert not any("confounded" in str(w.message) for w in caught)
    assert np.isfinite(res.batch_adjusted.to_numpy()).all()


def test_difference_rejects_unlabelled_cells(fitted, small_counts, small_groups):
    _, fit, prior = fitted
    with pytest.raises(KeyError, match="without a group label"):
        expression_difference(
            fit,
            small_counts.iloc[:3],
            prior,
            small_groups.iloc[:-2],
            rng=np.random.default_rng(0),
            config=FAST_DIFF,
        )


def test_confounding_warning_points_at_estimator_caller(fitted, small_counts, small_groups):
    est, fit, prior = fitted
    with pytest.warns(RuntimeWarning, match="confounded") as record:
        est.expression_difference(
            fit,
            small_counts.iloc[:3],
            prior,
            small_groups,
            rng=np.random.default_rng(1),
            config=FAST_DIFF,
            batch=small_groups.astype(str),
        )
    assert any(Path(w.filename) == Path(__file__) for w in record)


def test_batch_run_reuses_plain_table(fitted, small_counts, small_groups):
    est, fit, prior = fitted
    counts = small_counts.iloc[:12]
    batch = pd.Series(
        ["b1" if i % 2 == 0 else "b2" for i in range(len(small_groups))],
        index=small_groups.index,
    )
    plain = est.expression_difference(
        fit, counts, prior, small_groups, rng=np.random.default_rng(21), config=FAST_DIFF
    )
    full = est.expression_difference(
        fit,
        counts,
        prior,
        small_groups,
        rng=np.random.default_rng(21),
        config=FAST_DIFF,
        batch=batch,
    )
    reused = est.expression_difference(
        fit,
        counts,
        prior,
        small_groups,
        rng=np.random.default_rng(21),
        config=FAST_DIFF,
        batch=batch,
        plain=plain,
    )
    pd.testing.assert_frame_equal(reused.results, plain)
    pd.testing.assert_frame_equal(reused.batch_adjusted, full.batch_adjusted)
    pd.testing.assert_frame_equal(reused.batch_effect, full.batch_effect)

    with pytest.raises(KeyError, match="lack genes"):
        est.expression_difference(
            fit,
            counts,
            prior,
            small_groups,
            rng=np.random.default_rng(21),
            config=FAST_DIFF,
            batch=batch,
            plain=plain.iloc[:5],
        )
