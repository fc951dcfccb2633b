from __future__ import annotations

import json
import logging
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from scgroupfit.config import PipelineConfig
from scgroupfit.core.counts import es_mef_small
from scgroupfit.pipeline.workflow import FIT_NAMES, _reference_size_factors, run_pipeline


def _tiny_config(tmp_path: Path) -> PipelineConfig:
    counts = es_mef_small(seed=1)
    # Keep every undetected gene pattern represented in a small matrix.
    subset = pd.concat([counts.iloc[:400], counts.iloc[-100:]])
    path = tmp_path / "counts.csv"
    subset.to_csv(path)
    return PipelineConfig.from_dict(
        {
            "seed": 3,
            "outdir": str(tmp_path / "out"),
            "dataset": {"path": str(path)},
            "filter": {"min_lib_size": 20},
            "error_model": {"max_genes": 150},
            "prior": {"n_grid": 40},
            "difference": {"n_randomizations": 8, "chunk_size": 50},
        }
    )


@pytest.fixture(scope="module")
def pipeline_run(tmp_path_factory):
    tmp_path = tmp_path_factory.mktemp("pipeline")
    cfg = _tiny_config(tmp_path)
    with pytest.warns(RuntimeWarning, match="confounded"):
        result = run_pipeline(cfg)
    return cfg, result


def test_pipeline_writes_expected_outputs(pipeline_run):
    cfg, result = pipeline_run
    out = Path(cfg.outdir)
    for rel in (
        "results/size_factors.csv",
        "results/library_totals.csv",
        "results/error_model_within_group.csv",
        "results/error_model_overall.csv",
        "results/de_within_group.csv",
        "results/de_overall.csv",
        "results/de_summary.csv",
        "results/batch_adjusted.csv",
        "results/run_summary.json",
        "figures/size_factors.png",
        "figures/library_totals.png",
        "figures/corrected_z.png",
        "logs/scgroupfit.log",
        "report.html",
    ):
        assert (out / rel).exists(), rel
    assert result.report_path == out / "report.html"
    html = result.report_path.read_text(encoding="utf-8")
    assert "data:image/png;base64," in html
    assert "confounded" in html


def test_pipeline_fits_every_cell_twice(pipeline_run):
    _, result = pipeline_run
    n_cells = result.counts.shape[1]
    assert n_cells == 40
    assert set(result.fits) == set(FIT_NAMES)
    for fit in result.fits.values():
        assert len(fit.params) == n_cells
    assert list(result.size_factors.columns) == ["group", "median_ratio", *FIT_NAMES]
    assert (result.size_factors[list(FIT_NAMES)] > 0).all().all()


def test_pipeline_summaries_and_confounding(pipeline_run):
    cfg, result = pipeline_run
    for name in FIT_NAMES:
        summary = result.summaries[name]
        assert 0.0 <= summary.prop_down <= 1.0
        assert summary.n_down <= summary.n_significant
        de = result.de[name]
        assert len(de) == result.counts.shape[0]
        assert np.all(np.sign(de["cZ"]) * np.sign(de["Z"]) >= 0)

    assert result.confound.confounded
    lo, hi = result.adjusted_range
    assert 0.0 <= lo <= hi < 1e-6

    payload = json.loads((Path(cfg.outdir) / "results" / "run_summary.json").read_text())
    assert payload["groups"] == {"ESC": 20, "MEF": 20}
    assert payload["confounding"]["confounded"] is True
    assert set(payload["de"]) == set(FIT_NAMES)
    log_text = (Path(cfg.outdir) / "logs" / "scgroupfit.log").read_text(encoding="utf-8")
    assert "WARNING" in log_text


def test_pipeline_is_reproducible(tmp_path: Path, pipeline_run):
    cfg, first = pipeline_run
    again = run_pipeline(
        cfg.with_overrides(outdir=str(tmp_path / "again")), render_report=False
    )
    assert again.report_path is None
    for name in FIT_NAMES:
        pd.testing.assert_frame_equal(first.de[name], again.de[name])
        pd.testing.assert_frame_equal(first.fits[name].params, again.fits[name].params)


def test_bundled_example_end_to_end(tmp_path: Path):
    cfg = PipelineConfig.from_dict(
        {
            "outdir": str(tmp_path / "bundled"),
            "error_model": {"max_genes": 200},
            "prior": {"n_grid": 40},
            "difference": {"n_randomizations": 5},
        }
    )
    assert cfg.dataset.path is None
    with pytest.warns(RuntimeWarning, match="confounded"):
        result = run_pipeline(cfg, render_report=False)

    assert result.filter_report.n_cells_removed == 0
    assert result.filter_report.n_genes_removed == 2755
    assert result.counts.shape == (5000, 40)
    for name in FIT_NAMES:
        assert len(result.fits[name].params) == 40
        assert 0.0 <= result.summaries[name].prop_down <= 1.0
    assert result.adjusted_range[1] < 1e-6
    pd.testing.assert_frame_equal(result.confound.results, result.de["within_group"])


def test_reference_magnitudes_in_run_summary(pipeline_run):
    cfg, result = pipeline_run
    payload = json.loads((Path(cfg.outdir) / "results" / "run_summary.json").read_text())
    ref = payload["reference_magnitude"]
    assert set(ref["within_group"]) == {"ESC", "MEF"}
    assert set(ref["overall"]) == {"all"}
    for sets in ref.values():
        for stats in sets.values():
            assert stats["min"] <= stats["median"] <= stats["max"]
    assert "median log reference" in result.report_path.read_text(encoding="utf-8")


def test_median_ratio_fallback_is_logged(caplog):
    counts = pd.DataFrame({"ESC_1": [0, 3, 2], "MEF_1": [4, 0, 0]}, index=["g1", "g2", "g3"])
    caplog.set_level(logging.WARNING)
    sf = _reference_size_factors(counts, logging.getLogger("scgroupfit.test"))
    assert np.isfinite(sf).all()
    assert "falling back to ignore_zeros=True" in caplog.text
