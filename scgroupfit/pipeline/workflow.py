"""Within-group vs overall error-model comparison pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd

from scgroupfit.config import DatasetConfig, PipelineConfig
from scgroupfit.core.counts import clean_counts, es_mef_small, load_counts
from scgroupfit.core.labels import PrefixLabeler, align_counts_to_groups, assign_groups, group_counts
from scgroupfit.core.types import (
    BatchDifferenceResult,
    DESummary,
    DifferenceConfig,
    ErrorModelConfig,
    ErrorModelFit,
    ExpressionPrior,
    FilterReport,
    PriorConfig,
)
from scgroupfit.core.utils import rng_from_seed, stable_seed
from scgroupfit.models.base import ErrorModelEstimator, MixtureErrorModel
from scgroupfit.pipeline.io import (
    close_logger,
    prepare_output_dirs,
    setup_logger,
    write_json,
    write_table,
)
from scgroupfit.pipeline.report import write_report
from scgroupfit.plotting.expression import plot_corrected_statistics, plot_library_boxplots
from scgroupfit.plotting.normalization import plot_size_factor_comparison
from scgroupfit.plotting.styles import apply_plot_style, plot_style_dict
from scgroupfit.stats.multitest import correct_z_scores, summaries_frame, summarize_de
from scgroupfit.stats.normalization import (
    adjusted_counts,
    library_totals,
    median_ratio_size_factors,
    size_factor_table,
)

WITHIN_GROUP = "within_group"
OVERALL = "overall"
FIT_NAMES = (WITHIN_GROUP, OVERALL)


@dataclass(frozen=True)
class PipelineResult:
    counts: pd.DataFrame
    filter_report: FilterReport
    groups: pd.Series
    fits: dict[str, ErrorModelFit]
    size_factors: pd.DataFrame
    totals: pd.DataFrame
    priors: dict[str, ExpressionPrior]
    de: dict[str, pd.DataFrame]
    summaries: dict[str, DESummary]
    confound: BatchDifferenceResult
    adjusted_range: tuple[float, float]
    outdir: Path
    report_path: Path | None = None
    figures: dict[str, Path] = field(default_factory=dict)


def load_dataset(cfg: DatasetConfig) -> pd.DataFrame:
    if cfg.path is None:
        return es_mef_small(seed=int(cfg.example_seed))
    return load_counts(cfg.path, layer=cfg.layer)


def compare_fits(
    estimator: ErrorModelEstimator,
    counts: pd.DataFrame,
    groups: pd.Series,
    *,
    seed: int,
    config: ErrorModelConfig,
) -> dict[str, ErrorModelFit]:
    """Fit with group-specific robust gene sets, then with one shared set.

    Both fits see the same counts, options and seed; neither shares state
    with the other.
    """
    return {
        WITHIN_GROUP: estimator.fit(counts, groups, rng=rng_from_seed(seed), config=config),
        OVERALL: estimator.fit(counts, None, rng=rng_from_seed(seed), config=config),
    }


def differential_expression(
    estimator: ErrorModelEstimator,
    fit: ErrorModelFit,
    counts: pd.DataFrame,
    groups: pd.Series,
    *,
    seed: int,
    prior_config: PriorConfig,
    difference_config: DifferenceConfig,
) -> tuple[ExpressionPrior, pd.DataFrame]:
    prior = estimator.expression_prior(fit, counts, prior_config)
    de = estimator.expression_difference(
        fit, counts, prior, groups, rng=rng_from_seed(seed), config=difference_config
    )
    return prior, correct_z_scores(de)


def demonstrate_confounding(
    estimator: ErrorModelEstimator,
    fit: ErrorModelFit,
    counts: pd.DataFrame,
    prior: ExpressionPrior,
    groups: pd.Series,
    *,
    seed: int,
    config: DifferenceConfig,
    logger: logging.Logger | None = None,
    plain: pd.DataFrame | None = None,
) -> tuple[BatchDifferenceResult, tuple[float, float]]:
    """Rerun the difference with a batch label identical to the group label.

    Pass the DE table already computed with the same `seed` as `plain` to
    skip recomputing the unadjusted posteriors.
    """
    batch = groups.astype(str).rename("batch")
    res = estimator.expression_difference(
        fit,
        counts,
        prior,
        groups,
        rng=rng_from_seed(seed),
        config=config,
        batch=batch,
        logger=logger,
        plain=plain,
    )
    mags = res.batch_adjusted["mle"].abs().to_numpy(dtype=float)
    return res, (float(np.min(mags)), float(np.max(mags)))


def _reference_size_factors(counts: pd.DataFrame, logger: logging.Logger) -> pd.Series:
    try:
        return median_ratio_size_factors(counts)
    except ValueError as exc:
        logger.warning(
            "Strict median-ratio normalization failed (%s); falling back to ignore_zeros=True",
            exc,
        )
        return median_ratio_size_factors(counts, ignore_zeros=True)


def _summary_payload(
    cfg: PipelineConfig,
    filter_report: FilterReport,
    groups: pd.Series,
    fits: dict[str, ErrorModelFit],
    summaries: dict[str, DESummary],
    confound: BatchDifferenceResult,
    adjusted_range: tuple[float, float],
) -> dict[str, Any]:
    return {
        "config": cfg.to_dict(),
        "filter": {
            "n_cells_in": filter_report.n_cells_in,
            "n_genes_in": filter_report.n_genes_in,
            "n_cells_removed": filter_report.n_cells_removed,
            "n_genes_removed": filter_report.n_genes_removed,
            "n_passes": filter_report.n_passes,
        },
        "groups": group_counts(groups),
        "robust_genes": {
            name: {k: int(len(v)) for k, v in fit.robust_genes.items()}
            for name, fit in fits.items()
        },
        "reference_magnitude": {
            name: {
                k: {
                    "min": float(ref.min()),
                    "median": float(ref.median()),
                    "max": float(ref.max()),
                }
                for k, ref in fit.reference.items()
            }
            for name, fit in fits.items()
        },
        "de": {
            name: {
                "n_significant": s.n_significant,
                "n_down": s.n_down,
                "prop_down": s.prop_down,
                "threshold": s.threshold,
            }
            for name, s in summaries.items()
        },
        "confounding": {
            "confounded": bool(confound.confounded),
            "abs_batch_adjusted_mle_min": adjusted_range[0],
            "abs_batch_adjusted_mle_max": adjusted_range[1],
        },
        "plot_style": plot_style_dict(),
    }


def run_pipeline(
    config: PipelineConfig,
    estimator: ErrorModelEstimator | None = None,
    *,
    render_report: bool = True,
) -> PipelineResult:
    """Run load -> filter -> label -> fit x2 -> normalize -> DE x2 -> confound demo."""
    cfg = config
    est = estimator if estimator is not None else MixtureErrorModel()
    outdir = Path(cfg.outdir)
    results_dir, figures_dir, logs_dir = prepare_output_dirs(outdir)
    logger = setup_logger(logs_dir / "scgroupfit.log", "scgroupfit")
    apply_plot_style()

    try:
        raw = load_dataset(cfg.dataset)
        logger.info(
            "Loaded %s: %d genes x %d cells",
            cfg.dataset.path or "bundled ESC/MEF example",
            raw.shape[0],
            raw.shape[1],
        )
        counts, filter_report = clean_counts(raw, cfg.filter)
        logger.info(
            "Filtering removed %d cells and %d genes (%d pass(es)); %d genes x %d cells remain",
            filter_report.n_cells_removed,
            filter_report.n_genes_removed,
            filter_report.n_passes,
            counts.shape[0],
            counts.shape[1],
        )

        labeler = PrefixLabeler(
            prefixes=dict(cfg.groups.prefixes), case_sensitive=cfg.groups.case_sensitive
        )
        groups = assign_groups(
            counts.columns, labeler, levels=labeler.levels, on_unmatched=cfg.groups.on_unmatched
        )
        if len(groups) < counts.shape[1]:
            logger.warning("Dropped %d unlabelled cells", counts.shape[1] - len(groups))
        counts = align_counts_to_groups(counts, groups)
        logger.info("Groups: %s", group_counts(groups))
        levels = [str(c) for c in groups.cat.categories]

        fit_seed = stable_seed(cfg.seed, "error_model")
        fits = compare_fits(est, counts, groups, seed=fit_seed, config=cfg.error_model)
        for name, fit in fits.items():
            logger.info(
                "Fit %s: robust genes per set %s",
                name,
                {k: len(v) for k, v in fit.robust_genes.items()},
            )

        reference = _reference_size_factors(counts, logger)
        sf_table = size_factor_table(fits, reference, groups)
        figures = {
            "size_factors": plot_size_factor_comparison(
                sf_table, figures_dir / "size_factors.png", fit_columns=FIT_NAMES, levels=levels
            )
        }

        matrices = {"raw": counts.astype(float)}
        for name, fit in fits.items():
            matrices[name] = adjusted_counts(est, fit, counts)
        totals = library_totals(matrices, groups)
        figures["library_totals"] = plot_library_boxplots(
            totals, figures_dir / "library_totals.png", levels=levels
        )

        de_seed = stable_seed(cfg.seed, "difference")
        priors: dict[str, ExpressionPrior] = {}
        de: dict[str, pd.DataFrame] = {}
        summaries: dict[str, DESummary] = {}
        for name, fit in fits.items():
            priors[name], de[name] = differential_expression(
                est,
                fit,
                counts,
                groups,
                seed=de_seed,
                prior_config=cfg.prior,
                difference_config=cfg.difference,
            )
            summaries[name] = summarize_de(de[name], name, threshold=cfg.de.threshold)
            logger.info(
                "DE %s: %d significant genes (|cZ| > %.2f), %d lower in %s (%.3f)",
                name,
                summaries[name].n_significant,
                cfg.de.threshold,
                summaries[name].n_down,
                levels[0],
                summaries[name].prop_down,
            )
        figures["corrected_z"] = plot_corrected_statistics(
            de, figures_dir / "corrected_z.png", threshold=cfg.de.threshold
        )

        confound, adjusted_range = demonstrate_confounding(
            est,
            fits[WITHIN_GROUP],
            counts,
            priors[WITHIN_GROUP],
            groups,
            seed=de_seed,
            config=cfg.difference,
            logger=logger,
            plain=de[WITHIN_GROUP],
        )
        logger.info(
            "Batch-adjusted |mle| range with batch == group: [%.3g, %.3g]",
            adjusted_range[0],
            adjusted_range[1],
        )

        write_table(results_dir / "size_factors.csv", sf_table)
        write_table(results_dir / "library_totals.csv", totals, index=False)
        for name, fit in fits.items():
            write_table(results_dir / f"error_model_{name}.csv", fit.params)
            write_table(results_dir / f"de_{name}.csv", de[name].rename_axis("gene"))
        write_table(
            results_dir / "de_summary.csv", summaries_frame(list(summaries.values())), index=False
        )
        write_table(
            results_dir / "batch_adjusted.csv", confound.batch_adjusted.rename_axis("gene")
        )
        write_json(
            results_dir / "run_summary.json",
            _summary_payload(
                cfg, filter_report, groups, fits, summaries, confound, adjusted_range
            ),
        )

        result = PipelineResult(
            counts=counts,
            filter_report=filter_report,
            groups=groups,
            fits=fits,
            size_factors=sf_table,
            totals=totals,
            priors=priors,
            de=de,
            summaries=summaries,
            confound=confound,
            adjusted_range=adjusted_range,
            outdir=outdir,
            figures=figures,
        )
        if render_report:
            report_path = write_report(result, outdir / "report.html", config=cfg)
            logger.info("Report written to %s", report_path)
            result = replace(result, report_path=report_path)
        return result
    finally:
        close_logger(logger)
