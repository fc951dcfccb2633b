"""Standalone HTML report for a pipeline run."""

from __future__ import annotations

import html
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

import pandas as pd

from scgroupfit.config import PipelineConfig
from scgroupfit.plotting.utils import png_data_uri
from scgroupfit.stats.multitest import summaries_frame

if TYPE_CHECKING:
    from scgroupfit.pipeline.workflow import PipelineResult

_CSS = """
body { font-family: "DejaVu Sans", Arial, sans-serif; max-width: 980px; margin: 2em auto; color: #222; }
h1 { font-size: 1.6em; } h2 { font-size: 1.25em; margin-top: 1.6em; border-bottom: 1px solid #ddd; }
table.dataframe { border-collapse: collapse; font-size: 0.9em; margin: 0.6em 0; }
table.dataframe th, table.dataframe td { border: 1px solid #ccc; padding: 3px 8px; text-align: right; }
figure { margin: 1em 0; } figure img { max-width: 100%; }
figcaption { font-size: 0.85em; color: #555; }
code { background: #f4f4f4; padding: 0 3px; }
"""


def _table(df: pd.DataFrame, index: bool = False) -> str:
    return df.to_html(index=index, float_format=lambda v: f"{v:.4g}", border=0)


def _figure(path: Path | None, caption: str) -> str:
    if path is None or not Path(path).exists():
        return f"<p><em>Figure unavailable: {html.escape(caption)}</em></p>"
    return (
        f'<figure><img src="{png_data_uri(Path(path))}" alt="{html.escape(caption)}"/>'
        f"<figcaption>{html.escape(caption)}</figcaption></figure>"
    )


def render_report(result: PipelineResult, config: PipelineConfig) -> str:
    """Build the report body: narrative, figures and summary tables."""
    fr = result.filter_report
    levels = [str(c) for c in result.groups.cat.categories]
    first, second = levels[0], levels[1]
    group_sizes = result.groups.value_counts(sort=False)
    dataset = config.dataset.path or "bundled ESC/MEF example (simulated, 40 cells)"

    robust_rows = []
    for name, fit in result.fits.items():
        for set_name, genes in fit.robust_genes.items():
            ref = fit.reference[set_name]
            robust_rows.append(
                {
                    "fit": name,
                    "fitting set": set_name,
                    "robust genes": len(genes),
                    "median log reference": float(ref.median()),
                }
            )

    sf_summary = (
        result.size_factors.drop(columns=["group"])
        .agg(["min", "median", "max"])
        .T.rename_axis("factor")
        .reset_index()
    )
    de_summary = summaries_frame(list(result.summaries.values()))
    lo, hi = result.adjusted_range

    parts = [
        "<!DOCTYPE html><html><head><meta charset='utf-8'>",
        "<title>Group-aware error model fitting</title>",
        f"<style>{_CSS}</style></head><body>",
        "<h1>Does passing groups to the error model change the answer?</h1>",
        "<p>Per-cell error models are fitted twice on the same filtered counts, seed and "
        "options: once <b>within group</b> (each group gets its own robust gene set) and "
        "once <b>overall</b> (all cells share one robust gene set). The two fits are then "
        "compared on size factors, adjusted library totals and differential expression.</p>",
        "<h2>1. Data and filtering</h2>",
        f"<p>Input: {html.escape(str(dataset))}, {fr.n_genes_in} genes x {fr.n_cells_in} cells. "
        f"Cells need more than {config.filter.min_lib_size} detected genes; genes need more "
        f"than {config.filter.min_reads} read(s) seen in more than "
        f"{config.filter.min_detected} cell(s). Filtering removed "
        f"<b>{fr.n_cells_removed}</b> cells and <b>{fr.n_genes_removed}</b> genes.</p>",
        "<h2>2. Groups</h2>",
        "<p>Groups come from cell identifier prefixes "
        f"(<code>{html.escape(str(dict(config.groups.prefixes)))}</code>): "
        + ", ".join(f"{html.escape(str(k))}: {int(v)} cells" for k, v in group_sizes.items())
        + ".</p>",
        "<h2>3. Error model fits</h2>",
        _table(pd.DataFrame(robust_rows)),
        "<h2>4. Size factors</h2>",
        "<p>Fit-derived size factors, <code>exp(corr_a)</code>, compared with "
        "median-of-ratios factors computed from the filtered counts.</p>",
        _figure(result.figures.get("size_factors"), "Fit vs median-ratio size factors"),
        _table(sf_summary),
        "<h2>5. Adjusted library totals</h2>",
        "<p>Column sums of the raw counts and of each fit's depth-adjusted counts "
        "(exponentiated expression magnitudes), by group.</p>",
        _figure(result.figures.get("library_totals"), "Library totals by group"),
        "<h2>6. Differential expression</h2>",
        f"<p>Effect sizes are log2 fold changes of {html.escape(first)} over "
        f"{html.escape(second)}; Z is Benjamini-Hochberg corrected into cZ with its "
        f"sign kept. Genes with |cZ| &gt; {config.de.threshold:g} are significant; "
        f"<code>n_down</code> counts those lower in {html.escape(first)}. "
        f"Each test uses {config.difference.n_randomizations} bootstrap randomizations.</p>",
        _table(de_summary),
        _figure(result.figures.get("corrected_z"), "Raw vs corrected Z"),
        "<h2>7. Group and batch completely confounded</h2>",
        "<p>Rerunning the within-group test with a batch label identical to the group "
        "label leaves no batch containing both groups, so the group effect cannot be "
        "separated from the batch effect. Batch-adjusted effects are "
        + (
            "set to zero rather than rejected. "
            if result.confound.confounded
            else "estimated from within-batch contrasts. "
        )
        + f"Range of |batch-adjusted mle|: [{lo:.3g}, {hi:.3g}].</p>",
        f"<hr><p><small>Seed {config.seed}; generated "
        f"{datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M UTC')}.</small></p>",
        "</body></html>",
    ]
    return "\n".join(parts)


def write_report(result: PipelineResult, out_path: Path, config: PipelineConfig) -> Path:
    out = Path(out_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(render_report(result, config), encoding="utf-8")
    return out
