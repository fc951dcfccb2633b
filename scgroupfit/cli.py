"""Command-line interface for the scgroupfit comparison pipeline."""

from __future__ import annotations

import argparse
from typing import Iterable

from scgroupfit.config import PipelineConfig, load_config, write_example_config


def run_main(argv: Iterable[str] | None = None) -> int:
    """Run the within-group vs overall comparison.

    Args:
        argv: Command-line arguments (if None, uses sys.argv).

    Returns:
        Exit code (0 for success).
    """
    parser = argparse.ArgumentParser(description="scgroupfit comparison pipeline")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to a JSON config (defaults reproduce the bundled ESC/MEF example)",
    )
    parser.add_argument("--outdir", default=None, help="Output directory root")
    parser.add_argument("--seed", type=int, default=None, help="Master random seed")
    parser.add_argument(
        "--n-jobs", type=int, default=None, help="Workers for fitting and testing"
    )
    parser.add_argument(
        "--no-report", action="store_true", help="Skip writing report.html"
    )
    args = parser.parse_args(list(argv) if argv is not None else None)

    cfg = load_config(args.config) if args.config else PipelineConfig()
    cfg = cfg.with_overrides(outdir=args.outdir, seed=args.seed, n_jobs=args.n_jobs)

    from scgroupfit.pipeline.workflow import run_pipeline

    result = run_pipeline(cfg, render_report=not args.no_report)
    for name, summary in result.summaries.items():
        print(
            f"{name}: n_significant={summary.n_significant} "
            f"n_down={summary.n_down} prop_down={summary.prop_down:.3f}"
        )
    lo, hi = result.adjusted_range
    print(f"confounded_abs_mle_range=[{lo:.3g}, {hi:.3g}]")
    print(f"outdir={result.outdir}")
    return 0


def example_config_main(argv: Iterable[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Write the default scgroupfit config")
    parser.add_argument("--out", default="scgroupfit_config.json", help="Output JSON path")
    args = parser.parse_args(list(argv) if argv is not None else None)
    print(write_example_config(args.out))
    return 0


def main(argv: Iterable[str] | None = None) -> int:
    """Main CLI entry point.

    Args:
        argv: Command-line arguments (if None, uses sys.argv).

    Returns:
        Exit code.
    """
    parser = argparse.ArgumentParser(description="scgroupfit CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run the within-group vs overall comparison")
    sub.add_parser("example-config", help="Write the default JSON config")

    args, remainder = parser.parse_known_args(list(argv) if argv is not None else None)
    if args.command == "run":
        return run_main(remainder)
    if args.command == "example-config":
        return example_config_main(remainder)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
