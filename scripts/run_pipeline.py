#!/usr/bin/env python3
"""Run the within-group vs overall error-model comparison."""

from __future__ import annotations

from scgroupfit.cli import run_main

if __name__ == "__main__":
    raise SystemExit(run_main())
