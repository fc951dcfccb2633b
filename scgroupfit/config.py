"""Configuration loading utilities for scgroupfit pipelines."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from scgroupfit.core.types import (
    DifferenceConfig,
    ErrorModelConfig,
    FilterThresholds,
    PriorConfig,
)


def load_json_config(path: str | Path) -> dict[str, Any]:
    """Load and validate a pipeline config from a JSON file."""
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    if config_path.suffix.lower() != ".json":
        raise ValueError(
            f"Unsupported config format for '{config_path}'. Use a .json config file."
        )

    try:
        with open(config_path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except json.JSONDecodeError as exc:
        raise ValueError(
            f"Invalid JSON in config '{config_path}' at line {exc.lineno}, "
            f"column {exc.colno}: {exc.msg}"
        ) from exc

    if not isinstance(data, dict):
        raise ValueError(
            f"Invalid config root in '{config_path}': expected JSON object, got {type(data).__name__}."
        )
    return data


@dataclass(frozen=True)
class DatasetConfig:
    """Input matrix; the bundled ESC/MEF example is used when `path` is None."""

    path: str | None = None
    layer: str | None = None
    example_seed: int = 0


@dataclass(frozen=True)
class GroupConfig:
    prefixes: dict[str, str] = field(default_factory=lambda: {"ESC": "ESC", "MEF": "MEF"})
    on_unmatched: str = "raise"
    case_sensitive: bool = True


@dataclass(frozen=True)
class DEConfig:
    threshold: float = 1.96


_SECTIONS: dict[str, type] = {
    "dataset": DatasetConfig,
    "filter": FilterThresholds,
    "groups": GroupConfig,
    "error_model": ErrorModelConfig,
    "prior": PriorConfig,
    "difference": DifferenceConfig,
    "de": DEConfig,
}


def _section(name: str, cls: type, raw: Any) -> Any:
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ValueError(f"Config section '{name}' must be an object, got {type(raw).__name__}.")
    allowed = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - allowed)
    if unknown:
        raise ValueError(
            f"Unknown key(s) in config section '{name}': {', '.join(unknown)}. "
            f"Allowed: {', '.join(sorted(allowed))}."
        )
    return cls(**raw)


@dataclass(frozen=True)
class PipelineConfig:
    dataset: DatasetConfig = field(default_factory=DatasetConfig)
    filter: FilterThresholds = field(default_factory=FilterThresholds)
    groups: GroupConfig = field(default_factory=GroupConfig)
    error_model: ErrorModelConfig = field(default_factory=ErrorModelConfig)
    prior: PriorConfig = field(default_factory=PriorConfig)
    difference: DifferenceConfig = field(default_factory=DifferenceConfig)
    de: DEConfig = field(default_factory=DEConfig)
    seed: int = 0
    outdir: str = "scgroupfit_out"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineConfig:
        top = {"seed", "outdir", *_SECTIONS}
        unknown = sorted(set(data) - top)
        if unknown:
            raise ValueError(f"Unknown top-level config key(s): {', '.join(unknown)}.")
        kwargs: dict[str, Any] = {
            name: _section(name, sec_cls, data.get(name)) for name, sec_cls in _SECTIONS.items()
        }
        if "seed" in data:
            kwargs["seed"] = int(data["seed"])
        if "outdir" in data:
            kwargs["outdir"] = str(data["outdir"])
        groups = kwargs["groups"]
        if len(groups.prefixes) != 2:
            raise ValueError(
                f"groups.prefixes must define exactly two levels; got {list(groups.prefixes)}."
            )
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def with_overrides(
        self,
        *,
        outdir: str | None = None,
        seed: int | None = None,
        n_jobs: int | None = None,
    ) -> PipelineConfig:
        cfg = self
        if outdir is not None:
            cfg = replace(cfg, outdir=str(outdir))
        if seed is not None:
            cfg = replace(cfg, seed=int(seed))
        if n_jobs is not None:
            cfg = replace(
                cfg,
                error_model=replace(cfg.error_model, n_jobs=int(n_jobs)),
                difference=replace(cfg.difference, n_jobs=int(n_jobs)),
            )
        return cfg


def load_config(path: str | Path) -> PipelineConfig:
    return PipelineConfig.from_dict(load_json_config(path))


def write_example_config(path: str | Path) -> Path:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    with out.open("w", encoding="utf-8") as fh:
        json.dump(PipelineConfig().to_dict(), fh, indent=2)
        fh.write("\n")
    return out
