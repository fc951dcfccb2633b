"""Group-label derivation from cell identifiers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional, Sequence

import pandas as pd

Labeler = Callable[[str], Optional[str]]

UNMATCHED_POLICIES = ("raise", "drop")


@dataclass(frozen=True)
class PrefixLabeler:
    """Map a cell identifier to the level whose prefix it starts with.

    Returns None for identifiers matching no prefix. When several prefixes
    match, the longest wins.
    """

    prefixes: dict[str, str] = field(default_factory=lambda: {"ESC": "ESC", "MEF": "MEF"})
    case_sensitive: bool = True

    def __post_init__(self) -> None:
        if not self.prefixes:
            raise ValueError("PrefixLabeler requires at least one prefix.")
        for level, prefix in self.prefixes.items():
            if not str(prefix):
                raise ValueError(f"Empty prefix for level '{level}'.")

    @property
    def levels(self) -> tuple[str, ...]:
        return tuple(self.prefixes.keys())

    def __call__(self, cell_id: str) -> str | None:
        name = str(cell_id) if self.case_sensitive else str(cell_id).lower()
        best: tuple[int, str] | None = None
        for level, prefix in self.prefixes.items():
            pfx = str(prefix) if self.case_sensitive else str(prefix).lower()
            if name.startswith(pfx) and (best is None or len(pfx) > best[0]):
                best = (len(pfx), level)
        return None if best is None else best[1]


def assign_groups(
    cells: Iterable[str],
    labeler: Labeler | None = None,
    levels: Sequence[str] | None = None,
    on_unmatched: str = "raise",
) -> pd.Series:
    """Label each cell with one of exactly two ordered levels.

    Args:
        cells: Cell identifiers, in matrix column order.
        labeler: Callable returning a level or None; defaults to the ESC/MEF
            `PrefixLabeler`.
        levels: Ordered levels; taken from `labeler.levels` when omitted.
        on_unmatched: "raise" rejects identifiers with no level, "drop" leaves
            them out of the returned labels.

    Returns:
        Ordered categorical Series indexed by cell identifier.
    """
    if on_unmatched not in UNMATCHED_POLICIES:
        raise ValueError(
            f"on_unmatched must be one of {UNMATCHED_POLICIES}; got '{on_unmatched}'."
        )
    fn = labeler if labeler is not None else PrefixLabeler()
    if levels is None:
        levels = getattr(fn, "levels", None)
        if levels is None:
            raise ValueError("levels must be given for a labeler without a `levels` attribute.")
    levels = [str(v) for v in levels]
    if len(levels) != 2 or len(set(levels)) != 2:
        raise ValueError(f"Exactly two distinct group levels are required; got {levels}.")

    ids = [str(c) for c in cells]
    if len(set(ids)) != len(ids):
        raise ValueError("Cell identifiers must be unique.")
    labels = {cid: fn(cid) for cid in ids}
    unknown = sorted({str(v) for v in labels.values() if v is not None and str(v) not in levels})
    if unknown:
        raise ValueError(f"Labeler returned levels outside {levels}: {', '.join(unknown)}.")

    unmatched = [cid for cid, lab in labels.items() if lab is None]
    if unmatched and on_unmatched == "raise":
        head = ", ".join(unmatched[:5])
        more = "..." if len(unmatched) > 5 else ""
        raise ValueError(
            f"{len(unmatched)} cell identifier(s) match no group prefix: {head}{more}"
        )

    kept = [cid for cid in ids if labels[cid] is not None]
    if not kept:
        raise ValueError("No cell identifier matched a group level.")
    return pd.Series(
        pd.Categorical([labels[cid] for cid in kept], categories=levels, ordered=True),
        index=pd.Index(kept, name="cell"),
        name="group",
    )


def align_counts_to_groups(counts: pd.DataFrame, groups: pd.Series) -> pd.DataFrame:
    """Subset and order matrix columns to the label index."""
    missing = groups.index.difference(counts.columns)
    if len(missing) > 0:
        raise KeyError(f"Labelled cells missing from counts: {', '.join(map(str, missing[:5]))}")
    return counts.loc[:, groups.index]


def group_counts(groups: pd.Series) -> dict[str, int]:
    vc = groups.value_counts(sort=False)
    return {str(k): int(v) for k, v in vc.items()}
