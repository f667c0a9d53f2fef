"""
Percentile risk categories and held-out comparison.

Any cell-level score (regression prediction or cell-mean density) is ranked
and cut into five ordered bands. Held-out events are then tallied per band
so different scorers can be compared on the same footing.
"""

from typing import Mapping

import numpy as np
import pandas as pd

RISK_LABELS = ["1% to 29%", "30% to 49%", "50% to 69%", "70% to 89%", "90% to 100%"]
RISK_DTYPE = pd.CategoricalDtype(RISK_LABELS, ordered=True)

# (lower ntile bound, label), checked top-down
_BANDS = [
    (90, "90% to 100%"),
    (70, "70% to 89%"),
    (50, "50% to 69%"),
    (30, "30% to 49%"),
]


def _band(ntile: int) -> str:
    for lower, label in _BANDS:
        if ntile >= lower:
            return label
    return "1% to 29%"


def assign_risk_categories(scores: pd.Series) -> pd.DataFrame:
    """
    Rank scores into percentile bands.

    Ties are broken by ascending cell_id, so identical inputs always give
    identical bands.

    Args:
        scores: Series indexed by cell_id

    Returns:
        DataFrame indexed by cell_id (sorted) with score, ntile (1..100) and
        risk_category (ordered categorical)

    Raises:
        ValueError: On empty input, NaN scores or duplicated cell_ids
    """
    if len(scores) == 0:
        raise ValueError("Cannot categorize an empty score set")
    if scores.isna().any():
        raise ValueError(f"{int(scores.isna().sum())} score(s) are NaN")
    if scores.index.duplicated().any():
        raise ValueError("Scores have duplicated cell_id values")

    ordered = scores.sort_index(kind="stable")
    n = len(ordered)
    rank0 = ordered.rank(method="first", ascending=True).to_numpy().astype(int) - 1
    ntile = np.floor(100 * rank0 / n).astype(int) + 1

    result = pd.DataFrame(
        {
            "score": ordered.to_numpy(dtype=float),
            "ntile": ntile,
            "risk_category": pd.Categorical([_band(t) for t in ntile], dtype=RISK_DTYPE),
        },
        index=ordered.index,
    )
    result.index.name = "cell_id"
    return result


def compare_to_heldout(
    categories: pd.DataFrame,
    heldout_counts: pd.Series,
    label: str,
) -> pd.DataFrame:
    """
    Held-out event count and share per risk band.

    All five bands are reported, including empty ones. When there are no
    held-out events at all the share is NaN.

    Args:
        categories: Output of assign_risk_categories
        heldout_counts: Held-out event counts indexed by cell_id
        label: Scorer label stored in the `model` column

    Returns:
        DataFrame with model, risk_category, n_cells, heldout_count, share
    """
    counts = heldout_counts.reindex(categories.index, fill_value=0)
    frame = pd.DataFrame(
        {"risk_category": categories["risk_category"], "heldout_count": counts.to_numpy()}
    )

    summary = frame.groupby("risk_category", observed=False).agg(
        n_cells=("heldout_count", "size"),
        heldout_count=("heldout_count", "sum"),
    )
    summary = summary.reindex(RISK_LABELS, fill_value=0)
    summary["heldout_count"] = summary["heldout_count"].astype("int64")
    summary["n_cells"] = summary["n_cells"].astype("int64")

    total = summary["heldout_count"].sum()
    summary["share"] = summary["heldout_count"] / total if total > 0 else np.nan

    summary.index.name = "risk_category"
    summary = summary.reset_index()
    summary["risk_category"] = pd.Categorical(summary["risk_category"], dtype=RISK_DTYPE)
    summary.insert(0, "model", label)
    return summary[["model", "risk_category", "n_cells", "heldout_count", "share"]]


def compare_models(scores: Mapping[str, pd.Series], heldout_counts: pd.Series) -> pd.DataFrame:
    """Stack compare_to_heldout for several scorers, in the given label order."""
    frames = [
        compare_to_heldout(assign_risk_categories(values), heldout_counts, label)
        for label, values in scores.items()
    ]
    if not frames:
        return pd.DataFrame(columns=["model", "risk_category", "n_cells", "heldout_count", "share"])
    return pd.concat(frames, ignore_index=True)
