"""
Error summaries for out-of-fold predictions.
"""

import numpy as np
import pandas as pd

FOLD_ERROR_COLUMNS = ["model", "fold", "n", "mean_error", "mae"]
SUMMARY_COLUMNS = ["model", "n_folds", "mean_mae", "sd_mae", "mean_error"]


def fold_errors(predictions: pd.DataFrame) -> pd.DataFrame:
    """
    Per (model, fold): cell count, mean error (prediction - observed) and MAE.
    """
    if len(predictions) == 0:
        return pd.DataFrame(columns=FOLD_ERROR_COLUMNS)

    frame = predictions.assign(
        error=predictions["prediction"] - predictions["observed"],
        abs_error=(predictions["prediction"] - predictions["observed"]).abs(),
    )
    result = frame.groupby(["model", "fold"], sort=False).agg(
        n=("error", "size"),
        mean_error=("error", "mean"),
        mae=("abs_error", "mean"),
    ).reset_index()

    # Fold labels may be ints for one model and strings for another
    ordered = [g.sort_values("fold", kind="stable") for _, g in result.groupby("model", sort=True)]
    return pd.concat(ordered, ignore_index=True)[FOLD_ERROR_COLUMNS]


def model_summary(predictions: pd.DataFrame) -> pd.DataFrame:
    """
    Per model: number of folds, mean and standard deviation of fold MAE, and
    the overall mean error.

    sd_mae is the sample standard deviation (NaN with a single fold).
    """
    if len(predictions) == 0:
        return pd.DataFrame(columns=SUMMARY_COLUMNS)

    per_fold = fold_errors(predictions)
    summary = per_fold.groupby("model", sort=True).agg(
        n_folds=("fold", "size"),
        mean_mae=("mae", "mean"),
        sd_mae=("mae", lambda s: s.std(ddof=1) if len(s) > 1 else np.nan),
    )
    overall = (predictions["prediction"] - predictions["observed"]).groupby(predictions["model"]).mean()
    summary["mean_error"] = overall.reindex(summary.index)
    return summary.reset_index()[SUMMARY_COLUMNS]
