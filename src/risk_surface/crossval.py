"""
Cross-validated count regression on the cell table.

Folds are the distinct values of a grouping key per cell: either a synthetic
random group id (k-fold style) or a spatial unit such as the containing
neighborhood (leave-one-group-out). For each fold the Poisson GLM is fit on
the cells outside the fold and predicts the cells inside it.

A fold whose fit fails is recorded and skipped; the remaining folds still
run. Per-fold prediction frames are built independently and concatenated at
the end, so running folds in a thread pool gives the same result as running
them in sequence.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, Hashable, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import statsmodels.api as sm
from statsmodels.tools.sm_exceptions import PerfectSeparationError

from risk_surface.config import FEATURE_SUBSETS
from risk_surface.errors import ModelFitFailure, NoSignificantClusters, PartitionImbalance
from risk_surface.logging_utils import module_logger
from risk_surface.schemas import PREDICTIONS_SCHEMA, validate_schema

PREDICTION_COLUMNS = ["cell_id", "prediction", "observed", "fold", "model"]


@dataclass(frozen=True)
class FoldFailure:
    """A fold whose model could not be fit."""
    fold: Hashable
    reason: str
    n_train: int


@dataclass(frozen=True)
class FoldResult:
    fold: Hashable
    predictions: Optional[pd.DataFrame]
    failure: Optional[FoldFailure]


@dataclass(frozen=True)
class CrossValidationResult:
    """Out-of-fold predictions plus the folds that failed."""
    model: str
    predictions: pd.DataFrame
    failures: Tuple[FoldFailure, ...]
    n_folds: int

    @property
    def n_failed(self) -> int:
        return len(self.failures)


# =============================================================================
# Partitioning
# =============================================================================

def assign_random_groups(
    cell_ids: Sequence[Hashable],
    cells_per_fold: int = 24,
    seed: Optional[int] = None,
) -> pd.Series:
    """
    Draw a synthetic group id per cell, uniformly with replacement.

    The number of labels is round(n / cells_per_fold), at least 2. Labels
    that are never drawn simply produce no fold.

    Returns:
        Series of integer labels (1-based) indexed by cell_id, named cv_id
    """
    n = len(cell_ids)
    n_groups = max(2, int(round(n / cells_per_fold)))
    rng = np.random.default_rng(seed)
    labels = rng.integers(1, n_groups + 1, size=n)
    return pd.Series(labels, index=pd.Index(list(cell_ids), name="cell_id"), name="cv_id")


def make_folds(groups: pd.Series) -> Dict[Hashable, np.ndarray]:
    """
    Turn a per-cell grouping into folds: group value -> cell_ids.

    Raises:
        PartitionImbalance: If a cell has no group, a cell_id repeats, or
            fewer than two distinct groups exist
    """
    name = groups.name or "group"
    if groups.index.duplicated().any():
        raise PartitionImbalance("cell_id appears more than once in the grouping", context=str(name))
    if groups.isna().any():
        raise PartitionImbalance(
            f"{int(groups.isna().sum())} cell(s) have no group label", context=str(name)
        )

    values = sorted(groups.unique().tolist(), key=lambda v: (str(type(v)), v))
    if len(values) < 2:
        raise PartitionImbalance(
            f"a single fold holds all {len(groups)} cells", context=str(name)
        )

    return {v: groups.index[(groups == v).to_numpy()].to_numpy() for v in values}


def fold_splits(groups: pd.Series) -> Iterator[Tuple[Hashable, np.ndarray, np.ndarray]]:
    """Yield (fold, train_ids, test_ids) for every fold of the grouping."""
    all_ids = groups.index.to_numpy()
    for fold, test_ids in make_folds(groups).items():
        train_ids = all_ids[~np.isin(all_ids, test_ids)]
        yield fold, train_ids, test_ids


def resolve_feature_subset(
    subset: str,
    risk_factors: Sequence[str],
    spatial_process: Sequence[str],
) -> List[str]:
    """Column list for "risk_factors" or "risk_factors_plus_spatial"."""
    if subset not in FEATURE_SUBSETS:
        raise ValueError(f"Unknown feature subset {subset!r}; expected one of {FEATURE_SUBSETS}")
    features = list(risk_factors)
    if subset == "risk_factors_plus_spatial":
        features += [f for f in spatial_process if f not in features]
    return features


# =============================================================================
# Model Fitting
# =============================================================================

def fit_count_model(X: pd.DataFrame, y: pd.Series, context: str = ""):
    """
    Fit a Poisson GLM (log link, with intercept).

    Args:
        X: Feature matrix
        y: Non-negative counts
        context: Label used in failure messages (e.g. the fold)

    Returns:
        statsmodels GLMResults

    Raises:
        ModelFitFailure: On an empty or non-finite training set, a rank
            deficient design, a statsmodels fit error or non-convergence
    """
    if len(X) == 0:
        raise ModelFitFailure("empty training set", context=context)

    design = sm.add_constant(X.astype(float), has_constant="add")
    endog = y.astype(float)
    if not np.isfinite(design.to_numpy()).all() or not np.isfinite(endog.to_numpy()).all():
        raise ModelFitFailure("training data contain NaN or infinite values", context=context)

    rank = np.linalg.matrix_rank(design.to_numpy())
    if rank < design.shape[1]:
        raise ModelFitFailure(
            f"rank-deficient design matrix (rank {rank} < {design.shape[1]} columns)", context=context
        )

    try:
        results = sm.GLM(endog, design, family=sm.families.Poisson()).fit()
    except (np.linalg.LinAlgError, PerfectSeparationError, ValueError) as e:
        raise ModelFitFailure(f"GLM fit failed: {e}", context=context) from e

    if not getattr(results, "converged", True):
        raise ModelFitFailure("GLM did not converge", context=context)
    if not np.isfinite(results.params.to_numpy()).all():
        raise ModelFitFailure("non-finite coefficients", context=context)

    return results


def predict_counts(results, X: pd.DataFrame) -> np.ndarray:
    """Expected counts for new rows from a fitted count model."""
    design = sm.add_constant(X.astype(float), has_constant="add")
    return np.asarray(results.predict(design), dtype=float)


# =============================================================================
# Cross-Validation
# =============================================================================

def _run_fold(
    fold: Hashable,
    train_ids: np.ndarray,
    test_ids: np.ndarray,
    data: pd.DataFrame,
    features: List[str],
    target: str,
    model_label: str,
    fold_features: Optional[Callable] = None,
) -> FoldResult:
    if fold_features is not None:
        try:
            extra = fold_features(train_ids)
        except NoSignificantClusters as e:
            return FoldResult(fold, None, FoldFailure(fold=fold, reason=e.detail, n_train=len(train_ids)))
        data = data.drop(columns=list(extra.columns), errors="ignore").join(extra)

    train = data.loc[train_ids]
    test = data.loc[test_ids]

    try:
        results = fit_count_model(train[features], train[target], context=f"{model_label} fold {fold}")
    except ModelFitFailure as e:
        return FoldResult(fold, None, FoldFailure(fold=fold, reason=e.detail, n_train=len(train)))

    frame = pd.DataFrame(
        {
            "cell_id": test.index.to_numpy(),
            "prediction": predict_counts(results, test[features]),
            "observed": test[target].to_numpy(),
            "fold": fold,
            "model": model_label,
        }
    )
    return FoldResult(fold, frame, None)


def cross_validate(
    cells: pd.DataFrame,
    target: str,
    features: Sequence[str],
    groups: Union[str, pd.Series],
    model_label: str,
    max_workers: int = 1,
    fold_features: Optional[Callable] = None,
    logger=None,
) -> CrossValidationResult:
    """
    Out-of-fold Poisson predictions for every cell.

    Args:
        cells: Cell table (cell_id column, target and feature columns)
        target: Count column to predict
        features: Feature columns
        groups: Group column on `cells`, or a Series indexed by cell_id
        model_label: Label stored on every prediction row
        max_workers: Folds run in a thread pool when > 1
        fold_features: Optional callable taking a fold's training cell_ids
            and returning features for every cell (indexed by cell_id),
            built from training targets only. Its `columns` attribute names
            the features it supplies; these replace same-named columns on
            `cells` within the fold.
        logger: Optional logger

    Returns:
        CrossValidationResult with predictions sorted by cell_id

    Raises:
        PartitionImbalance: If the grouping cannot form at least two folds
        KeyError: If target or a feature column is missing
        ValueError: If features contain NaN
    """
    log = module_logger(__name__, logger)
    features = list(features)

    fold_columns = list(getattr(fold_features, "columns", ())) if fold_features is not None else []
    static = [f for f in features if f not in fold_columns]

    table = cells.set_index("cell_id")
    missing = [c for c in static + [target] if c not in table.columns]
    if missing:
        raise KeyError(f"Columns not found on cells: {missing}")
    data = pd.DataFrame(table[static + [target]])

    nan_cols = [c for c in static if data[c].isna().any()]
    if nan_cols:
        raise ValueError(f"Features contain NaN values: {nan_cols}")

    if isinstance(groups, str):
        group_series = table[groups]
    else:
        group_series = groups.reindex(data.index)
    group_series = group_series.rename(group_series.name or "group")

    splits = list(fold_splits(group_series))
    log.info(f"Cross-validating '{model_label}': {len(splits)} folds over {len(data):,} cells")

    def run(split):
        fold, train_ids, test_ids = split
        return _run_fold(
            fold, train_ids, test_ids, data, features, target, model_label, fold_features
        )

    if max_workers > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            fold_results = list(pool.map(run, splits))
    else:
        fold_results = [run(split) for split in splits]

    failures = tuple(r.failure for r in fold_results if r.failure is not None)
    for failure in failures:
        log.warning(
            f"Fold {failure.fold} of '{model_label}' failed ({failure.n_train} training cells): {failure.reason}"
        )

    frames = [r.predictions for r in fold_results if r.predictions is not None]
    if frames:
        predictions = pd.concat(frames, ignore_index=True)
        predictions = predictions.sort_values("cell_id", kind="stable").reset_index(drop=True)
        predictions["cell_id"] = predictions["cell_id"].astype("int64")
        validate_schema(predictions, PREDICTIONS_SCHEMA, context=model_label)
    else:
        predictions = pd.DataFrame(columns=PREDICTION_COLUMNS)

    log.info(
        f"'{model_label}': {len(predictions):,} out-of-fold predictions, "
        f"{len(failures)} of {len(splits)} folds failed"
    )
    return CrossValidationResult(
        model=model_label,
        predictions=predictions,
        failures=failures,
        n_folds=len(splits),
    )
