"""
End-to-end risk surface build.

grid -> aggregation -> neighbor features -> spatial-process features ->
cross-validation -> KDE baseline -> held-out risk comparison.

The hotspot layer on the cell table uses every target count and is
descriptive only. Models that use the spatial-process features get them
rebuilt inside each fold from that fold's training targets.

Every partitioning policy is crossed with every feature subset. The pair
selected by the configuration (fold_group_key, feature_subset) is the
primary model: its predictions go on the cell table and into the held-out
comparison next to the KDE baselines.
"""

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Sequence, Tuple

import geopandas as gpd
import pandas as pd

from risk_surface.aggregate import aggregate_points, assign_points_to_cells, attach_counts
from risk_surface.autocorrelation import (
    SPATIAL_FEATURE_COLUMNS,
    FoldSpatialFeatures,
    spatial_process_features,
)
from risk_surface.config import FEATURE_SUBSETS, ConfigError, PipelineConfig
from risk_surface.crossval import (
    FoldFailure,
    assign_random_groups,
    cross_validate,
    resolve_feature_subset,
)
from risk_surface.density import multi_bandwidth_density
from risk_surface.errors import ModelFitFailure
from risk_surface.grid import assign_cells_to_groups, attach_features, build_fishnet
from risk_surface.logging_utils import module_logger
from risk_surface.metrics import fold_errors, model_summary
from risk_surface.neighbors import build_neighbor_features, distance_to_point
from risk_surface.risk import assign_risk_categories, compare_models

RANDOM_GROUP_COLUMN = "cv_id"
SPATIAL_FEATURES = list(SPATIAL_FEATURE_COLUMNS)

# partitioning policy -> label prefix
POLICY_LABELS = {"random": "kfold", "spatial": "logo"}


@dataclass(frozen=True)
class RiskSurfaceResult:
    """Everything a risk surface run produces."""
    cells: gpd.GeoDataFrame
    predictions: pd.DataFrame
    failures: Dict[str, Tuple[FoldFailure, ...]]
    fold_errors: pd.DataFrame
    summary: pd.DataFrame
    comparison: Optional[pd.DataFrame]
    primary_model: str
    target_column: str
    risk_factor_columns: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def n_failed(self) -> int:
        return sum(len(f) for f in self.failures.values())


def model_label(policy: str, subset: str) -> str:
    return f"{POLICY_LABELS[policy]}_{subset}"


def _filter_category(points: gpd.GeoDataFrame, category_col: str, category) -> gpd.GeoDataFrame:
    if category_col not in points.columns:
        return points
    return points[points[category_col] == category]


def build_risk_surface(
    boundary,
    events: gpd.GeoDataFrame,
    risk_factor_layers: Mapping[str, gpd.GeoDataFrame],
    target_category: str,
    group_polygons: Optional[gpd.GeoDataFrame],
    config: PipelineConfig,
    heldout_events: Optional[gpd.GeoDataFrame] = None,
    logger=None,
    group_col: str = "name",
    category_col: str = "category",
    reference_points: Optional[Mapping[str, Sequence[float]]] = None,
) -> RiskSurfaceResult:
    """
    Build, cross-validate and benchmark a risk surface.

    Args:
        boundary: Study-area polygon or GeoDataFrame
        events: Categorized event points
        risk_factor_layers: layer name -> risk-factor points
        target_category: Event category used as the regression target
        group_polygons: Spatial grouping polygons for leave-one-group-out
            (None runs random folds only)
        config: Pipeline configuration
        heldout_events: Later-period events of the target category for the
            risk comparison (skipped when None)
        logger: Optional logger
        group_col: Label column of group_polygons
        category_col: Category column of the event layers
        reference_points: name -> (x, y) in the shared CRS; each adds a
            `<name>_dist` risk-factor column (e.g. distance to the CBD)

    Returns:
        RiskSurfaceResult

    Raises:
        ConfigError: If the configured primary model cannot be run with the
            given inputs
    """
    log = module_logger(__name__, logger)

    policies = ["random"]
    if group_polygons is not None:
        policies.append("spatial")
    if not config.uses_random_folds:
        if group_polygons is None:
            raise ConfigError(
                f"fold_group_key={config.fold_group_key!r} needs group polygons"
            )
        if config.fold_group_key != group_col:
            raise ConfigError(
                f"fold_group_key={config.fold_group_key!r} does not match group column {group_col!r}"
            )
    primary = model_label("random" if config.uses_random_folds else "spatial", config.feature_subset)

    # Grid and target counts
    cells = build_fishnet(boundary, config.cell_size, shape=config.cell_shape, logger=logger)
    target_col = f"count_{target_category}"
    counts = aggregate_points(
        events, cells, category_col=category_col, categories=[target_category], logger=logger
    )
    cells = attach_counts(cells, counts, {target_category: target_col})
    log.info(f"Target '{target_col}': {int(cells[target_col].sum()):,} events in {len(cells):,} cells")

    # Risk-factor neighbor distances
    neighbor_features = build_neighbor_features(cells, risk_factor_layers, config.k, logger=logger)
    for name, point in sorted((reference_points or {}).items()):
        x, y = point
        neighbor_features[f"{name}_dist"] = distance_to_point(cells, (x, y), name=f"{name}_dist")
        log.info(f"Added distance to reference point '{name}' at ({x:,.0f}, {y:,.0f})")
    cells = attach_features(cells, neighbor_features)
    risk_factors = list(neighbor_features.columns)

    # Local autocorrelation of the target
    cells = attach_features(cells, spatial_process_features(cells, target_col, config, logger=logger))

    # Fold groupings
    random_groups = assign_random_groups(
        cells["cell_id"].tolist(),
        cells_per_fold=config.cells_per_random_fold,
        seed=config.random_seed,
    )
    cells = attach_features(cells, random_groups.rename(RANDOM_GROUP_COLUMN))
    if group_polygons is not None:
        groups = assign_cells_to_groups(cells, group_polygons, group_col, logger=logger)
        cells = attach_features(cells, groups.rename(group_col))

    # Cross-validation
    fold_spatial = FoldSpatialFeatures(cells, target_col, config, logger=logger)
    results = {}
    for policy in policies:
        group_column = RANDOM_GROUP_COLUMN if policy == "random" else group_col
        for subset in FEATURE_SUBSETS:
            label = model_label(policy, subset)
            features = resolve_feature_subset(subset, risk_factors, SPATIAL_FEATURES)
            uses_spatial = any(f in SPATIAL_FEATURES for f in features)
            results[label] = cross_validate(
                cells,
                target_col,
                features,
                group_column,
                label,
                max_workers=config.max_workers,
                fold_features=fold_spatial if uses_spatial else None,
                logger=logger,
            )

    frames = [r.predictions for r in results.values() if len(r.predictions) > 0]
    if not frames:
        raise ModelFitFailure("every fold of every model failed", context=target_col)
    predictions = pd.concat(frames, ignore_index=True)
    predictions = predictions.sort_values(["model", "cell_id"], kind="stable").reset_index(drop=True)
    failures = {label: r.failures for label, r in results.items()}

    errors = fold_errors(predictions)
    summary = model_summary(predictions)
    for row in summary.itertuples(index=False):
        log.info(f"{row.model}: mean MAE {row.mean_mae:.3f} over {row.n_folds} folds")

    primary_scores = (
        predictions.loc[predictions["model"] == primary].set_index("cell_id")["prediction"]
    )
    if len(primary_scores) < len(cells):
        log.warning(
            f"Primary model '{primary}' predicted {len(primary_scores):,} of {len(cells):,} cells"
        )
    cells = attach_features(cells, primary_scores.rename("prediction"))

    # Density baseline
    target_events = _filter_category(events, category_col, target_category)
    densities = multi_bandwidth_density(
        cells, target_events, config.bandwidths, config.effective_pixel_size, logger=logger
    )
    cells = attach_features(cells, densities)

    # Held-out comparison
    comparison = None
    if heldout_events is not None:
        heldout = _filter_category(heldout_events, category_col, target_category)
        assigned, _ = assign_points_to_cells(heldout, cells[["cell_id", "geometry"]], logger=logger)
        heldout_counts = assigned["cell_id"].value_counts().rename("heldout_count")

        scores = {primary: primary_scores} if len(primary_scores) > 0 else {}
        scores.update({column: densities[column] for column in densities.columns})
        comparison = compare_models(scores, heldout_counts)

        top = comparison[comparison["risk_category"] == "90% to 100%"]
        for row in top.itertuples(index=False):
            log.info(f"{row.model}: {row.share:.1%} of held-out events in the top risk band")

        if len(primary_scores) > 0:
            categories = assign_risk_categories(primary_scores)["risk_category"]
            cells = attach_features(cells, categories)

    return RiskSurfaceResult(
        cells=cells,
        predictions=predictions,
        failures=failures,
        fold_errors=errors,
        summary=summary,
        comparison=comparison,
        primary_model=primary,
        target_column=target_col,
        risk_factor_columns=tuple(risk_factors),
    )
