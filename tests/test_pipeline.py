"""
End-to-end tests for the risk surface build.

Scenario: a 10 x 10 grid with a three-cell burglary cluster in the middle
row, sparse background events, and two risk-factor layers with one point
inside every cluster cell.
"""

import geopandas as gpd
import numpy as np
import pandas as pd
import pytest
from shapely.geometry import box

from conftest import CLUSTER_EVENTS, CLUSTER_IDS, CRS, centroid, make_points
from risk_surface.autocorrelation import FoldSpatialFeatures
from risk_surface.config import ConfigError, PipelineConfig
from risk_surface.crossval import cross_validate
from risk_surface.grid import attach_features
from risk_surface.neighbors import build_neighbor_features
from risk_surface.pipeline import SPATIAL_FEATURES, build_risk_surface, model_label
from risk_surface.risk import RISK_LABELS

RISK_FACTORS = ["abandoned_cars_nn", "graffiti_nn"]
LABELS = [
    "kfold_risk_factors",
    "kfold_risk_factors_plus_spatial",
    "logo_risk_factors",
    "logo_risk_factors_plus_spatial",
]


@pytest.fixture
def config():
    return PipelineConfig(cell_size=100, k=1, bandwidths=(100, 200), cells_per_random_fold=24)


@pytest.fixture
def strips():
    """Four vertical strips; no cell centroid lies on a strip edge."""
    edges = [0, 250, 500, 750, 1000]
    return gpd.GeoDataFrame(
        {"name": ["a", "b", "c", "d"]},
        geometry=[box(x0, 0, x1, 1000) for x0, x1 in zip(edges[:-1], edges[1:])],
        crs=CRS,
    )


@pytest.fixture
def heldout():
    coords = [centroid(54), centroid(55), centroid(55), centroid(0)]
    return make_points(coords, category=["burglaries"] * len(coords))


@pytest.fixture
def feature_table(counted_grid, risk_factors):
    """Cell table with neighbor and column-group features."""
    cells = attach_features(counted_grid, build_neighbor_features(counted_grid, risk_factors, k=1))
    cells["col_group"] = cells["col"] % 4
    return cells


class TestSpatialProcessFeatures:
    """Cross-validated models with per-fold hotspot features."""

    def run(self, cells, features, label, fold_features=None):
        result = cross_validate(
            cells, "count_burglaries", features, "col_group", label, fold_features=fold_features
        )
        assert result.n_failed == 0
        return result.predictions.set_index("cell_id")

    def test_risk_factors_point_at_cluster(self, feature_table):
        preds = self.run(feature_table, RISK_FACTORS, "risk")
        cluster = preds.loc[CLUSTER_IDS, "prediction"].mean()
        elsewhere = preds.drop(index=CLUSTER_IDS)["prediction"].mean()
        assert cluster > 3 * elsewhere

    def test_spatial_model_points_at_cluster(self, feature_table, config):
        build = FoldSpatialFeatures(feature_table, "count_burglaries", config)
        preds = self.run(feature_table, RISK_FACTORS + SPATIAL_FEATURES, "spatial", build)
        cluster = preds.loc[CLUSTER_IDS, "prediction"].mean()
        elsewhere = preds.drop(index=CLUSTER_IDS)["prediction"].mean()
        assert cluster > 2 * elsewhere

    def test_held_out_targets_do_not_change_fold_predictions(self, feature_table, config):
        """Editing the targets of the fold holding cell 55 leaves its predictions unchanged."""
        features = RISK_FACTORS + SPATIAL_FEATURES
        base = self.run(
            feature_table,
            features,
            "spatial",
            FoldSpatialFeatures(feature_table, "count_burglaries", config),
        )

        altered = feature_table.copy()
        altered.loc[altered["cell_id"].isin([15, 91]), "count_burglaries"] = [6, 30]
        changed = cross_validate(
            altered,
            "count_burglaries",
            features,
            "col_group",
            "spatial",
            fold_features=FoldSpatialFeatures(altered, "count_burglaries", config),
        )
        changed = changed.predictions.set_index("cell_id")

        ids = feature_table.loc[feature_table["col_group"] == 1, "cell_id"]
        np.testing.assert_allclose(
            changed.loc[ids, "prediction"].to_numpy(), base.loc[ids, "prediction"].to_numpy()
        )


class TestBuildRiskSurface:
    """Tests for build_risk_surface."""

    @pytest.fixture
    def result(self, boundary, events, risk_factors, strips, config, heldout):
        return build_risk_surface(
            boundary,
            events,
            risk_factors,
            "burglaries",
            strips,
            config,
            heldout_events=heldout,
        )

    def test_cell_table_columns(self, result):
        cells = result.cells
        assert len(cells) == 100
        for column in [
            "count_burglaries",
            *RISK_FACTORS,
            *SPATIAL_FEATURES,
            "local_i",
            "p_value",
            "cv_id",
            "name",
            "kde_100",
            "kde_200",
            "prediction",
        ]:
            assert column in cells.columns, column
        assert int(cells["count_burglaries"].sum()) == 3 * CLUSTER_EVENTS + 19
        assert result.target_column == "count_burglaries"
        assert result.risk_factor_columns == tuple(RISK_FACTORS)

    def test_hotspots_are_cluster(self, result):
        hot = result.cells.loc[result.cells["hotspot"] == 1, "cell_id"]
        assert sorted(hot.tolist()) == CLUSTER_IDS

    def test_every_model_is_run(self, result):
        assert sorted(result.failures) == LABELS
        assert set(result.predictions["model"]) <= set(LABELS)
        assert result.primary_model == "kfold_risk_factors_plus_spatial"

    def test_leave_one_group_out_covers_every_cell(self, result):
        for label in ["logo_risk_factors", "logo_risk_factors_plus_spatial"]:
            assert len(result.failures[label]) == 0
            preds = result.predictions[result.predictions["model"] == label]
            assert sorted(preds["cell_id"].tolist()) == list(range(100))
            assert set(preds["fold"]) == {"a", "b", "c", "d"}

    def test_held_out_strip_targets_do_not_leak(
        self, result, boundary, events, risk_factors, strips, config
    ):
        """Extra events in strip 'c' leave that strip's spatial-model predictions unchanged."""
        extra = make_points(
            [centroid(65)] * 6 + [centroid(75)] * 4, category=["burglaries"] * 10
        )
        more_events = gpd.GeoDataFrame(pd.concat([events, extra], ignore_index=True), crs=CRS)
        altered = build_risk_surface(
            boundary, more_events, risk_factors, "burglaries", strips, config
        )

        label = "logo_risk_factors_plus_spatial"
        for run in (result, altered):
            assert len(run.failures[label]) == 0

        def strip_c(run):
            preds = run.predictions
            return preds[(preds["model"] == label) & (preds["fold"] == "c")].set_index("cell_id")

        base, changed = strip_c(result), strip_c(altered)
        assert changed.loc[65, "observed"] == base.loc[65, "observed"] + 6
        np.testing.assert_allclose(
            changed.loc[base.index, "prediction"].to_numpy(), base["prediction"].to_numpy()
        )

    def test_predictions_sorted(self, result):
        preds = result.predictions
        expected = preds.sort_values(["model", "cell_id"], kind="stable")
        pd.testing.assert_frame_equal(preds, expected)
        assert np.isfinite(preds["prediction"]).all()

    def test_summary_per_model(self, result):
        summary = result.summary.set_index("model")
        assert set(summary.index) == set(result.predictions["model"])
        assert summary.loc["logo_risk_factors", "n_folds"] == 4
        assert (summary["mean_mae"] >= 0).all()

    def test_heldout_comparison(self, result):
        comparison = result.comparison
        assert comparison is not None
        assert {"kde_100", "kde_200"} <= set(comparison["model"])
        for label, table in comparison.groupby("model"):
            assert table["risk_category"].tolist() == RISK_LABELS
            scored = (result.predictions["model"] == label).sum() or 100
            assert table["n_cells"].sum() == scored
        for label in ["kde_100", "kde_200"]:
            assert comparison.loc[comparison["model"] == label, "heldout_count"].sum() == 4
        kde = comparison[comparison["model"] == "kde_100"].set_index("risk_category")
        assert kde.loc["90% to 100%", "heldout_count"] >= 3

    def test_without_heldout_events(self, boundary, events, risk_factors, config):
        result = build_risk_surface(boundary, events, risk_factors, "burglaries", None, config)
        assert result.comparison is None
        assert sorted(result.failures) == ["kfold_risk_factors", "kfold_risk_factors_plus_spatial"]
        assert "risk_category" not in result.cells.columns

    def test_reference_point_distance_is_a_risk_factor(self, boundary, events, risk_factors, config):
        result = build_risk_surface(
            boundary,
            events,
            risk_factors,
            "burglaries",
            None,
            config,
            reference_points={"center": (500, 500)},
        )
        assert result.risk_factor_columns == (*RISK_FACTORS, "center_dist")
        cells = result.cells.set_index("cell_id")
        assert cells.loc[44, "center_dist"] == pytest.approx(np.hypot(50, 50))
        assert cells.loc[0, "center_dist"] == pytest.approx(np.hypot(450, 450))
        assert len(result.failures["kfold_risk_factors"]) == 0


class TestPrimaryModelSelection:
    """Tests for the configured primary model."""

    def test_model_label(self):
        assert model_label("random", "risk_factors") == "kfold_risk_factors"
        assert model_label("spatial", "risk_factors_plus_spatial") == "logo_risk_factors_plus_spatial"

    def test_group_key_selects_logo(self, boundary, events, risk_factors, strips, config):
        config = config.with_overrides(fold_group_key="name", feature_subset="risk_factors")
        result = build_risk_surface(boundary, events, risk_factors, "burglaries", strips, config)
        assert result.primary_model == "logo_risk_factors"
        primary = result.predictions[result.predictions["model"] == "logo_risk_factors"]
        np.testing.assert_allclose(
            result.cells.set_index("cell_id").loc[primary["cell_id"], "prediction"].to_numpy(),
            primary["prediction"].to_numpy(),
        )

    def test_group_key_without_polygons_raises(self, boundary, events, risk_factors, config):
        config = config.with_overrides(fold_group_key="name")
        with pytest.raises(ConfigError):
            build_risk_surface(boundary, events, risk_factors, "burglaries", None, config)

    def test_group_key_must_match_column(self, boundary, events, risk_factors, strips, config):
        config = config.with_overrides(fold_group_key="district")
        with pytest.raises(ConfigError):
            build_risk_surface(boundary, events, risk_factors, "burglaries", strips, config)
