#!/usr/bin/env python3
"""
01_build_risk_surface.py

Build the cross-validated risk surface for one target event category.

Steps:
- Fishnet grid over the study boundary (cell size from params.yml)
- Target event counts per cell
- Mean k-nearest-neighbor distance to each risk-factor layer
- Distance to each reference point (e.g. the Loop), when configured
- Local Moran's I hotspots and distance-to-hotspot feature
- Poisson regression cross-validated with random and neighborhood folds
- KDE baseline at several bandwidths
- Held-out comparison by percentile risk band

Inputs (data/raw/, names from params.yml `inputs`):
- study boundary, categorized events, risk-factor point layers,
  neighborhood polygons, held-out events (optional)

Outputs:
- data/processed/risk/risk_cells.parquet (cell table with all features)
- data/processed/risk/risk_cells.geojson (map-ready)
- data/processed/risk/cv_predictions.parquet (out-of-fold predictions)
- data/processed/risk/cv_fold_errors.csv
- data/processed/risk/cv_model_summary.csv
- data/processed/risk/risk_comparison.csv (when held-out events exist)
- data/processed/risk/fold_failures.json
"""

import argparse
from pathlib import Path
from typing import Dict, Optional

import geopandas as gpd

from risk_surface.config import load_config
from risk_surface.io_utils import atomic_write_df, atomic_write_gdf, atomic_write_json, read_gdf
from risk_surface.logging_utils import get_logger
from risk_surface.paths import DEFAULT_PARAMS, RAW_DIR, RISK_DIR, ensure_dirs_exist
from risk_surface.pipeline import build_risk_surface
from risk_surface.qa import assert_expected_crs


# =============================================================================
# Constants
# =============================================================================

OUTPUT_CELLS = RISK_DIR / "risk_cells.parquet"
OUTPUT_CELLS_GEOJSON = RISK_DIR / "risk_cells.geojson"
OUTPUT_PREDICTIONS = RISK_DIR / "cv_predictions.parquet"
OUTPUT_FOLD_ERRORS = RISK_DIR / "cv_fold_errors.csv"
OUTPUT_SUMMARY = RISK_DIR / "cv_model_summary.csv"
OUTPUT_COMPARISON = RISK_DIR / "risk_comparison.csv"
OUTPUT_FAILURES = RISK_DIR / "fold_failures.json"


# =============================================================================
# Data Loading
# =============================================================================

def load_layer(name: str, filename: str, logger, crs=None) -> gpd.GeoDataFrame:
    """Read one input layer from data/raw/, checking its CRS when one is configured."""
    path = RAW_DIR / filename
    if not path.exists():
        raise FileNotFoundError(f"Missing input '{name}': {path}")
    gdf = read_gdf(path)
    if crs is not None:
        assert_expected_crs(gdf, crs, context=name)
    logger.info(f"Loaded {name}: {len(gdf):,} features from {path.name}")
    return gdf


def load_optional_layer(name: str, filename: Optional[str], logger, crs=None) -> Optional[gpd.GeoDataFrame]:
    if not filename or not (RAW_DIR / filename).exists():
        logger.warning(f"Input '{name}' not available; skipping")
        return None
    return load_layer(name, filename, logger, crs)


def load_risk_factors(files: Dict[str, str], logger, crs=None) -> Dict[str, gpd.GeoDataFrame]:
    return {name: load_layer(name, filename, logger, crs) for name, filename in sorted(files.items())}


# =============================================================================
# Main
# =============================================================================

def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Build the cross-validated risk surface")
    parser.add_argument("--params", type=Path, default=DEFAULT_PARAMS, help="Path to params.yml")
    parser.add_argument("--target", default=None, help="Override the target event category")
    args = parser.parse_args()

    with get_logger("01_build_risk_surface") as logger:
        logger.info("Starting 01_build_risk_surface.py")

        config = load_config(args.params)
        logger.log_config(config.to_dict(), digest=config.digest())

        inputs = config.extra.get("inputs", {})
        target = args.target or inputs.get("target_category", "burglaries")
        group_col = inputs.get("group_column", "name")
        crs = inputs.get("crs")

        try:
            boundary = load_layer("boundary", inputs["boundary"], logger, crs)
            events = load_layer("events", inputs["events"], logger, crs)
            risk_factors = load_risk_factors(inputs.get("risk_factors", {}), logger, crs)
            groups = load_optional_layer("groups", inputs.get("groups"), logger, crs)
            heldout = load_optional_layer("heldout_events", inputs.get("heldout_events"), logger, crs)

            result = build_risk_surface(
                boundary,
                events,
                risk_factors,
                target,
                groups,
                config,
                heldout_events=heldout,
                logger=logger,
                group_col=group_col,
                reference_points=inputs.get("reference_points"),
            )

            ensure_dirs_exist()

            atomic_write_df(result.cells.drop(columns=["geometry"]), OUTPUT_CELLS)
            logger.info(f"Wrote: {OUTPUT_CELLS} ({len(result.cells):,} cells)")

            map_cells = result.cells
            if "risk_category" in map_cells.columns:
                map_cells = map_cells.astype({"risk_category": str})
            atomic_write_gdf(map_cells, OUTPUT_CELLS_GEOJSON)
            logger.info(f"Wrote: {OUTPUT_CELLS_GEOJSON}")

            atomic_write_df(result.predictions.astype({"fold": str}), OUTPUT_PREDICTIONS)
            logger.info(f"Wrote: {OUTPUT_PREDICTIONS} ({len(result.predictions):,} rows)")

            atomic_write_df(result.fold_errors.astype({"fold": str}), OUTPUT_FOLD_ERRORS, index=False)
            atomic_write_df(result.summary, OUTPUT_SUMMARY, index=False)
            logger.info(f"Wrote: {OUTPUT_FOLD_ERRORS}, {OUTPUT_SUMMARY}")

            outputs = {
                "risk_cells_parquet": str(OUTPUT_CELLS),
                "risk_cells_geojson": str(OUTPUT_CELLS_GEOJSON),
                "cv_predictions": str(OUTPUT_PREDICTIONS),
                "cv_fold_errors": str(OUTPUT_FOLD_ERRORS),
                "cv_model_summary": str(OUTPUT_SUMMARY),
                "fold_failures": str(OUTPUT_FAILURES),
            }
            if result.comparison is not None:
                atomic_write_df(result.comparison, OUTPUT_COMPARISON, index=False)
                logger.info(f"Wrote: {OUTPUT_COMPARISON}")
                outputs["risk_comparison"] = str(OUTPUT_COMPARISON)

            atomic_write_json(
                {
                    label: [
                        {"fold": f.fold, "reason": f.reason, "n_train": f.n_train}
                        for f in failures
                    ]
                    for label, failures in result.failures.items()
                },
                OUTPUT_FAILURES,
            )
            logger.log_outputs(outputs)

            logger.log_metrics({
                "target": result.target_column,
                "primary_model": result.primary_model,
                "total_cells": len(result.cells),
                "total_events": int(result.cells[result.target_column].sum()),
                "hotspot_cells": int(result.cells["hotspot"].sum()),
                "failed_folds": result.n_failed,
                "model_mae": {
                    row.model: round(float(row.mean_mae), 4)
                    for row in result.summary.itertuples(index=False)
                },
            })

            # Print summary
            logger.info("=" * 70)
            logger.info("Risk Surface Summary:")
            logger.info(f"  Grid cells: {len(result.cells):,}")
            logger.info(f"  Risk factors: {', '.join(result.risk_factor_columns)}")
            for row in result.summary.itertuples(index=False):
                logger.info(
                    f"  {row.model}: MAE {row.mean_mae:.3f} (sd {row.sd_mae:.3f}), "
                    f"mean error {row.mean_error:+.3f}"
                )
            logger.info("=" * 70)

            logger.info("SUCCESS: Built risk surface")

        except Exception as e:
            logger.error(f"FAILED: {e}")
            raise


if __name__ == "__main__":
    main()
