"""
Fishnet grid construction and cell-table helpers.

Cells are enumerated row-major from the lower-left corner of the boundary's
bounding box, with `cell_id = row * n_cols + col`. Identifiers therefore do
not depend on which cells survive clipping and are identical across runs
with the same boundary and cell size.
"""

from typing import Union

import geopandas as gpd
import numpy as np
import pandas as pd
import shapely
from shapely.geometry.base import BaseGeometry

from risk_surface.config import CELL_SHAPES
from risk_surface.errors import InvalidGeometry
from risk_surface.logging_utils import module_logger
from risk_surface.qa import as_single_polygon, assert_same_crs
from risk_surface.schemas import CELLS_SCHEMA, validate_schema


def _lattice_size(extent: float, cell_size: float) -> int:
    # Round before ceil so an extent of exactly n cells doesn't become n + 1
    return max(1, int(np.ceil(round(extent / cell_size, 9))))


def build_fishnet(
    boundary: Union[BaseGeometry, gpd.GeoDataFrame, gpd.GeoSeries],
    cell_size: float,
    shape: str = "square",
    clip: bool = False,
    logger=None,
) -> gpd.GeoDataFrame:
    """
    Create a regular grid of cells covering the boundary.

    Only cells whose overlap with the boundary has positive area are kept;
    cells that merely touch the boundary are dropped.

    Args:
        boundary: Study-area polygon (shapely geometry, or a GeoDataFrame /
            GeoSeries whose union is used; its CRS is carried over)
        cell_size: Cell edge length in CRS units
        shape: Cell shape (only "square")
        clip: Replace retained cells by their intersection with the boundary
        logger: Optional logger

    Returns:
        GeoDataFrame with cell_id, row, col and geometry

    Raises:
        InvalidGeometry: If the boundary is empty, invalid or has zero area
        ValueError: If cell_size is not positive or the shape is unknown
    """
    log = module_logger(__name__, logger)

    if shape not in CELL_SHAPES:
        raise ValueError(f"Unsupported cell shape {shape!r}; expected one of {CELL_SHAPES}")
    if not cell_size or cell_size <= 0:
        raise ValueError(f"cell_size must be positive, got {cell_size}")

    crs = boundary.crs if isinstance(boundary, (gpd.GeoDataFrame, gpd.GeoSeries)) else None
    geom = as_single_polygon(boundary, context="fishnet boundary", component="grid")

    minx, miny, maxx, maxy = geom.bounds
    n_cols = _lattice_size(maxx - minx, cell_size)
    n_rows = _lattice_size(maxy - miny, cell_size)
    log.info(f"Creating grid: {n_cols} cols x {n_rows} rows = {n_cols * n_rows:,} cells")

    # Shared edges come from one coordinate array so neighbors match exactly
    x_edges = minx + np.arange(n_cols + 1) * cell_size
    y_edges = miny + np.arange(n_rows + 1) * cell_size
    rows, cols = np.divmod(np.arange(n_rows * n_cols), n_cols)
    boxes = shapely.box(x_edges[cols], y_edges[rows], x_edges[cols + 1], y_edges[rows + 1])

    grid = gpd.GeoDataFrame(
        {"cell_id": rows * n_cols + cols, "row": rows, "col": cols},
        geometry=boxes,
        crs=crs,
    )

    shapely.prepare(geom)
    overlap = grid.geometry.intersection(geom)
    keep = (overlap.area > 0).to_numpy()

    cells = grid[keep].copy()
    if clip:
        cells["geometry"] = overlap[keep]
    cells = cells.reset_index(drop=True)

    log.info(f"Kept {len(cells):,} cells within boundary (dropped {len(grid) - len(cells):,})")
    validate_schema(cells, CELLS_SCHEMA, context="fishnet")

    return cells


def cell_centroids(cells: gpd.GeoDataFrame) -> np.ndarray:
    """Centroid coordinates as an (n, 2) array, in cell-table order."""
    centroids = cells.geometry.centroid
    return np.column_stack([centroids.x.to_numpy(), centroids.y.to_numpy()])


def attach_features(
    cells: gpd.GeoDataFrame,
    features: Union[pd.DataFrame, pd.Series],
) -> gpd.GeoDataFrame:
    """
    Return a new cell table with feature columns joined on cell_id.

    Attachment is additive: a feature whose name already exists on the
    cell table is rejected rather than overwritten. Cells absent from
    `features` get NaN.

    Args:
        cells: Cell table
        features: DataFrame or named Series indexed by cell_id

    Raises:
        ValueError: On name collisions, unnamed Series or duplicated cell_ids
    """
    if isinstance(features, pd.Series):
        if features.name is None:
            raise ValueError("Feature Series must be named")
        features = features.to_frame()

    collisions = sorted(set(features.columns) & set(cells.columns))
    if collisions:
        raise ValueError(f"Features already attached to cells: {collisions}")
    if features.index.duplicated().any():
        raise ValueError("Feature index has duplicated cell_id values")

    unknown = features.index.difference(pd.Index(cells["cell_id"]))
    if len(unknown) > 0:
        raise ValueError(f"Features reference {len(unknown)} unknown cell_id values")

    joined = cells.join(features, on="cell_id")
    return gpd.GeoDataFrame(joined, geometry=cells.geometry.name, crs=cells.crs)


def assign_cells_to_groups(
    cells: gpd.GeoDataFrame,
    polygons: gpd.GeoDataFrame,
    group_col: str,
    logger=None,
) -> pd.Series:
    """
    Label each cell with the group polygon containing its centroid.

    Centroids falling outside every polygon (coastline, slivers) are
    assigned to the nearest polygon. A centroid on a shared polygon edge
    takes the smallest group label.

    Args:
        cells: Cell table
        polygons: Grouping polygons (e.g. neighborhoods)
        group_col: Column of `polygons` holding the group label
        logger: Optional logger

    Returns:
        Series indexed by cell_id, named group_col
    """
    log = module_logger(__name__, logger)
    assert_same_crs(cells, polygons, context="cells vs group polygons")

    if len(polygons) == 0:
        raise InvalidGeometry("no group polygons supplied", context=group_col)
    if group_col not in polygons.columns:
        raise KeyError(f"Group column {group_col!r} not found in polygons")

    centroids = gpd.GeoDataFrame(
        {"cell_id": cells["cell_id"].to_numpy()},
        geometry=cells.geometry.centroid.to_numpy(),
        crs=cells.crs,
    )
    zones = polygons[[group_col, "geometry"]]

    within = gpd.sjoin(centroids, zones, how="inner", predicate="intersects")
    within = within.sort_values(["cell_id", group_col]).drop_duplicates("cell_id")

    unmatched = centroids[~centroids["cell_id"].isin(within["cell_id"])]
    if len(unmatched) > 0:
        nearest = gpd.sjoin_nearest(unmatched, zones, how="inner")
        nearest = nearest.sort_values(["cell_id", group_col]).drop_duplicates("cell_id")
        log.info(f"Assigned {len(nearest):,} cells to nearest group polygon")
        within = pd.concat([within, nearest], ignore_index=True)

    groups = within.set_index("cell_id")[group_col].reindex(cells["cell_id"].to_numpy())
    groups.index.name = "cell_id"
    log.info(f"Cells assigned to {groups.nunique()} groups by '{group_col}'")

    return groups
