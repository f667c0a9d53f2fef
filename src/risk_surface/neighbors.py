"""
Nearest-neighbor distance features.

For every cell centroid and every risk-factor point layer, the feature is
the mean planar distance to the k nearest points of the layer. Layers with
fewer than k points use all of them.
"""

from typing import Mapping, Tuple

import geopandas as gpd
import numpy as np
import pandas as pd
from scipy.spatial import cKDTree

from risk_surface.errors import InsufficientNeighbors
from risk_surface.grid import cell_centroids
from risk_surface.logging_utils import module_logger
from risk_surface.qa import assert_projected, assert_same_crs


def _point_coords(points: gpd.GeoDataFrame) -> np.ndarray:
    geoms = points.geometry[points.geometry.notna() & ~points.geometry.is_empty]
    return np.column_stack([geoms.x.to_numpy(), geoms.y.to_numpy()])


def mean_knn_distance(
    cells: gpd.GeoDataFrame,
    points: gpd.GeoDataFrame,
    k: int,
    layer: str = "points",
) -> pd.Series:
    """
    Mean distance from each cell centroid to its k nearest points.

    Args:
        cells: Cell table
        points: Point layer in the same projected CRS
        k: Number of neighbors
        layer: Layer name, used for the Series name and error context

    Returns:
        Series indexed by cell_id

    Raises:
        InsufficientNeighbors: If the layer has no points
        CRSError: If either input is geographic or the CRS differ
    """
    if k < 1:
        raise ValueError(f"k must be >= 1, got {k}")
    assert_projected(cells, context="cells")
    assert_projected(points, context=layer)
    assert_same_crs(cells, points, context=f"cells vs {layer}")

    coords = _point_coords(points)
    if len(coords) == 0:
        raise InsufficientNeighbors("point layer is empty", context=layer)

    k_eff = min(k, len(coords))
    distances, _ = cKDTree(coords).query(cell_centroids(cells), k=k_eff)
    # query() drops the neighbor axis when k == 1
    distances = np.asarray(distances).reshape(len(cells), k_eff)

    return pd.Series(
        distances.mean(axis=1),
        index=pd.Index(cells["cell_id"].to_numpy(), name="cell_id"),
        name=layer,
    )


def build_neighbor_features(
    cells: gpd.GeoDataFrame,
    layers: Mapping[str, gpd.GeoDataFrame],
    k: int,
    suffix: str = "_nn",
    logger=None,
) -> pd.DataFrame:
    """
    Nearest-neighbor distance features for several layers.

    Args:
        cells: Cell table
        layers: layer name -> point layer
        k: Neighbors per layer (same k for every layer)
        suffix: Appended to each layer name to form the column name
        logger: Optional logger

    Returns:
        DataFrame indexed by cell_id, one column per layer
    """
    log = module_logger(__name__, logger)

    columns = {}
    for name in sorted(layers):
        points = layers[name]
        if len(points) < k:
            log.warning(f"Layer '{name}' has {len(points)} points (< k={k}); using all of them")
        columns[f"{name}{suffix}"] = mean_knn_distance(cells, points, k, layer=name)

    features = pd.DataFrame(columns)
    features.index.name = "cell_id"
    log.info(f"Built {features.shape[1]} nearest-neighbor features (k={k}) for {len(features):,} cells")

    return features


def distance_to_point(
    cells: gpd.GeoDataFrame,
    point: Tuple[float, float],
    name: str = "point_dist",
) -> pd.Series:
    """
    Distance from each cell centroid to one reference location.

    Args:
        cells: Cell table
        point: (x, y) in the cells' CRS, e.g. the central business district
        name: Series name

    Returns:
        Series indexed by cell_id
    """
    assert_projected(cells, context="cells")
    centroids = cell_centroids(cells)
    dist = np.hypot(centroids[:, 0] - point[0], centroids[:, 1] - point[1])
    return pd.Series(dist, index=pd.Index(cells["cell_id"].to_numpy(), name="cell_id"), name=name)
