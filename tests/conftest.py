"""
Shared synthetic fixtures.

All layers live in EPSG:3435 (Illinois StatePlane East, feet). The standard
grid is 10 x 10 cells of 100 ft over a 1000 ft square, so cell_id = row * 10
+ col and the centroid of a cell is (col * 100 + 50, row * 100 + 50).
"""

import geopandas as gpd
import numpy as np
import pandas as pd
import pytest
from shapely.geometry import Point, box

from risk_surface.aggregate import aggregate_points, attach_counts
from risk_surface.grid import build_fishnet

CRS = "EPSG:3435"
CELL = 100.0

# Three adjacent cells in the middle row
CLUSTER_IDS = [54, 55, 56]
CLUSTER_EVENTS = 20


def centroid(cell_id: int):
    row, col = divmod(cell_id, 10)
    return (col * CELL + CELL / 2, row * CELL + CELL / 2)


def make_points(coords, crs=CRS, **columns) -> gpd.GeoDataFrame:
    """GeoDataFrame of points from (x, y) pairs plus optional columns."""
    return gpd.GeoDataFrame(
        dict(columns),
        geometry=[Point(x, y) for x, y in coords],
        crs=crs,
    )


@pytest.fixture
def boundary():
    """1000 ft square study area."""
    return gpd.GeoDataFrame({"name": ["study area"]}, geometry=[box(0, 0, 1000, 1000)], crs=CRS)


@pytest.fixture
def grid(boundary):
    """10 x 10 fishnet over the study area."""
    return build_fishnet(boundary, CELL)


def scenario_events() -> gpd.GeoDataFrame:
    """
    20 events in each cluster cell plus one background event in every cell
    with (row + 2 * col) % 5 == 0 outside the cluster.
    """
    rng = np.random.default_rng(7)
    coords = []
    for cell_id in CLUSTER_IDS:
        cx, cy = centroid(cell_id)
        offsets = rng.uniform(-40, 40, size=(CLUSTER_EVENTS, 2))
        coords.extend((cx + dx, cy + dy) for dx, dy in offsets)
    for cell_id in range(100):
        row, col = divmod(cell_id, 10)
        if (row + 2 * col) % 5 == 0 and cell_id not in CLUSTER_IDS:
            cx, cy = centroid(cell_id)
            coords.append((cx + 10, cy - 10))
    return make_points(coords, category=["burglaries"] * len(coords))


def scenario_risk_factors():
    """Two layers, one point each inside every cluster cell, at different offsets."""
    layer_a = [(centroid(i)[0] - 20, centroid(i)[1] + 30) for i in CLUSTER_IDS]
    layer_b = [(centroid(i)[0] + 25, centroid(i)[1] - 10) for i in CLUSTER_IDS]
    return {"abandoned_cars": make_points(layer_a), "graffiti": make_points(layer_b)}


@pytest.fixture
def events():
    return scenario_events()


@pytest.fixture
def risk_factors():
    return scenario_risk_factors()


@pytest.fixture
def counted_grid(grid, events):
    """Grid with a count_burglaries column."""
    counts = aggregate_points(events, grid, categories=["burglaries"])
    return attach_counts(grid, counts, {"burglaries": "count_burglaries"})


@pytest.fixture
def block_values():
    """10 x 10 values: a 4 x 4 block of 10s (rows/cols 3-6) in a field of 0s."""
    values = np.zeros(100)
    for row in range(3, 7):
        for col in range(3, 7):
            values[row * 10 + col] = 10.0
    return pd.Series(values, index=pd.Index(range(100), name="cell_id"))
