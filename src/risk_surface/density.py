"""
Kernel density baseline.

A Gaussian kernel density is fit to the event points and evaluated at the
centres of a regular pixel lattice covering the study bounds. The surface is
an intensity (events per unit area): n times the estimated pdf. Cell values
are the mean of the pixels whose centres fall inside the cell.
"""

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import geopandas as gpd
import numpy as np
import pandas as pd
from rasterio.transform import from_origin
from rasterstats import zonal_stats
from sklearn.neighbors import KernelDensity

from risk_surface.errors import InsufficientNeighbors
from risk_surface.grid import cell_centroids
from risk_surface.logging_utils import module_logger
from risk_surface.qa import assert_projected, assert_same_crs

NODATA = -9999.0


@dataclass(frozen=True)
class DensitySurface:
    """
    Density raster plus the estimator that produced it.

    `values` is ordered like a raster band: row 0 is the northern edge.
    """
    values: np.ndarray
    transform: object
    bandwidth: float
    pixel_size: float
    n_points: int
    estimator: KernelDensity

    @property
    def shape(self) -> Tuple[int, int]:
        return self.values.shape

    def evaluate(self, coords: np.ndarray) -> np.ndarray:
        """Intensity at arbitrary (n, 2) coordinates."""
        return self.n_points * np.exp(self.estimator.score_samples(coords))


def density_surface(
    points: gpd.GeoDataFrame,
    bounds: Tuple[float, float, float, float],
    bandwidth: float,
    pixel_size: float,
) -> DensitySurface:
    """
    Evaluate a Gaussian KDE over a pixel lattice.

    Args:
        points: Event points in a projected CRS
        bounds: (minx, miny, maxx, maxy) of the lattice
        bandwidth: Kernel standard deviation in CRS units
        pixel_size: Pixel edge length in CRS units

    Returns:
        DensitySurface

    Raises:
        InsufficientNeighbors: If there are no points
    """
    if bandwidth <= 0:
        raise ValueError(f"bandwidth must be positive, got {bandwidth}")
    if pixel_size <= 0:
        raise ValueError(f"pixel_size must be positive, got {pixel_size}")
    assert_projected(points, context="density points")

    geoms = points.geometry[points.geometry.notna() & ~points.geometry.is_empty]
    coords = np.column_stack([geoms.x.to_numpy(), geoms.y.to_numpy()])
    if len(coords) == 0:
        raise InsufficientNeighbors("no points to estimate density from", context=f"bandwidth {bandwidth}")

    minx, miny, maxx, maxy = bounds
    n_cols = max(1, int(np.ceil(round((maxx - minx) / pixel_size, 9))))
    n_rows = max(1, int(np.ceil(round((maxy - miny) / pixel_size, 9))))

    xs = minx + (np.arange(n_cols) + 0.5) * pixel_size
    ys = maxy - (np.arange(n_rows) + 0.5) * pixel_size
    grid_x, grid_y = np.meshgrid(xs, ys)
    centres = np.column_stack([grid_x.ravel(), grid_y.ravel()])

    kde = KernelDensity(kernel="gaussian", bandwidth=bandwidth).fit(coords)
    values = (len(coords) * np.exp(kde.score_samples(centres))).reshape(n_rows, n_cols)

    return DensitySurface(
        values=values,
        transform=from_origin(minx, maxy, pixel_size, pixel_size),
        bandwidth=float(bandwidth),
        pixel_size=float(pixel_size),
        n_points=len(coords),
        estimator=kde,
    )


def cell_mean_density(
    cells: gpd.GeoDataFrame,
    surface: DensitySurface,
    name: Optional[str] = None,
) -> pd.Series:
    """
    Mean surface value per cell.

    Cells that contain no pixel centre take the intensity at their centroid.

    Returns:
        Series indexed by cell_id
    """
    results = zonal_stats(
        list(cells.geometry),
        surface.values,
        affine=surface.transform,
        stats=["mean", "count"],
        nodata=NODATA,
    )

    means = np.array(
        [r["mean"] if r and r.get("count") else np.nan for r in results],
        dtype=float,
    )
    empty = np.isnan(means)
    if empty.any():
        means[empty] = surface.evaluate(cell_centroids(cells)[empty])

    return pd.Series(
        means,
        index=pd.Index(cells["cell_id"].to_numpy(), name="cell_id"),
        name=name or f"kde_{surface.bandwidth:g}",
    )


def multi_bandwidth_density(
    cells: gpd.GeoDataFrame,
    points: gpd.GeoDataFrame,
    bandwidths: Sequence[float],
    pixel_size: float,
    logger=None,
) -> pd.DataFrame:
    """
    Cell-mean density for several bandwidths.

    Returns:
        DataFrame indexed by cell_id with one `kde_<bandwidth>` column per
        bandwidth
    """
    log = module_logger(__name__, logger)
    assert_same_crs(cells, points, context="cells vs density points")

    bounds = tuple(cells.total_bounds)
    columns = {}
    for bandwidth in bandwidths:
        surface = density_surface(points, bounds, bandwidth, pixel_size)
        name = f"kde_{bandwidth:g}"
        columns[name] = cell_mean_density(cells, surface, name=name)
        log.info(
            f"KDE bandwidth {bandwidth:g}: {surface.shape[0]} x {surface.shape[1]} pixels, "
            f"{surface.n_points:,} points"
        )

    densities = pd.DataFrame(columns)
    densities.index.name = "cell_id"
    return densities
