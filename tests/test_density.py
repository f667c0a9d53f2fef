"""
Tests for the kernel density baseline.
"""

import numpy as np
import pytest

from conftest import CLUSTER_IDS, make_points
from risk_surface.density import (
    cell_mean_density,
    density_surface,
    multi_bandwidth_density,
)
from risk_surface.errors import InsufficientNeighbors


BOUNDS = (0.0, 0.0, 1000.0, 1000.0)


class TestDensitySurface:
    """Tests for density_surface."""

    def test_raster_shape_and_transform(self):
        points = make_points([(500, 500)])
        surface = density_surface(points, BOUNDS, bandwidth=100, pixel_size=25)
        assert surface.shape == (40, 40)
        assert surface.transform.c == 0.0
        assert surface.transform.f == 1000.0
        assert surface.transform.a == 25.0

    def test_integrates_to_point_count(self):
        """Intensity summed over pixel area is about n when the kernel fits inside."""
        points = make_points([(500, 500), (450, 520), (560, 470)])
        surface = density_surface(points, BOUNDS, bandwidth=60, pixel_size=10)
        total = surface.values.sum() * 10 * 10
        assert total == pytest.approx(3.0, rel=0.01)

    def test_peak_at_point(self):
        points = make_points([(512.5, 487.5)])
        surface = density_surface(points, BOUNDS, bandwidth=50, pixel_size=25)
        row, col = np.unravel_index(np.argmax(surface.values), surface.shape)
        # Row 0 is the northern edge
        assert (row, col) == (20, 20)

    def test_evaluate_matches_raster(self):
        points = make_points([(300, 300), (700, 650)])
        surface = density_surface(points, BOUNDS, bandwidth=150, pixel_size=50)
        centre = np.array([[25.0, 975.0]])
        assert surface.evaluate(centre)[0] == pytest.approx(surface.values[0, 0])

    def test_empty_points_raise(self):
        with pytest.raises(InsufficientNeighbors):
            density_surface(make_points([]), BOUNDS, bandwidth=100, pixel_size=25)

    def test_non_positive_bandwidth_raises(self):
        with pytest.raises(ValueError):
            density_surface(make_points([(1, 1)]), BOUNDS, bandwidth=0, pixel_size=25)


class TestCellMeanDensity:
    """Tests for cell_mean_density and multi_bandwidth_density."""

    def test_one_value_per_cell(self, grid, events):
        surface = density_surface(events, BOUNDS, bandwidth=100, pixel_size=25)
        means = cell_mean_density(grid, surface)
        assert means.index.tolist() == grid["cell_id"].tolist()
        assert means.notna().all()
        assert means.name == "kde_100"

    def test_cell_mean_is_pixel_average(self, grid):
        """With 4 x 4 pixels per cell the cell value is their plain mean."""
        points = make_points([(320, 640), (710, 220)])
        surface = density_surface(points, BOUNDS, bandwidth=120, pixel_size=25)
        means = cell_mean_density(grid, surface)
        # Cell 0 covers raster rows 36-39, cols 0-3
        expected = surface.values[36:40, 0:4].mean()
        assert means.loc[0] == pytest.approx(expected, rel=1e-6)

    def test_cluster_cells_are_densest(self, grid, events):
        surface = density_surface(events, BOUNDS, bandwidth=100, pixel_size=25)
        means = cell_mean_density(grid, surface)
        top = means.sort_values(ascending=False).index[:3].tolist()
        assert sorted(top) == CLUSTER_IDS

    def test_coarse_pixels_fall_back_to_centroid(self, grid):
        """Cells that hold no pixel centre take the density at their centroid."""
        points = make_points([(500, 500)])
        surface = density_surface(points, BOUNDS, bandwidth=200, pixel_size=250)
        means = cell_mean_density(grid, surface)
        assert means.notna().all()
        # Cell 0 (0-100, 0-100) holds no pixel centre (centres at 125, 375, ...)
        expected = surface.evaluate(np.array([[50.0, 50.0]]))[0]
        assert means.loc[0] == pytest.approx(expected)

    def test_multi_bandwidth_columns(self, grid, events):
        densities = multi_bandwidth_density(grid, events, [100, 200.0], pixel_size=25)
        assert list(densities.columns) == ["kde_100", "kde_200"]
        assert densities.index.name == "cell_id"
        # Wider kernels flatten the peak
        assert densities["kde_200"].max() < densities["kde_100"].max()
