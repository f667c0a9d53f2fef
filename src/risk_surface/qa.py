"""
Quality assurance utilities for geospatial inputs.

CRS mismatches are hard errors: the core never reprojects, so every layer
must arrive in the same projected CRS. Distances are planar.
"""

from typing import Optional, Union

import geopandas as gpd
from pyproj import CRS
from shapely.geometry.base import BaseGeometry

from risk_surface.errors import InvalidGeometry


class CRSError(Exception):
    """Raised when CRS validation fails."""
    pass


GeoLike = Union[gpd.GeoDataFrame, gpd.GeoSeries]


def assert_projected(gdf: GeoLike, context: str = "") -> None:
    """
    Assert that the layer is not in a geographic (lat/lon) CRS.

    Layers without a CRS are accepted as planar coordinates.

    Raises:
        CRSError: If the CRS is geographic
    """
    if gdf.crs is not None and gdf.crs.is_geographic:
        msg = f"Geographic CRS {gdf.crs.to_string()} not allowed; project the layer first"
        if context:
            msg = f"{msg} ({context})"
        raise CRSError(msg)


def assert_expected_crs(gdf: GeoLike, expected, context: str = "") -> None:
    """
    Assert that the layer is in the expected CRS.

    Args:
        gdf: Layer to check
        expected: Anything pyproj accepts (e.g. "ESRI:102271", 3435)
        context: Optional context string for error message

    Raises:
        CRSError: If the layer has no CRS or a different one
    """
    expected_crs = CRS.from_user_input(expected)
    if gdf.crs is None or not CRS.from_user_input(gdf.crs).equals(expected_crs):
        msg = f"CRS mismatch: expected {expected_crs.to_string()}, got {gdf.crs}"
        if context:
            msg = f"{msg} ({context})"
        raise CRSError(msg)


def assert_same_crs(left: GeoLike, right: GeoLike, context: str = "") -> None:
    """
    Assert two layers share a CRS.

    Raises:
        CRSError: If the CRS differ (including one set and one missing)
    """
    if left.crs is None and right.crs is None:
        return
    if left.crs is None or right.crs is None or not left.crs.equals(right.crs):
        msg = f"CRS mismatch: {left.crs} vs {right.crs}"
        if context:
            msg = f"{msg} ({context})"
        raise CRSError(msg)


def as_single_polygon(
    boundary: Union[BaseGeometry, GeoLike, None],
    context: str = "boundary",
    component: Optional[str] = None,
) -> BaseGeometry:
    """
    Normalize a boundary input to a single valid polygonal geometry.

    GeoDataFrames and GeoSeries are dissolved with `union_all`.

    Raises:
        InvalidGeometry: If the geometry is missing, empty, invalid,
            non-polygonal or has zero area
    """
    if boundary is None:
        raise InvalidGeometry("boundary is None", component=component, context=context)

    if isinstance(boundary, (gpd.GeoDataFrame, gpd.GeoSeries)):
        if len(boundary) == 0:
            raise InvalidGeometry("boundary layer has no features", component=component, context=context)
        geom = boundary.union_all()
    else:
        geom = boundary

    if geom is None or geom.is_empty:
        raise InvalidGeometry("boundary geometry is empty", component=component, context=context)
    if geom.geom_type not in ("Polygon", "MultiPolygon"):
        raise InvalidGeometry(
            f"boundary must be polygonal, got {geom.geom_type}", component=component, context=context
        )
    if not geom.is_valid:
        raise InvalidGeometry("boundary geometry is invalid", component=component, context=context)
    if geom.area <= 0:
        raise InvalidGeometry("boundary has zero area", component=component, context=context)

    return geom
