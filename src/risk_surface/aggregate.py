"""
Point-to-cell aggregation.

Each point is assigned to exactly one cell:
- points outside every cell are dropped (counted and logged)
- points strictly inside two or more cells raise AmbiguousAssignment
- points on an edge or corner shared by several cells go to the smallest
  cell_id among them

Counts are kept as an explicit cell_id -> {category -> count} mapping in
long form, with a zero row for every cell x category that matched nothing.
"""

from dataclasses import dataclass
from typing import Dict, Hashable, Iterable, Mapping, Optional, Tuple

import geopandas as gpd
import numpy as np
import pandas as pd
import shapely

from risk_surface.errors import AmbiguousAssignment
from risk_surface.grid import attach_features
from risk_surface.logging_utils import module_logger
from risk_surface.qa import assert_same_crs
from risk_surface.schemas import CELLS_SCHEMA, POINTS_SCHEMA, validate_schema


@dataclass(frozen=True)
class AssignmentStats:
    """Bookkeeping for one aggregation pass."""
    total_points: int
    assigned: int
    dropped_outside: int
    boundary_ties: int


@dataclass(frozen=True)
class CategoryCounts:
    """Per-cell counts per category, in long form (cell_id, category, count)."""
    table: pd.DataFrame
    stats: AssignmentStats

    @property
    def categories(self) -> list:
        return sorted(self.table["category"].unique().tolist(), key=str)

    def for_category(self, category: Hashable) -> pd.Series:
        """Counts for one category as a Series indexed by cell_id."""
        if category not in set(self.table["category"]):
            raise KeyError(f"Unknown category {category!r}; known: {self.categories}")
        subset = self.table[self.table["category"] == category]
        return subset.set_index("cell_id")["count"].rename(str(category))

    def total(self) -> pd.Series:
        """Counts summed over categories, indexed by cell_id."""
        return self.table.groupby("cell_id", sort=True)["count"].sum().rename("total")

    def as_mapping(self) -> Dict[int, Dict[Hashable, int]]:
        """Explicit cell_id -> {category -> count} mapping."""
        mapping: Dict[int, Dict[Hashable, int]] = {}
        for cell_id, category, count in self.table[["cell_id", "category", "count"]].itertuples(index=False):
            mapping.setdefault(int(cell_id), {})[category] = int(count)
        return mapping


def assign_points_to_cells(
    points: gpd.GeoDataFrame,
    cells: gpd.GeoDataFrame,
    logger=None,
) -> Tuple[gpd.GeoDataFrame, AssignmentStats]:
    """
    Assign each point to its unique containing cell.

    Args:
        points: Point layer (any extra columns are carried through)
        cells: Cell table
        logger: Optional logger

    Returns:
        Tuple of (points with a cell_id column, dropped points excluded;
        AssignmentStats)

    Raises:
        AmbiguousAssignment: If a point lies strictly inside several cells
    """
    log = module_logger(__name__, logger)
    validate_schema(cells, CELLS_SCHEMA, context="aggregation cells")
    validate_schema(points, POINTS_SCHEMA, context="aggregation points")
    assert_same_crs(points, cells, context="points vs cells")

    pts = points.reset_index(drop=True)
    pts["_point_idx"] = range(len(pts))

    joined = gpd.sjoin(
        pts[["_point_idx", "geometry"]],
        cells[["cell_id", "geometry"]],
        how="inner",
        predicate="intersects",
    )

    multi = joined["_point_idx"].duplicated(keep=False).to_numpy()
    ties = joined[multi]
    n_ties = 0

    if len(ties) > 0:
        cell_geoms = cells.set_index("cell_id").geometry
        interior = shapely.within(
            np.asarray(ties.geometry), np.asarray(cell_geoms.loc[ties["cell_id"]])
        )
        interior_counts = pd.Series(interior).groupby(ties["_point_idx"].to_numpy()).sum()
        overlapping = interior_counts[interior_counts > 1]
        if len(overlapping) > 0:
            first = int(overlapping.index[0])
            owners = sorted(ties.loc[ties["_point_idx"] == first, "cell_id"].tolist())
            raise AmbiguousAssignment(
                f"{len(overlapping)} point(s) fall strictly inside more than one cell",
                context=f"point index {first} inside cells {owners}",
            )
        # Shared edge/corner: an interior match wins, otherwise smallest cell_id
        ties = ties.assign(_interior=interior)
        ties = ties.sort_values(["_point_idx", "_interior", "cell_id"], ascending=[True, False, True])
        resolved = ties.drop_duplicates("_point_idx")
        n_ties = int((interior_counts == 0).sum())
        joined = pd.concat([joined[~multi], resolved.drop(columns="_interior")])

    assignment = joined.set_index("_point_idx")["cell_id"]
    assigned = pts[pts["_point_idx"].isin(assignment.index)].copy()
    assigned["cell_id"] = assigned["_point_idx"].map(assignment).astype("int64")
    assigned = assigned.drop(columns="_point_idx")

    stats = AssignmentStats(
        total_points=len(pts),
        assigned=len(assigned),
        dropped_outside=len(pts) - len(assigned),
        boundary_ties=n_ties,
    )
    log.info(
        f"Points assigned to cells: {stats.assigned:,} / {stats.total_points:,} "
        f"(dropped {stats.dropped_outside:,}, boundary ties {stats.boundary_ties:,})"
    )

    return assigned, stats


def aggregate_points(
    points: gpd.GeoDataFrame,
    cells: gpd.GeoDataFrame,
    category_col: str = "category",
    categories: Optional[Iterable[Hashable]] = None,
    logger=None,
) -> CategoryCounts:
    """
    Count points per cell per category.

    Args:
        points: Point layer with a category column
        cells: Cell table
        category_col: Name of the category column on `points`
        categories: Categories to report even if no point carries them
        logger: Optional logger

    Returns:
        CategoryCounts covering every cell x category pair
    """
    if category_col not in points.columns:
        raise KeyError(f"Category column {category_col!r} not found on points")

    assigned, stats = assign_points_to_cells(points, cells, logger=logger)

    present = set(points[category_col].dropna().unique())
    all_categories = sorted(present | set(categories or []), key=str)

    counts = assigned.groupby(["cell_id", category_col]).size().rename("count")
    backbone = pd.MultiIndex.from_product(
        [sorted(cells["cell_id"].tolist()), all_categories],
        names=["cell_id", category_col],
    )
    table = counts.reindex(backbone, fill_value=0).reset_index()
    table = table.rename(columns={category_col: "category"})
    table["count"] = table["count"].astype("int64")

    return CategoryCounts(table=table, stats=stats)


def attach_counts(
    cells: gpd.GeoDataFrame,
    counts: CategoryCounts,
    columns: Mapping[Hashable, str],
) -> gpd.GeoDataFrame:
    """
    Attach selected category counts to the cell table.

    Args:
        cells: Cell table
        counts: Output of aggregate_points
        columns: category -> output column name, e.g. {"burglaries": "countBurglaries"}

    Returns:
        New cell table with one count column per requested category
    """
    features = pd.DataFrame(
        {column: counts.for_category(category) for category, column in columns.items()}
    )
    features.index.name = "cell_id"
    return attach_features(cells, features)
