"""
Local spatial autocorrelation (local Moran's I) on the cell grid.

Steps:
- contiguity graph between cells (queen: any shared boundary point;
  rook: a shared edge of positive length)
- row-standardized weights, with isolated cells tagged explicitly
- local Moran's I with its expectation and variance under total
  randomization (Anselin 1995) and a two-tailed normal p-value
- hotspot flags at a caller-supplied p-value threshold, and the distance
  from every cell to the nearest flagged cell
- fold-local versions of the hotspot features for cross-validation, where
  held-out targets are imputed from training neighbors first

Isolated cells keep a zero weight row. They still count toward the global
mean and second moment, but their own statistic is I = 0, E[I] = 0 with
NaN variance, z-score and p-value, so they are never flagged.
"""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Dict, FrozenSet, Hashable, Mapping, Sequence, Tuple

import geopandas as gpd
import numpy as np
import pandas as pd
import shapely
from scipy import sparse, stats
from scipy.spatial import cKDTree

from risk_surface.config import CONTIGUITY_RULES, PipelineConfig
from risk_surface.errors import NoSignificantClusters
from risk_surface.grid import cell_centroids
from risk_surface.logging_utils import module_logger
from risk_surface.schemas import CELLS_SCHEMA, HOTSPOT_SCHEMA, validate_schema


# =============================================================================
# Adjacency and Weights
# =============================================================================

@dataclass(frozen=True)
class AdjacencyGraph:
    """Symmetric neighbor relation over cell_ids (no self-loops)."""
    ids: Tuple[Hashable, ...]
    neighbors: Mapping[Hashable, FrozenSet[Hashable]]
    contiguity: str = "queen"

    def __post_init__(self):
        for cell_id, nbrs in self.neighbors.items():
            if cell_id in nbrs:
                raise ValueError(f"Self-loop on cell {cell_id}")
            for other in nbrs:
                if cell_id not in self.neighbors.get(other, frozenset()):
                    raise ValueError(f"Asymmetric adjacency between {cell_id} and {other}")

    @property
    def isolated(self) -> Tuple[Hashable, ...]:
        return tuple(i for i in self.ids if not self.neighbors[i])

    def cardinalities(self) -> pd.Series:
        """Number of neighbors per cell, indexed by cell_id."""
        return pd.Series(
            [len(self.neighbors[i]) for i in self.ids],
            index=pd.Index(self.ids, name="cell_id"),
            name="n_neighbors",
        )


class WeightStatus(str, Enum):
    NORMAL = "normal"
    ISOLATED = "isolated"


@dataclass(frozen=True)
class WeightRow:
    """Outgoing weights of one cell: NORMAL rows sum to 1, ISOLATED rows are empty."""
    status: WeightStatus
    weights: Mapping[Hashable, float]

    @property
    def total(self) -> float:
        return float(sum(self.weights.values()))


@dataclass(frozen=True)
class SpatialWeights:
    """Row-standardized spatial weights keyed by cell_id."""
    ids: Tuple[Hashable, ...]
    rows: Mapping[Hashable, WeightRow]

    def to_sparse(self) -> sparse.csr_matrix:
        """Weights as a CSR matrix in `ids` order."""
        position = {cell_id: i for i, cell_id in enumerate(self.ids)}
        row_idx, col_idx, data = [], [], []
        for cell_id in self.ids:
            for nbr, w in self.rows[cell_id].weights.items():
                row_idx.append(position[cell_id])
                col_idx.append(position[nbr])
                data.append(w)
        n = len(self.ids)
        return sparse.csr_matrix((data, (row_idx, col_idx)), shape=(n, n))

    def isolated_mask(self) -> np.ndarray:
        return np.array([self.rows[i].status is WeightStatus.ISOLATED for i in self.ids])


def build_adjacency(
    cells: gpd.GeoDataFrame,
    contiguity: str = "queen",
    logger=None,
) -> AdjacencyGraph:
    """
    Build the contiguity graph between cells.

    Args:
        cells: Cell table
        contiguity: "queen" (shared edge or corner) or "rook" (shared edge)
        logger: Optional logger

    Returns:
        AdjacencyGraph over the table's cell_ids, in table order
    """
    log = module_logger(__name__, logger)
    if contiguity not in CONTIGUITY_RULES:
        raise ValueError(f"Unknown contiguity rule {contiguity!r}; expected one of {CONTIGUITY_RULES}")
    validate_schema(cells, CELLS_SCHEMA, context="adjacency cells")

    left = cells[["cell_id", "geometry"]]
    pairs = gpd.sjoin(left, left, how="inner", predicate="intersects", lsuffix="a", rsuffix="b")
    pairs = pairs[pairs["cell_id_a"] != pairs["cell_id_b"]]

    if contiguity == "rook" and len(pairs) > 0:
        geoms = cells.set_index("cell_id").geometry
        shared = shapely.intersection(
            np.asarray(geoms.loc[pairs["cell_id_a"]]),
            np.asarray(geoms.loc[pairs["cell_id_b"]]),
        )
        pairs = pairs[shapely.length(shared) > 0]

    ids = tuple(cells["cell_id"].tolist())
    neighbor_sets: Dict[Hashable, set] = {i: set() for i in ids}
    for a, b in zip(pairs["cell_id_a"].tolist(), pairs["cell_id_b"].tolist()):
        neighbor_sets[a].add(b)
        neighbor_sets[b].add(a)

    graph = AdjacencyGraph(
        ids=ids,
        neighbors=MappingProxyType({i: frozenset(n) for i, n in neighbor_sets.items()}),
        contiguity=contiguity,
    )

    card = graph.cardinalities()
    log.info(
        f"{contiguity.title()} adjacency: {len(ids):,} cells, "
        f"mean {card.mean():.2f} neighbors, {len(graph.isolated)} isolated"
    )
    return graph


def row_standardize(graph: AdjacencyGraph) -> SpatialWeights:
    """Row-standardize a contiguity graph; cells without neighbors become ISOLATED rows."""
    rows = {}
    for cell_id in graph.ids:
        nbrs = sorted(graph.neighbors[cell_id])
        if nbrs:
            w = 1.0 / len(nbrs)
            rows[cell_id] = WeightRow(WeightStatus.NORMAL, MappingProxyType({j: w for j in nbrs}))
        else:
            rows[cell_id] = WeightRow(WeightStatus.ISOLATED, MappingProxyType({}))
    return SpatialWeights(ids=graph.ids, rows=MappingProxyType(rows))


# =============================================================================
# Local Moran's I
# =============================================================================

def _aligned_values(values: pd.Series, ids: Tuple[Hashable, ...]) -> np.ndarray:
    missing = pd.Index(ids).difference(values.index)
    if len(missing) > 0:
        raise ValueError(f"Values missing for {len(missing)} cells (e.g. {list(missing[:3])})")
    x = values.reindex(list(ids)).to_numpy(dtype=float)
    if not np.isfinite(x).all():
        raise ValueError("Values contain NaN or infinite entries")
    return x


def local_morans_i(values: pd.Series, weights: SpatialWeights) -> pd.DataFrame:
    """
    Local Moran's I with analytic inference under total randomization.

    With z = x - mean(x) and m2 = sum(z^2) / n:
        I_i   = z_i * sum_j w_ij z_j / m2
        E[I_i] = -W_i / (n - 1)
        Var[I_i] = w_i2 (n - b2) / (n - 1)
                 + (W_i^2 - w_i2)(2 b2 - n) / ((n - 1)(n - 2)) - E[I_i]^2
    where W_i = sum_j w_ij, w_i2 = sum_j w_ij^2 and b2 = (sum(z^4) / n) / m2^2.
    The p-value is two-tailed from the standard normal.

    Args:
        values: Target values indexed by cell_id
        weights: Row-standardized weights

    Returns:
        DataFrame indexed by cell_id with local_i, expected_i, variance_i,
        z_score, p_value, spatial_lag, is_isolated and quadrant
    """
    ids = weights.ids
    n = len(ids)
    if n < 3:
        raise ValueError(f"Local Moran's I needs at least 3 cells, got {n}")

    x = _aligned_values(values, ids)
    z = x - x.mean()
    m2 = float((z ** 2).sum() / n)
    if m2 == 0:
        raise ValueError("Values are constant; local Moran's I is undefined")

    W = weights.to_sparse()
    isolated = weights.isolated_mask()

    lag = W @ z
    w_i = np.asarray(W.sum(axis=1)).ravel()
    w_i2 = np.asarray(W.multiply(W).sum(axis=1)).ravel()
    b2 = float((z ** 4).sum() / n) / m2 ** 2

    local_i = z * lag / m2
    expected = -w_i / (n - 1)
    variance = (
        w_i2 * (n - b2) / (n - 1)
        + (w_i ** 2 - w_i2) * (2 * b2 - n) / ((n - 1) * (n - 2))
        - expected ** 2
    )

    defined = ~isolated & (variance > 0)
    z_score = np.full(n, np.nan)
    z_score[defined] = (local_i[defined] - expected[defined]) / np.sqrt(variance[defined])
    p_value = 2 * stats.norm.sf(np.abs(z_score))

    variance = np.where(isolated, np.nan, variance)
    local_i = np.where(isolated, 0.0, local_i)
    expected = np.where(isolated, 0.0, expected)

    result = pd.DataFrame(
        {
            "local_i": local_i,
            "expected_i": expected,
            "variance_i": variance,
            "z_score": z_score,
            "p_value": p_value,
            "spatial_lag": lag,
            "is_isolated": isolated,
        },
        index=pd.Index(ids, name="cell_id"),
    )
    result["quadrant"] = classify_quadrants(z, lag, isolated)
    return result


def classify_quadrants(z: np.ndarray, lag: np.ndarray, isolated: np.ndarray) -> np.ndarray:
    """
    Moran scatterplot quadrant per cell: HH, LL, HL (high value, low
    neighbors) or LH; "isolated" for cells without neighbors.
    """
    own = np.where(z >= 0, "H", "L")
    nbr = np.where(lag >= 0, "H", "L")
    quadrant = np.char.add(own, nbr).astype(object)
    quadrant[isolated] = "isolated"
    return quadrant


# =============================================================================
# Hotspots
# =============================================================================

def flag_hotspots(result: pd.DataFrame, threshold: float) -> pd.Series:
    """
    Flag cells whose p-value is at or below the threshold.

    NaN p-values (isolated cells) are never flagged.
    """
    if not 0 < threshold < 1:
        raise ValueError(f"threshold must be in (0, 1), got {threshold}")
    flags = result["p_value"].le(threshold) & result["p_value"].notna()
    return flags.rename("hotspot")


def distance_to_hotspots(cells: gpd.GeoDataFrame, flags: pd.Series) -> pd.Series:
    """
    Distance from each cell centroid to the nearest flagged cell's centroid.

    Flagged cells get 0.

    Raises:
        NoSignificantClusters: If no cell is flagged
    """
    cell_ids = cells["cell_id"].to_numpy()
    flagged = flags.reindex(cell_ids, fill_value=False).to_numpy(dtype=bool)
    if not flagged.any():
        raise NoSignificantClusters(
            "no cell passed the significance threshold", context=f"{len(cell_ids)} cells tested"
        )

    centroids = cell_centroids(cells)
    distances, _ = cKDTree(centroids[flagged]).query(centroids, k=1)
    distances = np.where(flagged, 0.0, distances)

    return pd.Series(distances, index=pd.Index(cell_ids, name="cell_id"), name="hotspot_dist")


def spatial_process_features(
    cells: gpd.GeoDataFrame,
    target: str,
    config: PipelineConfig,
    logger=None,
) -> pd.DataFrame:
    """
    Local Moran's I of the target count plus the hotspot flag and the
    distance-to-hotspot feature at the configured significance threshold.

    Args:
        cells: Cell table holding the target column
        target: Target count column
        config: Pipeline configuration (contiguity, thresholds)
        logger: Optional logger

    Returns:
        DataFrame indexed by cell_id with local_i, p_value, quadrant,
        hotspot (0/1), exploratory_hotspot (0/1) and hotspot_dist
    """
    log = module_logger(__name__, logger)

    graph = build_adjacency(cells, contiguity=config.contiguity, logger=logger)
    weights = row_standardize(graph)
    values = cells.set_index("cell_id")[target]
    lisa = local_morans_i(values, weights)

    flags = flag_hotspots(lisa, config.significance_threshold)
    exploratory = flag_hotspots(lisa, config.exploratory_threshold)
    log.info(
        f"Hotspots for '{target}': {int(flags.sum())} at p<={config.significance_threshold}, "
        f"{int(exploratory.sum())} at p<={config.exploratory_threshold}"
    )

    features = lisa[["local_i", "p_value", "quadrant"]].copy()
    features["hotspot"] = flags.astype(int)
    features["exploratory_hotspot"] = exploratory.astype(int)
    features["hotspot_dist"] = distance_to_hotspots(cells, flags)
    validate_schema(features, HOTSPOT_SCHEMA, context=target)
    return features


# =============================================================================
# Fold-Local Features
# =============================================================================

SPATIAL_FEATURE_COLUMNS = ("hotspot", "hotspot_dist")


def impute_held_out(
    values: pd.Series,
    graph: AdjacencyGraph,
    train_ids: Sequence[Hashable],
) -> pd.Series:
    """
    Replace held-out values by the mean of their training neighbors.

    A held-out cell with no training neighbor takes the training mean.
    Nothing in the result depends on a held-out cell's own value.

    Args:
        values: Target values indexed by cell_id
        graph: Contiguity graph over the same cells
        train_ids: Cells whose values may be used

    Returns:
        Series indexed by cell_id in graph order
    """
    observed = _aligned_values(values, graph.ids)
    position = {cell_id: i for i, cell_id in enumerate(graph.ids)}
    is_train = np.zeros(len(graph.ids), dtype=bool)
    is_train[[position[i] for i in train_ids]] = True
    if not is_train.any():
        raise ValueError("No training cells to impute from")

    fallback = float(observed[is_train].mean())
    imputed = np.where(is_train, observed, np.nan)
    for i in np.flatnonzero(~is_train):
        nbrs = [position[j] for j in graph.neighbors[graph.ids[i]] if is_train[position[j]]]
        imputed[i] = observed[nbrs].mean() if nbrs else fallback

    return pd.Series(imputed, index=pd.Index(graph.ids, name="cell_id"), name=values.name)


class FoldSpatialFeatures:
    """
    Hotspot flag and distance-to-hotspot rebuilt for each cross-validation fold.

    Called with a fold's training cell_ids. Held-out targets are replaced
    by `impute_held_out` before local Moran's I runs, so the features of
    every cell, held-out cells included, come from training targets only.
    The contiguity graph is built once and shared by all folds.
    """

    columns = SPATIAL_FEATURE_COLUMNS

    def __init__(self, cells: gpd.GeoDataFrame, target: str, config: PipelineConfig, logger=None):
        self.cells = cells[["cell_id", "geometry"]]
        self.values = cells.set_index("cell_id")[target]
        self.graph = build_adjacency(cells, contiguity=config.contiguity, logger=logger)
        self.weights = row_standardize(self.graph)
        self.threshold = config.significance_threshold

    def __call__(self, train_ids: Sequence[Hashable]) -> pd.DataFrame:
        values = impute_held_out(self.values, self.graph, train_ids)
        flags = flag_hotspots(local_morans_i(values, self.weights), self.threshold)
        features = pd.DataFrame(
            {
                "hotspot": flags.astype(int),
                "hotspot_dist": distance_to_hotspots(self.cells, flags),
            }
        )
        validate_schema(features, HOTSPOT_SCHEMA, context=f"{len(train_ids)} training cells")
        return features
