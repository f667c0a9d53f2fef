"""
I/O utilities with atomic writes and safe reads.

All outputs are written to a temp file in the target directory and then
renamed over the target, so a failed write never leaves a partial table.
GeoParquet is the internal format; GeoJSON is an export.
"""

import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Union

import geopandas as gpd
import pandas as pd
import yaml


# =============================================================================
# Atomic Write Utilities
# =============================================================================

@contextmanager
def atomic_target(target_path: Union[str, Path]) -> Iterator[Path]:
    """
    Yield a temp path next to `target_path`; replace the target on success.

    If the body raises, the temp file is removed and the target is untouched.

    Example:
        with atomic_target("cells.parquet") as tmp:
            df.to_parquet(tmp)
    """
    target_path = Path(target_path)
    target_path.parent.mkdir(parents=True, exist_ok=True)

    fd, temp_name = tempfile.mkstemp(
        suffix=target_path.suffix or ".tmp",
        prefix=f".{target_path.stem}_",
        dir=target_path.parent,
    )
    os.close(fd)
    temp_path = Path(temp_name)

    try:
        yield temp_path
        temp_path.replace(target_path)
    except Exception:
        if temp_path.exists():
            temp_path.unlink()
        raise


def atomic_write_df(
    df: pd.DataFrame,
    target_path: Union[str, Path],
    **kwargs,
) -> None:
    """
    Atomically write a DataFrame to CSV or Parquet (format from extension).

    Args:
        df: DataFrame to write
        target_path: Destination path (.csv or .parquet)
        **kwargs: Additional arguments passed to to_csv/to_parquet
    """
    suffix = Path(target_path).suffix.lower()
    if suffix not in (".parquet", ".csv"):
        raise ValueError(f"Unsupported format: {suffix}")

    with atomic_target(target_path) as tmp:
        if suffix == ".parquet":
            df.to_parquet(tmp, **kwargs)
        else:
            df.to_csv(tmp, **kwargs)


def atomic_write_gdf(
    gdf: gpd.GeoDataFrame,
    target_path: Union[str, Path],
    **kwargs,
) -> None:
    """
    Atomically write a GeoDataFrame to GeoParquet, GeoJSON or GeoPackage.

    Args:
        gdf: GeoDataFrame to write
        target_path: Destination path (.parquet, .geojson, .gpkg)
        **kwargs: Additional arguments passed to writer
    """
    suffix = Path(target_path).suffix.lower()
    drivers = {".geojson": "GeoJSON", ".gpkg": "GPKG"}
    if suffix != ".parquet" and suffix not in drivers:
        raise ValueError(f"Unsupported geo format: {suffix}")

    with atomic_target(target_path) as tmp:
        if suffix == ".parquet":
            gdf.to_parquet(tmp, **kwargs)
        else:
            gdf.to_file(tmp, driver=drivers[suffix], **kwargs)


def atomic_write_json(
    data: Any,
    target_path: Union[str, Path],
    **kwargs,
) -> None:
    """Atomically write JSON data (indented, non-JSON values stringified)."""
    kwargs.setdefault("indent", 2)
    kwargs.setdefault("default", str)

    with atomic_target(target_path) as tmp:
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, **kwargs)


# =============================================================================
# Read Utilities
# =============================================================================

def read_yaml(path: Union[str, Path]) -> dict:
    """Read a YAML file (an empty file reads as an empty dict)."""
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def read_gdf(path: Union[str, Path], **kwargs) -> gpd.GeoDataFrame:
    """
    Read a GeoDataFrame from GeoParquet, or anything `gpd.read_file` accepts.
    """
    path = Path(path)
    if path.suffix.lower() == ".parquet":
        return gpd.read_parquet(path, **kwargs)
    return gpd.read_file(path, **kwargs)
