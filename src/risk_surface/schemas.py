"""
Schema validation for the cell table, point layers and prediction set.

Keys and dtypes are frozen: `cell_id` is always a unique integer. Schema
drift between components becomes an immediate local failure instead of a
silent mis-join downstream.
"""

from dataclasses import dataclass
from typing import Any, List, Optional, Set, Union

import geopandas as gpd
import pandas as pd


# =============================================================================
# Schema Definition
# =============================================================================

@dataclass
class ColumnSpec:
    """Specification for a single column."""
    name: str
    dtype: Optional[str] = None  # "int", "float", "numeric", "geometry"
    nullable: bool = True
    unique: bool = False
    allowed_values: Optional[Set[Any]] = None
    min_value: Optional[float] = None


@dataclass
class Schema:
    """Schema specification for a DataFrame or GeoDataFrame."""
    name: str
    columns: List[ColumnSpec]
    min_rows: int = 0


class SchemaError(Exception):
    """Raised when schema validation fails."""
    pass


CELLS_SCHEMA = Schema(
    name="cells",
    columns=[
        ColumnSpec("cell_id", dtype="int", nullable=False, unique=True),
        ColumnSpec("geometry", dtype="geometry", nullable=False),
    ],
    min_rows=1,
)

POINTS_SCHEMA = Schema(
    name="points",
    columns=[
        ColumnSpec("geometry", dtype="geometry", nullable=False),
    ],
)

HOTSPOT_SCHEMA = Schema(
    name="hotspot features",
    columns=[
        ColumnSpec("hotspot", dtype="int", nullable=False, allowed_values={0, 1}),
        ColumnSpec("hotspot_dist", dtype="float", nullable=False, min_value=0),
    ],
)

PREDICTIONS_SCHEMA = Schema(
    name="predictions",
    columns=[
        ColumnSpec("cell_id", dtype="int", nullable=False),
        ColumnSpec("prediction", dtype="float", nullable=False, min_value=0),
        ColumnSpec("observed", dtype="numeric", nullable=False, min_value=0),
        ColumnSpec("fold", nullable=False),
        ColumnSpec("model", nullable=False),
    ],
)


# =============================================================================
# Validation Functions
# =============================================================================

def validate_column(df: pd.DataFrame, spec: ColumnSpec) -> List[str]:
    """
    Validate a single column against its specification.

    Returns:
        List of error messages (empty if valid)
    """
    errors = []

    if spec.dtype == "geometry":
        if not isinstance(df, gpd.GeoDataFrame):
            return [f"Expected GeoDataFrame for geometry column {spec.name}"]
        col = df.geometry
    elif spec.name not in df.columns:
        return [f"Missing column: {spec.name}"]
    else:
        col = df[spec.name]

    if spec.dtype == "int" and not pd.api.types.is_integer_dtype(col):
        errors.append(f"Column {spec.name}: expected integer, got {col.dtype}")
    elif spec.dtype == "float" and not pd.api.types.is_float_dtype(col):
        errors.append(f"Column {spec.name}: expected float, got {col.dtype}")
    elif spec.dtype == "numeric" and not pd.api.types.is_numeric_dtype(col):
        errors.append(f"Column {spec.name}: expected numeric, got {col.dtype}")

    if not spec.nullable and col.isna().any():
        errors.append(f"Column {spec.name}: {int(col.isna().sum())} NA values not allowed")

    if spec.unique and col.duplicated().any():
        errors.append(f"Column {spec.name}: {int(col.duplicated().sum())} duplicate values not allowed")

    if spec.allowed_values is not None:
        invalid = ~col.isin(spec.allowed_values) & col.notna()
        if invalid.any():
            errors.append(f"Column {spec.name}: invalid values {list(col[invalid].unique()[:5])}")

    if spec.min_value is not None and pd.api.types.is_numeric_dtype(col):
        if ((col < spec.min_value) & col.notna()).any():
            errors.append(f"Column {spec.name}: values below min {spec.min_value}")

    return errors


def validate_schema(
    df: Union[pd.DataFrame, gpd.GeoDataFrame],
    schema: Schema,
    context: str = "",
    raise_on_error: bool = True,
) -> List[str]:
    """
    Validate a DataFrame against a schema.

    Args:
        df: DataFrame to validate
        schema: Schema specification
        context: Optional context for error messages
        raise_on_error: If True, raise SchemaError on validation failure

    Returns:
        List of error messages (empty if valid)

    Raises:
        SchemaError: If raise_on_error=True and validation fails
    """
    ctx = f" ({context})" if context else ""
    errors = []

    if len(df) < schema.min_rows:
        errors.append(f"Expected at least {schema.min_rows} rows, got {len(df)}{ctx}")

    for col_spec in schema.columns:
        errors.extend(validate_column(df, col_spec))

    if errors and raise_on_error:
        raise SchemaError(f"Schema validation failed for '{schema.name}'{ctx}:\n" + "\n".join(errors))

    return errors

