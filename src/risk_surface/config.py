"""
Pipeline configuration.

Parameters live in `configs/params.yml`; `load_config` reads the YAML
sections into a frozen `PipelineConfig`. Missing keys fall back to the
defaults below.
"""

import hashlib
import json
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from risk_surface.io_utils import read_yaml
from risk_surface.paths import DEFAULT_PARAMS


RANDOM_GROUP_KEY = "random"
FEATURE_SUBSETS = ("risk_factors", "risk_factors_plus_spatial")
CONTIGUITY_RULES = ("queen", "rook")
CELL_SHAPES = ("square",)


class ConfigError(ValueError):
    """Raised when a configuration value is out of range."""
    pass


@dataclass(frozen=True)
class PipelineConfig:
    """Constants for one pipeline run."""
    cell_size: float = 500.0
    cell_shape: str = "square"
    k: int = 3
    contiguity: str = "queen"
    significance_threshold: float = 0.001
    exploratory_threshold: float = 0.05
    bandwidths: Tuple[float, ...] = (1000.0, 1500.0, 2000.0)
    pixel_size: Optional[float] = None
    fold_group_key: str = RANDOM_GROUP_KEY
    cells_per_random_fold: int = 24
    feature_subset: str = "risk_factors_plus_spatial"
    random_seed: int = 42
    max_workers: int = 1
    extra: Dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "bandwidths", tuple(float(b) for b in self.bandwidths))
        self.validate()

    def validate(self) -> None:
        """Check every value; raise ConfigError on the first bad one."""
        if self.cell_size <= 0:
            raise ConfigError(f"cell_size must be positive, got {self.cell_size}")
        if self.cell_shape not in CELL_SHAPES:
            raise ConfigError(f"cell_shape must be one of {CELL_SHAPES}, got {self.cell_shape!r}")
        if int(self.k) != self.k or self.k < 1:
            raise ConfigError(f"k must be a positive integer, got {self.k}")
        if self.contiguity not in CONTIGUITY_RULES:
            raise ConfigError(f"contiguity must be one of {CONTIGUITY_RULES}, got {self.contiguity!r}")
        for name in ("significance_threshold", "exploratory_threshold"):
            value = getattr(self, name)
            if not 0 < value < 1:
                raise ConfigError(f"{name} must be in (0, 1), got {value}")
        if not self.bandwidths or any(b <= 0 for b in self.bandwidths):
            raise ConfigError(f"bandwidths must be a non-empty list of positive values, got {self.bandwidths}")
        if self.pixel_size is not None and self.pixel_size <= 0:
            raise ConfigError(f"pixel_size must be positive, got {self.pixel_size}")
        if not self.fold_group_key:
            raise ConfigError("fold_group_key must be 'random' or a group column name")
        if self.cells_per_random_fold < 1:
            raise ConfigError(f"cells_per_random_fold must be >= 1, got {self.cells_per_random_fold}")
        if self.feature_subset not in FEATURE_SUBSETS:
            raise ConfigError(f"feature_subset must be one of {FEATURE_SUBSETS}, got {self.feature_subset!r}")
        if self.max_workers < 1:
            raise ConfigError(f"max_workers must be >= 1, got {self.max_workers}")

    @property
    def effective_pixel_size(self) -> float:
        """KDE raster resolution; a quarter cell unless set explicitly."""
        return self.pixel_size if self.pixel_size is not None else self.cell_size / 4

    @property
    def uses_random_folds(self) -> bool:
        return self.fold_group_key == RANDOM_GROUP_KEY

    def with_overrides(self, **changes) -> "PipelineConfig":
        """Return a copy with some fields replaced (re-validated)."""
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["bandwidths"] = list(self.bandwidths)
        return d

    def digest(self) -> str:
        """Stable SHA-256 digest of the configuration."""
        payload = json.dumps(self.to_dict(), sort_keys=True, default=str)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


# YAML section/key -> PipelineConfig field
_YAML_FIELDS = {
    ("grid", "cell_size"): "cell_size",
    ("grid", "shape"): "cell_shape",
    ("neighbors", "k"): "k",
    ("autocorrelation", "contiguity"): "contiguity",
    ("autocorrelation", "significance_threshold"): "significance_threshold",
    ("autocorrelation", "exploratory_threshold"): "exploratory_threshold",
    ("kde", "bandwidths"): "bandwidths",
    ("kde", "pixel_size"): "pixel_size",
    ("cross_validation", "fold_group_key"): "fold_group_key",
    ("cross_validation", "cells_per_random_fold"): "cells_per_random_fold",
    ("cross_validation", "feature_subset"): "feature_subset",
    ("cross_validation", "random_seed"): "random_seed",
    ("cross_validation", "max_workers"): "max_workers",
}


def config_from_dict(params: Dict[str, Any]) -> PipelineConfig:
    """
    Build a PipelineConfig from a nested params dict (the params.yml layout).

    Unknown top-level sections are kept in `extra` (e.g. input file names
    used by the driver script).
    """
    kwargs: Dict[str, Any] = {}
    for (section, key), field_name in _YAML_FIELDS.items():
        section_values = params.get(section) or {}
        if key in section_values and section_values[key] is not None:
            kwargs[field_name] = section_values[key]

    known_sections = {section for section, _ in _YAML_FIELDS}
    extra = {k: v for k, v in params.items() if k not in known_sections}

    try:
        return PipelineConfig(extra=extra, **kwargs)
    except TypeError as e:
        raise ConfigError(f"Invalid configuration value: {e}") from e


def load_config(path: Optional[Union[str, Path]] = None) -> PipelineConfig:
    """
    Load the pipeline configuration from YAML.

    Args:
        path: params file; defaults to configs/params.yml

    Returns:
        Validated PipelineConfig
    """
    path = Path(path) if path is not None else DEFAULT_PARAMS
    return config_from_dict(read_yaml(path))
