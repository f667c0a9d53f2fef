"""
Typed errors raised by the risk surface components.

Every error records the component that raised it and a short description of
the offending input, so a failed run points at the data that broke it.
"""

from typing import Optional


class RiskSurfaceError(Exception):
    """Base class for pipeline errors."""

    component = "pipeline"

    def __init__(self, message: str, component: Optional[str] = None, context: str = ""):
        if component is not None:
            self.component = component
        self.context = context
        self.detail = message
        ctx = f" ({context})" if context else ""
        super().__init__(f"[{self.component}] {message}{ctx}")


class InvalidGeometry(RiskSurfaceError):
    """Malformed, empty or zero-area boundary or polygon."""

    component = "grid"


class AmbiguousAssignment(RiskSurfaceError):
    """A point falls strictly inside more than one cell."""

    component = "aggregate"


class InsufficientNeighbors(RiskSurfaceError):
    """A neighbor-distance source layer has no points."""

    component = "neighbors"


class NoSignificantClusters(RiskSurfaceError):
    """No cell passed the significance threshold."""

    component = "autocorrelation"


class ModelFitFailure(RiskSurfaceError):
    """A fold's count regression could not be fit."""

    component = "crossval"


class PartitionImbalance(RiskSurfaceError):
    """Fold groups are missing, empty or degenerate."""

    component = "crossval"
