from importlib import metadata

try:
    __version__ = metadata.version("inccal")
except Exception:
    __version__ = "unknown"

from .calibration import (
    Batch,
    DesignVariable,
    ErrorTerm,
    IncrementalEstimator,
    IncrementalOptimizationProblem,
    OptimizationProblem,
    Options,
    PriorErrorTerm,
    ResidualErrorTerm,
    ReturnValue,
)
