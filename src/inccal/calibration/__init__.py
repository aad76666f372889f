#########################################################################################
##
##                     INCREMENTAL CALIBRATION TOOLKIT — PUBLIC API
##                             (calibration/__init__.py)
##
##                                  Kevin McBride 2026
##
#########################################################################################

from .design_variable import DesignVariable
from .error_term import (
    ErrorTerm,
    ResidualErrorTerm,
    PriorErrorTerm,
)
from .optimization_problem import OptimizationProblem, Batch
from .incremental_problem import IncrementalOptimizationProblem, ProblemSnapshot
from .marginal_analysis import MarginalAnalysis
from .incremental_estimator import (
    Options,
    ReturnValue,
    IncrementalEstimator,
)
