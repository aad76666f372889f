#########################################################################################
##
##                          LEAST-SQUARES SOLVERS — PUBLIC API
##                               (solvers/__init__.py)
##
##                                  Kevin McBride 2026
##
#########################################################################################

from .sparse_qr import (
    RankRevealingFactorization,
    rank_revealing_factor,
    column_scaling,
    compute_qr_tolerance,
    compute_svd_tolerance,
)
from .trust_region import SolutionReturnValue, TrustRegionSolver
