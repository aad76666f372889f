#########################################################################################
##
##                   INCREMENTAL CALIBRATION ESTIMATOR WITH MI-GATED BATCHES
##                              (incremental_estimator.py)
##
##                                  Kevin McBride 2026
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

import logging
import math
import numbers
import time
from dataclasses import dataclass, fields

import numpy as np

from .design_variable import DesignVariable
from .incremental_problem import IncrementalOptimizationProblem
from .marginal_analysis import MarginalAnalysis
from .optimization_problem import OptimizationProblem
from ..solvers import RankRevealingFactorization, TrustRegionSolver


__all__ = ["IncrementalEstimator", "Options", "ReturnValue"]

logger = logging.getLogger(__name__)


# OPTIONS ===============================================================================

@dataclass(frozen=True)
class Options:
    """Settings of the :class:`IncrementalEstimator`.

    Parameters
    ----------
    mi_tol : float
        Minimum mutual information (bits) for a batch to be accepted.
    qr_tol : float
        Rank-revealing QR tolerance; negative selects the automatic
        SuiteSparseQR default.
    verbose : bool
        Log transitions at ``INFO`` instead of ``DEBUG``.
    col_norm : bool
        Normalize Jacobian columns before factorizing.
    max_iterations : int
        Bound on the nonlinear solve.
    norm_tol : float
        Solver convergence tolerance.
    eps_tol_svd : float
        Factor of the spectral tolerance used when the QR tolerance is
        automatic or columns are not normalized.
    """

    mi_tol: float = 0.5
    qr_tol: float = 0.02
    verbose: bool = True
    col_norm: bool = True
    max_iterations: int = 20
    norm_tol: float = 1e-8
    eps_tol_svd: float = 1e-4


    def __post_init__(self):
        for name in ("mi_tol", "qr_tol", "norm_tol", "eps_tol_svd"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, numbers.Real):
                raise ValueError(f"Options.{name} must be a number, got {value!r}")
            if not math.isfinite(value):
                raise ValueError(f"Options.{name} must be finite, got {value!r}")

        max_it = self.max_iterations
        if isinstance(max_it, bool) or not isinstance(max_it, numbers.Integral):
            raise ValueError(
                f"Options.max_iterations must be an integer, got {self.max_iterations!r}"
            )
        if self.max_iterations < 1:
            raise ValueError(
                f"Options.max_iterations must be >= 1, got {self.max_iterations}"
            )
        if self.norm_tol <= 0.0:
            raise ValueError(f"Options.norm_tol must be > 0, got {self.norm_tol}")
        if self.eps_tol_svd <= 0.0:
            raise ValueError(f"Options.eps_tol_svd must be > 0, got {self.eps_tol_svd}")


    @classmethod
    def from_dict(cls, mapping) -> "Options":
        """Build options from a plain mapping; unknown keys raise ``ValueError``."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(mapping) - known)
        if unknown:
            raise ValueError(f"unknown option(s): {', '.join(unknown)}")
        return cls(**dict(mapping))


# RETURN VALUE ==========================================================================

@dataclass(eq=False)
class ReturnValue:
    """Outcome of :meth:`IncrementalEstimator.add_batch` and
    :meth:`IncrementalEstimator.reoptimize`.

    Reflects the tentative computation whether or not the batch was kept,
    so the MI of a rejected batch can be inspected.  Matrices describe the
    marginalized group only.

    ``num_iterations`` counts residual evaluations of the trust-region
    solve (``nfev``), not accepted Gauss-Newton steps; rejected trial
    steps are included.
    """

    batch_accepted: bool
    mi: float
    rank: int
    qr_tol: float
    num_iterations: int
    cost_start: float
    cost_final: float
    elapsed_time: float
    memory_usage: int
    null_space: np.ndarray
    column_space: np.ndarray
    covariance: np.ndarray
    projected_covariance: np.ndarray
    information_matrix: np.ndarray
    converged: bool = True


    @property
    def rank_deficiency(self) -> int:
        return self.null_space.shape[1]


    def __repr__(self) -> str:
        status = "ACCEPTED" if self.batch_accepted else "REJECTED"
        return (
            f"ReturnValue({status}, mi={self.mi:.4g}, rank={self.rank}, "
            f"deficiency={self.rank_deficiency}, iterations={self.num_iterations}, "
            f"cost={self.cost_start:.4g} -> {self.cost_final:.4g})"
        )


    def display(self) -> None:
        """Print a formatted summary of the transition."""
        W    = 72
        line = "=" * W
        dash = "-" * W

        status = "ACCEPTED" if self.batch_accepted else "REJECTED"
        conv   = "converged" if self.converged else "NOT converged"

        print(line)
        print(f"  Batch {status}")
        print(line)
        print(f"  {'Mutual information':<28} {self.mi:>14.6g} bits")
        print(f"  {'Rank / deficiency':<28} {self.rank:>8} / {self.rank_deficiency}")
        print(f"  {'QR tolerance':<28} {self.qr_tol:>14.6g}")
        print(dash)
        print(f"  {'Iterations':<28} {self.num_iterations:>14d}  ({conv})")
        print(f"  {'Cost start':<28} {self.cost_start:>14.6g}")
        print(f"  {'Cost final':<28} {self.cost_final:>14.6g}")
        print(f"  {'Elapsed time':<28} {self.elapsed_time:>14.4f} s")
        print(f"  {'Memory usage':<28} {self.memory_usage:>14d} B")
        print(line)


# ESTIMATOR =============================================================================

class IncrementalEstimator:
    """Incremental calibration over sequentially arriving batches.

    Every batch is added tentatively: the accumulated problem is
    re-optimized and the Jacobian factorized with the marginalized group as
    the trailing column block.  The mutual information the batch contributes
    about that group is::

        MI = ½ (log2 pdet(Λ_new) − log2 pdet(Λ_old))

    where ``Λ`` is the marginal information matrix (Schur complement) and
    ``pdet`` the pseudo-determinant over its numerical rank.  A batch with
    ``MI >= options.mi_tol`` (or added with ``force=True``) is kept and the
    marginal statistics are persisted; any other batch is removed again and
    the problem ordering, column offsets, design-variable values and solver
    state are restored exactly.

    Parameters
    ----------
    marg_group_id : int
        Group id of the design variables whose information is tracked.
    options : Options, optional
        Estimator settings; defaults to ``Options()``.

    Example
    -------
    .. code-block:: python

        est = IncrementalEstimator(marg_group_id=0)
        ret = est.add_batch(batch, force=True)
        ret.batch_accepted   # True
        est.covariance       # marginal covariance of the calibration
    """

    def __init__(self, marg_group_id: int, options: Options | None = None):
        if isinstance(marg_group_id, bool) or not isinstance(marg_group_id, numbers.Integral):
            raise TypeError(
                f"marg_group_id must be an integer, got {type(marg_group_id).__name__}"
            )
        if options is None:
            options = Options()
        if not isinstance(options, Options):
            raise TypeError(f"expected Options, got {type(options).__name__}")

        self._marg_group_id = int(marg_group_id)
        self._options = options

        self._problem = IncrementalOptimizationProblem()
        self._solver = TrustRegionSolver(
            max_iterations=options.max_iterations,
            norm_tol=options.norm_tol,
        )
        self._solver.set_problem(self._problem)

        # persisted state, mutated on accepted transitions only
        self._mi: float = 0.0
        self._sv_log_sum: float = 0.0
        self._n_rank: int = 0
        self._qr_tol: float = options.qr_tol
        self._marginal_rank: int = 0
        self._marginal_rank_deficiency: int = 0
        self._memory_usage: int = 0

        self._null_space = np.zeros((0, 0))
        self._column_space = np.zeros((0, 0))
        self._covariance = np.zeros((0, 0))
        self._projected_covariance = np.zeros((0, 0))
        self._information_matrix = np.zeros((0, 0))
        self._factorization: RankRevealingFactorization | None = None


    @classmethod
    def from_config(cls, config) -> "IncrementalEstimator":
        """Build an estimator from a mapping holding ``marg_group_id`` and
        any :class:`Options` field.

        Example
        -------
        .. code-block:: python

            est = IncrementalEstimator.from_config(
                {"marg_group_id": 0, "mi_tol": 0.2, "verbose": False}
            )
        """
        config = dict(config)
        if "marg_group_id" not in config:
            raise ValueError("configuration requires 'marg_group_id'")
        marg_group_id = config.pop("marg_group_id")
        return cls(marg_group_id, Options.from_dict(config))


    # TRANSITIONS =======================================================================

    def add_batch(self, batch: OptimizationProblem, force: bool = False) -> ReturnValue:
        """Tentatively add *batch*; keep it if it is informative enough.

        Parameters
        ----------
        batch : OptimizationProblem
            Non-empty batch that is not already part of the estimator.
        force : bool
            Keep the batch regardless of its mutual information.

        Returns
        -------
        ReturnValue
            The tentative computation, with ``batch_accepted`` set.

        Raises
        ------
        TypeError
            If *batch* is ``None`` or not an :class:`OptimizationProblem`.
        ValueError
            If *batch* is empty or already accepted.
        """
        self._check_batch(batch)
        t0 = time.perf_counter()

        problem_state = self._problem.snapshot()
        solver_state = self._solver.snapshot()
        saved = self._problem.save_design_variables(extra=batch.design_variables)

        self._problem.add(batch)
        try:
            self._order_marginalized_design_variables()
            srv = self._solver.optimize()
            fact = self._factorize()
        except Exception:
            self._rollback(batch, problem_state, solver_state, saved)
            raise

        mi = 0.5 * (fact.sv_log2_sum - self._sv_log_sum)
        accepted = bool(force) or mi >= self._options.mi_tol

        ret = self._return_value(accepted, mi, srv, fact, time.perf_counter() - t0)

        if accepted:
            self._persist(fact, mi)
            self._log(
                "batch accepted%s: MI=%.4g bits, rank=%d/%d, cost %.6g -> %.6g, "
                "%d iterations, %.3f s",
                " (forced)" if force and mi < self._options.mi_tol else "",
                mi, fact.rank, fact.dimension, srv.cost_initial, srv.cost_final,
                srv.iterations, ret.elapsed_time,
            )
        else:
            self._rollback(batch, problem_state, solver_state, saved)
            self._log(
                "batch rejected: MI=%.4g bits < mi_tol=%.4g, %d batches kept",
                mi, self._options.mi_tol, self.num_batches,
            )

        return ret


    def remove_batch(self, batch_or_idx) -> None:
        """Remove an accepted batch by index or handle.

        Only the bookkeeping changes: the batch leaves the problem, variables
        no other batch references are released and the marginalized group is
        moved back to the trailing columns.  The solver is not re-run, so the
        persisted statistics keep describing the last accepted computation
        until :meth:`reoptimize` is called.

        Raises
        ------
        IndexError
            If an index is outside ``[0, num_batches)``.
        ValueError
            If a handle is not an accepted batch.
        TypeError
            For any other argument.
        """
        self._problem.remove(batch_or_idx)
        self._order_marginalized_design_variables()
        self._log(
            "batch removed: %d batches left, statistics stale until reoptimize()",
            self.num_batches,
        )


    def reoptimize(self) -> ReturnValue:
        """Re-run the solver and factorization over the current batches.

        Always accepted.  ``mi`` is relative to the previously persisted
        state and can be negative.
        """
        t0 = time.perf_counter()
        self._order_marginalized_design_variables()

        srv = self._solver.optimize()
        fact = self._factorize()
        mi = 0.5 * (fact.sv_log2_sum - self._sv_log_sum)

        ret = self._return_value(True, mi, srv, fact, time.perf_counter() - t0)
        self._persist(fact, mi)

        self._log(
            "reoptimized %d batches: MI=%.4g bits, rank=%d/%d, cost %.6g -> %.6g",
            self.num_batches, mi, fact.rank, fact.dimension,
            srv.cost_initial, srv.cost_final,
        )
        return ret


    @property
    def num_batches(self) -> int:
        return self._problem.num_batches


    # INTERNALS =========================================================================

    def _check_batch(self, batch) -> None:
        if batch is None:
            raise TypeError("batch must not be None")
        if not isinstance(batch, OptimizationProblem):
            raise TypeError(f"expected OptimizationProblem, got {type(batch).__name__}")
        if batch.is_empty:
            raise ValueError("batch has no design variables and no error terms")
        if batch in self._problem:
            raise ValueError("batch has already been added to the estimator")


    def _order_marginalized_design_variables(self) -> None:
        """Move the marginalized group to the trailing column block."""
        self._problem.move_group_to_back(self._marg_group_id)
        self._problem.assign_columns()


    def _factorize(self) -> RankRevealingFactorization:
        marg_start, _ = self._problem.column_range(self._marg_group_id)
        return self._solver.rank_revealing_factor(
            marg_start,
            tolerance=self._options.qr_tol,
            column_normalize=self._options.col_norm,
            eps_tol_svd=self._options.eps_tol_svd,
        )


    def _rollback(self, batch, problem_state, solver_state, saved) -> None:
        self._problem.remove(batch)
        self._problem.restore(problem_state)
        self._problem.restore_design_variables(saved)
        self._solver.restore(solver_state)


    def _persist(self, fact: RankRevealingFactorization, mi: float) -> None:
        self._mi = float(mi)
        self._sv_log_sum = fact.sv_log2_sum
        self._n_rank = fact.rank
        self._qr_tol = fact.tolerance
        self._marginal_rank = fact.marginal_rank
        self._marginal_rank_deficiency = fact.marginal_rank_deficiency
        self._memory_usage = self._solver.memory_usage

        self._null_space = fact.null_space
        self._column_space = fact.column_space
        self._covariance = fact.covariance
        self._projected_covariance = fact.projected_covariance
        self._information_matrix = fact.information_matrix
        self._factorization = fact


    def _return_value(self, accepted, mi, srv, fact, elapsed) -> ReturnValue:
        return ReturnValue(
            batch_accepted=accepted,
            mi=float(mi),
            rank=fact.rank,
            qr_tol=fact.tolerance,
            num_iterations=srv.iterations,
            cost_start=srv.cost_initial,
            cost_final=srv.cost_final,
            elapsed_time=float(elapsed),
            memory_usage=self._solver.memory_usage,
            null_space=fact.null_space,
            column_space=fact.column_space,
            covariance=fact.covariance,
            projected_covariance=fact.projected_covariance,
            information_matrix=fact.information_matrix,
            converged=srv.converged,
        )


    def _log(self, msg: str, *args) -> None:
        level = logging.INFO if self._options.verbose else logging.DEBUG
        logger.log(level, msg, *args)


    # PROPERTIES ========================================================================

    @property
    def marg_group_id(self) -> int:
        return self._marg_group_id


    @property
    def problem(self) -> IncrementalOptimizationProblem:
        return self._problem


    @property
    def options(self) -> Options:
        return self._options


    @options.setter
    def options(self, options: Options) -> None:
        if not isinstance(options, Options):
            raise TypeError(f"expected Options, got {type(options).__name__}")
        self._options = options
        self._solver.max_iterations = options.max_iterations
        self._solver.norm_tol = options.norm_tol


    @property
    def jacobian_transpose(self):
        """Transposed Jacobian (``scipy.sparse.csc_matrix``) of the current
        problem, ``None`` before the first optimization."""
        return self._solver.jacobian_transpose


    @property
    def mutual_information(self) -> float:
        return self._mi


    @property
    def sv_log_sum(self) -> float:
        """``log2`` pseudo-determinant of the persisted marginal information."""
        return self._sv_log_sum


    @property
    def rank(self) -> int:
        return self._n_rank


    @property
    def rank_deficiency(self) -> int:
        return self._null_space.shape[1]


    @property
    def marginal_rank(self) -> int:
        """Numerical rank of the eliminated (non-marginalized) block."""
        return self._marginal_rank


    @property
    def marginal_rank_deficiency(self) -> int:
        return self._marginal_rank_deficiency


    @property
    def qr_tol(self) -> float:
        return self._qr_tol


    @property
    def memory_usage(self) -> int:
        return self._memory_usage


    @property
    def null_space(self) -> np.ndarray:
        return self._null_space.copy()


    @property
    def column_space(self) -> np.ndarray:
        return self._column_space.copy()


    @property
    def covariance(self) -> np.ndarray:
        return self._covariance.copy()


    @property
    def projected_covariance(self) -> np.ndarray:
        return self._projected_covariance.copy()


    @property
    def information_matrix(self) -> np.ndarray:
        return self._information_matrix.copy()


    # DIAGNOSTICS =======================================================================

    def _marginalized_design_variables(self) -> list[DesignVariable]:
        dvs = [
            dv for dv in self._problem.design_variables_in_group(self._marg_group_id)
            if dv.active and dv.column_base >= 0
        ]
        return sorted(dvs, key=lambda dv: dv.column_base)


    def marginal_analysis(self) -> MarginalAnalysis:
        """Observability report of the marginalized group from the persisted state.

        Raises
        ------
        RuntimeError
            If the marginalized group has no active design variables, or the
            persisted factorization no longer matches its layout (after a
            :meth:`remove_batch` without :meth:`reoptimize`).
        """
        dvs = self._marginalized_design_variables()
        dim = sum(dv.dimension for dv in dvs)
        fact = self._factorization
        if dim == 0 or fact is None or fact.dimension != dim:
            raise RuntimeError(
                f"no marginal statistics for group {self._marg_group_id}; "
                f"add a batch containing it or call reoptimize() first"
            )

        names = []
        for dv in dvs:
            if dv.dimension == 1:
                names.append(dv.name)
            else:
                names.extend(f"{dv.name}[{k}]" for k in range(dv.dimension))

        return MarginalAnalysis(
            fact,
            param_names=names,
            param_values=np.concatenate([dv.value for dv in dvs]),
        )


    def display(self) -> None:
        """Print a summary of the persisted estimator state."""
        W    = 72
        line = "=" * W
        dash = "-" * W

        dim = self._information_matrix.shape[0]

        print(line)
        print("  Incremental Calibration Estimator")
        print(line)
        print(f"  {'Batches':<30} {self.num_batches:>12d}")
        print(f"  {'Design variables':<30} {self._problem.num_design_variables:>12d}")
        print(f"  {'Error terms':<30} {self._problem.num_error_terms:>12d}")
        print(f"  {'Marginalized group':<30} {self._marg_group_id:>12d}")
        print(dash)
        print(f"  {'Marginal rank':<30} {self._n_rank:>8d} / {dim}")
        print(f"  {'Eliminated-block rank':<30} {self._marginal_rank:>8d}"
              f"  (deficiency {self._marginal_rank_deficiency})")
        print(f"  {'QR tolerance':<30} {self._qr_tol:>12.4g}")
        print(f"  {'Last mutual information':<30} {self._mi:>12.4g} bits")
        print(f"  {'log2 pdet(information)':<30} {self._sv_log_sum:>12.4g}")
        print(f"  {'Memory usage':<30} {self._memory_usage:>12d} B")
        print(line)


    def __repr__(self) -> str:
        return (
            f"IncrementalEstimator(marg_group_id={self._marg_group_id}, "
            f"batches={self.num_batches}, rank={self._n_rank})"
        )
