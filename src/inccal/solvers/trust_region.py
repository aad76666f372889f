#########################################################################################
##
##                        TRUST-REGION NONLINEAR LEAST SQUARES SOLVER
##                                 (trust_region.py)
##
##                                  Kevin McBride 2026
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import scipy.optimize as sci_opt
import scipy.sparse as sci_sparse

from .sparse_qr import RankRevealingFactorization, rank_revealing_factor


__all__ = ["TrustRegionSolver", "SolutionReturnValue"]

logger = logging.getLogger(__name__)


# RESULT ================================================================================

@dataclass
class SolutionReturnValue:
    """Outcome of :meth:`TrustRegionSolver.optimize`.

    ``iterations`` is the number of residual evaluations (scipy's ``nfev``).
    """

    iterations: int
    cost_initial: float
    cost_final: float
    converged: bool
    message: str = ""


    def __repr__(self) -> str:
        status = "CONVERGED" if self.converged else "NOT CONVERGED"
        return (
            f"SolutionReturnValue({status}, iterations={self.iterations}, "
            f"cost={self.cost_initial:.4g} -> {self.cost_final:.4g})"
        )


@dataclass
class _SolverState:
    residual: np.ndarray | None
    jacobian: sci_sparse.csr_matrix | None
    factorization: RankRevealingFactorization | None


# SOLVER ================================================================================

class TrustRegionSolver:
    """Trust-region least-squares solver over an accumulated problem.

    Assembles the whitened residual vector and the sparse Jacobian from the
    problem's error terms, using the column layout written by
    :meth:`IncrementalOptimizationProblem.assign_columns`, and minimises
    ``½‖r‖²`` with ``scipy.optimize.least_squares`` (method ``"trf"``).

    With ``tr_solver="lsmr"`` the sparse Jacobian is handed to scipy as is
    and the trust-region subproblems are solved iteratively.  With
    ``"exact"`` it is densified for scipy's SVD-based subproblem solver,
    which is the more accurate choice on small problems.  ``"auto"`` uses
    ``"exact"`` up to ``DENSE_COLUMN_LIMIT`` columns.  The cached Jacobian
    used for factorization is sparse in every mode.

    The optimizer works on a perturbation vector ``dx`` around the values
    the variables had when :meth:`optimize` was called; each evaluation
    resets the variables and applies ``dx`` block-wise through
    :meth:`DesignVariable.update`, so manifold variables are handled by
    their own update rule.

    Parameters
    ----------
    max_iterations : int
        Maximum residual evaluations per :meth:`optimize` call.
    norm_tol : float
        Convergence tolerance, used for ``ftol``, ``xtol`` and ``gtol``.
        Also the zero-column threshold for column normalization.
    tr_solver : str
        ``"auto"``, ``"exact"`` or ``"lsmr"``.
    """

    DENSE_COLUMN_LIMIT = 200

    def __init__(
        self,
        max_iterations: int = 20,
        norm_tol: float = 1e-8,
        tr_solver: str = "auto",
    ):
        if tr_solver not in ("auto", "exact", "lsmr"):
            raise ValueError(
                f"tr_solver must be 'auto', 'exact' or 'lsmr', got {tr_solver!r}"
            )
        self.max_iterations = int(max_iterations)
        self.norm_tol = float(norm_tol)
        self.tr_solver = tr_solver

        self._problem = None
        self._residual: np.ndarray | None = None
        self._jacobian: sci_sparse.csr_matrix | None = None
        self._factorization: RankRevealingFactorization | None = None


    # PROBLEM ---------------------------------------------------------------------------

    def set_problem(self, problem) -> None:
        self._problem = problem
        self._residual = None
        self._jacobian = None
        self._factorization = None


    @property
    def problem(self):
        return self._problem


    def _require_problem(self):
        if self._problem is None:
            raise RuntimeError("no problem set; call set_problem() first")
        return self._problem


    def _columns(self, error_term):
        """Column bases of the variables of *error_term* that are optimized
        (``None`` for variables held constant)."""
        problem = self._problem
        return [
            dv.column_base
            if dv.active and dv.column_base >= 0 and problem.is_design_variable_in_problem(dv)
            else None
            for dv in error_term.design_variables
        ]


    # ASSEMBLY --------------------------------------------------------------------------

    def evaluate_residual(self) -> np.ndarray:
        """Stacked whitened residual at the current values."""
        problem = self._require_problem()
        parts = [et.weighted_error() for et in problem.error_terms]
        return np.concatenate(parts) if parts else np.zeros(0)


    def evaluate_jacobian(self) -> sci_sparse.csr_matrix:
        """Whitened sparse Jacobian at the current values."""
        problem = self._require_problem()
        n_cols = problem.num_columns

        rows: list[np.ndarray] = []
        cols: list[np.ndarray] = []
        data: list[np.ndarray] = []
        row = 0

        for et in problem.error_terms:
            bases = self._columns(et)
            if any(base is not None for base in bases):
                blocks = et.weighted_jacobians()
            else:
                blocks = [None] * len(bases)
            n_res = None

            for dv, base, block in zip(et.design_variables, bases, blocks):
                if base is None:
                    continue
                if block.shape[1] != dv.dimension:
                    raise ValueError(
                        f"{et.name}: Jacobian block for '{dv.name}' has "
                        f"{block.shape[1]} columns, expected {dv.dimension}"
                    )
                n_res = block.shape[0]
                ii, jj = np.indices(block.shape)
                rows.append((ii + row).ravel())
                cols.append((jj + base).ravel())
                data.append(block.ravel())

            if n_res is None:
                n_res = et.weighted_error().size
            row += n_res

        if data:
            jac = sci_sparse.coo_matrix(
                (np.concatenate(data), (np.concatenate(rows), np.concatenate(cols))),
                shape=(row, n_cols),
            )
        else:
            jac = sci_sparse.coo_matrix((row, n_cols))
        return jac.tocsr()


    def build_system(self) -> tuple[np.ndarray, sci_sparse.csr_matrix]:
        """Evaluate and cache residual and Jacobian at the current values."""
        self._residual = self.evaluate_residual()
        self._jacobian = self.evaluate_jacobian()
        if self._jacobian.shape[0] != self._residual.size:
            raise ValueError(
                f"Jacobian has {self._jacobian.shape[0]} rows for "
                f"{self._residual.size} residuals"
            )
        return self._residual, self._jacobian


    # OPTIMIZATION ----------------------------------------------------------------------

    def optimize(self) -> SolutionReturnValue:
        """Run the trust-region iterations from the current values."""
        problem = self._require_problem()
        n = problem.num_columns
        dvs = [
            dv for dv in problem.design_variables
            if dv.active and dv.column_base >= 0
        ]
        base = [dv.value.copy() for dv in dvs]

        r0 = self.evaluate_residual()
        cost_initial = float(0.5 * np.dot(r0, r0))

        if n == 0 or r0.size == 0:
            self.build_system()
            return SolutionReturnValue(
                iterations=0,
                cost_initial=cost_initial,
                cost_final=cost_initial,
                converged=True,
                message="nothing to optimize",
            )

        # scipy calls fun then jac with the same dx; only re-apply on change
        _applied: dict = {"x": None}

        def _apply(dx: np.ndarray) -> None:
            if _applied["x"] is not None and np.array_equal(dx, _applied["x"]):
                return
            for dv, value in zip(dvs, base):
                dv.set(value)
                dv.update(dx[dv.column_base:dv.column_base + dv.dimension])
            _applied["x"] = dx.copy()

        def _fun(dx: np.ndarray) -> np.ndarray:
            _apply(dx)
            return self.evaluate_residual()

        tr_solver = self.tr_solver
        if tr_solver == "auto":
            tr_solver = "exact" if n <= self.DENSE_COLUMN_LIMIT else "lsmr"

        def _jac(dx: np.ndarray):
            _apply(dx)
            jac = self.evaluate_jacobian()
            return jac if tr_solver == "lsmr" else jac.toarray()

        res = sci_opt.least_squares(
            _fun,
            x0=np.zeros(n),
            jac=_jac,
            method="trf",
            tr_solver=tr_solver,
            x_scale=1.0,
            ftol=self.norm_tol,
            xtol=self.norm_tol,
            gtol=self.norm_tol,
            max_nfev=self.max_iterations,
            verbose=0,
        )

        _apply(res.x)
        r, _ = self.build_system()
        cost_final = float(0.5 * np.dot(r, r))
        converged = bool(res.status > 0)

        logger.debug(
            "trust-region solve (%s): %d evaluations, cost %.6g -> %.6g (%s)",
            tr_solver, res.nfev, cost_initial, cost_final, res.message,
        )
        if not converged:
            logger.warning(
                "optimizer stopped after %d evaluations without reaching "
                "norm_tol=%.3g (cost %.6g)",
                res.nfev, self.norm_tol, cost_final,
            )

        return SolutionReturnValue(
            iterations=int(res.nfev),
            cost_initial=cost_initial,
            cost_final=cost_final,
            converged=converged,
            message=str(res.message),
        )


    # FACTORIZATION ---------------------------------------------------------------------

    def rank_revealing_factor(
        self,
        marg_start: int,
        *,
        tolerance: float = 0.02,
        column_normalize: bool = True,
        eps_tol_svd: float = 1e-4,
    ) -> RankRevealingFactorization:
        """Factorize the current Jacobian, marginalized block from *marg_start*."""
        if self._jacobian is None:
            self.build_system()
        self._factorization = rank_revealing_factor(
            self._jacobian,
            marg_start,
            tolerance=tolerance,
            column_normalize=column_normalize,
            norm_tol=self.norm_tol,
            eps_tol_svd=eps_tol_svd,
        )
        return self._factorization


    # STATE -----------------------------------------------------------------------------

    @property
    def residual(self) -> np.ndarray | None:
        return self._residual


    @property
    def jacobian(self) -> sci_sparse.csr_matrix | None:
        return self._jacobian


    @property
    def jacobian_transpose(self) -> sci_sparse.csc_matrix | None:
        return None if self._jacobian is None else self._jacobian.T.tocsc()


    @property
    def factorization(self) -> RankRevealingFactorization | None:
        return self._factorization


    @property
    def memory_usage(self) -> int:
        """Bytes held by the cached Jacobian and factorization."""
        total = 0
        if self._jacobian is not None:
            total += (
                self._jacobian.data.nbytes
                + self._jacobian.indices.nbytes
                + self._jacobian.indptr.nbytes
            )
        if self._factorization is not None:
            total += self._factorization.memory_usage
        return int(total)


    def snapshot(self) -> _SolverState:
        """Capture the cached system and factorization for :meth:`restore`."""
        return _SolverState(self._residual, self._jacobian, self._factorization)


    def restore(self, state: _SolverState) -> None:
        self._residual = state.residual
        self._jacobian = state.jacobian
        self._factorization = state.factorization
