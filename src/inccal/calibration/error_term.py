#########################################################################################
##
##                                  ERROR TERMS
##                                 (error_term.py)
##
##                                  Kevin McBride 2026
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

from typing import Callable, Sequence

import numpy as np
import scipy.linalg as sci_linalg

from .design_variable import DesignVariable


__all__ = ["ErrorTerm", "ResidualErrorTerm", "PriorErrorTerm"]


# HELPERS ===============================================================================

def _sqrt_information(covariance, dimension: int | None) -> np.ndarray | None:
    """Upper Cholesky factor ``U`` of ``inv(covariance)`` so that ``UᵀU = Σ⁻¹``.

    Scalars and 1-D inputs are read as (diagonal) variances.  Returns ``None``
    for identity weighting.
    """
    if covariance is None:
        return None

    cov = np.asarray(covariance, dtype=float)
    if cov.ndim == 0:
        if dimension is None:
            raise ValueError("scalar covariance requires a known residual dimension")
        cov = np.eye(dimension) * float(cov)
    elif cov.ndim == 1:
        cov = np.diag(cov)
    elif cov.ndim != 2 or cov.shape[0] != cov.shape[1]:
        raise ValueError(f"covariance must be square, got shape {cov.shape}")

    if dimension is not None and cov.shape[0] != dimension:
        raise ValueError(
            f"covariance of size {cov.shape[0]} does not match residual "
            f"dimension {dimension}"
        )

    information = np.linalg.inv(cov)
    information = 0.5 * (information + information.T)
    return sci_linalg.cholesky(information, lower=False)


# BASE CLASS ============================================================================

class ErrorTerm:
    """Residual function over one or more design variables.

    Subclasses implement :meth:`error` returning the *unweighted* residual
    ``e`` evaluated at the current design-variable values.  The solver works
    with the whitened residual ``U e`` where ``UᵀU = Σ⁻¹`` is the inverse of
    the measurement covariance, so the cost of a term is ``½ eᵀ Σ⁻¹ e``.

    Jacobians default to 2-point forward differences taken through
    :meth:`DesignVariable.update`, so manifold variables are differentiated
    in their minimal coordinates.  Override :meth:`jacobians` for analytic
    derivatives.

    Parameters
    ----------
    design_variables : sequence of DesignVariable
        Variables the residual depends on, in the order :meth:`jacobians`
        returns their blocks.
    covariance : float or array_like, optional
        Measurement covariance (scalar variance, 1-D variances or full
        matrix).  Identity when omitted.
    name : str, optional
        Label used in logs.
    eps : float, optional
        Relative finite-difference step.  Defaults to ``√(machine epsilon)``.
    """

    def __init__(
        self,
        design_variables: Sequence[DesignVariable],
        covariance=None,
        name: str | None = None,
        eps: float | None = None,
    ):
        self._design_variables = tuple(design_variables)
        for dv in self._design_variables:
            if not isinstance(dv, DesignVariable):
                raise TypeError(
                    f"error terms take DesignVariable instances, got {type(dv).__name__}"
                )

        self.name = name if name is not None else type(self).__name__
        self.eps = eps if eps is not None else np.sqrt(np.finfo(float).eps)

        self._covariance = covariance
        self._sqrt_info: np.ndarray | None = None
        self._sqrt_info_ready = covariance is None


    # PROPERTIES ------------------------------------------------------------------------

    @property
    def design_variables(self) -> tuple[DesignVariable, ...]:
        """Design variables this residual depends on."""
        return self._design_variables


    @property
    def sqrt_information(self) -> np.ndarray | None:
        """Whitening matrix ``U`` (``None`` means identity)."""
        if not self._sqrt_info_ready:
            self._sqrt_info = _sqrt_information(self._covariance, self.error().size)
            self._sqrt_info_ready = True
        return self._sqrt_info


    # RESIDUAL --------------------------------------------------------------------------

    def error(self) -> np.ndarray:
        """Unweighted residual at the current design-variable values."""
        raise NotImplementedError


    def jacobians(self) -> list[np.ndarray]:
        """Unweighted Jacobian blocks ``∂e/∂dx_k``, one per design variable."""
        e0 = np.asarray(self.error(), dtype=float).reshape(-1)
        blocks = []
        for dv in self._design_variables:
            base = dv.value.copy()
            J = np.empty((e0.size, dv.dimension))
            for j in range(dv.dimension):
                h = self.eps * max(1.0, abs(base[j])) if base.size == dv.dimension else self.eps
                dx = np.zeros(dv.dimension)
                dx[j] = h
                dv.update(dx)
                try:
                    J[:, j] = (np.asarray(self.error(), dtype=float).reshape(-1) - e0) / h
                finally:
                    dv.set(base)
            blocks.append(J)
        return blocks


    def weighted_error(self) -> np.ndarray:
        """Whitened residual ``U e``."""
        e = np.asarray(self.error(), dtype=float).reshape(-1)
        U = self.sqrt_information
        return e if U is None else U @ e


    def weighted_jacobians(self) -> list[np.ndarray]:
        """Whitened Jacobian blocks ``U ∂e/∂dx_k``."""
        blocks = [np.atleast_2d(np.asarray(J, dtype=float)) for J in self.jacobians()]
        U = self.sqrt_information
        return blocks if U is None else [U @ J for J in blocks]


    def squared_error(self) -> float:
        """Mahalanobis distance ``eᵀ Σ⁻¹ e``."""
        r = self.weighted_error()
        return float(np.dot(r, r))


    def __repr__(self) -> str:
        names = ", ".join(dv.name for dv in self._design_variables)
        return f"{type(self).__name__}(name={self.name!r}, design_variables=[{names}])"


# CONCRETE TERMS ========================================================================

class ResidualErrorTerm(ErrorTerm):
    """Error term wrapping a plain residual callable.

    Parameters
    ----------
    func : callable
        ``func(*values) -> array_like`` where ``values`` are the current
        values of *design_variables*, in order.
    design_variables : sequence of DesignVariable
        Variables passed to *func*.
    covariance : float or array_like, optional
        Measurement covariance.
    jacobian : callable, optional
        ``jacobian(*values) -> list of arrays``, one block per variable.
        Finite differences are used when omitted.
    name : str, optional
        Label used in logs.

    Example
    -------
    .. code-block:: python

        # y = scale * u + bias, measured with 1 cm noise
        term = ResidualErrorTerm(
            lambda c: np.array([c[0] * u + c[1] - y]),
            [calib],
            covariance=1e-4,
        )
    """

    def __init__(
        self,
        func: Callable[..., np.ndarray],
        design_variables: Sequence[DesignVariable],
        covariance=None,
        jacobian: Callable[..., Sequence[np.ndarray]] | None = None,
        name: str | None = None,
        eps: float | None = None,
    ):
        super().__init__(design_variables, covariance=covariance, name=name, eps=eps)
        self.func = func
        self.jacobian_func = jacobian


    def error(self) -> np.ndarray:
        values = [dv.value for dv in self._design_variables]
        return np.asarray(self.func(*values), dtype=float).reshape(-1)


    def jacobians(self) -> list[np.ndarray]:
        if self.jacobian_func is None:
            return super().jacobians()
        values = [dv.value for dv in self._design_variables]
        blocks = [np.atleast_2d(np.asarray(J, dtype=float)) for J in self.jacobian_func(*values)]
        if len(blocks) != len(self._design_variables):
            raise ValueError(
                f"{self.name}: jacobian returned {len(blocks)} blocks for "
                f"{len(self._design_variables)} design variables"
            )
        return blocks


class PriorErrorTerm(ErrorTerm):
    """Gaussian prior ``e = value - mean`` on a single design variable."""

    def __init__(
        self,
        design_variable: DesignVariable,
        mean=None,
        covariance=None,
        name: str | None = None,
    ):
        super().__init__([design_variable], covariance=covariance, name=name)
        self.mean = (
            design_variable.value.copy()
            if mean is None
            else np.asarray(mean, dtype=float).reshape(-1)
        )
        if self.mean.size != design_variable.dimension:
            raise ValueError(
                f"prior mean of size {self.mean.size} for design variable "
                f"'{design_variable.name}' of dimension {design_variable.dimension}"
            )


    def error(self) -> np.ndarray:
        return self._design_variables[0].value - self.mean


    def jacobians(self) -> list[np.ndarray]:
        return [np.eye(self._design_variables[0].dimension)]
