#########################################################################################
##
##                        OPTIMIZATION PROBLEM (MEASUREMENT BATCH)
##                             (optimization_problem.py)
##
##                                  Kevin McBride 2026
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

from typing import Iterable

from .design_variable import DesignVariable
from .error_term import ErrorTerm


__all__ = ["OptimizationProblem", "Batch"]


# OPTIMIZATION PROBLEM ==================================================================

class OptimizationProblem:
    """Bundle of design variables and error terms.

    Used as the atomic unit submitted to
    :meth:`IncrementalEstimator.add_batch` (hence the :data:`Batch` alias).
    Design variables are de-duplicated by identity and kept in insertion
    order; error terms are kept in insertion order.

    Error terms may depend on design variables that the batch does not list
    itself, typically calibration parameters registered by an earlier batch.
    Such variables are held constant unless some accepted batch registers
    them.

    Parameters
    ----------
    design_variables : iterable of DesignVariable, optional
    error_terms : iterable of ErrorTerm, optional

    Example
    -------
    .. code-block:: python

        batch = Batch()
        batch.add_design_variable(calib)
        batch.add_design_variable(offset_k)
        for u, y in samples:
            batch.add_error_term(make_term(u, y))
    """

    def __init__(
        self,
        design_variables: Iterable[DesignVariable] | None = None,
        error_terms: Iterable[ErrorTerm] | None = None,
    ):
        self._design_variables: dict[int, DesignVariable] = {}
        self._error_terms: list[ErrorTerm] = []

        for dv in design_variables or []:
            self.add_design_variable(dv)
        for et in error_terms or []:
            self.add_error_term(et)


    # BUILDING --------------------------------------------------------------------------

    def add_design_variable(self, design_variable: DesignVariable) -> "OptimizationProblem":
        """Register a design variable (no-op if already present)."""
        if not isinstance(design_variable, DesignVariable):
            raise TypeError(
                f"expected DesignVariable, got {type(design_variable).__name__}"
            )
        self._design_variables.setdefault(id(design_variable), design_variable)
        return self


    def add_error_term(self, error_term: ErrorTerm) -> "OptimizationProblem":
        """Append an error term."""
        if not isinstance(error_term, ErrorTerm):
            raise TypeError(f"expected ErrorTerm, got {type(error_term).__name__}")
        self._error_terms.append(error_term)
        return self


    # QUERIES ---------------------------------------------------------------------------

    @property
    def design_variables(self) -> tuple[DesignVariable, ...]:
        return tuple(self._design_variables.values())


    @property
    def error_terms(self) -> tuple[ErrorTerm, ...]:
        return tuple(self._error_terms)


    @property
    def num_design_variables(self) -> int:
        return len(self._design_variables)


    @property
    def num_error_terms(self) -> int:
        return len(self._error_terms)


    @property
    def is_empty(self) -> bool:
        """True when the batch holds neither design variables nor error terms."""
        return not self._design_variables and not self._error_terms


    @property
    def group_ids(self) -> list[int]:
        """Group ids in order of first appearance."""
        seen: dict[int, None] = {}
        for dv in self._design_variables.values():
            seen.setdefault(dv.group_id, None)
        return list(seen)


    def design_variables_in_group(self, group_id: int) -> list[DesignVariable]:
        return [dv for dv in self._design_variables.values() if dv.group_id == group_id]


    def group_dimension(self, group_id: int) -> int:
        """Summed dimension of the active variables in *group_id*."""
        return sum(
            dv.dimension
            for dv in self._design_variables.values()
            if dv.group_id == group_id and dv.active
        )


    def __contains__(self, design_variable: object) -> bool:
        return id(design_variable) in self._design_variables


    def __repr__(self) -> str:
        return (
            f"OptimizationProblem(design_variables={self.num_design_variables}, "
            f"error_terms={self.num_error_terms}, groups={self.group_ids})"
        )


Batch = OptimizationProblem
