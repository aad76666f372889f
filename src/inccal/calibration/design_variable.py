#########################################################################################
##
##                               DESIGN VARIABLE BLOCK
##                               (design_variable.py)
##
##                                  Kevin McBride 2026
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

import warnings

import numpy as np


__all__ = ["DesignVariable"]


# DESIGN VARIABLE =======================================================================

class DesignVariable:
    """Parameter block estimated by the calibration problem.

    A design variable is a vector-valued block of parameters that one or more
    error terms depend on.  Every design variable belongs to exactly one
    integer group; the group designated as *marginalized* by the
    :class:`~inccal.calibration.IncrementalEstimator` is the one whose rank,
    covariance and information statistics are tracked.

    Parameters
    ----------
    name : str
        Identifier used in logs and diagnostic tables.
    value : array_like
        Initial value, flattened to a 1-D float array.
    group_id : int
        Group the variable belongs to.
    active : bool
        Inactive variables are held constant by the solver and get no
        Jacobian columns.

    Notes
    -----
    ``update(dx)`` is the only way the solver changes a value.  It is additive
    here; manifold parameters (rotations, unit vectors, ...) subclass and
    override it so that ``dx`` lives in the minimal (tangent) coordinates.

    ``block_index`` and ``column_base`` are written by the accumulated problem
    when it lays out the Jacobian columns and are ``-1`` while the variable is
    not part of any problem.

    Example
    -------
    .. code-block:: python

        calib = DesignVariable("scale_bias", [1.0, 0.0], group_id=0)
        calib.update(np.array([0.1, -0.2]))
        calib.value   # array([ 1.1, -0.2])
    """

    def __init__(
        self,
        name: str,
        value,
        group_id: int = 0,
        active: bool = True,
    ):
        self.name = str(name)
        self.group_id = int(group_id)
        self.active = bool(active)

        self._value = self._as_value(value)
        if self._value.size == 0:
            raise ValueError(f"DesignVariable '{self.name}': value must not be empty")
        if not np.all(np.isfinite(self._value)):
            warnings.warn(
                f"DesignVariable '{self.name}': initial value is not finite",
                UserWarning,
                stacklevel=2,
            )

        self._saved: np.ndarray | None = None

        # column layout, owned by the accumulated problem
        self.block_index: int = -1
        self.column_base: int = -1


    @staticmethod
    def _as_value(value) -> np.ndarray:
        return np.array(value, dtype=float).reshape(-1)


    # PROPERTIES ------------------------------------------------------------------------

    @property
    def value(self) -> np.ndarray:
        """Current value (1-D array)."""
        return self._value


    @value.setter
    def value(self, new_value) -> None:
        self.set(new_value)


    @property
    def dimension(self) -> int:
        """Minimal dimension, i.e. the number of Jacobian columns."""
        return self._value.size


    # METHODS ---------------------------------------------------------------------------

    def set(self, value) -> None:
        """Overwrite the value; the shape must be preserved."""
        new_value = self._as_value(value)
        if new_value.shape != self._value.shape:
            raise ValueError(
                f"DesignVariable '{self.name}': expected value of size "
                f"{self._value.size}, got {new_value.size}"
            )
        self._value = new_value


    def update(self, dx) -> None:
        """Apply a perturbation in minimal coordinates."""
        dx = np.asarray(dx, dtype=float).reshape(-1)
        if dx.size != self.dimension:
            raise ValueError(
                f"DesignVariable '{self.name}': update of size {dx.size}, "
                f"expected {self.dimension}"
            )
        self._value = self._value + dx


    def save(self) -> None:
        """Store a backup copy of the current value."""
        self._saved = self._value.copy()


    def restore(self) -> None:
        """Revert to the value stored by :meth:`save`."""
        if self._saved is None:
            raise RuntimeError(f"DesignVariable '{self.name}': nothing saved to restore")
        self._value = self._saved.copy()


    def __repr__(self) -> str:
        return (
            f"DesignVariable(name={self.name!r}, value={self._value}, "
            f"group_id={self.group_id}, active={self.active})"
        )
