#########################################################################################
##
##                       INCREMENTAL (ACCUMULATED) OPTIMIZATION PROBLEM
##                              (incremental_problem.py)
##
##                                  Kevin McBride 2026
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

import numbers
from dataclasses import dataclass

from .design_variable import DesignVariable
from .error_term import ErrorTerm
from .optimization_problem import OptimizationProblem


__all__ = ["IncrementalOptimizationProblem", "ProblemSnapshot"]


# SNAPSHOT ==============================================================================

@dataclass(frozen=True)
class ProblemSnapshot:
    """Groups ordering and column layout captured by
    :meth:`IncrementalOptimizationProblem.snapshot`."""

    groups_ordering: tuple[int, ...]
    columns: tuple[tuple[DesignVariable, int, int], ...]
    num_columns: int


# ACCUMULATED PROBLEM ===================================================================

class IncrementalOptimizationProblem:
    """Ordered collection of accepted batches.

    Exposes the union of the batches' design variables and error terms to the
    solver.  Design variables live in an arena keyed by identity with a
    reference count: a variable shared by several batches (typically the
    calibration parameters) is stored once and released only when the last
    batch that registered it is removed.

    Batches are indexed ``0 .. num_batches - 1`` in insertion order; removing
    a batch shifts the indices of the later ones down by one.

    Design variables are grouped by ``group_id``.  The *groups ordering*
    decides the Jacobian column layout: :meth:`assign_columns` walks the
    groups in that order, so moving a group to the back with
    :meth:`move_group_to_back` makes its columns a contiguous trailing block.

    Notes
    -----
    :meth:`snapshot` / :meth:`restore` capture the ordering and column
    offsets, and :meth:`save_design_variables` /
    :meth:`restore_design_variables` the variable values, so that a
    tentatively added batch can be undone without touching unrelated state.
    """

    def __init__(self):
        self._batches: list[OptimizationProblem] = []

        # arena: id(dv) -> dv, with reference counts and the group at insertion
        self._design_variables: dict[int, DesignVariable] = {}
        self._counts: dict[int, int] = {}
        self._dv_groups: dict[int, int] = {}

        # group id -> variables in insertion order
        self._groups: dict[int, list[DesignVariable]] = {}
        self._groups_ordering: list[int] = []

        self._num_columns: int = 0


    # BATCHES ---------------------------------------------------------------------------

    @property
    def num_batches(self) -> int:
        return len(self._batches)


    @property
    def batches(self) -> tuple[OptimizationProblem, ...]:
        return tuple(self._batches)


    def batch(self, idx: int) -> OptimizationProblem:
        return self._batches[self._resolve_index(idx)]


    def index_of(self, batch: OptimizationProblem) -> int:
        """Index of an accepted batch (identity lookup)."""
        for i, b in enumerate(self._batches):
            if b is batch:
                return i
        raise ValueError("batch is not part of the problem")


    def __contains__(self, batch: object) -> bool:
        return any(b is batch for b in self._batches)


    def __len__(self) -> int:
        return len(self._batches)


    def add(self, batch: OptimizationProblem) -> int:
        """Append *batch* and return its index."""
        if not isinstance(batch, OptimizationProblem):
            raise TypeError(f"expected OptimizationProblem, got {type(batch).__name__}")
        if batch in self:
            raise ValueError("batch is already part of the problem")

        self._batches.append(batch)

        for dv in batch.design_variables:
            key = id(dv)
            if key in self._counts:
                self._counts[key] += 1
                continue

            self._counts[key] = 1
            self._design_variables[key] = dv
            self._dv_groups[key] = dv.group_id

            if dv.group_id not in self._groups:
                self._groups[dv.group_id] = []
                self._groups_ordering.append(dv.group_id)
            self._groups[dv.group_id].append(dv)

        return len(self._batches) - 1


    def remove(self, batch_or_idx) -> OptimizationProblem:
        """Remove a batch given by index or handle and return it.

        Raises
        ------
        IndexError
            If an index is outside ``[0, num_batches)``.
        ValueError
            If a handle is not an accepted batch.
        """
        idx = self._resolve_index(batch_or_idx)
        batch = self._batches.pop(idx)

        for dv in batch.design_variables:
            key = id(dv)
            self._counts[key] -= 1
            if self._counts[key] > 0:
                continue

            group_id = self._dv_groups.pop(key)
            del self._counts[key]
            del self._design_variables[key]

            members = self._groups[group_id]
            members[:] = [m for m in members if m is not dv]
            if not members:
                del self._groups[group_id]
                self._groups_ordering.remove(group_id)

            dv.block_index = -1
            dv.column_base = -1

        return batch


    def clear(self) -> None:
        """Remove every batch."""
        for dv in self._design_variables.values():
            dv.block_index = -1
            dv.column_base = -1
        self.__init__()


    def _resolve_index(self, batch_or_idx) -> int:
        if isinstance(batch_or_idx, OptimizationProblem):
            return self.index_of(batch_or_idx)

        if isinstance(batch_or_idx, bool) or not isinstance(batch_or_idx, numbers.Integral):
            raise TypeError(
                f"expected batch index or OptimizationProblem, "
                f"got {type(batch_or_idx).__name__}"
            )

        idx = int(batch_or_idx)
        if idx < 0 or idx >= len(self._batches):
            raise IndexError(
                f"batch index {idx} out of range (0..{len(self._batches) - 1})"
            )
        return idx


    # DESIGN VARIABLES AND ERROR TERMS --------------------------------------------------

    @property
    def design_variables(self) -> list[DesignVariable]:
        """All design variables, ordered by the groups ordering."""
        return [dv for gid in self._groups_ordering for dv in self._groups[gid]]


    @property
    def error_terms(self) -> list[ErrorTerm]:
        """All error terms, batch by batch."""
        return [et for batch in self._batches for et in batch.error_terms]


    @property
    def num_design_variables(self) -> int:
        return len(self._design_variables)


    @property
    def num_error_terms(self) -> int:
        return sum(batch.num_error_terms for batch in self._batches)


    def is_design_variable_in_problem(self, design_variable: DesignVariable) -> bool:
        return id(design_variable) in self._design_variables


    def design_variable_count(self, design_variable: DesignVariable) -> int:
        """Number of accepted batches that registered *design_variable*."""
        return self._counts.get(id(design_variable), 0)


    # GROUPS ----------------------------------------------------------------------------

    @property
    def group_ids(self) -> list[int]:
        return list(self._groups_ordering)


    def is_group_in_problem(self, group_id: int) -> bool:
        return group_id in self._groups


    def design_variables_in_group(self, group_id: int) -> list[DesignVariable]:
        return list(self._groups.get(group_id, []))


    def group_dimension(self, group_id: int) -> int:
        """Summed dimension of the active variables in *group_id*."""
        return sum(dv.dimension for dv in self._groups.get(group_id, []) if dv.active)


    @property
    def groups_ordering(self) -> list[int]:
        return list(self._groups_ordering)


    def set_groups_ordering(self, ordering) -> None:
        """Replace the groups ordering; must be a permutation of :attr:`group_ids`."""
        ordering = [int(gid) for gid in ordering]
        if len(ordering) != len(self._groups) or set(ordering) != set(self._groups):
            raise ValueError(
                f"groups ordering {ordering} is not a permutation of {self._groups_ordering}"
            )
        self._groups_ordering = ordering


    def move_group_to_back(self, group_id: int) -> None:
        """Place *group_id* last in the ordering (no-op when absent)."""
        if group_id in self._groups:
            self._groups_ordering.remove(group_id)
            self._groups_ordering.append(group_id)


    # COLUMN LAYOUT ---------------------------------------------------------------------

    def assign_columns(self) -> int:
        """Write ``block_index`` / ``column_base`` of every variable; return the
        number of Jacobian columns.  Inactive variables get ``-1``."""
        column = 0
        block = 0
        for dv in self.design_variables:
            if dv.active:
                dv.block_index = block
                dv.column_base = column
                column += dv.dimension
                block += 1
            else:
                dv.block_index = -1
                dv.column_base = -1
        self._num_columns = column
        return column


    @property
    def num_columns(self) -> int:
        """Column count from the last :meth:`assign_columns`."""
        return self._num_columns


    def column_range(self, group_id: int) -> tuple[int, int]:
        """``(start, stop)`` columns of *group_id*.

        Empty ranges sit at the end of the layout.  Raises ``ValueError`` if
        the group's columns are not contiguous.
        """
        spans = sorted(
            (dv.column_base, dv.dimension)
            for dv in self._groups.get(group_id, [])
            if dv.active and dv.column_base >= 0
        )
        if not spans:
            return self._num_columns, self._num_columns

        start = spans[0][0]
        stop = start
        for base, dim in spans:
            if base != stop:
                raise ValueError(f"columns of group {group_id} are not contiguous")
            stop = base + dim
        return start, stop


    # SNAPSHOTS -------------------------------------------------------------------------

    def snapshot(self) -> ProblemSnapshot:
        return ProblemSnapshot(
            groups_ordering=tuple(self._groups_ordering),
            columns=tuple(
                (dv, dv.block_index, dv.column_base)
                for dv in self._design_variables.values()
            ),
            num_columns=self._num_columns,
        )


    def restore(self, snapshot: ProblemSnapshot) -> None:
        """Reinstate the ordering and column layout of *snapshot*."""
        if set(snapshot.groups_ordering) != set(self._groups):
            raise ValueError("snapshot groups do not match the current problem")

        self._groups_ordering = list(snapshot.groups_ordering)
        for dv, block_index, column_base in snapshot.columns:
            dv.block_index = block_index
            dv.column_base = column_base
        self._num_columns = snapshot.num_columns


    def save_design_variables(self, extra=()) -> list[DesignVariable]:
        """Back up the values of every variable in the problem plus *extra*.

        Returns the list of variables to hand to
        :meth:`restore_design_variables`.
        """
        saved: dict[int, DesignVariable] = dict(self._design_variables)
        for dv in extra:
            saved.setdefault(id(dv), dv)
        for dv in saved.values():
            dv.save()
        return list(saved.values())


    @staticmethod
    def restore_design_variables(saved) -> None:
        for dv in saved:
            dv.restore()


    def __repr__(self) -> str:
        return (
            f"IncrementalOptimizationProblem(batches={self.num_batches}, "
            f"design_variables={self.num_design_variables}, "
            f"groups={self._groups_ordering})"
        )
