"""
Error types raised by the countercurrent distribution engine.

All engine errors derive from ColumnError so callers can catch the whole
family at once. None of them are transient: each one points to a calling
sequence that needs fixing (grow before iterating, use valid indices).
"""

from typing import List, Tuple


class ColumnError(Exception):
    """Base class for countercurrent distribution engine errors."""


class NonExistingCell(ColumnError, IndexError):
    """A cell index outside the current train was requested."""

    def __init__(self, index: int, cell_count: int):
        self.index = index
        self.cell_count = cell_count
        super().__init__(
            f"Equilibration attempt of a non-existing cell "
            f"(index {index}, cell count {cell_count})"
        )


class NullColumn(ColumnError):
    """A shift-and-collect step was requested on a subcolumn with no cells."""

    def __init__(self, message: str = "The column has no cells"):
        super().__init__(message)


class SimulationCancelled(ColumnError):
    """A run was stopped between iterations by a cancellation request."""

    def __init__(self, completed_loops: int, requested_loops: int):
        self.completed_loops = completed_loops
        self.requested_loops = requested_loops
        super().__init__(
            f"Simulation cancelled after {completed_loops} of {requested_loops} loops"
        )


class ColumnRunError(ColumnError):
    """
    One or more subcolumn tasks failed during a parallel run.

    Raised only after every task has finished. Sibling subcolumns that did not
    fail have completed all of their loops.

    Attributes:
        failures: (subcolumn_index, exception) pairs in subcolumn order
    """

    def __init__(self, failures: List[Tuple[int, BaseException]]):
        self.failures = sorted(failures, key=lambda item: item[0])
        details = "; ".join(
            f"subcolumn {index}: {type(exc).__name__}: {exc}"
            for index, exc in self.failures
        )
        super().__init__(
            f"{len(self.failures)} subcolumn task(s) failed: {details}"
        )
