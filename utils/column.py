"""
Countercurrent distribution engine - subcolumns and columns.

A subcolumn is a train of equilibrium cells. Each cell holds solute split
between an upper (mobile) phase and a lower (stationary) phase. One
simulation step:

    1. Collect the tail cell's upper phase as eluate
    2. Shift the upper phase one cell toward the tail (fresh solvent enters
       at cell 0, lower phase stays put)
    3. Re-equilibrate every cell with the partition coefficient K

Equilibrium in a cell (K = C_upper / C_lower):
    total = upper + lower
    upper = K * total / (1 + K)
    lower = total - upper

A column is a set of independent subcolumns. They share no state, so the
iteration phase can be fanned out over worker threads without changing the
result (see utils/worker_pool.py).

Indexing:
    Cell 0 = leading end (fresh upper phase enters here)
    Cell N-1 = tail (upper phase is collected here)
"""

import logging
import math
import operator
import threading
from collections import deque
from typing import Callable, Deque, Iterator, List, Optional

import numpy as np

from utils.ccd_defaults import DEFAULT_KVAL, DEFAULT_THREADS, INITIAL_CELL_CAPACITY
from utils.errors import ColumnRunError, NonExistingCell, NullColumn, SimulationCancelled
from utils.worker_pool import run_partitioned

logger = logging.getLogger(__name__)


class Subcolumn:
    """
    One independent countercurrent distribution train.

    Cells live in preallocated float64 buffers that double in size when full,
    so growth is O(1) amortized. The `upper` and `lower` properties return
    writable views of the live cells; a view taken before `grow()` may point
    at a stale buffer afterwards.

    Attributes:
        output: Collected eluate, most recent first (one value per step)
    """

    def __init__(self, kval: float = DEFAULT_KVAL, capacity: int = INITIAL_CELL_CAPACITY):
        """
        Create an empty subcolumn.

        Args:
            kval: Partition coefficient K (upper/lower at equilibrium), > 0
            capacity: Initial cell buffer size (grows automatically)

        Raises:
            ValueError: If kval is not a finite positive number
        """
        kval = float(kval)
        if not (kval > 0.0 and math.isfinite(kval)):
            raise ValueError(f"Partition coefficient must be positive and finite, got {kval}")

        self._kval = kval
        self._count = 0
        self._upper = np.zeros(max(int(capacity), 1), dtype=np.float64)
        self._lower = np.zeros_like(self._upper)
        self.output: Deque[float] = deque()

    @property
    def kval(self) -> float:
        return self._kval

    @property
    def upper(self) -> np.ndarray:
        return self._upper[:self._count]

    @property
    def lower(self) -> np.ndarray:
        return self._lower[:self._count]

    @property
    def cell_count(self) -> int:
        return self._count

    def __len__(self) -> int:
        return self._count

    def __repr__(self) -> str:
        return (f"Subcolumn(kval={self._kval}, cells={self._count}, "
                f"steps={len(self.output)})")

    # ------------------------------------------------------------------
    # Growth and seeding
    # ------------------------------------------------------------------

    def grow(self, count: int = 1) -> None:
        """Append `count` empty cells (upper = lower = 0.0) at the tail."""
        if count < 0:
            raise ValueError(f"Cannot grow by a negative number of cells ({count})")

        needed = self._count + count
        if needed > len(self._upper):
            capacity = len(self._upper)
            while capacity < needed:
                capacity *= 2
            self._upper = self._resized(self._upper, capacity)
            self._lower = self._resized(self._lower, capacity)

        self._upper[self._count:needed] = 0.0
        self._lower[self._count:needed] = 0.0
        self._count = needed

    def _resized(self, buffer: np.ndarray, capacity: int) -> np.ndarray:
        resized = np.zeros(capacity, dtype=np.float64)
        resized[:self._count] = buffer[:self._count]
        return resized

    def _check_index(self, index: int) -> int:
        index = operator.index(index)
        if index < 0 or index >= self._count:
            raise NonExistingCell(index, self._count)
        return index

    def set_upper(self, index: int, value: float) -> None:
        """Set the upper-phase concentration of one cell (checked)."""
        self._upper[self._check_index(index)] = value

    def set_lower(self, index: int, value: float) -> None:
        """Set the lower-phase concentration of one cell (checked)."""
        self._lower[self._check_index(index)] = value

    # ------------------------------------------------------------------
    # Chemistry: per-cell partition equilibrium
    # ------------------------------------------------------------------

    def equilibrate_cell(self, index: int) -> None:
        """
        Bring one cell to partition equilibrium.

        Conserves upper + lower in the cell and leaves upper/lower = K.
        A second call on the same cell changes nothing.

        Raises:
            NonExistingCell: If index is outside [0, cell_count); state is
                left untouched
        """
        index = self._check_index(index)
        total = self._upper[index] + self._lower[index]
        self._upper[index] = self._kval * total / (1.0 + self._kval)
        self._lower[index] = total - self._upper[index]

    def equilibrate(self) -> None:
        """
        Bring every cell to partition equilibrium.

        Same per-element arithmetic as equilibrate_cell() over all valid
        indices, evaluated as one array expression. Cells are independent so
        the result matches the ascending per-cell loop bit for bit.
        """
        upper = self.upper
        lower = self.lower
        assert upper.shape == lower.shape, "upper/lower phases out of step"

        total = upper + lower
        upper[:] = self._kval * total / (1.0 + self._kval)
        lower[:] = total - upper

    # ------------------------------------------------------------------
    # Transport: shift-and-collect
    # ------------------------------------------------------------------

    def push_equilibrate_upper(self) -> float:
        """
        Advance the mobile phase by one cell and re-equilibrate.

        The tail cell's upper phase is recorded at the front of `output` and
        discarded; every other upper value moves one cell toward the tail and
        cell 0 receives fresh (empty) upper phase. The lower phase does not
        move.

        Returns:
            The collected eluate value for this step

        Raises:
            NullColumn: If the subcolumn has no cells (nothing is changed)
        """
        if self._count == 0:
            raise NullColumn()

        upper = self.upper
        collected = float(upper[-1])
        self.output.appendleft(collected)
        upper[-1] = 0.0

        upper[1:] = upper[:-1].copy()
        upper[0] = 0.0

        self.equilibrate()
        return collected

    def run(self, loops: int, cancel_event: Optional[threading.Event] = None) -> None:
        """
        Run `loops` shift-and-collect steps in order.

        Args:
            loops: Number of steps
            cancel_event: Checked before every step; when set the run stops

        Raises:
            NullColumn: If loops > 0 on an empty subcolumn
            SimulationCancelled: If cancel_event was set before the last step
        """
        for completed in range(loops):
            if cancel_event is not None and cancel_event.is_set():
                raise SimulationCancelled(completed, loops)
            self.push_equilibrate_upper()

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def total_mass(self) -> float:
        """Solute held in the train (both phases)."""
        return float(self.upper.sum() + self.lower.sum())

    def eluted_mass(self) -> float:
        """Solute collected so far."""
        return math.fsum(self.output)


class Column:
    """
    Ordered collection of independent subcolumns.

    Growth, seeding and equilibration apply uniformly to every subcolumn.
    Insertion order only fixes worker assignment in the parallel run.
    """

    def __init__(self):
        self.subcolumns: List[Subcolumn] = []

    def __len__(self) -> int:
        return len(self.subcolumns)

    def __iter__(self) -> Iterator[Subcolumn]:
        return iter(self.subcolumns)

    def __getitem__(self, index: int) -> Subcolumn:
        return self.subcolumns[index]

    def add_subcolumn(self, kval: float = DEFAULT_KVAL) -> Subcolumn:
        """Append a new empty subcolumn and return it."""
        subcolumn = Subcolumn(kval=kval)
        self.subcolumns.append(subcolumn)
        return subcolumn

    def grow(self, count: int = 1) -> None:
        """Grow every subcolumn by `count` cells."""
        for subcolumn in self.subcolumns:
            subcolumn.grow(count)

    @property
    def cell_count(self) -> Optional[int]:
        """
        Uniform cell count of the subcolumns (None for an empty column).

        Raises:
            ValueError: If subcolumns have different cell counts
        """
        counts = {subcolumn.cell_count for subcolumn in self.subcolumns}
        if not counts:
            return None
        if len(counts) > 1:
            raise ValueError(f"Subcolumns have non-uniform cell counts: {sorted(counts)}")
        return counts.pop()

    def seed_upper(self, index: int, value: float) -> None:
        """Set the same upper-phase cell in every subcolumn."""
        for subcolumn in self.subcolumns:
            subcolumn.set_upper(index, value)

    def equilibrate(self) -> None:
        """Equilibrate every subcolumn, one after another."""
        for subcolumn in self.subcolumns:
            subcolumn.equilibrate()

    def push_equilibrate_upper(
        self,
        loops: int,
        threads: int = DEFAULT_THREADS,
        cancel_event: Optional[threading.Event] = None,
        on_subcolumn_done: Optional[Callable[[int], None]] = None
    ) -> None:
        """
        Run `loops` shift-and-collect steps on every subcolumn.

        Each subcolumn is driven by exactly one worker for all of its loops.
        The call returns only after every worker has been joined. The outcome
        does not depend on `threads`.

        Args:
            loops: Steps per subcolumn
            threads: Worker pool size
            cancel_event: Optional cooperative cancellation flag
            on_subcolumn_done: Called from a worker thread with the index of
                each subcolumn that finished successfully

        Raises:
            ColumnRunError: If any subcolumn task failed (raised after all
                tasks finished)
        """
        failures = run_partitioned(
            self.subcolumns, loops, threads,
            cancel_event=cancel_event,
            on_subcolumn_done=on_subcolumn_done
        )
        if failures:
            raise ColumnRunError(failures)

    def outputs(self) -> List[List[float]]:
        """Collected eluate of each subcolumn, most recent first."""
        return [list(subcolumn.output) for subcolumn in self.subcolumns]
