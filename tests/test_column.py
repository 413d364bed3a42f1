"""
Test suite for the countercurrent distribution engine (utils/column.py).

Validates:
1. Per-cell equilibrium: mass conservation, idempotence, K ratio
2. Shift-and-collect: one output per step, tail value collected
3. Phase length invariant across arbitrary call sequences
4. Boundary failures (NonExistingCell, NullColumn) leave state untouched
5. Three-cell worked example and Craig binomial distribution
6. Column-level orchestration and parallel determinism

Reference: Craig & Post (1949), countercurrent distribution theory.
"""

import math
import sys
import threading
from pathlib import Path

import numpy as np
import pytest

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from utils.column import Column, Subcolumn
from utils.errors import (
    ColumnError,
    ColumnRunError,
    NonExistingCell,
    NullColumn,
    SimulationCancelled,
)


def make_subcolumn(upper, lower=None, kval=1.0):
    """Subcolumn with the given phase contents (not equilibrated)."""
    sub = Subcolumn(kval=kval)
    sub.grow(len(upper))
    sub.upper[:] = upper
    if lower is not None:
        sub.lower[:] = lower
    return sub


class TestGrowth:
    """Cell growth and buffer management."""

    def test_new_subcolumn_is_empty(self):
        sub = Subcolumn()
        assert sub.cell_count == 0
        assert len(sub.upper) == 0 and len(sub.lower) == 0
        assert len(sub.output) == 0
        assert sub.kval == 1.0

    def test_grow_appends_zero_cells(self):
        sub = Subcolumn()
        sub.grow()
        sub.grow(4)
        assert sub.cell_count == 5
        assert np.array_equal(sub.upper, np.zeros(5))
        assert np.array_equal(sub.lower, np.zeros(5))

    def test_growth_past_capacity_keeps_contents(self):
        """Seeded values survive buffer reallocation."""
        sub = Subcolumn(capacity=1)
        sub.grow()
        sub.set_upper(0, 1.0)
        sub.set_lower(0, 0.25)
        for _ in range(40):
            sub.grow()
        assert sub.cell_count == 41
        assert sub.upper[0] == 1.0
        assert sub.lower[0] == 0.25
        assert np.all(sub.upper[1:] == 0.0)

    def test_negative_growth_rejected(self):
        with pytest.raises(ValueError):
            Subcolumn().grow(-1)

    @pytest.mark.parametrize("kval", [0.0, -1.0, float("nan"), float("inf")])
    def test_invalid_partition_coefficient(self, kval):
        with pytest.raises(ValueError):
            Subcolumn(kval=kval)

    def test_partition_coefficient_is_read_only(self):
        sub = Subcolumn(kval=2.0)
        with pytest.raises(AttributeError):
            sub.kval = 3.0


class TestEquilibrateCell:
    """Per-cell partition equilibrium."""

    @pytest.mark.parametrize("kval", [0.1, 0.5, 1.0, 2.5, 10.0])
    def test_mass_conservation(self, kval):
        rng = np.random.default_rng(42)
        upper = rng.uniform(0.0, 5.0, size=20)
        lower = rng.uniform(0.0, 5.0, size=20)
        sub = make_subcolumn(upper, lower, kval=kval)

        for i in range(20):
            before = sub.upper[i] + sub.lower[i]
            sub.equilibrate_cell(i)
            assert sub.upper[i] + sub.lower[i] == pytest.approx(before, rel=1e-14, abs=1e-15)

    @pytest.mark.parametrize("kval", [0.1, 1.0, 7.0])
    def test_idempotent(self, kval):
        sub = make_subcolumn([0.3, 1.7], [0.9, 0.0], kval=kval)
        for i in range(2):
            sub.equilibrate_cell(i)
            upper, lower = sub.upper[i], sub.lower[i]
            sub.equilibrate_cell(i)
            assert sub.upper[i] == pytest.approx(upper, rel=1e-15, abs=1e-15)
            assert sub.lower[i] == pytest.approx(lower, rel=1e-15, abs=1e-15)

    @pytest.mark.parametrize("kval", [0.2, 1.0, 3.0, 42.0])
    def test_ratio_matches_partition_coefficient(self, kval):
        sub = make_subcolumn([1.0, 0.0, 0.4], [0.0, 2.0, 0.6], kval=kval)
        for i in range(3):
            sub.equilibrate_cell(i)
            assert sub.lower[i] != 0.0
            assert sub.upper[i] / sub.lower[i] == pytest.approx(kval, rel=1e-12)

    def test_only_target_cell_changes(self):
        sub = make_subcolumn([1.0, 1.0, 1.0])
        sub.equilibrate_cell(1)
        assert list(sub.upper) == [1.0, 0.5, 1.0]
        assert list(sub.lower) == [0.0, 0.5, 0.0]

    @pytest.mark.parametrize("index", [3, 4, 100, -1])
    def test_non_existing_cell(self, index):
        sub = make_subcolumn([1.0, 0.0, 0.0])
        with pytest.raises(NonExistingCell) as excinfo:
            sub.equilibrate_cell(index)
        assert excinfo.value.index == index
        assert excinfo.value.cell_count == 3
        assert list(sub.upper) == [1.0, 0.0, 0.0]
        assert list(sub.lower) == [0.0, 0.0, 0.0]

    def test_non_existing_cell_on_empty_subcolumn(self):
        with pytest.raises(NonExistingCell):
            Subcolumn().equilibrate_cell(0)

    def test_non_existing_cell_is_index_error(self):
        """Callers can treat it as an IndexError or as an engine error."""
        with pytest.raises(IndexError):
            Subcolumn().equilibrate_cell(0)
        with pytest.raises(ColumnError):
            Subcolumn().equilibrate_cell(0)

    def test_seeding_checks_index(self):
        sub = make_subcolumn([0.0, 0.0])
        with pytest.raises(NonExistingCell):
            sub.set_upper(2, 1.0)
        with pytest.raises(NonExistingCell):
            sub.set_lower(-1, 1.0)


class TestEquilibrate:
    """Whole-train equilibration."""

    @pytest.mark.parametrize("kval", [0.3, 1.0, 4.0])
    def test_matches_per_cell_loop_bit_for_bit(self, kval):
        rng = np.random.default_rng(7)
        upper = rng.uniform(0.0, 1.0, size=50)
        lower = rng.uniform(0.0, 1.0, size=50)

        vectorised = make_subcolumn(upper, lower, kval=kval)
        looped = make_subcolumn(upper, lower, kval=kval)

        vectorised.equilibrate()
        for i in range(looped.cell_count):
            looped.equilibrate_cell(i)

        assert np.array_equal(vectorised.upper, looped.upper)
        assert np.array_equal(vectorised.lower, looped.lower)

    def test_total_mass_invariant(self):
        rng = np.random.default_rng(3)
        sub = make_subcolumn(rng.uniform(size=30), rng.uniform(size=30), kval=2.0)
        before = sub.total_mass()
        sub.equilibrate()
        assert sub.total_mass() == pytest.approx(before, rel=1e-14)

    def test_empty_subcolumn(self):
        sub = Subcolumn()
        sub.equilibrate()
        assert sub.cell_count == 0


class TestPushEquilibrateUpper:
    """Shift-and-collect step."""

    def test_collects_tail_upper(self):
        sub = make_subcolumn([0.1, 0.2, 0.3], [0.0, 0.0, 0.0])
        collected = sub.push_equilibrate_upper()
        assert collected == 0.3
        assert list(sub.output) == [0.3]

    def test_one_output_per_step_most_recent_first(self):
        sub = make_subcolumn([0.0, 0.0, 0.0, 0.0])
        for step in range(1, 6):
            tail = float(sub.upper[-1])
            sub.push_equilibrate_upper()
            assert len(sub.output) == step
            assert sub.output[0] == tail

    def test_lower_phase_does_not_move(self):
        """Only the upper phase shifts; lower is touched only by equilibration."""
        sub = make_subcolumn([0.0, 0.0, 0.0], [0.0, 0.8, 0.0])
        sub.push_equilibrate_upper()
        # cell 1 re-equilibrates with itself, cells 0 and 2 stay empty
        assert list(sub.upper) == [0.0, 0.4, 0.0]
        assert list(sub.lower) == [0.0, 0.4, 0.0]

    def test_single_cell_train(self):
        sub = make_subcolumn([1.0])
        sub.equilibrate()
        assert sub.push_equilibrate_upper() == 0.5
        assert list(sub.upper) == [0.25]
        assert list(sub.lower) == [0.25]

    def test_null_column(self):
        sub = Subcolumn()
        with pytest.raises(NullColumn) as excinfo:
            sub.push_equilibrate_upper()
        assert "no cells" in str(excinfo.value)
        assert sub.cell_count == 0
        assert len(sub.output) == 0

    def test_phase_lengths_stay_equal(self):
        """len(upper) == len(lower) after every grow/equilibrate/push call."""
        rng = np.random.default_rng(11)
        sub = Subcolumn(kval=1.5)
        sub.grow()
        sub.set_upper(0, 1.0)
        for _ in range(300):
            action = rng.integers(3)
            if action == 0:
                sub.grow()
            elif action == 1:
                sub.equilibrate()
            else:
                sub.push_equilibrate_upper()
            assert len(sub.upper) == len(sub.lower)

    @pytest.mark.parametrize("kval", [0.5, 1.0, 3.0])
    def test_mass_balance_over_run(self, kval):
        sub = Subcolumn(kval=kval)
        sub.grow(8)
        sub.set_upper(0, 1.0)
        sub.equilibrate()
        sub.run(200)
        assert len(sub.output) == 200
        assert sub.total_mass() + sub.eluted_mass() == pytest.approx(1.0, rel=1e-12)

    def test_run_cancelled_between_steps(self):
        sub = make_subcolumn([1.0, 0.0])
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(SimulationCancelled) as excinfo:
            sub.run(10, cancel_event=cancel)
        assert excinfo.value.completed_loops == 0
        assert len(sub.output) == 0

    def test_run_zero_loops_on_empty_subcolumn(self):
        sub = Subcolumn()
        sub.run(0)
        assert len(sub.output) == 0


class TestWorkedExamples:
    """Hand-computed scenarios with exact binary arithmetic."""

    def test_three_cell_scenario(self):
        """
        Three cells, K = 1, unit loading in the upper phase of cell 0.

        After equilibration the solute splits 0.5/0.5 in cell 0. The first
        shift collects the empty tail (0.0) and moves 0.5 into cell 1; both
        occupied cells then re-equilibrate to 0.25/0.25.
        """
        sub = make_subcolumn([1.0, 0.0, 0.0], [0.0, 0.0, 0.0], kval=1.0)

        sub.equilibrate()
        assert list(sub.upper) == [0.5, 0.0, 0.0]
        assert list(sub.lower) == [0.5, 0.0, 0.0]

        sub.push_equilibrate_upper()
        assert list(sub.output) == [0.0]
        assert list(sub.upper) == [0.25, 0.25, 0.0]
        assert list(sub.lower) == [0.25, 0.25, 0.0]

        sub.push_equilibrate_upper()
        assert list(sub.output) == [0.0, 0.0]
        assert list(sub.upper) == [0.125, 0.25, 0.125]
        assert list(sub.lower) == [0.125, 0.25, 0.125]

        sub.push_equilibrate_upper()
        assert list(sub.output) == [0.125, 0.0, 0.0]

    @pytest.mark.parametrize("kval,transfers", [(1.0, 6), (3.0, 7), (0.25, 5)])
    def test_craig_binomial_distribution(self, kval, transfers):
        """
        Before anything elutes, the solute in cell r after n transfers is
        C(n, r) p^r q^(n-r) with p = K / (1 + K).
        """
        cells = transfers + 2
        sub = Subcolumn(kval=kval)
        sub.grow(cells)
        sub.set_upper(0, 1.0)
        sub.equilibrate()
        sub.run(transfers)

        p = kval / (1.0 + kval)
        q = 1.0 - p
        mass = sub.upper + sub.lower
        for r in range(cells):
            expected = math.comb(transfers, r) * p ** r * q ** (transfers - r) if r <= transfers else 0.0
            assert mass[r] == pytest.approx(expected, rel=1e-12, abs=1e-15)
        assert all(value == 0.0 for value in sub.output)


class TestColumn:
    """Column orchestration."""

    def build(self, subcolumns=4, cells=10, kvals=None):
        column = Column()
        for i in range(subcolumns):
            column.add_subcolumn(kval=kvals[i] if kvals else 1.0)
        column.grow(cells)
        column.seed_upper(0, 1.0)
        column.equilibrate()
        return column

    def test_container_protocol(self):
        column = Column()
        first = column.add_subcolumn()
        second = column.add_subcolumn(kval=2.0)
        assert len(column) == 2
        assert column[0] is first and column[1] is second
        assert list(column) == [first, second]
        assert column.cell_count == 0

    def test_uniform_growth(self):
        column = Column()
        for _ in range(3):
            column.add_subcolumn()
        for _ in range(100):
            column.grow()
        assert column.cell_count == 100
        assert all(len(sub.upper) == len(sub.lower) == 100 for sub in column)

    def test_cell_count_of_empty_and_non_uniform_columns(self):
        column = Column()
        assert column.cell_count is None
        column.add_subcolumn().grow(3)
        column.add_subcolumn()
        with pytest.raises(ValueError):
            column.cell_count

    def test_seed_and_equilibrate(self):
        column = self.build(subcolumns=2, cells=3)
        for sub in column:
            assert list(sub.upper) == [0.5, 0.0, 0.0]
            assert list(sub.lower) == [0.5, 0.0, 0.0]

    def test_every_subcolumn_runs_all_loops(self):
        column = self.build(subcolumns=5, cells=6)
        column.push_equilibrate_upper(25, threads=3)
        assert all(len(sub.output) == 25 for sub in column)

    @pytest.mark.parametrize("threads", [2, 3, 4, 16])
    def test_result_independent_of_threads(self, threads):
        kvals = [0.5, 1.0, 2.0, 4.0, 1.0, 0.25]
        reference = self.build(subcolumns=6, cells=12, kvals=kvals)
        parallel = self.build(subcolumns=6, cells=12, kvals=kvals)

        reference.push_equilibrate_upper(300, threads=1)
        parallel.push_equilibrate_upper(300, threads=threads)

        assert parallel.outputs() == reference.outputs()
        for ref, par in zip(reference, parallel):
            assert np.array_equal(ref.upper, par.upper)
            assert np.array_equal(ref.lower, par.lower)

    def test_failure_does_not_stop_siblings(self):
        """An empty subcolumn fails; the others still complete every loop."""
        column = self.build(subcolumns=3, cells=4)
        column.add_subcolumn()

        with pytest.raises(ColumnRunError) as excinfo:
            column.push_equilibrate_upper(5, threads=2)

        failures = excinfo.value.failures
        assert [index for index, _ in failures] == [3]
        assert isinstance(failures[0][1], NullColumn)
        assert [len(sub.output) for sub in column] == [5, 5, 5, 0]

    def test_progress_callback(self):
        column = self.build(subcolumns=4, cells=3)
        done = []
        lock = threading.Lock()

        def record(index):
            with lock:
                done.append(index)

        column.push_equilibrate_upper(3, threads=2, on_subcolumn_done=record)
        assert sorted(done) == [0, 1, 2, 3]

    def test_cancelled_run_reports_every_subcolumn(self):
        column = self.build(subcolumns=3, cells=3)
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(ColumnRunError) as excinfo:
            column.push_equilibrate_upper(10, threads=2, cancel_event=cancel)
        assert all(isinstance(exc, SimulationCancelled) for _, exc in excinfo.value.failures)
        assert len(excinfo.value.failures) == 3
