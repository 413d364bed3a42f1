"""
Countercurrent Distribution Simulation Tool

Builds a column from validated parameters, drives it through the reference
lifecycle and summarizes every subcolumn:

    Empty -> Growing -> Seeded -> Equilibrated -> Running -> Finished

The iteration phase runs on the partition scheduler in utils/worker_pool.py.
The async entry point moves the CPU-bound work off the event loop so the MCP
server stays responsive.
"""

import asyncio
import itertools
import logging
import threading
import time
from typing import Callable, Dict, List, Optional

import numpy as np

from .schemas import SimulationInput, SimulationResult, SubcolumnResult
from utils.ccd_defaults import (
    DEFAULT_CELLS,
    DEFAULT_KVAL,
    DEFAULT_LOOPS,
    DEFAULT_OUTPUT_LIMIT,
    DEFAULT_SUBCOLUMNS,
    DEFAULT_THREADS,
)
from utils.column import Column, Subcolumn

logger = logging.getLogger(__name__)


def build_column(request: SimulationInput) -> Column:
    """
    Create, grow, seed and equilibrate a column.

    Args:
        request: Validated run parameters

    Returns:
        Column ready for the iteration phase
    """
    column = Column()
    for kval in request.subcolumn_kvals():
        column.add_subcolumn(kval=kval)

    column.grow(request.cells)

    for index, value in sorted(request.seeds.items()):
        column.seed_upper(index, value)

    column.equilibrate()

    logger.debug(f"Built column: {len(column)} subcolumns x {request.cells} cells, "
                 f"seeds={request.seeds}")
    return column


def summarize_subcolumn(
    index: int,
    subcolumn: Subcolumn,
    initial_mass: float,
    output_limit: Optional[int] = None
) -> SubcolumnResult:
    """Summarize a finished subcolumn (mass balance, elution peak, output)."""
    output = subcolumn.output
    steps = len(output)

    peak_step = None
    peak_value = None
    if steps:
        # output is most-recent-first; the peak is reported chronologically
        history = np.fromiter(reversed(output), dtype=np.float64, count=steps)
        peak = int(np.argmax(history))
        peak_step = peak + 1
        peak_value = float(history[peak])

    if output_limit is None or steps <= output_limit:
        values = list(output)
        truncated = False
    else:
        values = list(itertools.islice(output, output_limit))
        truncated = True

    eluted = subcolumn.eluted_mass()
    retained = subcolumn.total_mass()

    return SubcolumnResult(
        index=index,
        kval=subcolumn.kval,
        cells=subcolumn.cell_count,
        steps=steps,
        initial_mass=initial_mass,
        eluted_mass=eluted,
        retained_mass=retained,
        mass_balance_error=initial_mass - eluted - retained,
        peak_step=peak_step,
        peak_value=peak_value,
        output=values,
        output_truncated=truncated
    )


def run_simulation(
    request: SimulationInput,
    cancel_event: Optional[threading.Event] = None,
    on_subcolumn_done: Optional[Callable[[int], None]] = None
) -> SimulationResult:
    """
    Run a full simulation synchronously.

    Shared by the async tool, the command line runner and the background
    job runner.

    Raises:
        ColumnRunError: If any subcolumn failed during the iteration phase
    """
    start = time.perf_counter()
    column = build_column(request)
    initial_masses = [subcolumn.total_mass() for subcolumn in column]

    logger.info(f"Running {len(column)} subcolumns x {request.cells} cells, "
                f"{request.loops} loops on {request.threads} threads")

    iteration_start = time.perf_counter()
    column.push_equilibrate_upper(
        request.loops,
        request.threads,
        cancel_event=cancel_event,
        on_subcolumn_done=on_subcolumn_done
    )
    finished = time.perf_counter()

    results = [
        summarize_subcolumn(index, subcolumn, initial_masses[index], request.output_limit)
        for index, subcolumn in enumerate(column)
    ]

    worst = max((abs(r.mass_balance_error) for r in results), default=0.0)
    if worst > 1e-9:
        logger.warning(f"Mass balance error up to {worst:.3e}")

    logger.info(f"Iteration phase finished in {finished - iteration_start:.3f} s")

    return SimulationResult(
        request=request,
        subcolumns=results,
        elapsed_seconds=finished - iteration_start,
        total_seconds=time.perf_counter() - start
    )


async def countercurrent_simulation(
    subcolumn_count: int = DEFAULT_SUBCOLUMNS,
    cells: int = DEFAULT_CELLS,
    kval: float = DEFAULT_KVAL,
    kvals: List[float] = None,
    seeds: Dict[int, float] = None,
    loops: int = DEFAULT_LOOPS,
    threads: int = DEFAULT_THREADS,
    output_limit: Optional[int] = DEFAULT_OUTPUT_LIMIT
) -> SimulationResult:
    """
    Simulate a countercurrent distribution column.

    Args:
        subcolumn_count: Number of independent trains (default: 10)
        cells: Cells per train (default: 100)
        kval: Partition coefficient for every train (default: 1.0)
        kvals: Optional per-train partition coefficients (overrides kval)
        seeds: Initial upper-phase loading {cell: concentration}
            (default: {0: 1.0})
        loops: Shift-equilibrate steps per train (default: 100000)
        threads: Worker pool size (default: 4)
        output_limit: Most-recent output values returned per train
            (default: 1000, None for all)

    Returns:
        SimulationResult with per-subcolumn mass balance, elution peak and
        collected output

    Example:
        >>> result = await countercurrent_simulation(
        ...     subcolumn_count=2, cells=50, loops=500, threads=2
        ... )
        >>> result.subcolumns[0].peak_step
    """
    params = {
        "subcolumn_count": subcolumn_count,
        "cells": cells,
        "kval": kval,
        "kvals": kvals,
        "loops": loops,
        "threads": threads,
        "output_limit": output_limit,
    }
    if seeds is not None:
        params["seeds"] = seeds
    request = SimulationInput(**params)

    return await asyncio.to_thread(run_simulation, request)
