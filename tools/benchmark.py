"""
Worker pool benchmark.

Times the iteration phase of identical columns on different worker pool
sizes and checks that every pool size produced bit-identical outputs.
"""

import asyncio
import logging
import statistics
import time
from typing import List, Optional

from .schemas import BenchmarkInput, BenchmarkResult, BenchmarkTiming, SimulationInput
from .ccd_simulation import build_column
from utils.ccd_defaults import BENCHMARK_LOOPS, BENCHMARK_REPEATS, DEFAULT_CELLS, DEFAULT_KVAL, DEFAULT_SUBCOLUMNS

logger = logging.getLogger(__name__)


def run_benchmark(request: BenchmarkInput) -> BenchmarkResult:
    column_request = SimulationInput(
        subcolumn_count=request.subcolumn_count,
        cells=request.cells,
        kval=request.kval,
        loops=request.loops,
    )

    reference = None
    deterministic = True
    timings: List[BenchmarkTiming] = []

    for threads in request.thread_counts:
        durations = []
        for _ in range(request.repeats):
            column = build_column(column_request)
            start = time.perf_counter()
            column.push_equilibrate_upper(request.loops, threads)
            durations.append(time.perf_counter() - start)

            outputs = column.outputs()
            if reference is None:
                reference = outputs
            elif outputs != reference:
                deterministic = False
                logger.warning(f"Outputs with {threads} threads differ from the first run")

        best = min(durations)
        logger.info(f"{threads} threads: best {best:.4f} s over {request.repeats} runs")
        timings.append(BenchmarkTiming(
            threads=threads,
            best_seconds=best,
            mean_seconds=statistics.fmean(durations),
            speedup=(timings[0].best_seconds / best) if timings and best > 0 else 1.0
        ))

    return BenchmarkResult(request=request, timings=timings, deterministic=deterministic)


async def benchmark_threads(
    thread_counts: Optional[List[int]] = None,
    subcolumn_count: int = DEFAULT_SUBCOLUMNS,
    cells: int = DEFAULT_CELLS,
    kval: float = DEFAULT_KVAL,
    loops: int = BENCHMARK_LOOPS,
    repeats: int = BENCHMARK_REPEATS
) -> BenchmarkResult:
    """
    Time the iteration phase for several worker pool sizes.

    Args:
        thread_counts: Pool sizes to compare (default: 1, 2, 3, 4)
        subcolumn_count: Subcolumns per column (default: 10)
        cells: Cells per subcolumn (default: 100)
        kval: Partition coefficient (default: 1.0)
        loops: Steps per subcolumn (default: 1000)
        repeats: Timed runs per pool size, best reported (default: 1)

    Returns:
        BenchmarkResult with per-pool timings, speedups and a determinism flag
    """
    params = {
        "subcolumn_count": subcolumn_count,
        "cells": cells,
        "kval": kval,
        "loops": loops,
        "repeats": repeats,
    }
    if thread_counts is not None:
        params["thread_counts"] = thread_counts
    request = BenchmarkInput(**params)

    return await asyncio.to_thread(run_benchmark, request)
