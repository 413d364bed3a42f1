"""
Default run parameters for countercurrent distribution simulations.

These values reproduce the reference run: ten independent subcolumns of one
hundred cells, partition coefficient 1.0, unit solute loaded into the upper
phase of the leading cell, 100000 shift-equilibrate steps on four workers.

Every outer surface (pydantic schemas, CLI flags, MCP tools, job runner)
takes its defaults from here.
"""

from typing import Dict, Tuple


# Column geometry
DEFAULT_SUBCOLUMNS = 10
DEFAULT_CELLS = 100

# Partition coefficient K = C_upper / C_lower at equilibrium
DEFAULT_KVAL = 1.0

# Initial upper-phase loading: {cell index: concentration}
DEFAULT_SEEDS: Dict[int, float] = {0: 1.0}

# Iteration phase
DEFAULT_LOOPS = 100000
DEFAULT_THREADS = 4

# Benchmark matrix (10 subcolumns x 100 cells, 1000 loops, 1-4 workers)
BENCHMARK_LOOPS = 1000
BENCHMARK_THREAD_COUNTS: Tuple[int, ...] = (1, 2, 3, 4)
BENCHMARK_REPEATS = 1

# Runs above this many cell-steps (subcolumns x cells x loops) are sent to a
# background job by the MCP server instead of running inline.
INLINE_WORK_LIMIT = 5_000_000

# Output values returned per subcolumn when the caller does not choose;
# a 100000-step run would otherwise return 100000 floats per subcolumn.
DEFAULT_OUTPUT_LIMIT = 1000

# Initial capacity of a subcolumn's cell buffer (doubles on demand)
INITIAL_CELL_CAPACITY = 16
