"""
Countercurrent Distribution Simulator MCP Server.

This server provides countercurrent distribution (partition chromatography)
simulation tools:
- Column simulation: independent subcolumns shifted and re-equilibrated on a
  worker pool, with per-subcolumn elution profiles and mass balance
- Worker pool benchmark: iteration-phase timing across pool sizes with a
  determinism check
- Background jobs for runs too long for a single MCP request
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from utils.ccd_defaults import (
    BENCHMARK_LOOPS,
    BENCHMARK_REPEATS,
    DEFAULT_CELLS,
    DEFAULT_KVAL,
    DEFAULT_LOOPS,
    DEFAULT_OUTPUT_LIMIT,
    DEFAULT_SUBCOLUMNS,
    DEFAULT_THREADS,
    INLINE_WORK_LIMIT,
)
from utils.job_manager import JobManager

# Configure logging - stderr only, stdout carries MCP JSON-RPC
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stderr)]
)
logger = logging.getLogger("ccd-simulator-mcp")

# Initialize the MCP server
mcp = FastMCP("countercurrent-distribution-simulator")

from tools.schemas import SimulationInput
from tools.ccd_simulation import run_simulation
from tools.benchmark import benchmark_threads

PROJECT_ROOT = Path(__file__).parent
JOB_RUNNER = PROJECT_ROOT / "utils" / "ccd_cli.py"


async def simulate_column_mcp(
    subcolumn_count: int = DEFAULT_SUBCOLUMNS,
    cells: int = DEFAULT_CELLS,
    kval: float = DEFAULT_KVAL,
    kvals: List[float] = None,
    seeds: Dict[int, float] = None,
    loops: int = DEFAULT_LOOPS,
    threads: int = DEFAULT_THREADS,
    output_limit: Optional[int] = DEFAULT_OUTPUT_LIMIT,
    run_in_background: bool = None
) -> dict:
    """
    Simulate a countercurrent distribution column.

    Every subcolumn is grown to `cells` cells, seeded with `seeds` in the
    upper phase, equilibrated, then shifted and re-equilibrated `loops` times.
    Each step collects the tail cell's upper phase as eluate.

    Small runs execute inline. Runs above the inline work limit
    (subcolumns x cells x loops) start a background job; poll it with
    get_job_status() and fetch it with get_job_results().

    Args:
        subcolumn_count: Number of independent subcolumns (default: 10)
        cells: Cells per subcolumn (default: 100)
        kval: Partition coefficient C_upper/C_lower (default: 1.0)
        kvals: Optional per-subcolumn partition coefficients
        seeds: Initial upper-phase loading {cell: concentration} (default: {0: 1.0})
        loops: Shift-equilibrate steps per subcolumn (default: 100000)
        threads: Worker pool size (default: 4)
        output_limit: Most-recent output values returned per subcolumn
        run_in_background: Force (True) or forbid (False) a background job.
            Default decides from the work size.

    Returns:
        Simulation result dict, or a job status dict with job_id
    """
    params = {
        "subcolumn_count": subcolumn_count,
        "cells": cells,
        "kval": kval,
        "kvals": kvals,
        "seeds": seeds,
        "loops": loops,
        "threads": threads,
        "output_limit": output_limit,
    }
    params = {k: v for k, v in params.items() if v is not None or k == "output_limit"}
    request = SimulationInput(**params)

    background = run_in_background
    if background is None:
        background = request.work_units > INLINE_WORK_LIMIT

    if not background:
        result = await asyncio.to_thread(run_simulation, request)
        return result.model_dump(mode="json")

    manager = JobManager()
    job_id, job_dir = manager.new_job_dir()
    with open(job_dir / "params.json", "w") as f:
        f.write(request.model_dump_json(indent=2))

    cmd = [sys.executable, str(JOB_RUNNER), "--job-dir", str(job_dir.absolute())]
    job = await manager.execute(cmd=cmd, cwd=str(PROJECT_ROOT), job_id=job_id)
    logger.info(f"Started background simulation job: {job_id}")

    return {
        "status": "job_started",
        "job_id": job_id,
        "job_status": job["status"],
        "work_units": request.work_units,
        "message": "Column simulation job started. Use get_job_status(job_id) to check progress."
    }


async def benchmark_threads_mcp(
    thread_counts: List[int] = None,
    subcolumn_count: int = DEFAULT_SUBCOLUMNS,
    cells: int = DEFAULT_CELLS,
    kval: float = DEFAULT_KVAL,
    loops: int = BENCHMARK_LOOPS,
    repeats: int = BENCHMARK_REPEATS
) -> dict:
    """
    Time the iteration phase for several worker pool sizes.

    Also reports whether every pool size produced bit-identical outputs,
    which must hold because subcolumns share no state.
    """
    result = await benchmark_threads(
        thread_counts=thread_counts,
        subcolumn_count=subcolumn_count,
        cells=cells,
        kval=kval,
        loops=loops,
        repeats=repeats
    )
    return result.model_dump(mode="json")


mcp.tool()(simulate_column_mcp)
mcp.tool()(benchmark_threads_mcp)


# =============================================================================
# Job Management Tools
# =============================================================================

async def get_job_status(job_id: str) -> dict:
    """
    Get the current status of a background simulation job.

    Returns:
        Dict with job_id, status (queued/running/completed/failed/terminated),
        elapsed_time_seconds, and subcolumn progress if available.
    """
    return await JobManager().get_status(job_id)


async def get_job_results(job_id: str) -> dict:
    """Get the simulation result of a completed background job."""
    return await JobManager().get_results(job_id)


async def list_jobs(status_filter: str = None, limit: int = 20) -> dict:
    """List background jobs, most recent first."""
    return await JobManager().list_jobs(status_filter, limit)


async def terminate_job(job_id: str) -> dict:
    """Terminate a queued or running background job."""
    return await JobManager().terminate_job(job_id)


async def wait_for_job(
    job_id: str,
    timeout_seconds: int = 300,
    poll_interval_seconds: float = 2.0
) -> dict:
    """
    Wait for a background job to finish.

    Polls get_job_status until the job completes, fails, is terminated or the
    timeout is reached.
    """
    import time as time_module

    manager = JobManager()
    start = time_module.time()

    while time_module.time() - start < timeout_seconds:
        status = await manager.get_status(job_id)

        if "error" in status and "status" not in status:
            return status
        if status["status"] == "completed":
            return await manager.get_results(job_id)
        if status["status"] in ("failed", "terminated"):
            return status

        await asyncio.sleep(poll_interval_seconds)

    return {
        "job_id": job_id,
        "status": "timeout",
        "error": f"Job did not complete within {timeout_seconds} seconds",
        "last_progress": (await manager.get_status(job_id)).get("progress")
    }


mcp.tool()(get_job_status)
mcp.tool()(get_job_results)
mcp.tool()(list_jobs)
mcp.tool()(terminate_job)
mcp.tool()(wait_for_job)


if __name__ == "__main__":
    logger.info("Starting Countercurrent Distribution Simulator MCP server...")
    logger.info(f"Defaults: {DEFAULT_SUBCOLUMNS} subcolumns x {DEFAULT_CELLS} cells, "
                f"K={DEFAULT_KVAL}, {DEFAULT_LOOPS} loops, {DEFAULT_THREADS} threads")
    logger.info(f"Inline work limit: {INLINE_WORK_LIMIT} cell-steps")
    logger.info(f"Background job runner: {JOB_RUNNER}")

    mcp.run()
