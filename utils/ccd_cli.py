#!/usr/bin/env python
"""
CLI runner for background column simulations.

This provides a subprocess entry point for the JobManager pattern.

Usage:
    python utils/ccd_cli.py --job-dir jobs/abc123

The job directory should contain:
    - params.json: SimulationInput fields

Outputs:
    - progress.json: Subcolumns finished so far
    - ccd_results.json: SimulationResult, or an error object
    - stdout.log / stderr.log (captured by JobManager)
"""

import sys
import json
import argparse
import logging
import threading
import time
import traceback
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def write_progress(job_dir: Path, stage: str, current: int, total: int):
    """
    Write progress for JobManager to monitor.

    Args:
        job_dir: Job directory path
        stage: Description of current stage
        current: Subcolumns finished
        total: Subcolumns in the column
    """
    progress_file = job_dir / "progress.json"
    try:
        with open(progress_file, 'w') as f:
            json.dump({
                "stage": stage,
                "current": current,
                "total": total,
                "timestamp": time.time()
            }, f)
    except OSError as e:
        logger.warning(f"Failed to write progress: {e}")


def run_job(job_dir: Path) -> int:
    """
    Run the simulation described by params.json.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    from pydantic import ValidationError
    from tools.schemas import SimulationInput
    from tools.ccd_simulation import run_simulation
    from utils.errors import ColumnError

    params_file = job_dir / "params.json"
    output_file = job_dir / "ccd_results.json"

    if not params_file.exists():
        logger.error(f"params.json not found in {job_dir}")
        return 1

    try:
        with open(params_file) as f:
            request = SimulationInput(**json.load(f))

        total = request.subcolumn_count
        write_progress(job_dir, "Iterating", 0, total)

        finished = []
        lock = threading.Lock()

        def on_subcolumn_done(index: int):
            with lock:
                finished.append(index)
                write_progress(job_dir, f"Subcolumn {index} finished", len(finished), total)

        result = run_simulation(request, on_subcolumn_done=on_subcolumn_done)

        with open(output_file, 'w') as f:
            f.write(result.model_dump_json(indent=2))

        write_progress(job_dir, "Complete", total, total)
        logger.info(f"Simulation complete in {result.elapsed_seconds:.2f} s")
        return 0

    except (ValidationError, ColumnError, ValueError, OSError, json.JSONDecodeError) as e:
        logger.error(f"Simulation failed: {e}")
        error_result = {
            "status": "error",
            "message": f"Simulation failed: {e}",
            "traceback": traceback.format_exc()
        }
        with open(output_file, 'w') as f:
            json.dump(error_result, f, indent=2)
        return 1


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description='Countercurrent distribution background job runner'
    )
    parser.add_argument(
        '--job-dir',
        required=True,
        help='Job directory containing params.json'
    )

    args = parser.parse_args()
    job_dir = Path(args.job_dir)

    if not job_dir.exists():
        logger.error(f"Job directory does not exist: {job_dir}")
        return 1

    return run_job(job_dir)


if __name__ == "__main__":
    sys.exit(main())
