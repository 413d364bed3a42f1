#!/usr/bin/env python
"""
CLI runner for countercurrent distribution simulations.

Runs a column simulation (or the worker pool benchmark) directly, without
the MCP server, and prints the result as JSON on stdout. Logs go to stderr.

Examples:
    python cli_runner.py --subcolumns 10 --cells 100 --loops 100000 --threads 4
    python cli_runner.py --cells 3 --seed 0=1.0 --loops 1 --output-limit all
    python cli_runner.py --benchmark --thread-counts 1,2,4 --loops 1000

Exit code is 0 on success and 1 on any validation or engine error.
"""

import sys
import json
import argparse
import logging
import traceback
from pathlib import Path
from typing import Dict, List, Optional

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

from pydantic import ValidationError

from utils.ccd_defaults import (
    BENCHMARK_LOOPS,
    BENCHMARK_REPEATS,
    BENCHMARK_THREAD_COUNTS,
    DEFAULT_CELLS,
    DEFAULT_KVAL,
    DEFAULT_LOOPS,
    DEFAULT_OUTPUT_LIMIT,
    DEFAULT_SUBCOLUMNS,
    DEFAULT_THREADS,
)
from utils.errors import ColumnError

logger = logging.getLogger("ccd-cli")


def parse_seed(text: str) -> tuple:
    """Parse CELL=VALUE into (int, float)."""
    cell, sep, value = text.partition("=")
    if not sep:
        raise argparse.ArgumentTypeError(f"Seed must look like CELL=VALUE, got {text!r}")
    try:
        return int(cell), float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid seed {text!r}")


def parse_float_list(text: str) -> List[float]:
    try:
        return [float(item) for item in text.split(",") if item.strip()]
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected comma-separated numbers, got {text!r}")


def parse_int_list(text: str) -> List[int]:
    try:
        return [int(item) for item in text.split(",") if item.strip()]
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected comma-separated integers, got {text!r}")


def parse_output_limit(text: str) -> Optional[int]:
    if text.lower() == "all":
        return None
    try:
        return int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Output limit must be an integer or 'all', got {text!r}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Countercurrent distribution (partition chromatography) simulator'
    )
    parser.add_argument('--subcolumns', type=int, default=DEFAULT_SUBCOLUMNS,
                        help=f'Number of independent subcolumns (default: {DEFAULT_SUBCOLUMNS})')
    parser.add_argument('--cells', type=int, default=DEFAULT_CELLS,
                        help=f'Cells per subcolumn (default: {DEFAULT_CELLS})')
    parser.add_argument('--kval', type=float, default=DEFAULT_KVAL,
                        help=f'Partition coefficient for every subcolumn (default: {DEFAULT_KVAL})')
    parser.add_argument('--kvals', type=parse_float_list, default=None,
                        help='Comma-separated per-subcolumn partition coefficients (overrides --kval)')
    parser.add_argument('--seed', type=parse_seed, action='append', default=None, metavar='CELL=VALUE',
                        help='Initial upper-phase concentration of a cell; repeatable (default: 0=1.0)')
    parser.add_argument('--loops', type=int, default=None,
                        help=f'Shift-equilibrate steps per subcolumn (default: {DEFAULT_LOOPS}, '
                             f'{BENCHMARK_LOOPS} with --benchmark)')
    parser.add_argument('--threads', type=int, default=DEFAULT_THREADS,
                        help=f'Worker pool size (default: {DEFAULT_THREADS})')
    parser.add_argument('--output-limit', type=parse_output_limit, default=DEFAULT_OUTPUT_LIMIT,
                        help=f"Most-recent output values per subcolumn, or 'all' (default: {DEFAULT_OUTPUT_LIMIT})")
    parser.add_argument('--summary-only', action='store_true',
                        help='Omit output histories from the JSON result')
    parser.add_argument('--benchmark', action='store_true',
                        help='Time the iteration phase across --thread-counts instead of a single run')
    parser.add_argument('--thread-counts', type=parse_int_list, default=list(BENCHMARK_THREAD_COUNTS),
                        help='Comma-separated pool sizes for --benchmark (default: 1,2,3,4)')
    parser.add_argument('--repeats', type=int, default=BENCHMARK_REPEATS,
                        help=f'Timed runs per pool size for --benchmark (default: {BENCHMARK_REPEATS})')
    parser.add_argument('--log-level', default='WARNING',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Logging level on stderr (default: WARNING)')
    return parser


def run_single(args: argparse.Namespace) -> Dict:
    from tools.schemas import SimulationInput
    from tools.ccd_simulation import run_simulation

    params = {
        "subcolumn_count": args.subcolumns,
        "cells": args.cells,
        "kval": args.kval,
        "kvals": args.kvals,
        "loops": DEFAULT_LOOPS if args.loops is None else args.loops,
        "threads": args.threads,
        "output_limit": 0 if args.summary_only else args.output_limit,
    }
    if args.seed:
        params["seeds"] = dict(args.seed)

    result = run_simulation(SimulationInput(**params))
    data = result.model_dump(mode="json")
    if args.summary_only:
        for subcolumn in data["subcolumns"]:
            subcolumn.pop("output")
            subcolumn.pop("output_truncated")
    return data


def run_benchmark_cli(args: argparse.Namespace) -> Dict:
    from tools.schemas import BenchmarkInput
    from tools.benchmark import run_benchmark

    request = BenchmarkInput(
        thread_counts=args.thread_counts,
        subcolumn_count=args.subcolumns,
        cells=args.cells,
        kval=args.kval,
        loops=BENCHMARK_LOOPS if args.loops is None else args.loops,
        repeats=args.repeats,
    )
    return run_benchmark(request).model_dump(mode="json")


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stderr
    )

    try:
        if args.benchmark:
            result = run_benchmark_cli(args)
        else:
            result = run_single(args)
    except (ValidationError, ColumnError, ValueError) as e:
        logger.error(f"Simulation failed: {e}")
        error_result = {
            "status": "error",
            "message": f"Simulation failed: {e}",
            "traceback": traceback.format_exc()
        }
        print(json.dumps(error_result, indent=2))
        return 1

    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
