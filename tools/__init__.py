"""
Tools package for ccd-simulator-mcp.

Contains MCP tool implementations for FastMCP server.
"""

from .ccd_simulation import countercurrent_simulation, run_simulation
from .benchmark import benchmark_threads

__all__ = ["countercurrent_simulation", "run_simulation", "benchmark_threads"]
