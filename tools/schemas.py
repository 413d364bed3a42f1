"""
Pydantic Schemas for Countercurrent Distribution Tools

Defines input and output models for the column simulation and benchmark
tools. Defaults come from utils/ccd_defaults.py.

Reference:
- Craig, L.C. & Post, O. (1949). "Apparatus for countercurrent distribution."
  Anal. Chem. 21, 500-504
"""

from typing import Annotated, Dict, List, Optional
from pydantic import (
    BaseModel,
    Field,
    NonNegativeInt,
    PositiveInt,
    field_validator,
    model_validator,
)

from utils.ccd_defaults import (
    BENCHMARK_LOOPS,
    BENCHMARK_REPEATS,
    BENCHMARK_THREAD_COUNTS,
    DEFAULT_CELLS,
    DEFAULT_KVAL,
    DEFAULT_LOOPS,
    DEFAULT_OUTPUT_LIMIT,
    DEFAULT_SEEDS,
    DEFAULT_SUBCOLUMNS,
    DEFAULT_THREADS,
)


# Infinite or NaN values would poison the cell state with NaN
FinitePositiveFloat = Annotated[float, Field(gt=0, allow_inf_nan=False)]
FiniteNonNegativeFloat = Annotated[float, Field(ge=0, allow_inf_nan=False)]


class SimulationInput(BaseModel):
    """
    Input parameters for a countercurrent distribution run.

    Concentrations are dimensionless (any consistent unit). Every subcolumn
    gets the same cell count and the same initial loading.
    """

    subcolumn_count: PositiveInt = Field(
        default=DEFAULT_SUBCOLUMNS,
        description="Number of independent trains in the column",
        examples=[1, 10, 64]
    )

    cells: PositiveInt = Field(
        default=DEFAULT_CELLS,
        description="Cells per subcolumn (train length)",
        examples=[3, 100, 500]
    )

    kval: FinitePositiveFloat = Field(
        default=DEFAULT_KVAL,
        description="Partition coefficient K = C_upper / C_lower, used for every "
        "subcolumn unless kvals is given",
        examples=[0.5, 1.0, 4.0]
    )

    kvals: Optional[List[FinitePositiveFloat]] = Field(
        default=None,
        description="Per-subcolumn partition coefficients (length must equal "
        "subcolumn_count). Overrides kval.",
        examples=[[0.25, 1.0, 4.0]]
    )

    seeds: Dict[NonNegativeInt, FiniteNonNegativeFloat] = Field(
        default_factory=lambda: dict(DEFAULT_SEEDS),
        description="Initial upper-phase loading applied to every subcolumn "
        "before the first equilibration: {cell index: concentration}",
        examples=[{0: 1.0}, {0: 0.5, 1: 0.5}]
    )

    loops: NonNegativeInt = Field(
        default=DEFAULT_LOOPS,
        description="Shift-equilibrate steps per subcolumn",
        examples=[100, 1000, 100000]
    )

    threads: PositiveInt = Field(
        default=DEFAULT_THREADS,
        description="Worker pool size for the iteration phase. "
        "Does not affect results, only wall-clock time.",
        examples=[1, 2, 4]
    )

    output_limit: Optional[NonNegativeInt] = Field(
        default=DEFAULT_OUTPUT_LIMIT,
        description="Most-recent output values returned per subcolumn. "
        "None returns the full history.",
        examples=[0, 100, None]
    )

    @model_validator(mode="after")
    def check_column_shape(self):
        if self.kvals is not None and len(self.kvals) != self.subcolumn_count:
            raise ValueError(
                f"kvals has {len(self.kvals)} entries but subcolumn_count is "
                f"{self.subcolumn_count}"
            )
        out_of_range = sorted(index for index in self.seeds if index >= self.cells)
        if out_of_range:
            raise ValueError(
                f"Seed cell indices {out_of_range} do not exist in a {self.cells}-cell subcolumn"
            )
        return self

    def subcolumn_kvals(self) -> List[float]:
        """Resolved partition coefficient of each subcolumn."""
        if self.kvals is not None:
            return list(self.kvals)
        return [self.kval] * self.subcolumn_count

    @property
    def work_units(self) -> int:
        """Cell-steps in the iteration phase (subcolumns x cells x loops)."""
        return self.subcolumn_count * self.cells * self.loops

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "subcolumn_count": 10,
                    "cells": 100,
                    "kval": 1.0,
                    "seeds": {"0": 1.0},
                    "loops": 100000,
                    "threads": 4,
                    "output_limit": 1000
                }
            ]
        }
    }


class SubcolumnResult(BaseModel):
    """Final state summary and eluate history of one subcolumn."""

    index: int = Field(description="Position of the subcolumn in the column")
    kval: float = Field(description="Partition coefficient")
    cells: int = Field(description="Cell count")
    steps: int = Field(description="Shift-and-collect steps performed")

    initial_mass: float = Field(description="Solute loaded before the run")
    eluted_mass: float = Field(description="Solute collected in the output")
    retained_mass: float = Field(description="Solute still held in the train")
    mass_balance_error: float = Field(
        description="initial_mass - eluted_mass - retained_mass (round-off only)"
    )

    peak_step: Optional[int] = Field(
        default=None,
        description="1-based step at which the largest output value was collected "
        "(None if no steps ran)"
    )
    peak_value: Optional[float] = Field(
        default=None,
        description="Largest collected output value"
    )

    output: List[float] = Field(
        description="Collected eluate, most recent first"
    )
    output_truncated: bool = Field(
        default=False,
        description="True when output holds only the most recent output_limit values"
    )


class SimulationResult(BaseModel):
    """Result of a countercurrent distribution run."""

    request: SimulationInput = Field(description="Validated run parameters")
    subcolumns: List[SubcolumnResult] = Field(description="Per-subcolumn results")
    elapsed_seconds: float = Field(description="Wall-clock time of the iteration phase")
    total_seconds: float = Field(description="Wall-clock time including column setup")


class BenchmarkInput(BaseModel):
    """Input for timing the iteration phase across worker pool sizes."""

    thread_counts: List[PositiveInt] = Field(
        default_factory=lambda: list(BENCHMARK_THREAD_COUNTS),
        min_length=1,
        description="Worker pool sizes to time"
    )
    subcolumn_count: PositiveInt = Field(default=DEFAULT_SUBCOLUMNS)
    cells: PositiveInt = Field(default=DEFAULT_CELLS)
    kval: FinitePositiveFloat = Field(default=DEFAULT_KVAL)
    loops: NonNegativeInt = Field(default=BENCHMARK_LOOPS)
    repeats: PositiveInt = Field(
        default=BENCHMARK_REPEATS,
        description="Timed repetitions per thread count (best is reported)"
    )

    @field_validator("thread_counts")
    @classmethod
    def unique_thread_counts(cls, value: List[int]) -> List[int]:
        if len(set(value)) != len(value):
            raise ValueError(f"thread_counts contains duplicates: {value}")
        return value


class BenchmarkTiming(BaseModel):
    threads: int
    best_seconds: float
    mean_seconds: float
    speedup: float = Field(description="Best time of the first thread count / this best time")


class BenchmarkResult(BaseModel):
    request: BenchmarkInput
    timings: List[BenchmarkTiming]
    deterministic: bool = Field(
        description="True when every thread count produced bit-identical outputs"
    )
