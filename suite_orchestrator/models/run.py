"""Models describing one run of the harness."""

from collections.abc import Sequence
from pathlib import Path
from typing import Literal, TypeAlias

from pydantic import Field, PositiveInt

from suite_orchestrator.models.base import Model
from suite_orchestrator.models.unit import TestUnit

Mode: TypeAlias = Literal["standalone", "discovery", "automated"]

MODES: tuple[Mode, ...] = ("standalone", "discovery", "automated")


class RunConfig(Model):
    """Fully resolved configuration of a run, fixed before any unit executes."""

    run_id: str = Field(..., description="Unique identifier of the run")
    mode: Mode
    workers: PositiveInt = 1
    verbose: bool = False
    do_plot: bool = False
    unit_timeout: float | None = Field(
        default=300.0, description="Default per-unit timeout in seconds"
    )
    grace_period: float = Field(
        default=5.0, description="Seconds a running unit gets after cancellation"
    )
    budget: float | None = Field(
        default=None, description="Wall-clock budget for the whole run (automated)"
    )
    strict_coverage: bool = False
    coverage_source: Sequence[str] = Field(default_factory=tuple)
    coverage_minimum: float = 0.80
    coverage_target: float = 0.90
    artifact_dir: Path = Path(".suite/artifacts")
    plot_backend: str | None = None
    start_method: Literal["spawn", "forkserver", "fork"] = "spawn"
    overrides: dict[str, object] = Field(
        default_factory=dict, description="Unit parameter overrides"
    )


class RunPlan(Model):
    """A resolved run configuration and the units it will execute."""

    config: RunConfig
    units: Sequence[TestUnit]
