"""Models for unit execution outcomes."""

from typing import Literal, Self, TypeAlias

from pydantic import Field, model_validator

from suite_orchestrator.models.base import Model
from suite_orchestrator.models.coverage import CoverageSample

Status: TypeAlias = Literal["passed", "failed", "skipped", "errored", "timed_out"]

STATUSES: tuple[Status, ...] = ("passed", "failed", "skipped", "errored", "timed_out")
FAILING_STATUSES: frozenset[Status] = frozenset({"failed", "errored", "timed_out"})


class FailureDetail(Model):
    """Everything a bug report needs about a failing unit."""

    summary: str = Field(..., description="One line describing what was checked")
    expected: str = Field(..., description="Expected value or behaviour")
    actual: str = Field(..., description="Observed value or behaviour")
    context: str = Field(default="", description="Free-form context, e.g. traceback")


class Outcome(Model):
    """Result of executing one unit within a run.

    Contains the execution result only; the unit record itself stays in the
    catalog.
    """

    unit: str
    status: Status
    duration: float = 0.0
    failure: FailureDetail | None = None
    skip_reason: str | None = None
    result: str | None = Field(
        default=None, description="Truncated repr of the object the unit returned"
    )
    coverage: CoverageSample | None = Field(default=None, repr=False)

    @model_validator(mode="after")
    def _require_failure_detail(self) -> Self:
        if self.status in FAILING_STATUSES and self.failure is None:
            raise ValueError(f"{self.status} outcome for {self.unit} needs detail")
        return self

    @property
    def is_failing(self) -> bool:
        return self.status in FAILING_STATUSES
