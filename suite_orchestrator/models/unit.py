"""Models for test units discovered from unit files."""

from collections.abc import Sequence
from pathlib import Path

from pydantic import Field

from suite_orchestrator.models.base import Model

UNIT_PREFIX = "test_"


class Parameter(Model):
    """A parameter declared by a unit callable.

    The default is kept as its ``repr`` so unit records always cross process
    boundaries; workers call the real callable and get the real default.
    """

    name: str = Field(..., description="Parameter name")
    default: str | None = Field(
        default=None, description="repr of the default value, None if absent"
    )
    required: bool = Field(
        default=False, description="True when the callable declares no default"
    )


class TestUnit(Model):
    """One discoverable, independently executable piece of test logic."""

    __test__ = False

    name: str = Field(..., description="Unit name, starts with the test_ prefix")
    topic: str = Field(..., description="Name of the declaring group")
    path: Path = Field(..., description="Source file declaring the unit")
    module: str = Field(..., description="Module name the source file is loaded as")
    timeout: float | None = Field(
        default=None, description="Per-unit timeout in seconds (None uses run default)"
    )
    skip_reason: str | None = Field(
        default=None, description="Set when the unit is declared skipped"
    )
    tags: Sequence[str] = Field(default_factory=tuple, description="Free-form tags")
    parameters: Sequence[Parameter] = Field(
        default_factory=tuple, description="Declared parameters in signature order"
    )
    description: str = Field(default="", description="One-line summary of the check")

    @property
    def all_tags(self) -> frozenset[str]:
        """Declared tags plus the topic, which always acts as a tag."""
        return frozenset((*self.tags, self.topic))

    @property
    def summary(self) -> str:
        """What the unit checks, falling back to its name."""
        return self.description or self.name.removeprefix(UNIT_PREFIX).replace(
            "_", " "
        )


class StructuralViolation(Model):
    """A naming or metadata inconsistency found during discovery."""

    path: Path = Field(..., description="File the violation was found in")
    unit: str | None = Field(default=None, description="Offending unit, if any")
    message: str = Field(..., description="Human-readable description")
