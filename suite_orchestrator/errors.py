"""Exceptions raised by the harness itself."""

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from suite_orchestrator.models.unit import StructuralViolation


class HarnessError(Exception):
    """Base class for failures of the harness rather than of a unit."""


class RunRequestError(HarnessError):
    """Raised when the requested run cannot be resolved into units."""


class NoSuchUnitError(RunRequestError):
    """Raised when a requested unit name is not in the catalog."""

    def __init__(self, names: Sequence[str], available: Sequence[str]) -> None:
        self.names = tuple(names)
        self.available = tuple(available)
        super().__init__(
            f"No such unit: {', '.join(self.names)}. "
            f"Available units: {list(self.available)}"
        )


class StructuralViolationError(HarnessError):
    """Raised by strict discovery when the catalog is inconsistent."""

    def __init__(self, violations: "Sequence[StructuralViolation]") -> None:
        self.violations = tuple(violations)
        details = "; ".join(f"{v.path}: {v.message}" for v in self.violations)
        super().__init__(f"{len(self.violations)} structural violation(s): {details}")


class SettingsError(HarnessError):
    """Raised when the settings file cannot be loaded or validated."""


class ReportContractError(HarnessError):
    """Raised when a failing outcome cannot be rendered with expected/actual."""
