"""Models for per-worker coverage samples and the merged run report."""

from collections.abc import Mapping, Sequence

from pydantic import Field, computed_field

from suite_orchestrator.models.base import Model


def ratio(hit: int, total: int) -> float:
    """Hit ratio, 1.0 when there is nothing to hit."""
    return hit / total if total else 1.0


class FileCoverage(Model):
    """Coverage of one source file.

    Branch keys are ``"<from>-><to>"`` arcs as reported by coverage.py.
    """

    lines: Mapping[int, int] = Field(
        default_factory=dict, description="Line number to hit count"
    )
    branches: Mapping[str, bool] = Field(
        default_factory=dict, description="Branch arc to hit flag"
    )


class CoverageSample(Model):
    """Which regions executed while a worker ran one unit."""

    files: Mapping[str, FileCoverage] = Field(default_factory=dict)

    def regions(self) -> Mapping[str, int]:
        """Region id to hit count, branch flags counted as 0/1."""
        regions: dict[str, int] = {}
        for path, file in self.files.items():
            for line, hits in file.lines.items():
                regions[f"{path}:{line}"] = hits
            for arc, hit in file.branches.items():
                regions[f"{path}:{arc}"] = int(hit)
        return regions


class ModuleCoverage(Model):
    """Coverage breakdown for one module of the merged report."""

    path: str
    lines_hit: int
    lines_total: int
    branches_hit: int
    branches_total: int

    @computed_field  # type: ignore[prop-decorator]
    @property
    def line_ratio(self) -> float:
        return ratio(self.lines_hit, self.lines_total)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def branch_ratio(self) -> float:
        return ratio(self.branches_hit, self.branches_total)


class CoverageReport(Model):
    """Run-level merge of all coverage samples."""

    modules: Sequence[ModuleCoverage] = Field(default_factory=tuple)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def line_ratio(self) -> float:
        return ratio(
            sum(m.lines_hit for m in self.modules),
            sum(m.lines_total for m in self.modules),
        )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def branch_ratio(self) -> float:
        return ratio(
            sum(m.branches_hit for m in self.modules),
            sum(m.branches_total for m in self.modules),
        )


class CoverageGate(Model):
    """Outcome of checking the merged branch ratios against thresholds.

    The gate fails when the total branch ratio or any single module with
    branches falls below the minimum.
    """

    minimum: float
    target: float
    branch_ratio: float
    below_minimum: Sequence[str] = Field(
        default_factory=tuple, description="Modules whose branch ratio is under minimum"
    )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def passed(self) -> bool:
        return self.branch_ratio >= self.minimum and not self.below_minimum

    @computed_field  # type: ignore[prop-decorator]
    @property
    def meets_target(self) -> bool:
        return self.branch_ratio >= self.target
