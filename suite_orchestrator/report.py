"""Turn outcomes into bug-report-ready messages and a suite-level summary."""

import logging
import textwrap
from collections import Counter
from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any

from pydantic import Field, computed_field

from suite_orchestrator.errors import ReportContractError
from suite_orchestrator.models.base import Model
from suite_orchestrator.models.coverage import CoverageGate, CoverageReport
from suite_orchestrator.models.result import STATUSES, Outcome, Status
from suite_orchestrator.models.run import Mode, RunConfig
from suite_orchestrator.models.unit import StructuralViolation

EXIT_OK = 0
EXIT_TEST_FAILURES = 1
EXIT_INFRASTRUCTURE = 2
EXIT_BUDGET_EXCEEDED = 3

STATUS_SYMBOLS: Mapping[Status, str] = {
    "passed": "✓",
    "failed": "✗",
    "errored": "!",
    "timed_out": "⏱",
    "skipped": "-",
}


class RunReport(Model):
    """Everything known about a finished run."""

    run_id: str
    mode: Mode
    started_at: datetime
    ended_at: datetime
    outcomes: Sequence[Outcome] = Field(default_factory=tuple)
    coverage: CoverageReport | None = None
    gate: CoverageGate | None = None
    violations: Sequence[StructuralViolation] = Field(default_factory=tuple)
    budget: float | None = None
    budget_exceeded: bool = False
    strict_coverage: bool = False

    @computed_field  # type: ignore[prop-decorator]
    @property
    def counts(self) -> dict[str, int]:
        counter = Counter(outcome.status for outcome in self.outcomes)
        return {status: counter.get(status, 0) for status in STATUSES}

    @computed_field  # type: ignore[prop-decorator]
    @property
    def duration(self) -> float:
        """Wall-clock duration of the run in seconds."""
        return (self.ended_at - self.started_at).total_seconds()

    @property
    def tests_failed(self) -> bool:
        return any(outcome.is_failing for outcome in self.outcomes)

    @property
    def coverage_failed(self) -> bool:
        return self.gate is not None and not self.gate.passed

    @computed_field  # type: ignore[prop-decorator]
    @property
    def exit_code(self) -> int:
        if self.budget_exceeded:
            return EXIT_BUDGET_EXCEEDED
        if self.tests_failed:
            return EXIT_TEST_FAILURES
        if self.strict_coverage and self.coverage_failed:
            return EXIT_INFRASTRUCTURE
        return EXIT_OK

    @computed_field  # type: ignore[prop-decorator]
    @property
    def failed(self) -> bool:
        return self.exit_code != EXIT_OK


def build(
    outcomes: Sequence[Outcome],
    coverage_report: CoverageReport | None,
    *,
    config: RunConfig,
    started_at: datetime,
    ended_at: datetime,
    gate: CoverageGate | None = None,
    violations: Sequence[StructuralViolation] = (),
    budget_exceeded: bool = False,
) -> RunReport:
    """Assemble the run report.

    Raises:
        ReportContractError: If a failing outcome lacks expected or actual

    """
    for outcome in outcomes:
        if outcome.is_failing:
            render_failure(outcome)

    return RunReport(
        run_id=config.run_id,
        mode=config.mode,
        started_at=started_at,
        ended_at=ended_at,
        outcomes=outcomes,
        coverage=coverage_report,
        gate=gate,
        violations=violations,
        budget=config.budget,
        budget_exceeded=budget_exceeded,
        strict_coverage=config.strict_coverage,
    )


def render_failure(outcome: Outcome) -> str:
    """Multi-line message for a failing outcome.

    Contains the unit name, what was checked, the expected and actual values
    and any attached context.
    """
    failure = outcome.failure
    if failure is None or not failure.expected.strip() or not failure.actual.strip():
        raise ReportContractError(
            f"{outcome.status} outcome for {outcome.unit} has no expected/actual values"
        )

    lines = [
        f"{outcome.status.upper()} {outcome.unit}: {failure.summary}",
        f"  expected: {failure.expected}",
        f"  actual:   {failure.actual}",
    ]
    if failure.context.strip():
        lines.append("  context:")
        lines.append(textwrap.indent(failure.context.rstrip(), "    "))
    return "\n".join(lines)


def render_summary(report: RunReport) -> Sequence[str]:
    """Suite-level summary lines."""
    counts = ", ".join(f"{status}={n}" for status, n in report.counts.items())
    lines = [f"{len(report.outcomes)} unit(s): {counts} in {report.duration:.2f}s"]

    if report.coverage is not None:
        lines.append(
            f"Coverage: lines {report.coverage.line_ratio:.1%}, "
            f"branches {report.coverage.branch_ratio:.1%}"
        )
    if report.gate is not None:
        state = "passed" if report.gate.passed else "FAILED"
        strict = " (strict)" if report.strict_coverage else ""
        lines.append(
            f"Coverage gate {state}{strict}: minimum {report.gate.minimum:.0%}, "
            f"target {report.gate.target:.0%}"
        )
        if report.gate.below_minimum:
            lines.append(f"  Modules below minimum: {', '.join(report.gate.below_minimum)}")
    for violation in report.violations:
        unit = f" [{violation.unit}]" if violation.unit else ""
        lines.append(f"Structural violation{unit}: {violation.path}: {violation.message}")
    if report.budget_exceeded:
        lines.append(f"Run budget of {report.budget}s exceeded")
    lines.append(f"Run {'FAILED' if report.failed else 'passed'} (exit code {report.exit_code})")
    return lines


def log_results_summary(log: logging.Logger, report: RunReport) -> None:
    """Log one line per unit, every failure in full, then the summary."""
    log.info("=" * 80)
    log.info("Run %s (%s) results:", report.run_id, report.mode)
    log.info("=" * 80)

    for outcome in report.outcomes:
        symbol = STATUS_SYMBOLS.get(outcome.status, "?")
        log.info("%s %s: %s (%.2fs)", symbol, outcome.unit, outcome.status, outcome.duration)
        if outcome.skip_reason:
            log.info("  Skipped: %s", outcome.skip_reason)
        if outcome.result and report.mode == "standalone":
            log.info("  Result: %s", outcome.result)

    failing = [outcome for outcome in report.outcomes if outcome.is_failing]
    if failing:
        log.info("-" * 80)
        for outcome in failing:
            log.error("%s", render_failure(outcome))

    log.info("-" * 80)
    for line in render_summary(report):
        log.info("%s", line)


def format_output(report: RunReport) -> dict[str, Any]:
    """Machine-readable run report for stdout."""
    results: list[dict[str, Any]] = [
        {
            "unit": outcome.unit,
            "status": outcome.status,
            "duration": outcome.duration,
            "failure": outcome.failure.to_json_dict() if outcome.failure else None,
            "message": render_failure(outcome) if outcome.is_failing else None,
            "skip_reason": outcome.skip_reason,
            "result": outcome.result,
        }
        for outcome in report.outcomes
    ]

    return {
        "run_id": report.run_id,
        "mode": report.mode,
        "started_at": report.started_at.isoformat(),
        "ended_at": report.ended_at.isoformat(),
        "duration": report.duration,
        "total": len(results),
        "passed": report.counts["passed"],
        "failed": report.counts["failed"],
        "errors": report.counts["errored"],
        "timeouts": report.counts["timed_out"],
        "skipped": report.counts["skipped"],
        "coverage": (
            {
                "line_ratio": report.coverage.line_ratio,
                "branch_ratio": report.coverage.branch_ratio,
            }
            if report.coverage
            else None
        ),
        "gate": report.gate.to_json_dict() if report.gate else None,
        "violations": [v.to_json_dict() for v in report.violations],
        "budget_exceeded": report.budget_exceeded,
        "exit_code": report.exit_code,
        "results": results,
    }
