"""Merge per-unit coverage samples into one run-level report."""

import json
import logging
from collections import defaultdict
from collections.abc import Iterable
from pathlib import Path

from suite_orchestrator.models.coverage import (
    CoverageGate,
    CoverageReport,
    CoverageSample,
    FileCoverage,
    ModuleCoverage,
)

log = logging.getLogger(__name__)

DEFAULT_MINIMUM = 0.80
DEFAULT_TARGET = 0.90


def merge_samples(samples: Iterable[CoverageSample]) -> CoverageSample:
    """Union of all samples, keeping the max hit count per region.

    Max and logical-or are both commutative and associative, so the result
    does not depend on the order workers finished in.
    """
    lines: defaultdict[str, dict[int, int]] = defaultdict(dict)
    branches: defaultdict[str, dict[str, bool]] = defaultdict(dict)

    for sample in samples:
        for path, file in sample.files.items():
            file_lines = lines[path]
            for line, hits in file.lines.items():
                file_lines[line] = max(file_lines.get(line, 0), hits)
            file_branches = branches[path]
            for arc, hit in file.branches.items():
                file_branches[arc] = file_branches.get(arc, False) or hit

    return CoverageSample(
        files={
            path: FileCoverage(
                lines=dict(sorted(lines[path].items())),
                branches=dict(sorted(branches[path].items())),
            )
            for path in sorted(lines)
        }
    )


def build_report(sample: CoverageSample) -> CoverageReport:
    return CoverageReport(
        modules=[
            ModuleCoverage(
                path=path,
                lines_hit=sum(1 for hits in file.lines.values() if hits > 0),
                lines_total=len(file.lines),
                branches_hit=sum(1 for hit in file.branches.values() if hit),
                branches_total=len(file.branches),
            )
            for path, file in sorted(sample.files.items())
        ]
    )


def merge(samples: Iterable[CoverageSample]) -> CoverageReport:
    """Merge coverage samples into a report."""
    report = build_report(merge_samples(samples))
    log.info(
        "Merged coverage: lines=%.1f%% branches=%.1f%% across %d module(s)",
        report.line_ratio * 100,
        report.branch_ratio * 100,
        len(report.modules),
    )
    return report


def check_gate(
    report: CoverageReport,
    minimum: float = DEFAULT_MINIMUM,
    target: float = DEFAULT_TARGET,
) -> CoverageGate:
    """Compare the merged branch ratios against the gate thresholds.

    Both the run total and every module that has branches must reach
    ``minimum``; ``target`` is only reported.
    """
    gate = CoverageGate(
        minimum=minimum,
        target=target,
        branch_ratio=report.branch_ratio,
        below_minimum=[
            module.path
            for module in report.modules
            if module.branches_total and module.branch_ratio < minimum
        ],
    )
    if not gate.passed:
        log.warning(
            "Coverage gate failed: branches %.1f%% (minimum %.1f%%), "
            "modules below minimum: %s",
            gate.branch_ratio * 100,
            minimum * 100,
            ", ".join(gate.below_minimum) or "none",
        )
    elif not gate.meets_target:
        log.info(
            "Coverage below target: branches %.1f%% < target %.1f%%",
            gate.branch_ratio * 100,
            target * 100,
        )
    return gate


def render_summary(report: CoverageReport, gate: CoverageGate | None) -> str:
    """Plain-text table of the report, one row per module."""
    width = max([len("TOTAL"), *(len(m.path) for m in report.modules)])
    rows = [
        f"{'Module':<{width}}  {'Lines':>12}  {'Branches':>12}  {'Line%':>6}  {'Br%':>6}",
        "-" * (width + 46),
    ]
    for module in report.modules:
        rows.append(
            f"{module.path:<{width}}  "
            f"{f'{module.lines_hit}/{module.lines_total}':>12}  "
            f"{f'{module.branches_hit}/{module.branches_total}':>12}  "
            f"{module.line_ratio:>6.1%}  {module.branch_ratio:>6.1%}"
        )
    rows.append("-" * (width + 46))
    rows.append(
        f"{'TOTAL':<{width}}  {'':>12}  {'':>12}  "
        f"{report.line_ratio:>6.1%}  {report.branch_ratio:>6.1%}"
    )
    if gate is not None:
        state = "passed" if gate.passed else "FAILED"
        rows.append(
            f"Gate {state}: branches {gate.branch_ratio:.1%} "
            f"(minimum {gate.minimum:.0%}, target {gate.target:.0%})"
        )
        rows.extend(f"  below minimum: {path}" for path in gate.below_minimum)
    return "\n".join(rows) + "\n"


def write_report(
    report: CoverageReport, gate: CoverageGate | None, path: Path
) -> Path:
    """Write the machine-readable report and a rendered summary beside it.

    Returns:
        Path of the JSON report (the summary uses the ``.txt`` suffix)

    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "report": report.to_json_dict(),
        "gate": gate.to_json_dict() if gate else None,
    }
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    path.with_suffix(".txt").write_text(render_summary(report, gate), encoding="utf-8")
    log.info("Coverage report written to %s", path)
    return path
