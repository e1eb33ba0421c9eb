"""Tests for coverage merging and gating."""

import itertools
import json
import logging
from pathlib import Path

import pytest

from suite_orchestrator.coverage_aggregator import (
    check_gate,
    merge,
    merge_samples,
    render_summary,
    write_report,
)
from suite_orchestrator.models.coverage import CoverageSample, FileCoverage


def sample(
    path: str = "pkg/mod.py",
    lines: dict[int, int] | None = None,
    branches: dict[str, bool] | None = None,
) -> CoverageSample:
    return CoverageSample(
        files={path: FileCoverage(lines=lines or {}, branches=branches or {})}
    )


def branch_sample(total: int, hit: set[int]) -> CoverageSample:
    """Sample over ``total`` branch arcs with the given arc indexes taken."""
    return sample(branches={f"1->{i}": i in hit for i in range(total)})


class TestMerge:
    """Tests for merge function."""

    def test_union_of_two_workers(self) -> None:
        """Worker A at 70% and worker B at 90% over the same branches merge to their union."""
        worker_a = branch_sample(10, set(range(7)))
        worker_b = branch_sample(10, set(range(1, 10)))

        report = merge([worker_a, worker_b])

        assert report.branch_ratio == 1.0
        assert report.modules[0].branches_hit == 10

    def test_merge_is_order_independent(self) -> None:
        samples = [
            sample(lines={1: 1, 2: 0}, branches={"1->2": True, "1->3": False}),
            sample(lines={2: 3, 3: 0}, branches={"1->3": True}),
            sample(path="pkg/other.py", lines={5: 1}),
            sample(lines={1: 0, 4: 2}, branches={"4->5": False}),
        ]

        merged = {
            merge_samples(list(order)).model_dump_json()
            for order in itertools.permutations(samples)
        }

        assert len(merged) == 1

    def test_merge_is_associative(self) -> None:
        a = sample(lines={1: 1}, branches={"1->2": False})
        b = sample(lines={1: 0, 2: 1}, branches={"1->2": True})
        c = sample(lines={3: 5})

        left = merge_samples([merge_samples([a, b]), c])
        right = merge_samples([a, merge_samples([b, c])])

        assert left == right

    def test_adding_samples_never_lowers_coverage(self) -> None:
        base = sample(lines={1: 1, 2: 0, 3: 0}, branches={"1->2": True, "1->3": False})
        extra = sample(lines={2: 0, 3: 1}, branches={"1->3": False})

        before = merge([base])
        after = merge([base, extra])

        assert after.line_ratio >= before.line_ratio
        assert after.branch_ratio >= before.branch_ratio

    def test_keeps_max_hit_count(self) -> None:
        merged = merge_samples(
            [sample(lines={1: 2}), sample(lines={1: 5}), sample(lines={1: 0})]
        )

        assert merged.files["pkg/mod.py"].lines == {1: 5}

    def test_empty_merge(self) -> None:
        report = merge([])

        assert report.modules == []
        assert report.line_ratio == 1.0
        assert report.branch_ratio == 1.0

    def test_module_without_branches_counts_fully_covered(self) -> None:
        report = merge([sample(lines={1: 1, 2: 0})])

        assert report.modules[0].branch_ratio == 1.0
        assert report.modules[0].line_ratio == 0.5


class TestCheckGate:
    """Tests for check_gate function."""

    def test_fails_below_minimum(self, caplog: pytest.LogCaptureFixture) -> None:
        report = merge([branch_sample(10, set(range(7)))])

        with caplog.at_level(logging.WARNING):
            gate = check_gate(report, minimum=0.8, target=0.9)

        assert gate.branch_ratio == pytest.approx(0.7)
        assert gate.passed is False
        assert "Coverage gate failed" in caplog.text

    def test_module_below_minimum_fails_gate(self) -> None:
        """Modules at 70% and 90% with equal weight merge to 80% yet fail an 80% gate."""
        report = merge(
            [
                sample(path="pkg/a.py", branches={f"1->{i}": i < 7 for i in range(10)}),
                sample(path="pkg/b.py", branches={f"1->{i}": i < 9 for i in range(10)}),
            ]
        )

        gate = check_gate(report, minimum=0.8, target=0.9)

        assert 0.7 <= report.branch_ratio <= 0.9
        assert gate.branch_ratio == pytest.approx(0.8)
        assert gate.below_minimum == ["pkg/a.py"]
        assert gate.passed is False

    def test_passes_at_minimum_but_below_target(self) -> None:
        report = merge([branch_sample(10, set(range(8)))])

        gate = check_gate(report, minimum=0.8, target=0.9)

        assert gate.passed is True
        assert gate.meets_target is False

    def test_meets_target(self) -> None:
        report = merge([branch_sample(10, set(range(9)))])

        gate = check_gate(report)

        assert gate.passed is True
        assert gate.meets_target is True


def test_render_summary_lists_modules_and_gate() -> None:
    report = merge(
        [
            sample(path="pkg/a.py", lines={1: 1, 2: 1}, branches={"1->2": True}),
            sample(path="pkg/b.py", lines={1: 0}, branches={"1->2": False}),
        ]
    )

    text = render_summary(report, check_gate(report))

    assert "pkg/a.py" in text
    assert "pkg/b.py" in text
    assert "TOTAL" in text
    assert "Gate FAILED: branches 50.0%" in text


def test_write_report(tmp_path: Path) -> None:
    report = merge([branch_sample(4, {0, 1, 2, 3})])
    gate = check_gate(report)

    path = write_report(report, gate, tmp_path / "out" / "coverage.json")

    data = json.loads(path.read_text())
    assert data["report"]["branch_ratio"] == 1.0
    assert data["gate"]["passed"] is True
    assert (tmp_path / "out" / "coverage.txt").exists()
