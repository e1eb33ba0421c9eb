"""Tests for the run pipeline."""

import asyncio
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import AsyncMock, Mock, patch

import pytest

from suite_orchestrator.models.coverage import CoverageSample, FileCoverage
from suite_orchestrator.models.result import FailureDetail, Outcome
from suite_orchestrator.models.run import RunConfig, RunPlan
from suite_orchestrator.orchestrator import SuiteOrchestrator, enforce_budget
from suite_orchestrator.testing.factories import OutcomeFactory, TestUnitFactory


@pytest.fixture
def mock_scheduler() -> Iterator[Mock]:
    """Patch the scheduler class and return the instance mock."""
    scheduler = Mock()
    scheduler.run = AsyncMock(return_value=[])
    with patch(
        "suite_orchestrator.orchestrator.Scheduler", return_value=scheduler
    ) as mock_cls:
        scheduler.cls = mock_cls
        yield scheduler


def make_orchestrator(config: RunConfig, root: Path, **kwargs: object) -> SuiteOrchestrator:
    units = [TestUnitFactory.build(name="test_a"), TestUnitFactory.build(name="test_b")]
    return SuiteOrchestrator(
        plan=RunPlan(config=config, units=units),
        root=root,
        **kwargs,  # type: ignore[arg-type]
    )


class TestEnforceBudget:
    """Tests for enforce_budget context manager."""

    async def test_no_budget_never_cancels(self) -> None:
        cancel = asyncio.Event()

        async with enforce_budget(None, cancel) as state:
            await asyncio.sleep(0.01)

        assert state.exceeded is False
        assert not cancel.is_set()

    async def test_sets_cancel_when_budget_runs_out(self) -> None:
        cancel = asyncio.Event()

        async with enforce_budget(0.01, cancel) as state:
            await asyncio.wait_for(cancel.wait(), timeout=1)

        assert state.exceeded is True

    async def test_finishing_early_stops_watchdog(self) -> None:
        cancel = asyncio.Event()

        async with enforce_budget(0.05, cancel) as state:
            pass
        await asyncio.sleep(0.1)

        assert state.exceeded is False
        assert not cancel.is_set()


class TestSuiteOrchestrator:
    """Tests for SuiteOrchestrator.run."""

    async def test_runs_plan_units(
        self, mock_scheduler: Mock, run_config: RunConfig, tmp_path: Path
    ) -> None:
        outcomes = [
            OutcomeFactory.build(unit="test_a"),
            OutcomeFactory.build(unit="test_b"),
        ]
        mock_scheduler.run.return_value = outcomes

        report = await make_orchestrator(run_config, tmp_path).run()

        assert report.outcomes == outcomes
        assert report.exit_code == 0
        units, workers, timeout, cancel = mock_scheduler.run.call_args.args
        assert [u.name for u in units] == ["test_a", "test_b"]
        assert workers == 2
        assert timeout == run_config.unit_timeout
        assert isinstance(cancel, asyncio.Event)

    async def test_session_carries_run_toggles(
        self, mock_scheduler: Mock, tmp_path: Path
    ) -> None:
        config = RunConfig(
            run_id="run-2",
            mode="standalone",
            verbose=True,
            do_plot=True,
            plot_backend="Agg",
            overrides={"seed": 3},
            artifact_dir=tmp_path / "artifacts",
        )

        await make_orchestrator(config, tmp_path).run()

        session = mock_scheduler.cls.call_args.kwargs["session"]
        assert session.do_plot is True
        assert session.verbose is True
        assert session.plot_backend == "Agg"
        assert session.overrides == {"seed": 3}
        assert session.artifacts.pinned is True

    async def test_non_verbose_run_sweeps_artifacts(
        self, mock_scheduler: Mock, run_config: RunConfig, tmp_path: Path
    ) -> None:
        stale = run_config.artifact_dir / "old-run" / "test_a" / "out.txt"
        stale.parent.mkdir(parents=True)
        stale.write_text("old")

        async def write_artifact(*args: object) -> list[Outcome]:
            session = mock_scheduler.cls.call_args.kwargs["session"]
            with session.artifacts.scoped_artifact("test_a", "new.txt") as f:
                f.write("new")
            return []

        mock_scheduler.run.side_effect = write_artifact

        await make_orchestrator(run_config, tmp_path).run()

        assert not stale.exists()
        assert not (run_config.artifact_dir / run_config.run_id).exists()

    async def test_verbose_run_keeps_artifacts(
        self, mock_scheduler: Mock, tmp_path: Path
    ) -> None:
        config = RunConfig(
            run_id="run-3", mode="discovery", verbose=True, artifact_dir=tmp_path / "a"
        )

        async def write_artifact(*args: object) -> list[Outcome]:
            session = mock_scheduler.cls.call_args.kwargs["session"]
            with session.artifacts.scoped_artifact("test_a", "new.txt") as f:
                f.write("new")
            return []

        mock_scheduler.run.side_effect = write_artifact

        await make_orchestrator(config, tmp_path).run()

        assert (tmp_path / "a" / "run-3" / "test_a" / "new.txt").read_text() == "new"

    async def test_merges_coverage_and_writes_report(
        self, mock_scheduler: Mock, tmp_path: Path
    ) -> None:
        config = RunConfig(
            run_id="run-4",
            mode="discovery",
            coverage_source=["pkg"],
            artifact_dir=tmp_path / "a",
        )
        mock_scheduler.run.return_value = [
            OutcomeFactory.build(
                unit="test_a",
                coverage=CoverageSample(
                    files={"pkg/m.py": FileCoverage(branches={"1->2": True, "1->3": False})}
                ),
            ),
            OutcomeFactory.build(
                unit="test_b",
                coverage=CoverageSample(
                    files={"pkg/m.py": FileCoverage(branches={"1->3": True})}
                ),
            ),
        ]
        coverage_file = tmp_path / "cov" / "coverage.json"

        report = await make_orchestrator(
            config, tmp_path, coverage_file=coverage_file
        ).run()

        assert report.coverage is not None
        assert report.coverage.branch_ratio == 1.0
        assert report.gate is not None and report.gate.passed
        assert coverage_file.exists()

    async def test_no_coverage_without_sources(
        self, mock_scheduler: Mock, run_config: RunConfig, tmp_path: Path
    ) -> None:
        report = await make_orchestrator(
            run_config, tmp_path, coverage_file=tmp_path / "coverage.json"
        ).run()

        assert report.coverage is None
        assert report.gate is None
        assert not (tmp_path / "coverage.json").exists()

    async def test_budget_exceeded(self, mock_scheduler: Mock, tmp_path: Path) -> None:
        """The scheduler sees cancellation once the budget runs out.

        Outcomes completed before the cutoff stay in the report.
        """
        config = RunConfig(
            run_id="run-5", mode="automated", budget=0.05, artifact_dir=tmp_path / "a"
        )

        async def wait_for_cancel(
            units: object, workers: object, timeout: object, cancel: asyncio.Event
        ) -> list[Outcome]:
            await asyncio.wait_for(cancel.wait(), timeout=2)
            return [
                OutcomeFactory.build(unit="test_a", result="42"),
                Outcome(
                    unit="test_b",
                    status="timed_out",
                    failure=FailureDetail(
                        summary="b", expected="runs", actual="not started"
                    ),
                ),
            ]

        mock_scheduler.run.side_effect = wait_for_cancel

        report = await make_orchestrator(config, tmp_path).run()

        assert report.budget_exceeded is True
        assert report.exit_code == 3
        assert [o.status for o in report.outcomes] == ["passed", "timed_out"]
        assert report.outcomes[0].result == "42"
        assert report.counts["passed"] == 1
