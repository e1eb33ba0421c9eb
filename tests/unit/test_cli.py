"""Tests for CLI module."""

import json
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from suite_orchestrator.cli import build_parser, invocation_context, main, run
from suite_orchestrator.errors import NoSuchUnitError, StructuralViolationError
from suite_orchestrator.models.result import FailureDetail, Outcome
from suite_orchestrator.models.unit import StructuralViolation
from suite_orchestrator.report import RunReport
from suite_orchestrator.testing.factories import OutcomeFactory
from tests.conftest import WriteUnitFileFn


def make_report(*outcomes: Outcome) -> RunReport:
    now = datetime.now(timezone.utc)
    return RunReport(
        run_id="run-1", mode="discovery", started_at=now, ended_at=now, outcomes=outcomes
    )


class TestBuildParser:
    """Tests for argument parsing."""

    def test_defaults(self) -> None:
        args = build_parser().parse_args([])

        assert args.patterns == []
        assert args.tags == []
        assert args.mode is None
        assert args.workers is None
        assert args.verbose is None
        assert args.do_plot is None
        assert args.strict_coverage is False
        assert args.coverage_source is None

    def test_flags(self) -> None:
        args = build_parser().parse_args(
            [
                "test_sim_*",
                "--tag",
                "slow",
                "--tag",
                "io",
                "--mode",
                "automated",
                "-j",
                "3",
                "--no-verbose",
                "--plot",
                "--strict-coverage",
                "--strict-structure",
                "--timeout",
                "2.5",
                "--budget",
                "60",
                "--coverage-source",
                "pkg",
            ]
        )

        context = invocation_context(args)

        assert context.patterns == ["test_sim_*"]
        assert context.tags == ["slow", "io"]
        assert context.mode == "automated"
        assert context.workers == 3
        assert context.verbose is False
        assert context.do_plot is True
        assert context.strict_coverage is True
        assert context.strict_structure is True
        assert context.unit_timeout == 2.5
        assert context.budget == 60
        assert context.coverage_source == ["pkg"]

    @pytest.mark.parametrize("argv", [["-j", "0"], ["--timeout", "-1"], ["--mode", "x"]])
    def test_rejects_invalid_values(self, argv: list[str]) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(argv)


class TestRun:
    """Tests for run function."""

    async def test_returns_zero_when_all_units_pass(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        args = build_parser().parse_args(["--root", str(tmp_path)])
        report = make_report(OutcomeFactory.build(unit="test_a"))

        with patch(
            "suite_orchestrator.cli.run_suite",
            new_callable=AsyncMock,
            return_value=report,
        ) as mock_run_suite:
            exit_code = await run(args)

        assert exit_code == 0
        settings = mock_run_suite.call_args.args[1]
        assert settings.root == tmp_path
        output = json.loads(capsys.readouterr().out)
        assert output["passed"] == 1
        assert output["exit_code"] == 0

    async def test_returns_one_when_unit_fails(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        args = build_parser().parse_args(["--root", str(tmp_path)])
        report = make_report(
            Outcome(
                unit="test_a",
                status="failed",
                failure=FailureDetail(summary="size", expected="1", actual="2"),
            )
        )

        with patch(
            "suite_orchestrator.cli.run_suite",
            new_callable=AsyncMock,
            return_value=report,
        ):
            exit_code = await run(args)

        assert exit_code == 1
        assert '"failed": 1' in capsys.readouterr().out

    async def test_returns_two_for_unknown_unit(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Harness errors exit with the infrastructure code."""
        args = build_parser().parse_args(["--root", str(tmp_path), "test_missing"])

        with patch(
            "suite_orchestrator.cli.run_suite",
            new_callable=AsyncMock,
            side_effect=NoSuchUnitError(["test_missing"], ["test_a"]),
        ):
            exit_code = await run(args)

        assert exit_code == 2
        output = json.loads(capsys.readouterr().out)
        assert output["error"] == "NoSuchUnitError"
        assert "test_missing" in output["message"]

    async def test_reports_structural_violations(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        args = build_parser().parse_args(["--root", str(tmp_path), "--strict-structure"])
        violation = StructuralViolation(path=tmp_path / "test_a.py", message="bad")

        with patch(
            "suite_orchestrator.cli.run_suite",
            new_callable=AsyncMock,
            side_effect=StructuralViolationError([violation]),
        ):
            exit_code = await run(args)

        assert exit_code == 2
        output = json.loads(capsys.readouterr().out)
        assert output["violations"][0]["message"] == "bad"

    async def test_missing_root_is_infrastructure_error(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        args = build_parser().parse_args(["--root", str(tmp_path / "missing")])

        exit_code = await run(args)

        assert exit_code == 2
        assert "FileNotFoundError" in capsys.readouterr().out

    async def test_missing_config_is_infrastructure_error(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        args = build_parser().parse_args(["--config", str(tmp_path / "none.yaml")])

        exit_code = await run(args)

        assert exit_code == 2
        assert "SettingsError" in capsys.readouterr().out

    async def test_lists_units(
        self,
        unit_root: Path,
        write_unit_file: WriteUnitFileFn,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        write_unit_file(
            "test_listing.py",
            """
            from suite_orchestrator import UnitGroup

            group = UnitGroup("listing")

            @group.unit(tags=("slow",))
            def test_listing_one(seed=1):
                '''Lists a unit.'''
            """,
        )
        args = build_parser().parse_args(["--root", str(unit_root), "--list"])

        exit_code = await run(args)

        assert exit_code == 0
        output = json.loads(capsys.readouterr().out)
        assert output["total"] == 1
        assert output["units"][0] == {
            "name": "test_listing_one",
            "topic": "listing",
            "path": str(unit_root.resolve() / "test_listing.py"),
            "tags": ["slow"],
            "timeout": None,
            "skip_reason": None,
            "parameters": ["seed"],
            "description": "Lists a unit.",
        }


class TestMain:
    """Tests for main CLI entry point."""

    def test_exits_with_run_result(self) -> None:
        """Main function exits with the result from run()."""
        with (
            patch("suite_orchestrator.cli.asyncio.run", return_value=0) as mock_run,
            pytest.raises(SystemExit) as exc_info,
        ):
            main(["--mode", "discovery"])

        assert exc_info.value.code == 0
        mock_run.assert_called_once()
        mock_run.call_args.args[0].close()

    def test_exits_with_failure_code(self) -> None:
        with (
            patch("suite_orchestrator.cli.asyncio.run", return_value=1) as mock_run,
            pytest.raises(SystemExit) as exc_info,
        ):
            main([])

        assert exc_info.value.code == 1
        mock_run.call_args.args[0].close()
