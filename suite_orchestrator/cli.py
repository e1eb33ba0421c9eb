"""CLI entry point for the suite orchestrator."""

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from suite_orchestrator.dispatcher import InvocationContext
from suite_orchestrator.errors import HarnessError, StructuralViolationError
from suite_orchestrator.models.run import MODES
from suite_orchestrator.orchestrator import run_suite
from suite_orchestrator.registry import discover
from suite_orchestrator.report import (
    EXIT_INFRASTRUCTURE,
    EXIT_OK,
    format_output,
    log_results_summary,
)
from suite_orchestrator.settings import HarnessSettings, load_settings


def positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def positive_float(value: str) -> float:
    number = float(value)
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be positive, got {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="suite-orchestrator",
        description="Discover and run test units in parallel worker processes",
    )
    parser.add_argument(
        "patterns",
        nargs="*",
        help="Unit names or glob patterns (exact names must exist)",
    )
    parser.add_argument(
        "--tag",
        dest="tags",
        action="append",
        default=[],
        help="Only run units carrying this tag or topic (repeatable)",
    )
    parser.add_argument(
        "--mode",
        choices=MODES,
        default=None,
        help="Execution mode (default: automated under CI, discovery otherwise)",
    )
    parser.add_argument(
        "-j",
        "--workers",
        type=positive_int,
        default=None,
        help="Number of worker processes (default: CPU count, 1 in standalone)",
    )
    parser.add_argument(
        "--verbose",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Verbose units and pinned artifacts (default: on in standalone)",
    )
    parser.add_argument(
        "--plot",
        dest="do_plot",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Enable unit plotting (default: on in standalone)",
    )
    parser.add_argument(
        "--strict-coverage",
        action="store_true",
        help="Fail the run when the coverage gate fails",
    )
    parser.add_argument(
        "--strict-structure",
        action="store_true",
        help="Fail before running when discovery finds structural violations",
    )
    parser.add_argument(
        "--timeout",
        type=positive_float,
        default=None,
        help="Default per-unit timeout in seconds",
    )
    parser.add_argument(
        "--budget",
        type=positive_float,
        default=None,
        help="Wall-clock budget in seconds for automated runs",
    )
    parser.add_argument("--root", type=Path, default=None, help="Unit root directory")
    parser.add_argument(
        "--config", type=Path, default=None, help="Settings file (default: suite.yaml)"
    )
    parser.add_argument("--artifact-dir", type=Path, default=None)
    parser.add_argument(
        "--coverage-source",
        action="append",
        default=None,
        help="Package or directory to measure (repeatable)",
    )
    parser.add_argument("--coverage-file", type=Path, default=None)
    parser.add_argument(
        "--list",
        action="store_true",
        help="List discovered units as JSON and exit",
    )
    return parser


def apply_arguments(
    settings: HarnessSettings, args: argparse.Namespace
) -> HarnessSettings:
    """Layer path options from the command line over the settings file."""
    update: dict[str, Any] = {}
    if args.root is not None:
        update["root"] = args.root
    if args.coverage_file is not None:
        update["coverage_file"] = args.coverage_file
    return settings.model_copy(update=update) if update else settings


def invocation_context(args: argparse.Namespace) -> InvocationContext:
    return InvocationContext(
        mode=args.mode,
        patterns=args.patterns,
        tags=args.tags,
        workers=args.workers,
        verbose=args.verbose,
        do_plot=args.do_plot,
        strict_coverage=args.strict_coverage,
        strict_structure=args.strict_structure,
        unit_timeout=args.timeout,
        budget=args.budget,
        coverage_source=args.coverage_source,
        artifact_dir=args.artifact_dir,
    )


def list_units(settings: HarnessSettings, strict: bool) -> dict[str, Any]:
    """Discovered units and violations, for ``--list``."""
    catalog = discover(settings.root, strict=strict)
    return {
        "total": len(catalog.units),
        "units": [
            {
                "name": unit.name,
                "topic": unit.topic,
                "path": str(unit.path),
                "tags": list(unit.tags),
                "timeout": unit.timeout,
                "skip_reason": unit.skip_reason,
                "parameters": [p.name for p in unit.parameters],
                "description": unit.description,
            }
            for unit in catalog.units
        ],
        "violations": [v.to_json_dict() for v in catalog.violations],
    }


def error_output(error: Exception) -> dict[str, Any]:
    output: dict[str, Any] = {
        "success": False,
        "error": type(error).__name__,
        "message": str(error),
        "exit_code": EXIT_INFRASTRUCTURE,
    }
    if isinstance(error, StructuralViolationError):
        output["violations"] = [v.to_json_dict() for v in error.violations]
    return output


async def run(args: argparse.Namespace) -> int:
    """Run the requested units and return the exit code."""
    log = logging.getLogger("suite_orchestrator")

    try:
        settings = apply_arguments(load_settings(args.config), args)

        if args.list:
            print(json.dumps(list_units(settings, args.strict_structure), indent=2))
            return EXIT_OK

        report = await run_suite(
            invocation_context(args),
            settings,
            log_level=logging.DEBUG if args.verbose else logging.WARNING,
        )
    except (HarnessError, FileNotFoundError) as e:
        log.error("%s", e)
        print(json.dumps(error_output(e), indent=2))
        return EXIT_INFRASTRUCTURE

    log_results_summary(log, report)
    print(json.dumps(format_output(report), indent=2))
    return report.exit_code


def main(argv: Sequence[str] | None = None) -> None:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":  # pragma: no cover
    main()
