"""Resolve how a run was invoked into a complete run configuration."""

import logging
import os
import uuid
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from pathlib import Path

from pydantic import Field, PositiveInt

from suite_orchestrator.errors import NoSuchUnitError, RunRequestError
from suite_orchestrator.models.base import Model
from suite_orchestrator.models.run import Mode, RunConfig, RunPlan
from suite_orchestrator.registry import Catalog, UnitFilter
from suite_orchestrator.settings import HarnessSettings

log = logging.getLogger(__name__)

GLOB_CHARS = frozenset("*?[")
CI_VARIABLE = "CI"
FALSY = frozenset({"", "0", "false", "no", "off"})


class InvocationContext(Model):
    """What the caller asked for; ``None`` means use the mode default."""

    mode: Mode | None = None
    patterns: Sequence[str] = Field(default_factory=tuple)
    tags: Sequence[str] = Field(default_factory=tuple)
    workers: PositiveInt | None = None
    verbose: bool | None = None
    do_plot: bool | None = None
    strict_coverage: bool = False
    strict_structure: bool = False
    unit_timeout: float | None = None
    budget: float | None = None
    coverage_source: Sequence[str] | None = None
    artifact_dir: Path | None = None


def is_glob(pattern: str) -> bool:
    return bool(GLOB_CHARS.intersection(pattern))


def detect_mode(environ: Mapping[str, str]) -> Mode:
    """Automated under CI, Discovery otherwise."""
    if environ.get(CI_VARIABLE, "").strip().lower() not in FALSY:
        return "automated"
    return "discovery"


def new_run_id() -> str:
    return f"{datetime.now(timezone.utc):%Y%m%dT%H%M%S}-{uuid.uuid4().hex[:8]}"


def dispatch(
    context: InvocationContext,
    catalog: Catalog,
    settings: HarnessSettings,
    *,
    environ: Mapping[str, str] | None = None,
    cpu_count: int | None = None,
) -> RunPlan:
    """Resolve the run configuration and unit selection before execution.

    Raises:
        NoSuchUnitError: If an exact unit name is not in the catalog
        RunRequestError: If a standalone run names no unit or uses a glob

    """
    environ = os.environ if environ is None else environ
    mode = context.mode or detect_mode(environ)

    missing = [
        name
        for name in context.patterns
        if not is_glob(name) and catalog.get(name) is None
    ]
    if missing:
        raise NoSuchUnitError(missing, catalog.names)

    if mode == "standalone":
        if not context.patterns:
            raise RunRequestError("Standalone mode needs at least one unit name")
        if globs := [p for p in context.patterns if is_glob(p)]:
            raise RunRequestError(
                f"Standalone mode takes exact unit names, got patterns: {globs}"
            )
        if context.workers not in (None, 1):
            log.info("Standalone mode runs on one worker, ignoring --workers")
        workers = 1
        interactive = True
    else:
        workers = context.workers or cpu_count or os.cpu_count() or 1
        interactive = False

    units = catalog.select(UnitFilter(patterns=context.patterns, tags=context.tags))
    if not units:
        log.warning(
            "No units matched patterns=%s tags=%s",
            list(context.patterns),
            list(context.tags),
        )

    config = RunConfig(
        run_id=new_run_id(),
        mode=mode,
        workers=workers,
        verbose=interactive if context.verbose is None else context.verbose,
        do_plot=interactive if context.do_plot is None else context.do_plot,
        unit_timeout=context.unit_timeout or settings.unit_timeout,
        grace_period=settings.grace_period,
        budget=(context.budget or settings.budget) if mode == "automated" else None,
        strict_coverage=context.strict_coverage,
        coverage_source=(
            settings.coverage_source
            if context.coverage_source is None
            else context.coverage_source
        ),
        coverage_minimum=settings.coverage_minimum,
        coverage_target=settings.coverage_target,
        artifact_dir=context.artifact_dir or settings.artifact_dir,
        plot_backend=settings.plot_backend,
        start_method=settings.start_method,
        overrides=settings.overrides,
    )
    log.info(
        "Resolved %s run %s: %d unit(s), workers=%d, verbose=%s, plot=%s",
        config.mode,
        config.run_id,
        len(units),
        config.workers,
        config.verbose,
        config.do_plot,
    )
    return RunPlan(config=config, units=units)
