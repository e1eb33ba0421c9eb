"""Run pipeline: sweep, schedule, aggregate coverage, report, sweep."""

import asyncio
import logging
from collections.abc import AsyncGenerator, Mapping, Sequence
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from suite_orchestrator.artifacts import ArtifactStore
from suite_orchestrator.coverage_aggregator import check_gate, merge, write_report
from suite_orchestrator.dispatcher import InvocationContext, dispatch
from suite_orchestrator.models.coverage import CoverageGate, CoverageReport
from suite_orchestrator.models.result import Outcome
from suite_orchestrator.models.run import RunPlan
from suite_orchestrator.models.unit import StructuralViolation
from suite_orchestrator.registry import discover
from suite_orchestrator.report import RunReport, build
from suite_orchestrator.scheduler import Scheduler
from suite_orchestrator.settings import HarnessSettings
from suite_orchestrator.worker import WorkerSession

log = logging.getLogger(__name__)


@dataclass(kw_only=True)
class BudgetState:
    """Whether the run budget ran out before the units finished."""

    exceeded: bool = False


@asynccontextmanager
async def enforce_budget(
    budget: float | None, cancel: asyncio.Event
) -> AsyncGenerator[BudgetState, None]:
    """Set ``cancel`` once ``budget`` seconds pass inside the block."""
    state = BudgetState()
    if budget is None:
        yield state
        return

    async def watchdog() -> None:
        await asyncio.sleep(budget)
        state.exceeded = True
        log.error("Run budget of %.1fs exceeded, cancelling remaining units", budget)
        cancel.set()

    task = asyncio.create_task(watchdog())
    try:
        yield state
    finally:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task


@dataclass(frozen=True, kw_only=True)
class SuiteOrchestrator:
    """Executes a resolved run plan end to end."""

    plan: RunPlan
    root: Path
    violations: Sequence[StructuralViolation] = ()
    coverage_file: Path | None = None
    log_level: int = logging.WARNING

    async def run(self) -> RunReport:
        config = self.plan.config
        store = ArtifactStore(
            root=config.artifact_dir.resolve(),
            run_id=config.run_id,
            pinned=config.verbose,
        )
        if not config.verbose:
            store.sweep(pin_if_verbose=False)
        store.prepare()

        session = WorkerSession(
            root=self.root.resolve(),
            do_plot=config.do_plot,
            verbose=config.verbose,
            overrides=config.overrides,
            artifacts=store,
            coverage_source=config.coverage_source,
            plot_backend=config.plot_backend,
            log_level=self.log_level,
        )
        scheduler = Scheduler(
            session=session,
            grace_period=config.grace_period,
            start_method=config.start_method,
        )

        cancel = asyncio.Event()
        started_at = datetime.now(timezone.utc)
        async with enforce_budget(config.budget, cancel) as budget:
            outcomes = await scheduler.run(
                self.plan.units, config.workers, config.unit_timeout, cancel
            )
        ended_at = datetime.now(timezone.utc)

        coverage_report, gate = self._aggregate(outcomes)
        report = build(
            outcomes,
            coverage_report,
            config=config,
            started_at=started_at,
            ended_at=ended_at,
            gate=gate,
            violations=self.violations,
            budget_exceeded=budget.exceeded,
        )

        if not config.verbose:
            store.sweep(pin_if_verbose=config.verbose)
        else:
            log.info(
                "Kept %d artifact(s) under %s", len(store.list_artifacts()), store.root
            )

        if coverage_report is not None and self.coverage_file is not None:
            write_report(coverage_report, gate, self.coverage_file)

        return report

    def _aggregate(
        self, outcomes: Sequence[Outcome]
    ) -> tuple[CoverageReport | None, CoverageGate | None]:
        config = self.plan.config
        if not config.coverage_source:
            return None, None

        report = merge(o.coverage for o in outcomes if o.coverage is not None)
        gate = check_gate(report, config.coverage_minimum, config.coverage_target)
        return report, gate


async def run_suite(
    context: InvocationContext,
    settings: HarnessSettings,
    *,
    environ: Mapping[str, str] | None = None,
    log_level: int = logging.WARNING,
) -> RunReport:
    """Discover, dispatch and run units as requested.

    Raises:
        StructuralViolationError: If strict structure checking finds violations
        RunRequestError: If the request cannot be resolved

    """
    catalog = discover(settings.root, strict=context.strict_structure)
    plan = dispatch(context, catalog, settings, environ=environ)
    orchestrator = SuiteOrchestrator(
        plan=plan,
        root=settings.root,
        violations=catalog.violations,
        coverage_file=settings.coverage_file,
        log_level=log_level,
    )
    return await orchestrator.run()
