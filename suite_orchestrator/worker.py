"""Worker process side of the scheduler.

A worker receives :class:`TestUnit` records over a pipe, runs them one at a
time and answers each with an :class:`Outcome`. ``None`` (or a closed pipe)
stops the loop.
"""

import json
import logging
import os
import reprlib
import sys
import tempfile
import time
import traceback
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from multiprocessing.connection import Connection
from pathlib import Path
from types import ModuleType, TracebackType
from typing import Any

import coverage
from coverage.exceptions import NoDataError

from suite_orchestrator.artifacts import ArtifactStore
from suite_orchestrator.models.coverage import CoverageSample, FileCoverage
from suite_orchestrator.models.result import FailureDetail, Outcome, Status
from suite_orchestrator.models.unit import TestUnit
from suite_orchestrator.registry import ensure_importable, import_unit_module, load_unit
from suite_orchestrator.units import Runnable, UnitConfig, UnitFailure, UnitSkipped

log = logging.getLogger(__name__)

PLOT_BACKEND_VARIABLE = "MPLBACKEND"

_repr = reprlib.Repr()
_repr.maxstring = 200
_repr.maxother = 200


@dataclass(frozen=True, kw_only=True)
class WorkerSession:
    """Read-only run settings shipped to every worker process."""

    root: Path
    do_plot: bool = False
    verbose: bool = False
    overrides: Mapping[str, Any] = field(default_factory=dict)
    artifacts: ArtifactStore | None = None
    coverage_source: Sequence[str] = ()
    plot_backend: str | None = None
    log_level: int = logging.WARNING

    def unit_config(self, unit: TestUnit) -> UnitConfig:
        return UnitConfig(
            unit=unit.name,
            do_plot=self.do_plot,
            verbose=self.verbose,
            overrides=self.overrides,
            artifacts=self.artifacts,
        )


class CoverageRecorder:
    """Branch coverage of the configured sources while one unit runs."""

    def __init__(self, sources: Sequence[str]) -> None:
        self.sample = CoverageSample()
        self._cov = (
            coverage.Coverage(
                data_file=None, branch=True, source=list(sources), config_file=False
            )
            if sources
            else None
        )

    @property
    def enabled(self) -> bool:
        return self._cov is not None

    def __enter__(self) -> "CoverageRecorder":
        if self._cov is not None:
            self._cov.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self._cov is not None:
            self._cov.stop()
            self.sample = self._collect(self._cov)

    @staticmethod
    def _collect(cov: coverage.Coverage) -> CoverageSample:
        with tempfile.TemporaryDirectory() as tmp:
            outfile = Path(tmp) / "coverage.json"
            try:
                cov.json_report(outfile=str(outfile))
            except NoDataError:
                return CoverageSample()
            data = json.loads(outfile.read_text(encoding="utf-8"))
        return sample_from_json(data)


def sample_from_json(data: Mapping[str, Any]) -> CoverageSample:
    """Convert a coverage.py JSON report into a sample."""
    files: dict[str, FileCoverage] = {}
    for path, info in data.get("files", {}).items():
        lines = {line: 0 for line in info.get("missing_lines", [])}
        lines.update({line: 1 for line in info.get("executed_lines", [])})
        branches = {f"{a}->{b}": False for a, b in info.get("missing_branches", [])}
        branches.update(
            {f"{a}->{b}": True for a, b in info.get("executed_branches", [])}
        )
        files[path] = FileCoverage(lines=lines, branches=branches)
    return CoverageSample(files=files)


def serve(conn: Connection, session: WorkerSession) -> None:
    """Worker process main loop."""
    configure_process(session)
    modules: dict[str, ModuleType] = {}

    while True:
        try:
            unit = conn.recv()
        except EOFError:
            break
        if unit is None:
            break
        conn.send(execute_unit(unit, session, modules))

    conn.close()


def configure_process(session: WorkerSession) -> None:
    logging.basicConfig(
        level=session.log_level,
        format="%(asctime)s - %(name)s[%(process)d] - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    if session.do_plot and session.plot_backend:
        os.environ[PLOT_BACKEND_VARIABLE] = session.plot_backend
    ensure_importable(session.root)


def resolve(unit: TestUnit, modules: dict[str, ModuleType]) -> Runnable:
    """Load a unit, importing its file at most once per worker."""
    if (module := modules.get(unit.module)) is None:
        module = modules[unit.module] = import_unit_module(unit.path, unit.module)
    return load_unit(unit, module)


def execute_unit(
    unit: TestUnit,
    session: WorkerSession,
    modules: dict[str, ModuleType] | None = None,
) -> Outcome:
    """Run one unit and turn whatever happened into an outcome."""
    modules = {} if modules is None else modules
    recorder = CoverageRecorder(session.coverage_source)
    start = time.perf_counter()
    log.debug("Running unit %s", unit.name)

    try:
        function_unit = resolve(unit, modules)
    except BaseException as e:
        return Outcome(
            unit=unit.name,
            status="errored",
            duration=time.perf_counter() - start,
            failure=FailureDetail(
                summary=unit.summary,
                expected=f"unit '{unit.name}' loads from {unit.path}",
                actual=f"{type(e).__name__}: {e}",
                context=traceback.format_exc(),
            ),
        )

    try:
        with recorder:
            value = function_unit.run(session.unit_config(unit))
    except UnitSkipped as e:
        return _outcome(unit, "skipped", start, recorder, skip_reason=str(e) or None)
    except UnitFailure as e:
        detail = FailureDetail(
            summary=e.summary or unit.summary,
            expected=repr(e.expected),
            actual=repr(e.actual),
            context=e.context or traceback.format_exc(),
        )
        return _outcome(unit, "failed", start, recorder, failure=detail)
    except AssertionError as e:
        detail = FailureDetail(
            summary=unit.summary,
            expected="all assertions hold",
            actual=str(e) or "AssertionError raised",
            context=traceback.format_exc(),
        )
        return _outcome(unit, "failed", start, recorder, failure=detail)
    except BaseException as e:
        detail = FailureDetail(
            summary=unit.summary,
            expected="unit completes without raising",
            actual=f"{type(e).__name__}: {e}",
            context=traceback.format_exc(),
        )
        return _outcome(unit, "errored", start, recorder, failure=detail)

    result = None if value is None else _repr.repr(value)
    return _outcome(unit, "passed", start, recorder, result=result)


def _outcome(
    unit: TestUnit,
    status: Status,
    start: float,
    recorder: CoverageRecorder,
    **kwargs: Any,
) -> Outcome:
    return Outcome(
        unit=unit.name,
        status=status,
        duration=time.perf_counter() - start,
        coverage=recorder.sample if recorder.enabled else None,
        **kwargs,
    )
