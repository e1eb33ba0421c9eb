"""Worker pool distributing units across isolated worker processes."""

import asyncio
import logging
import multiprocessing
from collections.abc import Sequence
from dataclasses import dataclass
from multiprocessing.connection import Connection
from multiprocessing.context import BaseContext
from multiprocessing.process import BaseProcess
from typing import Literal

from suite_orchestrator.models.result import FailureDetail, Outcome
from suite_orchestrator.models.unit import TestUnit
from suite_orchestrator.worker import WorkerSession, serve

log = logging.getLogger(__name__)

POLL_INTERVAL = 0.02
STOP_TIMEOUT = 5.0
KILL_TIMEOUT = 2.0


class UnitTimedOut(Exception):
    """Raised when a unit outlives its deadline or the cancellation grace."""

    def __init__(self, elapsed: float, limit: float, *, cancelled: bool) -> None:
        self.elapsed = elapsed
        self.limit = limit
        self.cancelled = cancelled
        super().__init__(f"Unit still running after {elapsed:.1f}s (limit {limit}s)")


class WorkerCrashed(Exception):
    """Raised when the worker process dies without answering."""

    def __init__(self, exitcode: int | None) -> None:
        self.exitcode = exitcode
        super().__init__(f"Worker process exited with code {exitcode}")


def partition(units: Sequence[TestUnit], worker_count: int) -> list[list[TestUnit]]:
    """Round-robin assignment over the registry order."""
    return [list(units[i::worker_count]) for i in range(worker_count)]


@dataclass(kw_only=True)
class WorkerHandle:
    """Parent-side handle on one worker process."""

    process: BaseProcess
    conn: Connection

    @classmethod
    def spawn(
        cls, context: BaseContext, session: WorkerSession, name: str
    ) -> "WorkerHandle":
        parent_conn, child_conn = context.Pipe()
        process = context.Process(  # type: ignore[attr-defined]
            target=serve, args=(child_conn, session), name=name
        )
        process.start()
        child_conn.close()
        log.debug("Started %s (pid=%s)", name, process.pid)
        return cls(process=process, conn=parent_conn)

    async def execute(
        self,
        unit: TestUnit,
        timeout: float | None,
        cancel: asyncio.Event,
        grace_period: float,
    ) -> Outcome:
        """Send one unit and wait for its outcome.

        Raises:
            UnitTimedOut: If the unit deadline or the cancellation grace passes
            WorkerCrashed: If the process dies before answering

        """
        try:
            self.conn.send(unit)
        except (BrokenPipeError, ConnectionResetError) as e:
            raise WorkerCrashed(self.process.exitcode) from e

        loop = asyncio.get_running_loop()
        start = loop.time()
        deadline = start + timeout if timeout is not None else None
        cancel_deadline: float | None = None

        while True:
            if self.conn.poll():
                try:
                    outcome: Outcome = self.conn.recv()
                except EOFError:
                    raise WorkerCrashed(self._reap()) from None
                return outcome

            if not self.process.is_alive() and not self.conn.poll():
                raise WorkerCrashed(self._reap())

            now = loop.time()
            if cancel.is_set() and cancel_deadline is None:
                cancel_deadline = now + grace_period
            if deadline is not None and now >= deadline:
                raise UnitTimedOut(now - start, timeout or 0.0, cancelled=False)
            if cancel_deadline is not None and now >= cancel_deadline:
                raise UnitTimedOut(now - start, grace_period, cancelled=True)

            await asyncio.sleep(POLL_INTERVAL)

    def _reap(self) -> int | None:
        self.process.join(KILL_TIMEOUT)
        return self.process.exitcode

    def _kill(self) -> None:
        if self.process.is_alive():
            self.process.terminate()
            self.process.join(KILL_TIMEOUT)
        if self.process.is_alive():
            self.process.kill()
            self.process.join(KILL_TIMEOUT)
        self.conn.close()

    def _stop(self) -> None:
        try:
            self.conn.send(None)
        except (BrokenPipeError, ConnectionResetError, OSError):
            pass
        self.process.join(STOP_TIMEOUT)
        self._kill()

    async def kill(self) -> None:
        """Force-terminate the worker."""
        await asyncio.to_thread(self._kill)

    async def stop(self) -> None:
        """Ask the worker to exit, killing it if it does not."""
        await asyncio.to_thread(self._stop)


@dataclass(frozen=True, kw_only=True)
class Scheduler:
    """Runs units on a fixed pool of worker processes.

    Each lane owns one worker process and runs its units strictly in
    sequence. Lanes share nothing but the read-only session.
    """

    session: WorkerSession
    grace_period: float = 5.0
    start_method: Literal["spawn", "forkserver", "fork"] = "spawn"

    async def run(
        self,
        units: Sequence[TestUnit],
        worker_count: int,
        timeout_per_unit: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> Sequence[Outcome]:
        """Execute units and return one outcome per unit, in input order.

        Args:
            units: Units in registry order
            worker_count: Number of worker processes (capped at len(units))
            timeout_per_unit: Default timeout for units declaring none
            cancel: Set to stop dispatching; running units get the grace period

        Returns:
            Outcomes in the same order as units

        """
        if not units:
            log.info("No units to run")
            return []

        cancel = cancel or asyncio.Event()
        worker_count = max(1, min(worker_count, len(units)))
        lanes = partition(units, worker_count)

        log.info("Running %d unit(s) on %d worker(s)...", len(units), worker_count)
        collected: list[list[Outcome]] = [[] for _ in lanes]
        results = await asyncio.gather(
            *(
                self._run_lane(index, lane, timeout_per_unit, cancel, collected[index])
                for index, lane in enumerate(lanes)
            ),
            return_exceptions=True,
        )
        log.info("Unit execution completed")

        by_name: dict[str, Outcome] = {}
        for lane, outcomes, result in zip(lanes, collected, results, strict=True):
            by_name.update((outcome.unit, outcome) for outcome in outcomes)
            if isinstance(result, BaseException):
                log.error("Worker lane failed: %s", result, exc_info=result)
                by_name.update(
                    (unit.name, lane_failed(unit, result))
                    for unit in lane
                    if unit.name not in by_name
                )

        return [by_name[unit.name] for unit in units]

    async def _run_lane(
        self,
        index: int,
        units: Sequence[TestUnit],
        timeout_per_unit: float | None,
        cancel: asyncio.Event,
        outcomes: list[Outcome],
    ) -> list[Outcome]:
        """Run one lane, appending to ``outcomes`` as each unit finishes."""
        context = multiprocessing.get_context(self.start_method)
        name = f"suite-worker-{index}"
        worker: WorkerHandle | None = None

        try:
            for position, unit in enumerate(units):
                if unit.skip_reason is not None:
                    outcomes.append(
                        Outcome(
                            unit=unit.name, status="skipped", skip_reason=unit.skip_reason
                        )
                    )
                    continue
                if cancel.is_set():
                    outcomes.append(not_started(unit))
                    continue

                if worker is None:
                    worker = await asyncio.to_thread(
                        WorkerHandle.spawn, context, self.session, name
                    )

                timeout = unit.timeout if unit.timeout is not None else timeout_per_unit
                try:
                    outcome = await worker.execute(
                        unit, timeout, cancel, self.grace_period
                    )
                except UnitTimedOut as e:
                    log.warning("Unit %s timed out after %.1fs", unit.name, e.elapsed)
                    await worker.kill()
                    worker = None
                    outcome = timed_out(unit, e)
                except WorkerCrashed as e:
                    log.error(
                        "%s died (exit code %s) while running %s",
                        name,
                        e.exitcode,
                        unit.name,
                    )
                    await worker.kill()
                    worker = None
                    outcomes.extend(
                        worker_died(remaining, e, current=unit)
                        for remaining in units[position:]
                    )
                    break
                except Exception as e:
                    log.exception("Could not run %s on %s", unit.name, name)
                    await worker.kill()
                    worker = None
                    outcome = lane_failed(unit, e)

                log.info(
                    "Unit completed: unit=%s status=%s duration=%.2fs",
                    outcome.unit,
                    outcome.status,
                    outcome.duration,
                )
                outcomes.append(outcome)
        finally:
            if worker is not None:
                await worker.stop()

        return outcomes


def timed_out(unit: TestUnit, error: UnitTimedOut) -> Outcome:
    if error.cancelled:
        expected = f"completes within the {error.limit}s grace after run cancellation"
    else:
        expected = f"completes within {error.limit}s"
    return Outcome(
        unit=unit.name,
        status="timed_out",
        duration=error.elapsed,
        failure=FailureDetail(
            summary=unit.summary,
            expected=expected,
            actual=f"still running after {error.elapsed:.1f}s, worker terminated",
        ),
    )


def not_started(unit: TestUnit) -> Outcome:
    return Outcome(
        unit=unit.name,
        status="timed_out",
        failure=FailureDetail(
            summary=unit.summary,
            expected="runs before the run is cancelled",
            actual="not started, run was cancelled",
        ),
    )


def worker_died(unit: TestUnit, error: WorkerCrashed, current: TestUnit) -> Outcome:
    if unit is current:
        actual = f"worker process exited with code {error.exitcode} during the unit"
    else:
        actual = (
            f"never ran, worker process exited with code {error.exitcode} "
            f"while running {current.name}"
        )
    return Outcome(
        unit=unit.name,
        status="errored",
        failure=FailureDetail(
            summary=unit.summary,
            expected="worker process survives the unit",
            actual=actual,
        ),
    )


def lane_failed(unit: TestUnit, error: BaseException) -> Outcome:
    return Outcome(
        unit=unit.name,
        status="errored",
        failure=FailureDetail(
            summary=unit.summary,
            expected="worker lane runs the unit",
            actual=f"{type(error).__name__}: {error}",
        ),
    )
