"""Store for ephemeral per-run artifact files.

Layout on disk::

    <root>/.gitignore
    <root>/<run_id>/.pinned             # only for verbose runs
    <root>/<run_id>/<unit>/<filename>

Files are written as ``<filename>.<pid>.partial`` and renamed into place
when the writer closes them cleanly, so a listing or a sweep never mistakes
a half-written file for a finished artifact.
"""

import logging
import os
from collections.abc import Iterator, Sequence
from contextlib import contextmanager, suppress
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any

from suite_orchestrator.models.artifact import Artifact

log = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".partial"
PINNED_MARKER = ".pinned"
WRITE_MODES = frozenset({"w", "wb", "x", "xb"})


def writer_pid(path: Path) -> int | None:
    """Extract the writer's pid from a partial file name."""
    stem = path.name.removesuffix(PARTIAL_SUFFIX)
    _, _, pid = stem.rpartition(".")
    try:
        return int(pid)
    except ValueError:
        return None


def is_open_for_writing(path: Path) -> bool:
    """Check whether a partial file's writer process is still running."""
    pid = writer_pid(path)
    if pid is None:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


@dataclass(frozen=True, kw_only=True)
class ArtifactStore:
    """Artifact directory for one run.

    The store is a plain value so it can be handed to worker processes; all
    state lives on disk.
    """

    root: Path
    run_id: str
    pinned: bool = False

    @property
    def run_dir(self) -> Path:
        return self.root / self.run_id

    def unit_dir(self, unit: str) -> Path:
        return self.run_dir / unit

    def prepare(self) -> None:
        """Create the run directory and mark it pinned for verbose runs."""
        self.run_dir.mkdir(parents=True, exist_ok=True)
        gitignore = self.root / ".gitignore"
        if not gitignore.exists():
            gitignore.write_text("*\n", encoding="utf-8")
        if self.pinned:
            (self.run_dir / PINNED_MARKER).touch()

    @contextmanager
    def scoped_artifact(
        self, unit: str, filename: str, mode: str = "w"
    ) -> Iterator[IO[Any]]:
        """Open an artifact for writing, closed and finalized on every exit path.

        On a clean exit the file is renamed into place. If the body raises,
        the handle is closed and the partial file removed before the
        exception propagates.
        """
        if mode not in WRITE_MODES:
            raise ValueError(f"Artifacts are write-only, got mode {mode!r}")
        if Path(filename).name != filename or filename in {"", ".", ".."}:
            raise ValueError(f"Artifact filename must be a plain name: {filename!r}")

        target = self.unit_dir(unit) / filename
        target.parent.mkdir(parents=True, exist_ok=True)
        partial = target.with_name(f"{filename}.{os.getpid()}{PARTIAL_SUFFIX}")
        encoding = None if "b" in mode else "utf-8"

        try:
            with partial.open(mode, encoding=encoding) as handle:
                yield handle
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        os.replace(partial, target)
        log.debug("Wrote artifact %s", target)

    def list_artifacts(self) -> Sequence[Artifact]:
        """All finished artifacts across every run directory."""
        if not self.root.exists():
            return []

        artifacts: list[Artifact] = []
        for run_dir in sorted(p for p in self.root.iterdir() if p.is_dir()):
            pinned = (run_dir / PINNED_MARKER).exists()
            for unit_dir in sorted(p for p in run_dir.iterdir() if p.is_dir()):
                for path in sorted(unit_dir.iterdir()):
                    if not path.is_file() or path.name.endswith(PARTIAL_SUFFIX):
                        continue
                    artifacts.append(
                        Artifact(
                            unit=unit_dir.name,
                            path=path,
                            created_at=datetime.fromtimestamp(
                                path.stat().st_mtime, tz=timezone.utc
                            ),
                            pinned=pinned,
                        )
                    )
        return artifacts

    def sweep(self, pin_if_verbose: bool) -> int:
        """Remove artifacts and stale partial files.

        The current run's own directory is kept when ``pin_if_verbose`` is
        set and this store is pinned. Partial files whose writer is still
        alive are never removed.

        Returns:
            Number of files removed

        """
        if not self.root.exists():
            return 0

        removed = 0
        for run_dir in sorted(p for p in self.root.iterdir() if p.is_dir()):
            if pin_if_verbose and self.pinned and run_dir == self.run_dir:
                log.debug("Keeping pinned artifacts of run %s", self.run_id)
                continue
            removed += self._sweep_run_dir(run_dir)

        if removed:
            log.info("Swept %d artifact file(s) from %s", removed, self.root)
        return removed

    def _sweep_run_dir(self, run_dir: Path) -> int:
        removed = 0
        paths = sorted(run_dir.rglob("*"), key=lambda p: len(p.parts), reverse=True)

        for path in paths:
            if path.is_dir():
                continue
            if path.name.endswith(PARTIAL_SUFFIX) and is_open_for_writing(path):
                log.warning("Not sweeping %s, still open for writing", path)
                continue
            path.unlink(missing_ok=True)
            if path.name != PINNED_MARKER:
                removed += 1

        for path in paths:
            if path.is_dir():
                with suppress(OSError):
                    path.rmdir()
        with suppress(OSError):
            run_dir.rmdir()

        return removed
