"""Fixtures shared by unit and integration tests."""

import textwrap
from pathlib import Path
from typing import Protocol

import pytest

from suite_orchestrator.models.run import RunConfig


class WriteUnitFileFn(Protocol):
    """Protocol for unit file creation function."""

    def __call__(self, filename: str, body: str) -> Path:
        """Write a unit file under the unit root and return its path."""


@pytest.fixture
def unit_root(tmp_path: Path) -> Path:
    """Create an empty unit root directory."""
    root = tmp_path / "units"
    root.mkdir()
    return root


@pytest.fixture
def write_unit_file(unit_root: Path) -> WriteUnitFileFn:
    """Return a function writing dedented unit files into the unit root."""

    def _write(filename: str, body: str) -> Path:
        path = unit_root / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(body).lstrip(), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def run_config(tmp_path: Path) -> RunConfig:
    """Discovery-mode run configuration writing artifacts under tmp_path."""
    return RunConfig(
        run_id="run-1",
        mode="discovery",
        workers=2,
        artifact_dir=tmp_path / "artifacts",
    )
