"""Harness settings loaded from an optional YAML file."""

import logging
import os
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any, Literal, Self

import yaml
from pydantic import ConfigDict, Field, ValidationError, model_validator

from suite_orchestrator.coverage_aggregator import DEFAULT_MINIMUM, DEFAULT_TARGET
from suite_orchestrator.errors import SettingsError
from suite_orchestrator.models.base import Model

log = logging.getLogger(__name__)

DEFAULT_SETTINGS_FILE = Path("suite.yaml")
PLOT_BACKEND_ENV = "SUITE_ORCHESTRATOR_PLOT_BACKEND"


class HarnessSettings(Model):
    """Project-level defaults; command-line flags override them per run."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    root: Path = Field(default=Path("tests"), description="Directory scanned for units")
    artifact_dir: Path = Field(default=Path(".suite/artifacts"))
    coverage_file: Path = Field(default=Path(".suite/coverage.json"))
    coverage_source: Sequence[str] = Field(
        default_factory=tuple,
        description="Packages or directories to measure (empty disables coverage)",
    )
    coverage_minimum: float = Field(default=DEFAULT_MINIMUM, ge=0.0, le=1.0)
    coverage_target: float = Field(default=DEFAULT_TARGET, ge=0.0, le=1.0)
    unit_timeout: float | None = Field(default=300.0, gt=0)
    grace_period: float = Field(default=5.0, ge=0)
    budget: float = Field(default=1800.0, gt=0, description="Automated-mode budget")
    plot_backend: str | None = Field(
        default=None, description="Headless backend exported when plotting is on"
    )
    start_method: Literal["spawn", "forkserver", "fork"] = "spawn"
    overrides: dict[str, Any] = Field(
        default_factory=dict, description="Unit parameter overrides"
    )

    @model_validator(mode="after")
    def _target_not_below_minimum(self) -> Self:
        if self.coverage_target < self.coverage_minimum:
            raise ValueError(
                f"coverage_target ({self.coverage_target}) is below "
                f"coverage_minimum ({self.coverage_minimum})"
            )
        return self


def load_settings(
    path: Path | None = None, environ: Mapping[str, str] | None = None
) -> HarnessSettings:
    """Load settings from ``path``, or ``suite.yaml`` if present.

    The plot backend environment variable takes precedence over the file.

    Raises:
        SettingsError: If the file is missing, not YAML, or fails validation

    """
    environ = os.environ if environ is None else environ
    if path is None and DEFAULT_SETTINGS_FILE.exists():
        path = DEFAULT_SETTINGS_FILE

    data: dict[str, Any] = {}
    if path is not None:
        data = read_settings_file(Path(path))
        log.debug("Loaded settings from %s", path)

    if backend := environ.get(PLOT_BACKEND_ENV):
        data["plot_backend"] = backend

    try:
        return HarnessSettings.model_validate(data)
    except ValidationError as e:
        raise SettingsError(f"Invalid settings in {path or 'defaults'}: {e}") from e


def read_settings_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise SettingsError(f"Settings file not found: {path}")

    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise SettingsError(f"Invalid YAML in {path}: {e}") from e

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise SettingsError(
            f"Settings must be a YAML mapping, got {type(loaded).__name__} in {path}"
        )
    return loaded
