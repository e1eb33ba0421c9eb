"""Models for files units leave in the artifact store."""

from datetime import datetime
from pathlib import Path

from suite_orchestrator.models.base import Model


class Artifact(Model):
    """A debugging-output file produced by a unit."""

    unit: str
    path: Path
    created_at: datetime
    pinned: bool = False
