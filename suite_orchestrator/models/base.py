"""Base model shared by every record the harness passes between processes."""

from typing import Any

from pydantic import BaseModel, ConfigDict


class Model(BaseModel):
    """Immutable model, picklable across the worker pipe."""

    model_config = ConfigDict(frozen=True)

    def to_json_dict(self) -> dict[str, Any]:
        """Dump to JSON-compatible primitives."""
        return self.model_dump(mode="json")
