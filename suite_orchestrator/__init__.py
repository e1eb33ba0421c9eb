"""Parallel test-unit orchestration with coverage aggregation and artifact cleanup."""

from suite_orchestrator.units import UnitConfig, UnitFailure, UnitGroup, UnitSkipped

__all__ = ["UnitConfig", "UnitFailure", "UnitGroup", "UnitSkipped"]
