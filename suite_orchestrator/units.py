"""Authoring API for test units.

A unit file ``test_<topic>.py`` declares one group and registers its units
on it explicitly::

    group = UnitGroup("interventions")

    @group.unit(timeout=60, tags=("integration",))
    def test_interventions_vaccine(do_plot=False, n_agents=1000):
        ...

    if __name__ == "__main__":
        group.main(__file__)
"""

import inspect
from collections.abc import Callable, Mapping, Sequence
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any, Protocol, TypeAlias, overload

from suite_orchestrator.artifacts import ArtifactStore
from suite_orchestrator.models.unit import Parameter

UnitFunc: TypeAlias = Callable[..., Any]

SKIPPED_KINDS = (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD)


class UnitFailure(AssertionError):
    """Expectation failure carrying the values a bug report needs."""

    def __init__(
        self, summary: str, *, expected: Any, actual: Any, context: str = ""
    ) -> None:
        self.summary = summary
        self.expected = expected
        self.actual = actual
        self.context = context
        super().__init__(f"{summary}: expected {expected!r}, got {actual!r}")


class UnitSkipped(Exception):
    """Raised inside a unit to record it as skipped."""


@dataclass(frozen=True, kw_only=True)
class UnitConfig:
    """Configuration handed to every unit run."""

    unit: str
    do_plot: bool = False
    verbose: bool = False
    overrides: Mapping[str, Any] = field(default_factory=dict)
    artifacts: ArtifactStore | None = field(default=None, repr=False)

    def artifact(self, filename: str, mode: str = "w") -> AbstractContextManager[IO[Any]]:
        """Open an artifact file owned by this unit."""
        if self.artifacts is None:
            raise RuntimeError("No artifact store is configured for this run")
        return self.artifacts.scoped_artifact(self.unit, filename, mode=mode)


class Runnable(Protocol):
    """Capability every registered unit provides."""

    def name(self) -> str: ...

    def run(self, config: UnitConfig) -> Any: ...


@dataclass(frozen=True, kw_only=True)
class FunctionUnit:
    """A plain function registered as a unit."""

    func: UnitFunc
    timeout: float | None = None
    skip_reason: str | None = None
    tags: tuple[str, ...] = ()

    def name(self) -> str:
        return self.func.__name__

    def description(self) -> str:
        doc = inspect.getdoc(self.func) or ""
        return doc.strip().splitlines()[0] if doc.strip() else ""

    def parameters(self) -> Sequence[Parameter]:
        return [
            Parameter(
                name=p.name,
                default=None if p.default is p.empty else repr(p.default),
                required=p.default is p.empty,
            )
            for p in inspect.signature(self.func).parameters.values()
            if p.kind not in SKIPPED_KINDS
        ]

    def run(self, config: UnitConfig) -> Any:
        """Call the function with the arguments it declares.

        ``config`` receives the config itself, ``do_plot`` and ``verbose``
        follow the run toggles, anything else comes from the overrides or
        falls back to the declared default.
        """
        kwargs: dict[str, Any] = {}
        for p in inspect.signature(self.func).parameters.values():
            if p.kind in SKIPPED_KINDS:
                continue
            if p.name == "config":
                kwargs[p.name] = config
            elif p.name == "do_plot":
                kwargs[p.name] = config.do_plot
            elif p.name == "verbose":
                kwargs[p.name] = config.verbose
            elif p.name in config.overrides:
                kwargs[p.name] = config.overrides[p.name]
        return self.func(**kwargs)


class UnitGroup:
    """Named group of units declared by one unit file."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._units: list[FunctionUnit] = []

    def __repr__(self) -> str:
        return f"UnitGroup({self.name!r}, units={len(self._units)})"

    @property
    def units(self) -> Sequence[FunctionUnit]:
        return tuple(self._units)

    @overload
    def unit(self, func: UnitFunc, /) -> UnitFunc: ...

    @overload
    def unit(
        self,
        *,
        timeout: float | None = None,
        skip: str | None = None,
        tags: Sequence[str] = (),
    ) -> Callable[[UnitFunc], UnitFunc]: ...

    def unit(
        self,
        func: UnitFunc | None = None,
        /,
        *,
        timeout: float | None = None,
        skip: str | None = None,
        tags: Sequence[str] = (),
    ) -> UnitFunc | Callable[[UnitFunc], UnitFunc]:
        """Register a function as a unit; returns the function unchanged."""

        def register(f: UnitFunc) -> UnitFunc:
            self._units.append(
                FunctionUnit(func=f, timeout=timeout, skip_reason=skip, tags=tuple(tags))
            )
            return f

        if func is not None:
            return register(func)
        return register

    def get(self, name: str) -> FunctionUnit | None:
        return next((u for u in self._units if u.name() == name), None)

    def main(self, file: str, argv: Sequence[str] | None = None) -> None:
        """Run this group's units from the declaring file in standalone mode."""
        from suite_orchestrator.cli import main

        names = list(argv) if argv else [u.name() for u in self._units]
        root = Path(file).resolve().parent
        main(["--mode", "standalone", "--root", str(root), *names])
