"""Discover test units registered in unit files under a root directory."""

import importlib.util
import logging
import sys
from collections import Counter
from collections.abc import Iterable, Sequence
from fnmatch import fnmatchcase
from pathlib import Path
from types import ModuleType

from pydantic import Field

from suite_orchestrator.errors import StructuralViolationError
from suite_orchestrator.models.base import Model
from suite_orchestrator.models.unit import UNIT_PREFIX, StructuralViolation, TestUnit
from suite_orchestrator.units import FunctionUnit, UnitGroup

log = logging.getLogger(__name__)

UNIT_FILE_GLOB = f"{UNIT_PREFIX}*.py"
MODULE_PREFIX = "suite_units"


class UnitFilter(Model):
    """Name globs and tags selecting a subset of the catalog."""

    patterns: Sequence[str] = Field(default_factory=tuple)
    tags: Sequence[str] = Field(default_factory=tuple)

    def matches(self, unit: TestUnit) -> bool:
        if self.patterns and not any(fnmatchcase(unit.name, p) for p in self.patterns):
            return False
        if self.tags and not unit.all_tags.intersection(self.tags):
            return False
        return True


class Catalog(Model):
    """Ordered units found by discovery plus any structural violations."""

    units: Sequence[TestUnit] = Field(default_factory=tuple)
    violations: Sequence[StructuralViolation] = Field(default_factory=tuple)

    @property
    def names(self) -> Sequence[str]:
        return [unit.name for unit in self.units]

    def get(self, name: str) -> TestUnit | None:
        return next((unit for unit in self.units if unit.name == name), None)

    def select(self, unit_filter: UnitFilter) -> Sequence[TestUnit]:
        return [unit for unit in self.units if unit_filter.matches(unit)]


def discover(
    root: Path,
    unit_filter: UnitFilter | None = None,
    *,
    strict: bool = False,
) -> Catalog:
    """Discover units under ``root``.

    Unit files are imported fresh on every call, so the catalog always
    reflects the files as they are now.

    Args:
        root: Directory scanned recursively for ``test_*.py`` files
        unit_filter: Optional filter applied after validation
        strict: Raise instead of reporting structural violations

    Returns:
        Units sorted by topic then declaration order, and violations

    Raises:
        FileNotFoundError: If root is not a directory
        StructuralViolationError: If strict and any violation was found

    """
    root = Path(root).resolve()
    if not root.is_dir():
        raise FileNotFoundError(f"Unit root not found: {root}")

    ensure_importable(root)
    units: list[TestUnit] = []
    violations: list[StructuralViolation] = []

    for path in find_unit_files(root):
        module_name = module_name_for(root, path)
        try:
            module = import_unit_module(path, module_name)
        except (Exception, SystemExit) as e:
            log.warning("Failed to import unit file %s: %s", path, e)
            violations.append(
                StructuralViolation(
                    path=path, message=f"Failed to import: {type(e).__name__}: {e}"
                )
            )
            continue

        found, file_violations = collect_units(path, module_name, groups_in(module))
        units.extend(found)
        violations.extend(file_violations)

    units, duplicate_violations = drop_duplicates(units)
    violations.extend(duplicate_violations)

    if strict and violations:
        raise StructuralViolationError(violations)
    for violation in violations:
        log.warning("Structural violation in %s: %s", violation.path, violation.message)

    units.sort(key=lambda unit: unit.topic)
    if unit_filter is not None:
        units = [unit for unit in units if unit_filter.matches(unit)]

    log.info("Discovered %d unit(s) under %s", len(units), root)
    return Catalog(units=units, violations=violations)


def find_unit_files(root: Path) -> Sequence[Path]:
    """Unit files under root in a stable order, skipping hidden directories."""
    return sorted(
        path
        for path in root.rglob(UNIT_FILE_GLOB)
        if path.is_file()
        and not any(part.startswith(".") for part in path.relative_to(root).parts)
    )


def canonical_topic(path: Path) -> str:
    """Topic a unit file is named for (``test_foo.py`` -> ``foo``)."""
    return path.stem.removeprefix(UNIT_PREFIX)


def module_name_for(root: Path, path: Path) -> str:
    """Stable module name for a unit file relative to root."""
    relative = path.relative_to(root).with_suffix("")
    return ".".join((MODULE_PREFIX, *relative.parts))


def ensure_importable(root: Path) -> None:
    """Let unit files import helpers living next to them."""
    if str(root) not in sys.path:
        sys.path.insert(0, str(root))


def import_unit_module(path: Path, module_name: str) -> ModuleType:
    """Import a unit file as a fresh module."""
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot load unit file {path}")

    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except BaseException:
        sys.modules.pop(module_name, None)
        raise
    return module


def groups_in(module: ModuleType) -> Sequence[UnitGroup]:
    """Unit groups declared at module level, without duplicates."""
    groups: dict[int, UnitGroup] = {}
    for value in vars(module).values():
        if isinstance(value, UnitGroup):
            groups.setdefault(id(value), value)
    return list(groups.values())


def collect_units(
    path: Path, module_name: str, groups: Iterable[UnitGroup]
) -> tuple[list[TestUnit], list[StructuralViolation]]:
    """Build unit records for one file and validate its naming."""
    units: list[TestUnit] = []
    violations: list[StructuralViolation] = []
    topic = canonical_topic(path)
    groups = list(groups)

    if not groups:
        violations.append(
            StructuralViolation(path=path, message="File declares no UnitGroup")
        )

    for group in groups:
        if group.name != topic:
            violations.append(
                StructuralViolation(
                    path=path,
                    message=(
                        f"Group '{group.name}' does not match file topic '{topic}'"
                    ),
                )
            )

        for function_unit in group.units:
            name = function_unit.name()
            if not name.startswith(UNIT_PREFIX):
                violations.append(
                    StructuralViolation(
                        path=path,
                        unit=name,
                        message=f"Unit name must start with '{UNIT_PREFIX}'",
                    )
                )
                continue
            units.append(to_test_unit(function_unit, group, path, module_name))

    return units, violations


def to_test_unit(
    function_unit: FunctionUnit, group: UnitGroup, path: Path, module_name: str
) -> TestUnit:
    return TestUnit(
        name=function_unit.name(),
        topic=group.name,
        path=path,
        module=module_name,
        timeout=function_unit.timeout,
        skip_reason=function_unit.skip_reason,
        tags=function_unit.tags,
        parameters=function_unit.parameters(),
        description=function_unit.description(),
    )


def drop_duplicates(
    units: Sequence[TestUnit],
) -> tuple[list[TestUnit], list[StructuralViolation]]:
    """Remove every unit whose name is declared more than once."""
    counts = Counter(unit.name for unit in units)
    violations = [
        StructuralViolation(
            path=unit.path,
            unit=unit.name,
            message=(
                f"Duplicate unit name '{unit.name}' "
                f"(declared {counts[unit.name]} times, topic '{unit.topic}')"
            ),
        )
        for unit in units
        if counts[unit.name] > 1
    ]
    return [unit for unit in units if counts[unit.name] == 1], violations


def load_unit(unit: TestUnit, module: ModuleType | None = None) -> FunctionUnit:
    """Resolve a unit record back to its registered callable.

    Raises:
        LookupError: If the file no longer registers the unit

    """
    if module is None:
        module = import_unit_module(unit.path, unit.module)

    for group in groups_in(module):
        if group.name == unit.topic and (function_unit := group.get(unit.name)):
            return function_unit

    raise LookupError(f"Unit '{unit.name}' is not registered in {unit.path}")
