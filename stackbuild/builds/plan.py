"""Build plan model and dependency graph.

This module handles:
- The immutable BuildUnit and BuildPlan types
- Unit selection, including transitive dependencies
- Dependency validation with Kahn's algorithm
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any

from stackbuild.builds.expand import expand_vars

logger = logging.getLogger(__name__)

DEFAULT_DOCKERFILE = "Dockerfile"


class PlanValidationError(Exception):
    """Raised when the requested build is invalid before anything runs."""

    def __init__(self, message: str, code: str = "plan_validation") -> None:
        super().__init__(message)
        self.code = code


class NoUnitsToBuildError(PlanValidationError):
    """Raised when a plan has no units to build."""

    def __init__(self) -> None:
        super().__init__("No units to build defined", code="no_units_to_build")


class SchedulingError(Exception):
    """Raised when dependencies cannot be satisfied.

    Attributes:
        units: Names of the units that can never be scheduled.
    """

    def __init__(
        self, message: str, units: Iterable[str] = (), code: str = "scheduling"
    ) -> None:
        super().__init__(message)
        self.units = sorted(units)
        self.code = code


@dataclass(frozen=True)
class BuildArg:
    """A single build argument."""

    name: str
    value: str = ""

    def __str__(self) -> str:
        return f"{self.name}={self.value}"


@dataclass(frozen=True)
class VolumeMount:
    """Host path to copy into the image at build time."""

    local_path: str
    remote_path: str


@dataclass(frozen=True)
class BuildUnit:
    """A named buildable service entry.

    Attributes:
        context: Build context directory.
        dockerfile: Dockerfile path; empty when the unit has none.
        image: Explicit image reference, empty to let the tagger decide.
        args: Build arguments in declaration order.
        secrets: Build secrets (name -> local path).
        target: Target stage of a multi-stage Dockerfile.
        cache_from: Images used as build cache sources.
        volumes: Host paths copied into the image after the build.
        depends_on: Units that must be built before this one.
    """

    context: str = "."
    dockerfile: str = DEFAULT_DOCKERFILE
    image: str = ""
    args: tuple[BuildArg, ...] = ()
    secrets: Mapping[str, str] = field(default_factory=dict)
    target: str = ""
    cache_from: tuple[str, ...] = ()
    volumes: tuple[VolumeMount, ...] = ()
    depends_on: tuple[str, ...] = ()

    def has_dockerfile(self) -> bool:
        return self.dockerfile != ""

    def has_volume_mounts(self) -> bool:
        return len(self.volumes) > 0

    def copy(self, **changes: Any) -> BuildUnit:
        """Return a copy of this unit with some fields replaced."""
        return replace(self, **changes)

    def expand_args(self, environ: Mapping[str, str] | None = None) -> BuildUnit:
        """Return a copy with every build argument value expanded."""
        args = tuple(BuildArg(a.name, expand_vars(a.value, environ)) for a in self.args)
        return replace(self, args=args)

    def with_extra_args(self, extra: Mapping[str, str]) -> BuildUnit:
        """Append arguments not already declared by the unit.

        Args:
            extra: Candidate arguments, appended in sorted key order.

        Returns:
            Copy of the unit with the additional arguments.
        """
        declared = {a.name for a in self.args}
        added = tuple(
            BuildArg(name, value)
            for name, value in sorted(extra.items())
            if name not in declared
        )
        return replace(self, args=self.args + added)


@dataclass(frozen=True)
class BuildPlan:
    """A manifest's build section.

    Attributes:
        name: Plan name, used as the image namespace root.
        units: Mapping of unit name to BuildUnit, in manifest order.
        compose: Whether the plan was derived from a compose file.
    """

    name: str
    units: Mapping[str, BuildUnit] = field(default_factory=dict)
    compose: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "units", MappingProxyType(dict(self.units)))

    def __getitem__(self, name: str) -> BuildUnit:
        return self.units[name]

    def __contains__(self, name: object) -> bool:
        return name in self.units

    def expand(self, environ: Mapping[str, str] | None = None) -> BuildPlan:
        """Return a copy of the plan with every unit's arguments expanded."""
        return replace(
            self,
            units={name: unit.expand_args(environ) for name, unit in self.units.items()},
        )


def select_units(plan: BuildPlan, requested: Iterable[str] | None = None) -> list[str]:
    """Resolve the units to build.

    With no explicit request every unit is selected. Otherwise the requested
    units plus their transitive dependencies are selected, in plan order.

    Args:
        plan: Build plan.
        requested: Unit names requested by the caller.

    Returns:
        Selected unit names.

    Raises:
        PlanValidationError: If a requested unit is not in the plan.
    """
    requested = list(requested or [])
    if not requested:
        return list(plan.units)

    invalid = [name for name in requested if name not in plan]
    if invalid:
        raise PlanValidationError(
            f"Invalid unit names, not found in manifest: {invalid}",
            code="unknown_units",
        )

    selected: set[str] = set()
    queue = deque(requested)
    while queue:
        name = queue.popleft()
        if name in selected:
            continue
        selected.add(name)
        unit = plan.units.get(name)
        if unit is not None:
            queue.extend(unit.depends_on)

    # Missing dependencies stay selected so scheduling can report them
    ordered = [name for name in plan.units if name in selected]
    ordered.extend(sorted(selected - set(plan.units)))
    return ordered


def topological_order(units: Mapping[str, BuildUnit], names: Iterable[str]) -> list[str]:
    """Order units so that every unit follows its dependencies.

    Uses Kahn's algorithm over the subgraph induced by ``names``.

    Args:
        units: All units of the plan.
        names: Units to order.

    Returns:
        Unit names in a valid build order.

    Raises:
        SchedulingError: On dependencies outside ``names`` or cycles.
    """
    names = list(names)
    members = set(names)

    missing = {
        name: [dep for dep in units[name].depends_on if dep not in members]
        for name in names
        if name in units
    }
    missing = {name: deps for name, deps in missing.items() if deps}
    unknown = [name for name in names if name not in units]
    if missing or unknown:
        details = ", ".join(f"{n} -> {deps}" for n, deps in missing.items())
        raise SchedulingError(
            f"Units reference undefined dependencies: {details or unknown}",
            units=list(missing) + unknown,
            code="missing_dependency",
        )

    dependents: dict[str, list[str]] = {name: [] for name in names}
    in_degree: dict[str, int] = {}
    for name in names:
        deps = set(units[name].depends_on)
        in_degree[name] = len(deps)
        for dep in deps:
            dependents[dep].append(name)

    queue = deque(name for name in names if in_degree[name] == 0)
    order: list[str] = []
    while queue:
        name = queue.popleft()
        order.append(name)
        for dependent in dependents[name]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    if len(order) != len(names):
        stuck = [name for name in names if in_degree[name] > 0]
        raise SchedulingError(
            f"Dependency cycle detected between units: {sorted(stuck)}",
            units=stuck,
            code="dependency_cycle",
        )
    return order


__all__ = [
    "DEFAULT_DOCKERFILE",
    "BuildArg",
    "BuildPlan",
    "BuildUnit",
    "NoUnitsToBuildError",
    "PlanValidationError",
    "SchedulingError",
    "VolumeMount",
    "select_units",
    "topological_order",
]
