"""Dependency graph and topological layering of units."""

from __future__ import annotations

from collections.abc import Iterable

from ..errors import ConfigError
from .model import DeploymentStage, ServiceUnit


class DependencyGraph:
    """Units keyed by name with their declared dependencies.

    Declaration order is preserved and used to order units within a stage,
    so layering is deterministic.
    """

    def __init__(self, units: Iterable[ServiceUnit]):
        self.units: dict[str, ServiceUnit] = {}
        for unit in units:
            if unit.name in self.units:
                raise ConfigError(f"Duplicate unit name: {unit.name}")
            self.units[unit.name] = unit

    def __len__(self) -> int:
        return len(self.units)

    def __contains__(self, name: str) -> bool:
        return name in self.units

    def dependents(self) -> dict[str, list[str]]:
        """Map each unit name to the units that depend on it."""
        result: dict[str, list[str]] = {name: [] for name in self.units}
        for unit in self.units.values():
            for dep in dict.fromkeys(unit.depends_on):
                if dep in result:
                    result[dep].append(unit.name)
        return result

    def validate(self) -> None:
        """Raise ConfigError for dependencies on unknown units."""
        unknown = {
            f"{unit.name} -> {dep}"
            for unit in self.units.values()
            for dep in unit.depends_on
            if dep not in self.units
        }
        if unknown:
            raise ConfigError(
                f"Unknown dependencies: {', '.join(sorted(unknown))}",
                details={"unknown": sorted(unknown)},
            )

    def layers(self) -> list[DeploymentStage]:
        """Topological layering (Kahn's algorithm).

        Raises:
            ConfigError: Unknown dependency or dependency cycle.
        """
        self.validate()

        order = {name: i for i, name in enumerate(self.units)}
        indegree = {name: len(set(unit.depends_on)) for name, unit in self.units.items()}
        dependents = self.dependents()

        stages: list[DeploymentStage] = []
        ready = [name for name, degree in indegree.items() if degree == 0]
        placed = 0

        while ready:
            ready.sort(key=order.__getitem__)
            stages.append(
                DeploymentStage(len(stages), tuple(self.units[name] for name in ready))
            )
            placed += len(ready)

            next_ready: list[str] = []
            for name in ready:
                for child in dependents[name]:
                    indegree[child] -= 1
                    if indegree[child] == 0:
                        next_ready.append(child)
            ready = next_ready

        if placed != len(self.units):
            cyclic = sorted(name for name, degree in indegree.items() if degree > 0)
            raise ConfigError(
                f"Dependency cycle between units: {', '.join(cyclic)}",
                details={"cycle": cyclic},
            )
        return stages
