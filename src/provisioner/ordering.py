"""Dependency ordering for declared resources.

This module implements:
1. Dependency graph construction from ``dependsOn`` declarations
2. Topological sorting for execution order
3. Topological layers for concurrent execution
4. Cycle detection, which is session-fatal

DESIGN:
- Edges point from a resource to the identifiers it depends on
- Ties among independent resources are broken by declaration order, so
  identical input always yields identical output
- All validation happens before any mutating call

EXAMPLE:
```yaml
resources:
  - kind: IdentityPool
    identifier: github-pool
  - kind: OidcProvider
    identifier: github-provider
    dependsOn: [github-pool]   # Pool must exist first
```
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from .errors import ConfigurationError, CyclicDependencyError
from .models import ResourceSpec

logger = logging.getLogger(__name__)


@dataclass
class DependencyNode:
    """A node in the dependency graph."""

    identifier: str
    position: int
    depends_on: list[str] = field(default_factory=list)


@dataclass
class DependencyGraph:
    """Directed acyclic graph of resource dependencies."""

    nodes: dict[str, DependencyNode] = field(default_factory=dict)

    @classmethod
    def from_specs(cls, specs: Iterable[ResourceSpec]) -> DependencyGraph:
        """Build a graph from resource specs in declaration order.

        Raises:
            ConfigurationError: On duplicate identifiers or unknown dependencies.
        """
        graph = cls()
        for spec in specs:
            graph.add_node(spec.identifier, list(spec.depends_on))

        unknown = {
            node.identifier: [dep for dep in node.depends_on if dep not in graph.nodes]
            for node in graph.nodes.values()
        }
        unknown = {k: v for k, v in unknown.items() if v}
        if unknown:
            raise ConfigurationError(f"Unknown dependencies declared: {unknown}")

        return graph

    def add_node(self, identifier: str, depends_on: list[str] | None = None) -> None:
        """Add a node to the dependency graph.

        Raises:
            ConfigurationError: If the identifier was already added.
        """
        if identifier in self.nodes:
            raise ConfigurationError(f"Duplicate resource identifier: '{identifier}'")
        self.nodes[identifier] = DependencyNode(
            identifier=identifier,
            position=len(self.nodes),
            depends_on=depends_on or [],
        )

    def _dependents(self) -> dict[str, list[str]]:
        dependents: dict[str, list[str]] = {node: [] for node in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                dependents[dep].append(node.identifier)
        return dependents

    def layers(self) -> list[list[str]]:
        """Group identifiers into topological layers.

        Every node's dependencies lie in strictly earlier layers. Within a
        layer, nodes keep declaration order.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        dependents = self._dependents()
        in_degree: dict[str, int] = {
            identifier: len(node.depends_on) for identifier, node in self.nodes.items()
        }

        # Kahn's algorithm, one frontier at a time
        frontier = [identifier for identifier, degree in in_degree.items() if degree == 0]
        result: list[list[str]] = []
        processed = 0

        while frontier:
            frontier.sort(key=lambda i: self.nodes[i].position)
            result.append(frontier)
            processed += len(frontier)

            next_frontier: list[str] = []
            for current in frontier:
                for dependent in dependents[current]:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        next_frontier.append(dependent)
            frontier = next_frontier

        if processed != len(self.nodes):
            cycle_nodes = sorted(
                (i for i, degree in in_degree.items() if degree > 0),
                key=lambda i: self.nodes[i].position,
            )
            raise CyclicDependencyError(f"Circular dependency detected involving: {cycle_nodes}")

        return result

    def validate(self) -> None:
        """Validate the dependency graph for cycles.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        self.layers()

    def topological_sort(self) -> list[str]:
        """Return identifiers in dependency order (dependencies first).

        Unlike flattening ``layers()``, a node is emitted as soon as its
        dependencies are, so declaration order is honoured wherever the
        graph allows it.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        self.validate()

        dependents = self._dependents()
        in_degree = {identifier: len(node.depends_on) for identifier, node in self.nodes.items()}

        result: list[str] = []
        queue = [identifier for identifier, degree in in_degree.items() if degree == 0]

        while queue:
            # Lowest declaration position first for deterministic output
            queue.sort(key=lambda i: self.nodes[i].position)
            current = queue.pop(0)
            result.append(current)

            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        return result


def order(specs: Iterable[ResourceSpec]) -> list[ResourceSpec]:
    """Topologically sort specs, breaking ties by declaration order.

    Raises:
        ConfigurationError: On unknown dependencies or a dependency cycle.
    """
    spec_list = list(specs)
    by_id = {spec.identifier: spec for spec in spec_list}
    graph = DependencyGraph.from_specs(spec_list)
    return [by_id[identifier] for identifier in graph.topological_sort()]


def layers(specs: Iterable[ResourceSpec]) -> list[list[ResourceSpec]]:
    """Group specs into topological layers for concurrent execution.

    Raises:
        ConfigurationError: On unknown dependencies or a dependency cycle.
    """
    spec_list = list(specs)
    by_id = {spec.identifier: spec for spec in spec_list}
    graph = DependencyGraph.from_specs(spec_list)
    grouped = [[by_id[identifier] for identifier in layer] for layer in graph.layers()]

    logger.debug(
        "Computed execution layers",
        extra={"layers": [[s.identifier for s in layer] for layer in grouped]},
    )
    return grouped
