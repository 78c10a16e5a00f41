"""Dependency edges between derived fields and the fields they derive from.

Derived fields (for example the server's ip_addresses) are computed by
the API from other fields. When a source field changes within a cycle,
every field that derives from it, directly or transitively, must be
marked unresolved instead of carrying a stale value.

The edges are kept in one explicit graph that is walked once per cycle
after the attachment differ has run:

    ip_addresses --depends on--> network_attachments

Cycles are rejected when the graph is validated.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .policies import UNKNOWN, PolicyKind, PolicyRegistry

logger = logging.getLogger(__name__)

# Pseudo-field standing for the server's attachment topology
ATTACHMENT_TOPOLOGY = "network_attachments"


class CyclicDependencyError(Exception):
    """Raised when a derived-field dependency cycle is detected."""

    pass


@dataclass
class FieldNode:
    """A node in the derived-field graph."""

    name: str
    depends_on: list[str] = field(default_factory=list)


@dataclass
class DerivedFieldGraph:
    """Directed acyclic graph of derived-field dependencies."""

    nodes: dict[str, FieldNode] = field(default_factory=dict)

    def add_node(self, name: str, depends_on: Iterable[str] | None = None) -> None:
        """Add a field and the fields it derives from.

        Args:
            name: Derived field name.
            depends_on: Fields whose change invalidates this field.
        """
        deps = list(depends_on or [])
        if name in self.nodes:
            for dep in deps:
                if dep not in self.nodes[name].depends_on:
                    self.nodes[name].depends_on.append(dep)
        else:
            self.nodes[name] = FieldNode(name=name, depends_on=deps)

        # Source fields get nodes too, even if they derive from nothing
        for dep in deps:
            if dep not in self.nodes:
                self.nodes[dep] = FieldNode(name=dep)

    def validate(self) -> None:
        """Validate the graph for cycles.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        self.topological_sort()

    def topological_sort(self) -> list[str]:
        """Return fields with every source before the fields derived from it.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        dependents: dict[str, list[str]] = {name: [] for name in self.nodes}
        in_degree: dict[str, int] = {name: 0 for name in self.nodes}

        for node in self.nodes.values():
            for dep in node.depends_on:
                dependents[dep].append(node.name)
                in_degree[node.name] += 1

        # Kahn's algorithm
        result: list[str] = []
        queue = sorted(name for name, degree in in_degree.items() if degree == 0)

        while queue:
            current = queue.pop(0)
            result.append(current)
            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)
            queue.sort()

        if len(result) != len(self.nodes):
            cycle_nodes = sorted(name for name, degree in in_degree.items() if degree > 0)
            raise CyclicDependencyError(
                f"Circular field dependency detected involving: {cycle_nodes}"
            )
        return result

    def affected_by(self, changed: Iterable[str]) -> list[str]:
        """Return every field derived, directly or transitively, from changed fields.

        Args:
            changed: Source fields that changed in this cycle.

        Returns:
            Affected field names in topological order, excluding the
            changed fields themselves.
        """
        dirty = set(changed)
        affected: list[str] = []
        for name in self.topological_sort():
            if name in dirty:
                continue
            if any(dep in dirty for dep in self.nodes[name].depends_on):
                dirty.add(name)
                affected.append(name)
        return affected

    def propagate(self, values: dict[str, Any], changed: Iterable[str]) -> dict[str, Any]:
        """Mark fields derived from changed fields as unresolved.

        Args:
            values: Planned attribute values. Not modified.
            changed: Source fields that changed in this cycle.

        Returns:
            A copy of values with every affected field set to UNKNOWN.
        """
        result = dict(values)
        for name in self.affected_by(changed):
            if name in result:
                logger.debug(
                    "Marking derived field unresolved",
                    extra={"field": name, "depends_on": self.nodes[name].depends_on},
                )
                result[name] = UNKNOWN
        return result


def graph_from_registry(registry: PolicyRegistry) -> DerivedFieldGraph:
    """Build the graph from the RECOMPUTE_ON_DEPENDENCY policies of a registry.

    Raises:
        CyclicDependencyError: If the declared edges form a cycle.
    """
    graph = DerivedFieldGraph()
    for policy in registry:
        if policy.kind == PolicyKind.RECOMPUTE_ON_DEPENDENCY:
            graph.add_node(policy.attribute, policy.depends_on)
    graph.validate()
    return graph
