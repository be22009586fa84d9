"""Dependency graph construction from resource declarations.

This module turns a flat list of ResourceNodes into a dependency graph:
1. Duplicate logical names are rejected
2. Every reference and explicit `depends_on` must name a declared node
3. One edge per distinct predecessor (data reference or explicit dependency)

The builder is a pure transformation. Acyclicity is checked by the scheduler,
which has to walk the graph anyway and can name the cycle members precisely.

EXAMPLE DECLARATION:
```yaml
- name: tgw-attachment-c
  kind: transit_gateway_attachment
  inputs:
    association_route_table_id: ${tgw-rt-c.id}
    propagation_route_table_ids:
      - ${tgw-rt-a.id}
      - ${tgw-rt-b.id}
```
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from .resources import ResourceNode

logger = logging.getLogger(__name__)


class GraphError(Exception):
    """Raised when the declared resources do not form a valid graph."""

    pass


class DuplicateNameError(GraphError):
    """Raised when two declarations share a logical name."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Resource '{name}' is declared more than once")
        self.name = name


class UnresolvedReferenceError(GraphError):
    """Raised when a declaration references an undeclared node."""

    def __init__(self, source: str, target: str) -> None:
        super().__init__(f"Resource '{source}' references undeclared resource '{target}'")
        self.source = source
        self.target = target


class CycleError(GraphError):
    """Raised when the dependency graph contains a cycle."""

    def __init__(self, nodes_in_cycle: Iterable[str]) -> None:
        self.nodes_in_cycle = frozenset(nodes_in_cycle)
        super().__init__(
            f"Circular dependency detected involving: {sorted(self.nodes_in_cycle)}"
        )


@dataclass
class DependencyGraph:
    """Resource nodes plus their derived "must be applied before" edges.

    `dependencies[n]` holds the nodes `n` waits for; `dependents[n]` holds
    the nodes waiting for `n`.
    """

    nodes: dict[str, ResourceNode] = field(default_factory=dict)
    dependencies: dict[str, set[str]] = field(default_factory=dict)
    dependents: dict[str, set[str]] = field(default_factory=dict)

    def __contains__(self, name: object) -> bool:
        return name in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    @property
    def edge_count(self) -> int:
        return sum(len(deps) for deps in self.dependencies.values())

    def in_degree(self, name: str) -> int:
        return len(self.dependencies[name])

    def roots(self) -> list[str]:
        """Nodes without dependencies, sorted by name."""
        return sorted(name for name, deps in self.dependencies.items() if not deps)

    def transitive_dependents(self, name: str) -> set[str]:
        """Every node that depends on `name` directly or through a chain."""
        seen: set[str] = set()
        stack = list(self.dependents.get(name, ()))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.dependents.get(current, ()))
        return seen

    def subgraph(self, names: Iterable[str]) -> DependencyGraph:
        """Graph restricted to the given nodes (edges to outside nodes dropped)."""
        keep = set(names)
        return DependencyGraph(
            nodes={name: node for name, node in self.nodes.items() if name in keep},
            dependencies={
                name: deps & keep for name, deps in self.dependencies.items() if name in keep
            },
            dependents={
                name: deps & keep for name, deps in self.dependents.items() if name in keep
            },
        )


def build_graph(declarations: Iterable[ResourceNode]) -> DependencyGraph:
    """Build the dependency graph for a set of declarations.

    Args:
        declarations: Resource nodes for this run.

    Returns:
        The dependency graph.

    Raises:
        DuplicateNameError: If a logical name is declared twice.
        UnresolvedReferenceError: If a reference or depends_on names an
            undeclared node.
    """
    graph = DependencyGraph()

    for node in declarations:
        if node.name in graph.nodes:
            raise DuplicateNameError(node.name)
        graph.nodes[node.name] = node
        graph.dependencies[node.name] = set()
        graph.dependents[node.name] = set()

    # Edges are added only after every name is known so that declaration
    # order does not matter
    for node in graph.nodes.values():
        for target in sorted(node.predecessors()):
            if target not in graph.nodes:
                raise UnresolvedReferenceError(node.name, target)
            graph.dependencies[node.name].add(target)
            graph.dependents[target].add(node.name)

    logger.debug(
        "Built dependency graph",
        extra={"node_count": len(graph), "edge_count": graph.edge_count},
    )
    return graph
