"""Topological scheduling of the dependency graph into apply batches.

Kahn's algorithm, run frontier by frontier: every node whose dependencies are
all in earlier batches forms the next batch. Nodes inside a batch have no
edges between them and may be applied concurrently. Within a batch nodes are
ordered by logical name so that repeated runs produce the same plan.

When no frontier exists but nodes remain, the remaining nodes contain at least
one cycle. Tarjan's strongly connected components algorithm separates the
actual cycle members from nodes that merely depend on a cycle.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field

from .dependency import CycleError, DependencyGraph
from .resources import ResourceNode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApplyPlan:
    """Ordered batches of node names.

    Invariants: each node appears in exactly one batch, and every
    predecessor of a node sits in a strictly earlier batch.
    """

    batches: tuple[tuple[str, ...], ...] = ()
    graph: DependencyGraph = field(default_factory=DependencyGraph, compare=False, repr=False)

    def __iter__(self) -> Iterator[tuple[str, ...]]:
        return iter(self.batches)

    def __len__(self) -> int:
        return len(self.batches)

    @property
    def node_count(self) -> int:
        return sum(len(batch) for batch in self.batches)

    def order(self) -> list[str]:
        """Flattened apply order."""
        return [name for batch in self.batches for name in batch]

    def batch_index(self) -> dict[str, int]:
        """Map of node name to the index of its batch."""
        return {name: index for index, batch in enumerate(self.batches) for name in batch}

    def reversed(self) -> ApplyPlan:
        """Plan with batch order reversed (dependents first), for teardown."""
        return ApplyPlan(batches=tuple(reversed(self.batches)), graph=self.graph)

    def node(self, name: str) -> ResourceNode:
        return self.graph.nodes[name]


def schedule(graph: DependencyGraph) -> ApplyPlan:
    """Order the graph into parallel-safe batches.

    Args:
        graph: Dependency graph from build_graph().

    Returns:
        The apply plan.

    Raises:
        CycleError: If the graph contains a cycle; names exactly the nodes
            that are part of a cycle.
    """
    in_degree = {name: len(deps) for name, deps in graph.dependencies.items()}
    frontier = sorted(name for name, degree in in_degree.items() if degree == 0)
    batches: list[tuple[str, ...]] = []
    placed = 0

    while frontier:
        batches.append(tuple(frontier))
        placed += len(frontier)

        next_frontier: list[str] = []
        for current in frontier:
            for dependent in graph.dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    next_frontier.append(dependent)

        # Sort for deterministic ordering among nodes in the same batch
        frontier = sorted(next_frontier)

    if placed != len(graph):
        remaining = {name for name, degree in in_degree.items() if degree > 0}
        cycle_nodes = find_cycle_members(graph, remaining)
        logger.error(
            "Dependency cycle detected",
            extra={"cycle_nodes": sorted(cycle_nodes), "unscheduled": len(remaining)},
        )
        raise CycleError(cycle_nodes)

    plan = ApplyPlan(batches=tuple(batches), graph=graph)
    logger.info(
        "Scheduled apply plan",
        extra={"batch_count": len(plan), "node_count": plan.node_count},
    )
    return plan


def find_cycle_members(graph: DependencyGraph, candidates: set[str]) -> set[str]:
    """Return the nodes among `candidates` that lie on a cycle.

    A node lies on a cycle when its strongly connected component has more
    than one member, or when it depends on itself.
    """
    index_of: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    members: set[str] = set()
    counter = 0

    # Iterative Tarjan so that long dependency chains cannot hit the
    # interpreter recursion limit
    for start in sorted(candidates):
        if start in index_of:
            continue

        work: list[tuple[str, Iterator[str]]] = []
        index_of[start] = lowlink[start] = counter
        counter += 1
        stack.append(start)
        on_stack.add(start)
        work.append((start, iter(sorted(graph.dependencies[start] & candidates))))

        while work:
            node, successors = work[-1]
            advanced = False
            for successor in successors:
                if successor not in index_of:
                    index_of[successor] = lowlink[successor] = counter
                    counter += 1
                    stack.append(successor)
                    on_stack.add(successor)
                    work.append(
                        (successor, iter(sorted(graph.dependencies[successor] & candidates)))
                    )
                    advanced = True
                    break
                if successor in on_stack:
                    lowlink[node] = min(lowlink[node], index_of[successor])
            if advanced:
                continue

            work.pop()
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])

            if lowlink[node] == index_of[node]:
                component: list[str] = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                if len(component) > 1 or node in graph.dependencies[node]:
                    members.update(component)

    return members
