"""Tests for topological scheduling."""

from __future__ import annotations

import random

import pytest

from transit_operator.dependency import CycleError, build_graph
from transit_operator.resources import Reference, ResourceNode
from transit_operator.scheduler import find_cycle_members, schedule


def node(name: str, *deps: str) -> ResourceNode:
    return ResourceNode(name, "test", {"refs": [Reference(dep) for dep in deps]})


def assert_valid_plan(nodes: list[ResourceNode]) -> None:
    graph = build_graph(nodes)
    plan = schedule(graph)
    index = plan.batch_index()

    # Every node exactly once
    assert sorted(plan.order()) == sorted(n.name for n in nodes)
    assert len(plan.order()) == len(set(plan.order()))

    # Every predecessor in a strictly earlier batch
    for n in nodes:
        for dep in n.predecessors():
            assert index[dep] < index[n.name]


class TestSchedule:
    """Tests for schedule()."""

    def test_chain_one_node_per_batch(self) -> None:
        """Test that a chain schedules one node per batch."""
        plan = schedule(build_graph([node("c", "b"), node("b", "a"), node("a")]))
        assert plan.batches == (("a",), ("b",), ("c",))

    def test_independent_nodes_share_batch_sorted(self) -> None:
        """Test that independent nodes share a batch, ordered by name."""
        plan = schedule(build_graph([node("vpc-c"), node("vpc-a"), node("vpc-b")]))
        assert plan.batches == (("vpc-a", "vpc-b", "vpc-c"),)

    def test_diamond(self) -> None:
        """Test a diamond shape."""
        plan = schedule(
            build_graph([node("top"), node("left", "top"), node("right", "top"), node("bottom", "left", "right")])
        )
        assert plan.batches == (("top",), ("left", "right"), ("bottom",))

    def test_deterministic(self) -> None:
        """Test that declaration order does not change the plan."""
        nodes = [node("a"), node("b", "a"), node("c", "a"), node("d", "b", "c"), node("e")]
        first = schedule(build_graph(nodes))
        second = schedule(build_graph(list(reversed(nodes))))
        assert first.batches == second.batches

    def test_empty_graph(self) -> None:
        """Test that an empty graph gives an empty plan."""
        plan = schedule(build_graph([]))
        assert len(plan) == 0
        assert plan.node_count == 0

    def test_plan_helpers(self) -> None:
        """Test order, batch_index, reversed and node lookup."""
        plan = schedule(build_graph([node("a"), node("b", "a"), node("c", "a")]))

        assert plan.order() == ["a", "b", "c"]
        assert plan.batch_index() == {"a": 0, "b": 1, "c": 1}
        assert plan.reversed().batches == (("b", "c"), ("a",))
        assert plan.node("b").kind == "test"

    @pytest.mark.parametrize("seed", range(10))
    def test_random_dags_produce_valid_plans(self, seed: int) -> None:
        """Test plan invariants on random DAGs (edges only to lower indices)."""
        rng = random.Random(seed)
        size = rng.randint(1, 40)
        nodes = []
        for i in range(size):
            candidates = [f"n{j:02d}" for j in range(i)]
            deps = rng.sample(candidates, k=min(len(candidates), rng.randint(0, 4)))
            nodes.append(node(f"n{i:02d}", *deps))
        rng.shuffle(nodes)

        assert_valid_plan(nodes)


class TestCycles:
    """Tests for cycle detection."""

    def test_two_node_cycle(self) -> None:
        """Test that a two-node cycle names both nodes."""
        with pytest.raises(CycleError) as exc_info:
            schedule(build_graph([node("a", "b"), node("b", "a")]))
        assert exc_info.value.nodes_in_cycle == {"a", "b"}

    def test_self_reference(self) -> None:
        """Test that a node referencing itself is a cycle."""
        with pytest.raises(CycleError) as exc_info:
            schedule(build_graph([node("a", "a"), node("b")]))
        assert exc_info.value.nodes_in_cycle == {"a"}

    def test_cycle_inside_larger_graph(self) -> None:
        """Test that only cycle members are named, not nodes merely downstream."""
        nodes = [
            node("root"),
            node("x", "root", "z"),
            node("y", "x"),
            node("z", "y"),
            node("downstream", "z"),
            node("unrelated", "root"),
        ]
        with pytest.raises(CycleError) as exc_info:
            schedule(build_graph(nodes))

        assert exc_info.value.nodes_in_cycle == {"x", "y", "z"}
        assert "x" in str(exc_info.value)

    def test_two_separate_cycles(self) -> None:
        """Test that members of every cycle are reported."""
        nodes = [node("a", "b"), node("b", "a"), node("c", "d"), node("d", "c"), node("e", "a")]
        with pytest.raises(CycleError) as exc_info:
            schedule(build_graph(nodes))
        assert exc_info.value.nodes_in_cycle == {"a", "b", "c", "d"}

    def test_find_cycle_members_on_long_chain(self) -> None:
        """Test that a long chain does not hit the recursion limit."""
        size = 5000
        nodes = [node("n0", f"n{size - 1}")] + [node(f"n{i}", f"n{i - 1}") for i in range(1, size)]
        graph = build_graph(nodes)

        members = find_cycle_members(graph, set(graph.nodes))

        assert len(members) == size
