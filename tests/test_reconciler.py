"""Tests for the reconciliation engine.

Uses the in-memory MockProvider so every run is fast and fully observable.
"""

from __future__ import annotations

import asyncio
import dataclasses

import pytest
from provider_mock import MockProvider

from transit_operator.config import Config
from transit_operator.dependency import CycleError, build_graph
from transit_operator.provider import ProviderAdapter
from transit_operator.reconciler import (
    CANCELLED_REASON,
    NodeAction,
    Reconciler,
    find_orphans,
)
from transit_operator.resources import NodeState, Reference, ResourceNode
from transit_operator.scheduler import ApplyPlan, schedule
from transit_operator.state import MemoryStateStore, StateRecord, compute_fingerprint
from transit_operator.topology import compile_topology, default_topology


def plan_for(nodes: list[ResourceNode]) -> ApplyPlan:
    return schedule(build_graph(nodes))


def vpc_chain() -> list[ResourceNode]:
    """vpc <- subnet <- instance, plus an independent security group on the vpc."""
    return [
        ResourceNode("vpc-a", "vpc", {"cidr_block": "10.0.0.0/24"}),
        ResourceNode(
            "vpc-a-subnet", "subnet", {"vpc_id": Reference("vpc-a"), "cidr_block": "10.0.0.0/24"}
        ),
        ResourceNode("vpc-a-sg", "security_group", {"vpc_id": Reference("vpc-a")}),
        ResourceNode("vpc-a-instance", "instance", {"subnet_id": Reference("vpc-a-subnet")}),
    ]


async def apply(
    config: Config,
    nodes: list[ResourceNode],
    provider: ProviderAdapter,
    state: MemoryStateStore,
):
    return await Reconciler(config).apply(plan_for(nodes), provider, state)


class TestApply:
    """Tests for a first apply into empty state."""

    @pytest.mark.asyncio
    async def test_creates_everything(self, fast_config: Config) -> None:
        """Test that every node is created and recorded."""
        provider = MockProvider()
        state = MemoryStateStore()

        result = await apply(fast_config, vpc_chain(), provider, state)

        assert result.success
        assert result.applied_count == 4
        assert provider.count("create") == 4
        assert {name for name, _ in state.list()} == {
            "vpc-a",
            "vpc-a-subnet",
            "vpc-a-sg",
            "vpc-a-instance",
        }
        assert all(o.action == NodeAction.CREATE for o in result.outcomes.values())

    @pytest.mark.asyncio
    async def test_references_resolved_to_remote_ids(self, fast_config: Config) -> None:
        """Test that consumers receive the remote id of their dependency."""
        provider = MockProvider()

        result = await apply(fast_config, vpc_chain(), provider, MemoryStateStore())

        vpc_id = result.outcomes["vpc-a"].remote_id
        subnet_create = next(c for c in provider.calls if c.kind == "subnet")
        assert subnet_create.inputs["vpc_id"] == vpc_id
        assert result.outputs()["vpc-a-subnet"]["vpc_id"] == vpc_id
        assert result.outputs()["vpc-a"]["id"] == vpc_id

    @pytest.mark.asyncio
    async def test_dependencies_created_first(self, fast_config: Config) -> None:
        """Test that provider calls follow dependency order."""
        provider = MockProvider()

        await apply(fast_config, vpc_chain(), provider, MemoryStateStore())

        kinds = [call.kind for call in provider.calls]
        assert kinds.index("vpc") < kinds.index("subnet") < kinds.index("instance")
        assert kinds.index("vpc") < kinds.index("security_group")

    @pytest.mark.asyncio
    async def test_outcomes_in_plan_order(self, fast_config: Config) -> None:
        """Test that outcomes are reported in plan order with their batch."""
        plan = plan_for(vpc_chain())

        result = await Reconciler(fast_config).apply(plan, MockProvider(), MemoryStateStore())

        assert list(result.outcomes) == plan.order()
        assert result.outcomes["vpc-a-instance"].batch == 2
        assert result.end_time is not None

    @pytest.mark.asyncio
    async def test_reconcile_rejects_cycle_before_any_call(self, fast_config: Config) -> None:
        """Test that an invalid graph makes no provider call."""
        provider = MockProvider()
        nodes = [
            ResourceNode("x", "vpc", {"peer": Reference("y")}),
            ResourceNode("y", "vpc", {"peer": Reference("x")}),
        ]

        with pytest.raises(CycleError):
            await Reconciler(fast_config).reconcile(nodes, provider, MemoryStateStore())

        assert provider.calls == []


class TestIdempotence:
    """Tests for re-applying against recorded state."""

    @pytest.mark.asyncio
    async def test_second_apply_only_reads(self, fast_config: Config) -> None:
        """Test that an unchanged re-apply makes no mutating call."""
        provider = MockProvider()
        state = MemoryStateStore()
        first = await apply(fast_config, vpc_chain(), provider, state)
        provider.calls.clear()

        second = await apply(fast_config, vpc_chain(), provider, state)

        assert second.success
        assert provider.count("create") == 0
        assert provider.count("update") == 0
        assert provider.count("delete") == 0
        assert provider.count("read") == 4
        assert all(o.action == NodeAction.NOOP for o in second.outcomes.values())
        assert second.outputs() == first.outputs()
        assert second.action_counts().total_significant == 0

    @pytest.mark.asyncio
    async def test_changed_input_updates_in_place(self, fast_config: Config) -> None:
        """Test that a changed input updates the existing object."""
        provider = MockProvider()
        state = MemoryStateStore()
        first = await apply(fast_config, vpc_chain(), provider, state)
        provider.calls.clear()

        nodes = vpc_chain()
        nodes[2] = ResourceNode(
            "vpc-a-sg", "security_group", {"vpc_id": Reference("vpc-a"), "tags": {"Name": "sg"}}
        )
        second = await apply(fast_config, nodes, provider, state)

        sg = second.outcomes["vpc-a-sg"]
        assert sg.action == NodeAction.UPDATE
        assert sg.remote_id == first.outcomes["vpc-a-sg"].remote_id
        assert provider.count("update") == 1
        assert provider.count("create") == 0
        assert state.get("vpc-a-sg").outputs["tags"] == {"Name": "sg"}

    @pytest.mark.asyncio
    async def test_vanished_object_recreated(self, fast_config: Config) -> None:
        """Test that an object deleted behind the engine's back is recreated."""
        provider = MockProvider()
        state = MemoryStateStore()
        first = await apply(fast_config, vpc_chain(), provider, state)
        old_vpc_id = first.outcomes["vpc-a"].remote_id
        provider.vanish(old_vpc_id)

        second = await apply(fast_config, vpc_chain(), provider, state)

        vpc = second.outcomes["vpc-a"]
        assert vpc.action == NodeAction.CREATE
        assert vpc.remote_id != old_vpc_id
        assert state.get("vpc-a").remote_id == vpc.remote_id
        # Consumers see the new id, so their fingerprint changes
        assert second.outcomes["vpc-a-subnet"].action == NodeAction.UPDATE
        assert second.outputs()["vpc-a-subnet"]["vpc_id"] == vpc.remote_id

    @pytest.mark.asyncio
    async def test_vanished_object_recreated_on_update(self, fast_config: Config) -> None:
        """Test that an update of a missing object falls back to create."""
        provider = MockProvider()
        state = MemoryStateStore()
        first = await apply(fast_config, vpc_chain()[:1], provider, state)
        provider.vanish(first.outcomes["vpc-a"].remote_id)

        nodes = [ResourceNode("vpc-a", "vpc", {"cidr_block": "10.0.9.0/24"})]
        second = await apply(fast_config, nodes, provider, state)

        assert second.outcomes["vpc-a"].action == NodeAction.CREATE
        assert provider.count("update") == 1
        assert len(provider.objects_of("vpc")) == 1

    @pytest.mark.asyncio
    async def test_kind_change_replaces(self, fast_config: Config) -> None:
        """Test that a changed kind deletes the old object and creates a new one."""
        provider = MockProvider()
        old_id = provider.seed("vpc", {"cidr_block": "10.0.0.0/24"})
        state = MemoryStateStore(
            {"x": StateRecord(name="x", kind="vpc", remote_id=old_id, fingerprint="old")}
        )

        result = await apply(
            fast_config, [ResourceNode("x", "subnet", {"cidr_block": "10.0.0.0/24"})], provider, state
        )

        outcome = result.outcomes["x"]
        assert outcome.action == NodeAction.REPLACE
        assert provider.count("delete", "vpc") == 1
        assert provider.objects_of("vpc") == []
        assert len(provider.objects_of("subnet")) == 1
        assert state.get("x").kind == "subnet"
        assert result.action_counts().replace_count == 1


class TestFailures:
    """Tests for failure handling and skip propagation."""

    @pytest.mark.asyncio
    async def test_failure_skips_dependents_only(self, fast_config: Config) -> None:
        """Test that a failed node skips its dependents but not its siblings."""
        provider = MockProvider()
        provider.fail("create", "subnet")

        result = await apply(fast_config, vpc_chain(), provider, MemoryStateStore())

        assert not result.success
        assert result.outcomes["vpc-a-subnet"].state == NodeState.FAILED
        assert result.outcomes["vpc-a-subnet"].attempts == 1
        assert result.outcomes["vpc-a-sg"].state == NodeState.APPLIED

        instance = result.outcomes["vpc-a-instance"]
        assert instance.state == NodeState.SKIPPED
        assert instance.root_cause == "vpc-a-subnet"
        assert instance.skip_reason == "dependency 'vpc-a-subnet' failed"
        assert provider.count("create", "instance") == 0
        assert [o.name for o in result.failures] == ["vpc-a-subnet"]

    @pytest.mark.asyncio
    async def test_skip_reason_names_root_cause(self, fast_config: Config) -> None:
        """Test that skips further down the chain point at the original failure."""
        provider = MockProvider()
        provider.fail("create", "subnet")
        nodes = vpc_chain() + [
            ResourceNode("vpc-a-eip", "eip", {"instance_id": Reference("vpc-a-instance")})
        ]

        result = await apply(fast_config, nodes, provider, MemoryStateStore())

        eip = result.outcomes["vpc-a-eip"]
        assert eip.state == NodeState.SKIPPED
        assert eip.root_cause == "vpc-a-subnet"
        assert "root cause: 'vpc-a-subnet' failed" in eip.skip_reason

    @pytest.mark.asyncio
    async def test_failed_node_not_recorded(self, fast_config: Config) -> None:
        """Test that state only holds applied nodes."""
        provider = MockProvider()
        provider.fail("create", "subnet")
        state = MemoryStateStore()

        await apply(fast_config, vpc_chain(), provider, state)

        assert state.get("vpc-a-subnet") is None
        assert state.get("vpc-a-instance") is None
        assert state.get("vpc-a") is not None

    @pytest.mark.asyncio
    async def test_retryable_error_retried(self, fast_config: Config) -> None:
        """Test that transient failures are retried until they succeed."""
        provider = MockProvider()
        provider.fail("create", "subnet", times=2, retryable=True)

        result = await apply(fast_config, vpc_chain(), provider, MemoryStateStore())

        assert result.success
        assert result.outcomes["vpc-a-subnet"].attempts == 3
        assert provider.count("create", "subnet") == 3

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, fast_config: Config) -> None:
        """Test that a persistent transient failure fails after max_retries attempts."""
        provider = MockProvider()
        provider.fail("create", "subnet", retryable=True)

        result = await apply(fast_config, vpc_chain(), provider, MemoryStateStore())

        subnet = result.outcomes["vpc-a-subnet"]
        assert subnet.state == NodeState.FAILED
        assert subnet.attempts == fast_config.max_retries
        assert subnet.error_type == "ProviderError"

    @pytest.mark.asyncio
    async def test_non_retryable_error_not_retried(self, fast_config: Config) -> None:
        """Test that a permanent failure is attempted once."""
        provider = MockProvider()
        provider.fail("create", "vpc", retryable=False)

        result = await apply(fast_config, vpc_chain(), provider, MemoryStateStore())

        assert provider.count("create", "vpc") == 1
        assert result.failed_count == 1
        assert result.skipped_count == 3

    @pytest.mark.asyncio
    async def test_timeout(self, fast_config: Config) -> None:
        """Test that a slow provider call fails the node with a timeout."""
        config = dataclasses.replace(fast_config, provider_timeout_seconds=1, max_retries=1)
        provider = MockProvider()
        provider.latency["subnet"] = 1.5

        result = await apply(config, vpc_chain(), provider, MemoryStateStore())

        subnet = result.outcomes["vpc-a-subnet"]
        assert subnet.state == NodeState.FAILED
        assert subnet.error_type == "ProviderTimeoutError"
        assert "timed out" in subnet.error
        assert result.outcomes["vpc-a-instance"].state == NodeState.SKIPPED

    @pytest.mark.asyncio
    async def test_timed_out_call_does_not_fail_sibling(self, fast_config: Config) -> None:
        """Test that waiting behind an abandoned call does not count as a timeout."""
        config = dataclasses.replace(
            fast_config, max_workers=1, provider_timeout_seconds=1, max_retries=1
        )
        provider = MockProvider()
        provider.latency["transit_gateway"] = 3.0
        nodes = [
            ResourceNode("tgw", "transit_gateway", {}),
            ResourceNode("vpc-b", "vpc", {"cidr_block": "10.0.1.0/24"}),
        ]

        result = await apply(config, nodes, provider, MemoryStateStore())

        assert result.outcomes["tgw"].batch == result.outcomes["vpc-b"].batch
        assert result.outcomes["tgw"].state == NodeState.FAILED
        assert result.outcomes["tgw"].error_type == "ProviderTimeoutError"
        assert result.outcomes["vpc-b"].state == NodeState.APPLIED
        assert result.outcomes["vpc-b"].action == NodeAction.CREATE

    @pytest.mark.asyncio
    async def test_missing_output_attribute(self, fast_config: Config) -> None:
        """Test that a reference to an output the provider did not return fails."""
        nodes = [
            ResourceNode("vpc-a", "vpc", {"cidr_block": "10.0.0.0/24"}),
            ResourceNode("vpc-a-subnet", "subnet", {"ipv6": Reference("vpc-a", "ipv6_cidr_block")}),
        ]

        result = await apply(fast_config, nodes, MockProvider(), MemoryStateStore())

        subnet = result.outcomes["vpc-a-subnet"]
        assert subnet.state == NodeState.FAILED
        assert subnet.error_type == "UnresolvableReferenceError"
        assert "ipv6_cidr_block" in subnet.error


class TestConcurrency:
    """Tests for worker bounds and cancellation."""

    @pytest.mark.asyncio
    async def test_fan_out_bounded_by_max_workers(self, fast_config: Config) -> None:
        """Test that no more than max_workers calls run at once."""
        config = dataclasses.replace(fast_config, max_workers=2)
        provider = MockProvider(latency_seconds=0.05)
        nodes = [ResourceNode(f"vpc-{i:02d}", "vpc", {"index": i}) for i in range(10)]

        result = await apply(config, nodes, provider, MemoryStateStore())

        assert result.success
        assert 1 <= provider.max_in_flight <= 2

    @pytest.mark.asyncio
    async def test_shutdown_during_run_skips_remaining(self, fast_config: Config) -> None:
        """Test that nodes not yet started are skipped after shutdown."""
        provider = MockProvider()
        reconciler = Reconciler(fast_config)
        loop = asyncio.get_running_loop()
        provider.on_call = lambda call: loop.call_soon_threadsafe(reconciler.shutdown)
        nodes = [
            ResourceNode("a", "vpc", {}),
            ResourceNode("b", "subnet", {"vpc_id": Reference("a")}),
        ]

        result = await reconciler.apply(plan_for(nodes), provider, MemoryStateStore())

        assert result.cancelled
        assert not result.success
        assert result.outcomes["a"].state == NodeState.APPLIED
        assert result.outcomes["b"].state == NodeState.SKIPPED
        assert result.outcomes["b"].skip_reason == CANCELLED_REASON
        assert provider.count("create", "subnet") == 0

    @pytest.mark.asyncio
    async def test_shutdown_before_run(self, fast_config: Config) -> None:
        """Test that a cancelled reconciler makes no call."""
        provider = MockProvider()
        reconciler = Reconciler(fast_config)
        reconciler.shutdown()

        result = await reconciler.apply(plan_for(vpc_chain()), provider, MemoryStateStore())

        assert provider.calls == []
        assert result.skipped_count == 4


class TestTransitTopology:
    """End-to-end apply of the three-zone topology."""

    def nodes(self) -> list[ResourceNode]:
        return compile_topology(default_topology(), "eu-north-1")

    @pytest.mark.asyncio
    async def test_full_topology(self, fast_config: Config) -> None:
        """Test that the default topology converges with correct propagations."""
        provider = MockProvider()
        state = MemoryStateStore()

        result = await apply(fast_config, self.nodes(), provider, state)

        assert result.success
        assert result.applied_count == 34
        assert len(state.list()) == 34

        outputs = result.outputs()
        rt = {zone: outputs[f"tgw-rt-{zone}"]["id"] for zone in "abc"}
        assert outputs["tgw-attachment-c"]["propagations"] == sorted([rt["a"], rt["b"]])
        assert outputs["tgw-attachment-a"]["propagations"] == [rt["c"]]
        assert outputs["tgw-attachment-b"]["propagations"] == [rt["c"]]
        assert outputs["tgw-attachment-a"]["association_route_table_id"] == rt["a"]

    @pytest.mark.asyncio
    async def test_removed_consumer_leaves_other_consumers_untouched(
        self, fast_config: Config
    ) -> None:
        """Test that dropping one attachment does not change the others' inputs."""
        provider = MockProvider()
        state = MemoryStateStore()
        nodes = self.nodes()
        await apply(fast_config, nodes, provider, state)
        before = {name: state.get(name) for name in ("tgw-attachment-b", "tgw-attachment-c")}
        provider.calls.clear()

        graph = build_graph(nodes)
        removed = {"tgw-attachment-a"} | graph.transitive_dependents("tgw-attachment-a")
        remaining = [node for node in nodes if node.name not in removed]

        result = await apply(fast_config, remaining, provider, state)

        assert result.success
        assert result.orphans == sorted(removed)
        assert provider.count("create") == 0
        assert provider.count("update") == 0
        assert provider.count("delete") == 0
        for name, record in before.items():
            assert result.outcomes[name].action == NodeAction.NOOP
            assert state.get(name).fingerprint == record.fingerprint
            assert state.get(name).outputs == record.outputs
        rt_c = result.outcomes["tgw-rt-c"].remote_id
        assert result.outputs()["tgw-attachment-b"]["propagations"] == [rt_c]

    @pytest.mark.asyncio
    async def test_existing_vpc_adopted_from_state(self, fast_config: Config) -> None:
        """Test that a recorded VPC with matching inputs is not created again."""
        nodes = self.nodes()
        vpc_a = next(node for node in nodes if node.name == "vpc-a")
        inputs = dict(vpc_a.inputs)

        provider = MockProvider()
        remote_id = provider.seed("vpc", inputs)
        state = MemoryStateStore(
            {
                "vpc-a": StateRecord(
                    name="vpc-a",
                    kind="vpc",
                    remote_id=remote_id,
                    fingerprint=compute_fingerprint("vpc", inputs),
                    outputs={**inputs, "id": remote_id},
                )
            }
        )

        result = await apply(fast_config, nodes, provider, state)

        assert result.success
        assert result.outcomes["vpc-a"].action == NodeAction.NOOP
        assert result.outcomes["vpc-a"].remote_id == remote_id
        vpc_creates = [c for c in provider.calls if c.operation == "create" and c.kind == "vpc"]
        assert len(vpc_creates) == 2
        assert all(c.inputs["tags"]["Name"] != "vpc-a" for c in vpc_creates)
        assert result.outputs()["vpc-a-subnet"]["vpc_id"] == remote_id


class TestDryRun:
    """Tests for planning without provider calls."""

    @pytest.mark.asyncio
    async def test_dry_run_makes_no_calls(self, fast_config: Config) -> None:
        """Test that a dry run only classifies nodes."""
        config = dataclasses.replace(fast_config, dry_run=True)
        provider = MockProvider()
        state = MemoryStateStore()

        result = await apply(config, vpc_chain(), provider, state)

        assert provider.calls == []
        assert state.list() == []
        assert result.dry_run
        assert [c.action for c in result.planned_changes] == [NodeAction.CREATE] * 4

    @pytest.mark.asyncio
    async def test_plan_after_apply(self, fast_config: Config) -> None:
        """Test plan classification against recorded state."""
        provider = MockProvider()
        state = MemoryStateStore()
        await apply(fast_config, vpc_chain(), provider, state)

        nodes = vpc_chain()
        nodes[0] = ResourceNode("vpc-a", "vpc", {"cidr_block": "10.0.9.0/24"})
        nodes[3] = ResourceNode("vpc-a-extra", "instance", {"subnet_id": Reference("vpc-a-subnet")})
        changes = {
            c.name: c for c in Reconciler(fast_config).plan_changes(plan_for(nodes), state)
        }

        assert changes["vpc-a"].action == NodeAction.UPDATE
        assert changes["vpc-a"].reason == "inputs changed"
        assert changes["vpc-a-subnet"].action == NodeAction.NOOP
        assert changes["vpc-a-extra"].action == NodeAction.CREATE
        assert changes["vpc-a-instance"].action == NodeAction.DELETE
        assert "requires confirmation" in changes["vpc-a-instance"].reason

    def test_plan_marks_outputs_known_after_apply(self, fast_config: Config) -> None:
        """Test that dependents of a new node are planned as updates."""
        state = MemoryStateStore(
            {
                "vpc-a-subnet": StateRecord(
                    name="vpc-a-subnet", kind="subnet", remote_id="subnet-1", fingerprint="x"
                )
            }
        )

        changes = Reconciler(fast_config).plan_changes(plan_for(vpc_chain()[:2]), state)

        assert changes[0].action == NodeAction.CREATE
        assert changes[1].action == NodeAction.UPDATE
        assert "known after apply" in changes[1].reason


class TestOrphans:
    """Tests for orphan detection and pruning."""

    async def seeded(self, config: Config) -> tuple[MockProvider, MemoryStateStore]:
        provider = MockProvider()
        state = MemoryStateStore()
        await apply(config, vpc_chain(), provider, state)
        provider.calls.clear()
        return provider, state

    @pytest.mark.asyncio
    async def test_orphans_reported_not_deleted(self, fast_config: Config) -> None:
        """Test that undeclared records are left alone without confirmation."""
        provider, state = await self.seeded(fast_config)

        result = await apply(fast_config, vpc_chain()[:2], provider, state)

        assert result.orphans == ["vpc-a-instance", "vpc-a-sg"]
        assert result.deletions == []
        assert provider.count("delete") == 0
        assert state.get("vpc-a-sg") is not None
        assert result.success

    @pytest.mark.asyncio
    async def test_orphans_deleted_when_confirmed(self, fast_config: Config) -> None:
        """Test that confirmed deletions remove the objects and their records."""
        config = dataclasses.replace(fast_config, confirm_deletions=True)
        provider, state = await self.seeded(config)

        result = await apply(config, vpc_chain()[:2], provider, state)

        assert {o.name for o in result.deletions} == {"vpc-a-instance", "vpc-a-sg"}
        assert all(o.state == NodeState.APPLIED for o in result.deletions)
        assert provider.count("delete") == 2
        assert state.get("vpc-a-sg") is None
        assert result.action_counts().delete_count == 2

    @pytest.mark.asyncio
    async def test_prune_requires_confirmation(self, fast_config: Config) -> None:
        """Test that prune without confirm deletes nothing."""
        provider, state = await self.seeded(fast_config)
        graph = build_graph([])

        deleted = await Reconciler(fast_config).prune(graph, provider, state)

        assert deleted == []
        assert provider.count("delete") == 0
        assert find_orphans(graph, state) == [
            "vpc-a",
            "vpc-a-instance",
            "vpc-a-sg",
            "vpc-a-subnet",
        ]

    @pytest.mark.asyncio
    async def test_prune_deletes_dependents_first(self, fast_config: Config) -> None:
        """Test that teardown runs in reverse dependency order."""
        provider, state = await self.seeded(fast_config)

        deleted = await Reconciler(fast_config).prune(
            build_graph([]), provider, state, confirm=True
        )

        assert all(o.state == NodeState.APPLIED for o in deleted)
        order = [call.kind for call in provider.calls if call.operation == "delete"]
        assert order.index("instance") < order.index("subnet") < order.index("vpc")
        assert order.index("security_group") < order.index("vpc")
        assert state.list() == []
        assert provider.objects == {}

    @pytest.mark.asyncio
    async def test_prune_stops_below_failed_deletion(self, fast_config: Config) -> None:
        """Test that a failed deletion keeps what it depends on."""
        provider, state = await self.seeded(fast_config)
        provider.fail("delete", "instance")

        deleted = {
            o.name: o
            for o in await Reconciler(fast_config).prune(
                build_graph([]), provider, state, confirm=True
            )
        }

        assert deleted["vpc-a-instance"].state == NodeState.FAILED
        assert deleted["vpc-a-subnet"].state == NodeState.SKIPPED
        assert deleted["vpc-a"].state == NodeState.SKIPPED
        assert deleted["vpc-a-sg"].state == NodeState.APPLIED
        assert state.get("vpc-a") is not None
        assert state.get("vpc-a-sg") is None

    @staticmethod
    def without_subnet() -> list[ResourceNode]:
        """vpc_chain() with the instance moved off the subnet, which becomes an orphan."""
        nodes = [node for node in vpc_chain() if node.name != "vpc-a-subnet"]
        nodes[-1] = ResourceNode("vpc-a-instance", "instance", {"subnet_id": "subnet-manual"})
        return nodes

    @pytest.mark.asyncio
    async def test_orphan_kept_while_declared_record_depends_on_it(
        self, fast_config: Config
    ) -> None:
        """Test that an orphan is not deleted under a declared resource that failed."""
        config = dataclasses.replace(fast_config, confirm_deletions=True)
        provider, state = await self.seeded(config)
        provider.fail("update", "instance")

        result = await apply(config, self.without_subnet(), provider, state)

        assert result.outcomes["vpc-a-instance"].state == NodeState.FAILED
        assert result.orphans == ["vpc-a-subnet"]
        deletion = result.deletions[0]
        assert deletion.state == NodeState.SKIPPED
        assert "vpc-a-instance" in deletion.skip_reason
        assert provider.count("delete") == 0
        assert state.get("vpc-a-subnet") is not None

    @pytest.mark.asyncio
    async def test_orphan_deleted_once_declared_record_moves_off(
        self, fast_config: Config
    ) -> None:
        """Test that the orphan goes once the dependent's record is updated."""
        config = dataclasses.replace(fast_config, confirm_deletions=True)
        provider, state = await self.seeded(config)

        result = await apply(config, self.without_subnet(), provider, state)

        assert result.outcomes["vpc-a-instance"].action == NodeAction.UPDATE
        assert state.get("vpc-a-instance").dependencies == []
        assert [o.state for o in result.deletions] == [NodeState.APPLIED]
        assert provider.count("delete", "subnet") == 1
        assert state.get("vpc-a-subnet") is None

    @pytest.mark.asyncio
    async def test_already_gone_counts_as_deleted(self, fast_config: Config) -> None:
        """Test that deleting a vanished object still clears its record."""
        provider, state = await self.seeded(fast_config)
        provider.vanish(state.get("vpc-a-instance").remote_id)

        deleted = await Reconciler(fast_config).prune(
            build_graph(vpc_chain()[:3]), provider, state, confirm=True
        )

        assert [o.name for o in deleted] == ["vpc-a-instance"]
        assert deleted[0].state == NodeState.APPLIED
        assert state.get("vpc-a-instance") is None
