"""Reconciliation engine: converge the remote system to the declared graph.

For every batch of the apply plan, in order, and for every node of the batch
(concurrently, bounded by the worker limit):
1. Skip the node if any predecessor failed or was skipped
2. Resolve input references against the outputs of applied predecessors
3. Fingerprint the resolved inputs and compare with the state store:
   - no record           -> create
   - fingerprint differs -> update
   - fingerprint matches -> read only, keep cached outputs
4. Record the result in the state store and publish the node's outputs

Provider failures are collected per node rather than raised, so one run
reports everything that was applied, failed and skipped. Structural errors
(duplicate names, unresolved references, cycles) are raised by the graph
builder and scheduler before any provider call is made.

SECURITY: Timeouts are enforced on every provider call to prevent indefinite
hangs. Already applied resources are never rolled back automatically.
"""

from __future__ import annotations

import asyncio
import copy
import functools
import logging
import random
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, TypeVar

from .config import Config
from .dependency import DependencyGraph, build_graph
from .provenance import ChangeProvenanceSummary, get_provenance_logger
from .provider import (
    NotFoundError,
    ProviderAdapter,
    ProviderError,
    ProviderTimeoutError,
)
from .resources import (
    ID_ATTRIBUTE,
    NodeState,
    Reference,
    ResourceNode,
    UnresolvableReferenceError,
    resolve_inputs,
)
from .scheduler import ApplyPlan, schedule
from .state import StateRecord, StateStore, StateStoreError, compute_fingerprint

logger = logging.getLogger(__name__)

CANCELLED_REASON = "run cancelled"

T = TypeVar("T")


class NodeAction(str, Enum):
    """Provider action taken (or planned) for a node."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    NOOP = "noop"
    DELETE = "delete"


@dataclass
class NodeOutcome:
    """Per-node record of one run."""

    name: str
    kind: str
    batch: int = 0
    state: NodeState = NodeState.PENDING
    action: NodeAction | None = None
    remote_id: str | None = None
    outputs: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    error: str | None = None
    error_type: str | None = None
    skip_reason: str | None = None
    root_cause: str | None = None  # Originating failed node for skipped nodes
    attempts: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "name": self.name,
            "kind": self.kind,
            "batch": self.batch,
            "state": self.state.value,
            "action": self.action.value if self.action else None,
            "remote_id": self.remote_id,
            "outputs": copy.deepcopy(dict(self.outputs)),
            "error": self.error,
            "error_type": self.error_type,
            "skip_reason": self.skip_reason,
            "root_cause": self.root_cause,
            "attempts": self.attempts,
            "duration_seconds": self.duration_seconds,
        }


@dataclass(frozen=True)
class PlannedChange:
    """Change the engine would make, computed without provider calls."""

    name: str
    kind: str
    action: NodeAction
    reason: str = ""


@dataclass
class ApplyResult:
    """Result of one apply run."""

    outcomes: dict[str, NodeOutcome] = field(default_factory=dict)
    orphans: list[str] = field(default_factory=list)
    deletions: list[NodeOutcome] = field(default_factory=list)
    planned_changes: list[PlannedChange] = field(default_factory=list)
    state_snapshot: dict[str, StateRecord] = field(default_factory=dict)
    dry_run: bool = False
    cancelled: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    def _count(self, state: NodeState) -> int:
        return sum(1 for outcome in self.outcomes.values() if outcome.state == state)

    @property
    def applied_count(self) -> int:
        return self._count(NodeState.APPLIED)

    @property
    def failed_count(self) -> int:
        return self._count(NodeState.FAILED)

    @property
    def skipped_count(self) -> int:
        return self._count(NodeState.SKIPPED)

    @property
    def failures(self) -> list[NodeOutcome]:
        """Failed nodes in plan order, followed by failed deletions."""
        failed = [o for o in self.outcomes.values() if o.state == NodeState.FAILED]
        failed.extend(o for o in self.deletions if o.state == NodeState.FAILED)
        return failed

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """True if every node was applied (or, in a dry run, nothing failed)."""
        return not self.failures and self.skipped_count == 0 and not self.cancelled

    def outputs(self) -> dict[str, dict[str, Any]]:
        """Final outputs of every applied node."""
        return {
            name: copy.deepcopy(dict(outcome.outputs))
            for name, outcome in self.outcomes.items()
            if outcome.state == NodeState.APPLIED
        }

    def action_counts(self) -> ChangeProvenanceSummary:
        summary = ChangeProvenanceSummary()
        applied = [o for o in self.outcomes.values() if o.state == NodeState.APPLIED]
        applied.extend(o for o in self.deletions if o.state == NodeState.APPLIED)
        for outcome in applied:
            match outcome.action:
                case NodeAction.CREATE:
                    summary.create_count += 1
                case NodeAction.UPDATE:
                    summary.update_count += 1
                case NodeAction.REPLACE:
                    summary.replace_count += 1
                case NodeAction.DELETE:
                    summary.delete_count += 1
                case NodeAction.NOOP:
                    summary.no_change_count += 1
        return summary

    def to_dict(self) -> dict[str, Any]:
        """Structured summary for the report layer."""
        return {
            "success": self.success,
            "dry_run": self.dry_run,
            "cancelled": self.cancelled,
            "applied": self.applied_count,
            "failed": self.failed_count,
            "skipped": self.skipped_count,
            "duration_seconds": self.duration_seconds,
            "nodes": [outcome.to_dict() for outcome in self.outcomes.values()],
            "failures": [
                {"name": o.name, "error": o.error, "error_type": o.error_type}
                for o in self.failures
            ],
            "orphans": list(self.orphans),
            "deletions": [outcome.to_dict() for outcome in self.deletions],
            "planned_changes": [
                {"name": c.name, "kind": c.kind, "action": c.action.value, "reason": c.reason}
                for c in self.planned_changes
            ],
            "outputs": self.outputs(),
        }


def find_orphans(graph: DependencyGraph, state: StateStore) -> list[str]:
    """Names recorded in state that are no longer declared."""
    return sorted(name for name, _ in state.list() if name not in graph)


class Reconciler:
    """Applies a plan through a provider, recording results in a state store.

    The reconciler:
    1. Walks plan batches strictly in order
    2. Applies nodes of one batch concurrently, at most `max_workers` at a time
    3. Runs each provider call in a worker thread with a timeout and retries
       transient failures with exponential backoff
    4. Stops starting new nodes once shutdown() is called
    """

    def __init__(self, config: Config) -> None:
        """Initialize reconciler with configuration.

        Args:
            config: Validated operator configuration.
        """
        self._config = config
        self._shutdown_event = asyncio.Event()

    @property
    def config(self) -> Config:
        """Get the reconciler configuration."""
        return self._config

    @property
    def cancelled(self) -> bool:
        return self._shutdown_event.is_set()

    def shutdown(self) -> None:
        """Signal the reconciler to stop starting new provider calls."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def reconcile(
        self,
        declarations: Iterable[ResourceNode],
        provider: ProviderAdapter,
        state: StateStore,
        *,
        spec_file: Path | None = None,
    ) -> ApplyResult:
        """Build, schedule and apply a set of declarations.

        Raises:
            GraphError: If the declarations do not form a valid DAG. Nothing
                is applied in that case.
        """
        graph = build_graph(declarations)
        plan = schedule(graph)
        return await self.apply(plan, provider, state, spec_file=spec_file)

    async def apply(
        self,
        plan: ApplyPlan,
        provider: ProviderAdapter,
        state: StateStore,
        *,
        spec_file: Path | None = None,
    ) -> ApplyResult:
        """Apply a scheduled plan.

        Args:
            plan: Plan from schedule(); carries its dependency graph.
            provider: Adapter executing remote operations.
            state: Store of previously applied resources.
            spec_file: Declaration file, recorded in provenance.

        Returns:
            ApplyResult covering every node of the plan.
        """
        graph = plan.graph
        result = ApplyResult(dry_run=self._config.dry_run)

        provenance_logger = get_provenance_logger()
        provenance = provenance_logger.create_provenance(
            region=self._config.region,
            dry_run=self._config.dry_run,
            spec_file=spec_file,
        )

        for index, batch in enumerate(plan):
            for name in batch:
                result.outcomes[name] = NodeOutcome(
                    name=name,
                    kind=graph.nodes[name].kind,
                    batch=index,
                    state=NodeState.SCHEDULED,
                )

        result.orphans = find_orphans(graph, state)
        if result.orphans:
            logger.warning(
                "Orphaned resources detected",
                extra={
                    "orphans": result.orphans,
                    "confirm_deletions": self._config.confirm_deletions,
                },
            )

        logger.info(
            "Starting apply",
            extra={
                "batch_count": len(plan),
                "node_count": plan.node_count,
                "max_workers": self._config.max_workers,
                "dry_run": self._config.dry_run,
            },
        )

        try:
            if self._config.dry_run:
                result.planned_changes = self.plan_changes(plan, state)
            else:
                await self._apply_batches(plan, provider, state, result)
        except StateStoreError as e:
            # Listing state failed; per-node write failures are handled per node
            logger.error("State store error", extra={"error": str(e)})
            provenance.error = str(e)
            provenance.error_type = type(e).__name__
            raise
        finally:
            result.cancelled = self.cancelled
            result.end_time = datetime.now(UTC)

            provenance.node_count = len(result.outcomes)
            provenance.applied_count = result.applied_count
            provenance.failed_count = result.failed_count
            provenance.skipped_count = result.skipped_count
            provenance.orphan_count = len(result.orphans)
            provenance.cancelled = result.cancelled
            provenance.change_summary = result.action_counts()
            provenance.duration_seconds = result.duration_seconds
            provenance_logger.log_provenance(provenance)

        result.state_snapshot = dict(state.list())
        self._log_result(result)
        return result

    async def _apply_batches(
        self,
        plan: ApplyPlan,
        provider: ProviderAdapter,
        state: StateStore,
        result: ApplyResult,
    ) -> None:
        executor = ThreadPoolExecutor(
            max_workers=self._config.max_workers, thread_name_prefix="provider"
        )
        semaphore = asyncio.Semaphore(self._config.max_workers)

        try:
            for index, batch in enumerate(plan):
                logger.info(
                    "Applying batch",
                    extra={
                        "batch": index,
                        "total_batches": len(plan),
                        "nodes_in_batch": len(batch),
                    },
                )

                await asyncio.gather(
                    *(
                        self._apply_node(
                            plan.node(name), result.outcomes, provider, state, semaphore, executor
                        )
                        for name in batch
                    )
                )

                batch_outcomes = [result.outcomes[name] for name in batch]
                logger.info(
                    "Batch completed",
                    extra={
                        "batch": index,
                        "applied": sum(o.state == NodeState.APPLIED for o in batch_outcomes),
                        "failed": sum(o.state == NodeState.FAILED for o in batch_outcomes),
                        "skipped": sum(o.state == NodeState.SKIPPED for o in batch_outcomes),
                    },
                )

            if result.orphans and self._config.confirm_deletions and not self.cancelled:
                result.deletions = await self._delete_orphans(
                    result.orphans, provider, state, semaphore, executor
                )
        finally:
            # Timed-out calls may still be running; do not wait for them
            executor.shutdown(wait=False, cancel_futures=True)

    async def _apply_node(
        self,
        node: ResourceNode,
        outcomes: dict[str, NodeOutcome],
        provider: ProviderAdapter,
        state: StateStore,
        semaphore: asyncio.Semaphore,
        executor: ThreadPoolExecutor,
    ) -> None:
        """Drive one node to a terminal state. Never raises."""
        outcome = outcomes[node.name]

        blocked = self._find_blocker(node, outcomes)
        if blocked is not None:
            reason, root_cause = blocked
            self._mark_skipped(outcome, reason, root_cause)
            return

        if self.cancelled:
            self._mark_skipped(outcome, CANCELLED_REASON, None)
            return

        async with semaphore:
            # Shutdown may have been requested while waiting for a worker slot
            if self.cancelled:
                self._mark_skipped(outcome, CANCELLED_REASON, None)
                return

            outcome.state = NodeState.APPLYING
            outcome.started_at = datetime.now(UTC)
            try:
                await self._converge(node, outcome, outcomes, provider, state, executor)
            except (ProviderError, UnresolvableReferenceError, StateStoreError) as e:
                self._mark_failed(outcome, e)
            except Exception as e:
                logger.exception(
                    "Unexpected error applying resource",
                    extra={"resource": node.name, "kind": node.kind},
                )
                self._mark_failed(outcome, e)
            finally:
                outcome.finished_at = datetime.now(UTC)

    async def _converge(
        self,
        node: ResourceNode,
        outcome: NodeOutcome,
        outcomes: Mapping[str, NodeOutcome],
        provider: ProviderAdapter,
        state: StateStore,
        executor: ThreadPoolExecutor,
    ) -> None:
        inputs = resolve_inputs(node.inputs, functools.partial(self._lookup_output, outcomes))
        fingerprint = compute_fingerprint(node.kind, inputs)
        record = state.get(node.name)

        outputs: Mapping[str, Any]
        if record is None:
            action = NodeAction.CREATE
            remote_id, outputs = await self._create(node, inputs, outcome, provider, executor)

        elif record.kind != node.kind:
            logger.warning(
                "Resource kind changed, replacing",
                extra={"resource": node.name, "old_kind": record.kind, "new_kind": node.kind},
            )
            try:
                await self._call(outcome, executor, provider.delete, record.kind, record.remote_id)
            except NotFoundError:
                pass
            action = NodeAction.REPLACE
            remote_id, outputs = await self._create(node, inputs, outcome, provider, executor)

        elif record.fingerprint == fingerprint:
            try:
                await self._call(outcome, executor, provider.read, node.kind, record.remote_id)
                action = NodeAction.NOOP
                remote_id, outputs = record.remote_id, record.outputs
            except NotFoundError:
                logger.warning(
                    "Resource missing remotely, recreating",
                    extra={"resource": node.name, "remote_id": record.remote_id},
                )
                action = NodeAction.CREATE
                remote_id, outputs = await self._create(node, inputs, outcome, provider, executor)

        else:
            try:
                outputs = await self._call(
                    outcome, executor, provider.update, node.kind, record.remote_id, inputs
                )
                action = NodeAction.UPDATE
                remote_id = record.remote_id
            except NotFoundError:
                logger.warning(
                    "Resource missing remotely during update, recreating",
                    extra={"resource": node.name, "remote_id": record.remote_id},
                )
                action = NodeAction.CREATE
                remote_id, outputs = await self._create(node, inputs, outcome, provider, executor)

        published = dict(outputs)
        published[ID_ATTRIBUTE] = remote_id
        dependencies = sorted(node.predecessors())

        if (
            action != NodeAction.NOOP
            or record is None
            or record.dependencies != dependencies
        ):
            state.put(
                node.name,
                StateRecord(
                    name=node.name,
                    kind=node.kind,
                    remote_id=remote_id,
                    fingerprint=fingerprint,
                    outputs=published,
                    dependencies=dependencies,
                ),
            )

        outcome.action = action
        outcome.remote_id = remote_id
        outcome.outputs = MappingProxyType(published)
        outcome.state = NodeState.APPLIED

        logger.info(
            "Resource applied",
            extra={
                "resource": node.name,
                "kind": node.kind,
                "action": action.value,
                "remote_id": remote_id,
            },
        )

    async def _create(
        self,
        node: ResourceNode,
        inputs: Mapping[str, Any],
        outcome: NodeOutcome,
        provider: ProviderAdapter,
        executor: ThreadPoolExecutor,
    ) -> tuple[str, Mapping[str, Any]]:
        created = await self._call(outcome, executor, provider.create, node.kind, inputs)
        return created.remote_id, created.outputs

    async def _call(
        self,
        outcome: NodeOutcome,
        executor: ThreadPoolExecutor,
        operation: Callable[..., T],
        *args: Any,
    ) -> T:
        """Invoke a provider operation with timeout and retry.

        Raises:
            ProviderError: If the call fails permanently or retries are exhausted.
            ProviderTimeoutError: If an attempt exceeds the provider timeout.
        """
        operation_name = getattr(operation, "__name__", "provider call")
        max_attempts = self._config.max_retries

        for attempt in range(1, max_attempts + 1):
            outcome.attempts += 1
            try:
                return await self._execute_with_timeout(
                    executor, functools.partial(operation, *args), operation_name, outcome.name
                )
            except ProviderError as e:
                if not e.retryable or attempt >= max_attempts:
                    raise

                # Exponential backoff with jitter
                backoff = self._config.retry_backoff_base_seconds * (2 ** (attempt - 1))
                jitter = random.uniform(0, backoff * 0.2)
                wait_time = backoff + jitter

                logger.warning(
                    "Provider call failed, retrying",
                    extra={
                        "resource": outcome.name,
                        "operation": operation_name,
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                        "wait_seconds": wait_time,
                        "error": str(e),
                    },
                )
                await asyncio.sleep(wait_time)

        # SAFETY: max_retries >= 1 is validated in Config, so the loop either
        # returned or raised
        raise AssertionError("Retry loop completed without result")

    async def _execute_with_timeout(
        self,
        executor: ThreadPoolExecutor,
        call: Callable[[], T],
        operation_name: str,
        resource: str,
    ) -> T:
        """Run a blocking provider call in the worker pool with a timeout.

        SECURITY: Enforces timeout to prevent indefinite hangs on remote calls.
        The worker thread is not interrupted; the provider decides whether an
        abandoned call completes. An abandoned call keeps its worker busy, so
        the timeout starts when a worker picks the call up, not when it is
        queued.
        """
        loop = asyncio.get_running_loop()
        timeout_seconds = self._config.provider_timeout_seconds
        started: asyncio.Future[None] = loop.create_future()

        def mark_started() -> None:
            if not started.done():
                started.set_result(None)

        def run() -> T:
            loop.call_soon_threadsafe(mark_started)
            return call()

        future = loop.run_in_executor(executor, run)
        try:
            await asyncio.wait({started, future}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            started.cancel()

        try:
            return await asyncio.wait_for(future, timeout=timeout_seconds)
        except TimeoutError as e:
            logger.error(
                f"Provider {operation_name} timed out",
                extra={"resource": resource, "timeout_seconds": timeout_seconds},
            )
            raise ProviderTimeoutError(
                f"{operation_name} of '{resource}' timed out after {timeout_seconds}s"
            ) from e

    @staticmethod
    def _lookup_output(outcomes: Mapping[str, NodeOutcome], reference: Reference) -> Any:
        outcome = outcomes.get(reference.target)
        if outcome is None or outcome.state != NodeState.APPLIED:
            raise UnresolvableReferenceError(reference, "resource is not applied")
        if reference.attribute not in outcome.outputs:
            raise UnresolvableReferenceError(
                reference, f"resource has no output '{reference.attribute}'"
            )
        # Consumers get their own copy; published outputs stay untouched
        return copy.deepcopy(outcome.outputs[reference.attribute])

    @staticmethod
    def _find_blocker(
        node: ResourceNode, outcomes: Mapping[str, NodeOutcome]
    ) -> tuple[str, str | None] | None:
        """Return (skip reason, root cause) if a predecessor did not apply."""
        for dependency in sorted(node.predecessors()):
            upstream = outcomes[dependency]
            if upstream.state == NodeState.FAILED:
                return f"dependency '{dependency}' failed", dependency
            if upstream.state == NodeState.SKIPPED:
                if upstream.root_cause is not None:
                    reason = (
                        f"dependency '{dependency}' was skipped "
                        f"(root cause: '{upstream.root_cause}' failed)"
                    )
                else:
                    reason = f"dependency '{dependency}' was skipped ({upstream.skip_reason})"
                return reason, upstream.root_cause
        return None

    @staticmethod
    def _mark_skipped(outcome: NodeOutcome, reason: str, root_cause: str | None) -> None:
        outcome.state = NodeState.SKIPPED
        outcome.skip_reason = reason
        outcome.root_cause = root_cause
        logger.warning(
            "Resource skipped",
            extra={"resource": outcome.name, "reason": reason, "root_cause": root_cause},
        )

    @staticmethod
    def _mark_failed(outcome: NodeOutcome, error: Exception) -> None:
        outcome.state = NodeState.FAILED
        outcome.error = str(error)
        outcome.error_type = type(error).__name__
        logger.error(
            "Resource failed",
            extra={
                "resource": outcome.name,
                "kind": outcome.kind,
                "error": outcome.error,
                "error_type": outcome.error_type,
                "attempts": outcome.attempts,
            },
        )

    def plan_changes(self, plan: ApplyPlan, state: StateStore) -> list[PlannedChange]:
        """Classify every node without calling the provider.

        Inputs are resolved against recorded outputs. When an upstream node
        will be created or replaced, its outputs are known only after apply
        and dependents are reported as updates.
        """
        planned_outputs: dict[str, Mapping[str, Any] | None] = {}
        changes: list[PlannedChange] = []

        def lookup(reference: Reference) -> Any:
            outputs = planned_outputs.get(reference.target)
            if outputs is None:
                raise UnresolvableReferenceError(reference, "known after apply")
            if reference.attribute not in outputs:
                raise UnresolvableReferenceError(
                    reference, f"no recorded output '{reference.attribute}'"
                )
            return copy.deepcopy(outputs[reference.attribute])

        for name in plan.order():
            node = plan.node(name)
            record = state.get(name)

            if record is None:
                changes.append(PlannedChange(name, node.kind, NodeAction.CREATE, "not in state"))
                planned_outputs[name] = None
                continue

            if record.kind != node.kind:
                changes.append(
                    PlannedChange(
                        name, node.kind, NodeAction.REPLACE, f"kind changed from {record.kind}"
                    )
                )
                planned_outputs[name] = None
                continue

            planned_outputs[name] = record.outputs
            try:
                inputs = resolve_inputs(node.inputs, lookup)
            except UnresolvableReferenceError as e:
                changes.append(PlannedChange(name, node.kind, NodeAction.UPDATE, str(e)))
                continue

            if compute_fingerprint(node.kind, inputs) == record.fingerprint:
                changes.append(PlannedChange(name, node.kind, NodeAction.NOOP, "up to date"))
            else:
                changes.append(PlannedChange(name, node.kind, NodeAction.UPDATE, "inputs changed"))

        for name in find_orphans(plan.graph, state):
            record = state.get(name)
            reason = "no longer declared"
            if not self._config.confirm_deletions:
                reason += " (requires confirmation)"
            changes.append(
                PlannedChange(name, record.kind if record else "unknown", NodeAction.DELETE, reason)
            )

        return changes

    async def prune(
        self,
        graph: DependencyGraph,
        provider: ProviderAdapter,
        state: StateStore,
        *,
        confirm: bool = False,
    ) -> list[NodeOutcome]:
        """Delete resources recorded in state but no longer declared.

        Nothing is deleted unless `confirm` is True.

        Returns:
            One outcome per orphan that was processed.
        """
        orphans = find_orphans(graph, state)
        if not orphans:
            logger.info("No orphaned resources")
            return []

        if not confirm:
            logger.warning(
                "Orphaned resources left in place, deletion requires confirmation",
                extra={"orphans": orphans},
            )
            return []

        executor = ThreadPoolExecutor(
            max_workers=self._config.max_workers, thread_name_prefix="provider"
        )
        semaphore = asyncio.Semaphore(self._config.max_workers)
        try:
            return await self._delete_orphans(orphans, provider, state, semaphore, executor)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    async def _delete_orphans(
        self,
        orphans: list[str],
        provider: ProviderAdapter,
        state: StateStore,
        semaphore: asyncio.Semaphore,
        executor: ThreadPoolExecutor,
    ) -> list[NodeOutcome]:
        records: dict[str, StateRecord] = {}
        for name in orphans:
            record = state.get(name)
            if record is not None:
                records[name] = record

        # A declared resource whose last apply failed keeps its old record,
        # which may still list an orphan as a dependency
        held_by: dict[str, list[str]] = {name: [] for name in records}
        for name, record in state.list():
            if name in records:
                continue
            for dependency in record.dependencies:
                if dependency in held_by:
                    held_by[dependency].append(name)

        # Order deletions by the dependencies recorded at apply time:
        # dependents are deleted before what they depended on
        order_graph = build_graph(
            ResourceNode(
                name=name,
                kind=record.kind,
                depends_on=tuple(dep for dep in record.dependencies if dep in records),
            )
            for name, record in records.items()
        )
        teardown = schedule(order_graph).reversed()

        outcomes: dict[str, NodeOutcome] = {}
        for index, batch in enumerate(teardown):
            for name in batch:
                outcomes[name] = NodeOutcome(
                    name=name,
                    kind=records[name].kind,
                    batch=index,
                    state=NodeState.SCHEDULED,
                    action=NodeAction.DELETE,
                    remote_id=records[name].remote_id,
                )

        for batch in teardown:
            await asyncio.gather(
                *(
                    self._delete_one(
                        records[name],
                        outcomes,
                        order_graph,
                        held_by[name],
                        provider,
                        state,
                        semaphore,
                        executor,
                    )
                    for name in batch
                )
            )

        return list(outcomes.values())

    async def _delete_one(
        self,
        record: StateRecord,
        outcomes: dict[str, NodeOutcome],
        order_graph: DependencyGraph,
        held_by: list[str],
        provider: ProviderAdapter,
        state: StateStore,
        semaphore: asyncio.Semaphore,
        executor: ThreadPoolExecutor,
    ) -> None:
        outcome = outcomes[record.name]

        if held_by:
            self._mark_skipped(
                outcome,
                f"still a recorded dependency of declared resource '{sorted(held_by)[0]}'",
                None,
            )
            return

        for dependent in sorted(order_graph.dependents[record.name]):
            blocker = outcomes[dependent]
            if blocker.state != NodeState.APPLIED:
                self._mark_skipped(
                    outcome,
                    f"dependent '{dependent}' was not deleted",
                    blocker.root_cause or dependent,
                )
                return

        if self.cancelled:
            self._mark_skipped(outcome, CANCELLED_REASON, None)
            return

        async with semaphore:
            outcome.state = NodeState.APPLYING
            outcome.started_at = datetime.now(UTC)
            try:
                try:
                    await self._call(
                        outcome, executor, provider.delete, record.kind, record.remote_id
                    )
                except NotFoundError:
                    logger.info(
                        "Orphaned resource already gone",
                        extra={"resource": record.name, "remote_id": record.remote_id},
                    )
                state.remove(record.name)
                outcome.state = NodeState.APPLIED
                logger.info(
                    "Orphaned resource deleted",
                    extra={"resource": record.name, "kind": record.kind},
                )
            except (ProviderError, StateStoreError) as e:
                self._mark_failed(outcome, e)
            except Exception as e:
                logger.exception(
                    "Unexpected error deleting resource", extra={"resource": record.name}
                )
                self._mark_failed(outcome, e)
            finally:
                outcome.finished_at = datetime.now(UTC)

    def _log_result(self, result: ApplyResult) -> None:
        """Log apply result with structured data."""
        extra: dict[str, Any] = {
            "duration_seconds": result.duration_seconds,
            "applied": result.applied_count,
            "failed": result.failed_count,
            "skipped": result.skipped_count,
            "orphans": len(result.orphans),
            "deleted": sum(o.state == NodeState.APPLIED for o in result.deletions),
            "dry_run": result.dry_run,
            "cancelled": result.cancelled,
        }

        if result.failures:
            extra["failures"] = [f"{o.name}: {o.error}" for o in result.failures]
            logger.error("Apply finished with failures", extra=extra)
        elif result.cancelled or result.skipped_count:
            logger.warning("Apply incomplete", extra=extra)
        else:
            logger.info("Apply result", extra=extra)
