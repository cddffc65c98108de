"""
Reconciliation executor.

Drives one node through create, update or destroy against its backend and
is the only writer of the StateStore. Every backend call is bounded by the
policy's call timeout; readiness and deletion confirmation go through the
poller. Collaborator errors are wrapped into NodeErrors naming the node.

Destroy honors the node's deletion policy: protect refuses without calling
the backend, abandon forgets the record, standard deletes and waits. For
kinds known to hang on dangling finalizers, a deletion still terminating
after the first window escalates to a single forced finalizer clear and a
second bounded wait.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, TypeVar

import structlog

from stagecraft.config.policies import PolicyConfig
from stagecraft.core.errors import (
    BackendCallFailed,
    NodeError,
    ProtectedResource,
    StuckDeletion,
    TimedOut,
)
from stagecraft.graph.models import (
    GRANT_KINDS,
    DeletionPolicy,
    NodeStatus,
    Reference,
    ResourceNode,
    can_transition,
)
from stagecraft.planning.plan import Operation, PlanStep
from stagecraft.planning.planner import diff_inputs
from stagecraft.providers.base import ManifestFetcher, ResourceBackend, ResourceState
from stagecraft.reconcile.grants import ensure_grant_prerequisites
from stagecraft.reconcile.poller import (
    Clock,
    PollResult,
    ProbeStatus,
    Sleep,
    ensure_ready,
    wait_until_ready,
)
from stagecraft.state.store import NodeRecord, StateStore, recorded_inputs

logger = structlog.get_logger()

T = TypeVar("T")

# statuses an interrupted run can leave behind; the next pass starts over
_INTERRUPTED = frozenset({NodeStatus.CREATING, NodeStatus.UPDATING, NodeStatus.DESTROYING})


class ReconciliationExecutor:
    """Per-node create / update / destroy with status bookkeeping."""

    def __init__(
        self,
        store: StateStore,
        policies: PolicyConfig | None = None,
        manifest_fetcher: ManifestFetcher | None = None,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._store = store
        self._policies = policies or PolicyConfig()
        self._manifests = manifest_fetcher
        self._clock = clock
        self._sleep = sleep

    async def reconcile(self, step: PlanStep, backend: ResourceBackend) -> Operation:
        """Run one plan step; returns the operation actually performed."""
        if step.operation == Operation.CREATE:
            return await self.create(step.node, backend)
        if step.operation == Operation.UPDATE:
            return await self.update(step.node, backend)
        if step.operation == Operation.NOOP:
            return await self.noop(step.node)
        return await self.destroy(step.node, backend)

    # -- helpers ---------------------------------------------------------

    def _outputs_lookup(self, node: ResourceNode) -> Any:
        def lookup(ref: Reference) -> Any:
            record = self._store.get(ref.node_id)
            if record is None or not record.is_ready:
                raise NodeError(node.id, str(node.kind), f"input {ref} is not available yet")
            if ref.attribute not in record.outputs:
                raise NodeError(
                    node.id,
                    str(node.kind),
                    f"input {ref}: '{ref.node_id}' has no output '{ref.attribute}'",
                )
            return record.outputs[ref.attribute]

        return lookup

    def resolve_inputs(self, node: ResourceNode) -> dict[str, Any]:
        """Inputs with every reference replaced by the upstream output."""
        return node.desired_inputs(self._outputs_lookup(node))

    def _recorded_inputs(self, node: ResourceNode) -> dict[str, Any]:
        outputs = {r.id: r.outputs for r in self._store.records() if r.is_ready}
        return recorded_inputs(node, outputs)

    def _set_status(self, record: NodeRecord, node: ResourceNode, target: NodeStatus) -> None:
        if record.status in _INTERRUPTED and target == NodeStatus.PLANNED:
            logger.warning("node_status_recovered", node_id=record.id, status=str(record.status))
        elif not can_transition(record.status, target):
            raise ValueError(f"{record.id}: illegal status transition {record.status} -> {target}")
        record.status = target
        node.status = target
        self._store.put(record)

    def _sync_record(self, record: NodeRecord, node: ResourceNode) -> None:
        """Carry declaration metadata that does not warrant a backend call."""
        record.kind = node.kind
        record.stage = node.stage
        record.depends_on = sorted(node.dependency_ids())
        record.deletion_policy = node.deletion_policy
        record.binding = node.binding
        record.finalizer_recovery = node.finalizer_recovery

    async def _call(self, node: ResourceNode, operation: str, call: Awaitable[T]) -> T:
        budget = self._policies.backend_call_timeout
        start = self._clock()
        try:
            return await asyncio.wait_for(call, timeout=budget)
        except asyncio.TimeoutError:
            raise TimedOut(
                node.id, str(node.kind), f"{operation} call", self._clock() - start, budget
            ) from None
        except NodeError:
            raise
        except Exception as e:
            logger.error(
                "backend_call_failed",
                node_id=node.id,
                kind=str(node.kind),
                operation=operation,
                error=str(e),
            )
            raise BackendCallFailed(node.id, str(node.kind), operation, e) from e

    async def _fetch_manifest(self, node: ResourceNode, inputs: dict[str, Any]) -> dict[str, Any]:
        if node.manifest is None:
            return inputs
        url = node.manifest.resolved_url
        if self._manifests is None:
            raise NodeError(node.id, str(node.kind), f"no manifest fetcher configured for {url}")
        documents = await self._call(node, "fetch_manifest", self._manifests.fetch_manifest(url))
        return {**inputs, "documents": documents}

    async def _wait_ready(
        self, node: ResourceNode, backend: ResourceBackend, resource_id: str
    ) -> dict[str, Any]:
        """Poll until the backend reports the resource Ready; returns its outputs."""
        observed: dict[str, ResourceState] = {}

        async def probe() -> ProbeStatus:
            state = await self._call(node, "get", backend.get(node.kind, resource_id))
            observed["last"] = state
            if state.failed:
                return ProbeStatus.FAILED
            # a just-created resource may still read as absent
            return ProbeStatus.READY if state.ready else ProbeStatus.PENDING

        timeout = node.readiness_timeout or self._policies.readiness.timeout_for(str(node.kind))
        outcome = await ensure_ready(
            probe,
            node_id=node.id,
            kind=str(node.kind),
            waiting_for="readiness",
            timeout=timeout,
            interval=self._policies.readiness.interval,
            clock=self._clock,
            sleep=self._sleep,
        )
        last = observed.get("last")
        if outcome.result == PollResult.FAILED:
            message = last.message if last and last.message else "backend reported failure"
            raise NodeError(node.id, str(node.kind), f"became unhealthy: {message}")
        logger.info(
            "node_ready",
            node_id=node.id,
            kind=str(node.kind),
            attempts=outcome.attempts,
            elapsed=round(outcome.elapsed, 3),
        )
        return dict(last.outputs) if last else {}

    def _fail(self, record: NodeRecord, node: ResourceNode, error: Exception) -> None:
        record.error = str(error)
        self._set_status(record, node, NodeStatus.FAILED)
        logger.error("node_failed", node_id=node.id, kind=str(node.kind), error=str(error))

    # -- operations ------------------------------------------------------

    async def create(self, node: ResourceNode, backend: ResourceBackend) -> Operation:
        async with self._store.lock(node.id):
            record = self._store.get(node.id) or NodeRecord.for_node(node)
            if record.status != NodeStatus.PLANNED:
                self._set_status(record, node, NodeStatus.PLANNED)
            self._sync_record(record, node)
            self._set_status(record, node, NodeStatus.CREATING)
            start = self._clock()

            try:
                if node.kind in GRANT_KINDS:
                    ensure_grant_prerequisites(node, self._store)
                inputs = await self._fetch_manifest(node, self.resolve_inputs(node))

                adopted = False
                if record.resource_id:
                    # a failed earlier attempt may have left the resource behind
                    existing = await self._call(
                        node, "get", backend.get(node.kind, record.resource_id)
                    )
                    if existing.exists and not existing.terminating:
                        outputs = await self._call(
                            node,
                            "update",
                            backend.update(
                                node.kind, record.resource_id, inputs, diff_inputs({}, inputs)
                            ),
                        )
                        record.outputs = {**existing.outputs, **outputs}
                        adopted = True
                        logger.info("node_adopted", node_id=node.id, resource_id=record.resource_id)

                if not adopted:
                    result = await self._call(
                        node, "create", backend.create(node.kind, node.id, inputs)
                    )
                    record.resource_id = result.resource_id
                    record.outputs = dict(result.outputs)
                    self._store.put(record)

                if node.needs_readiness_wait:
                    ready_outputs = await self._wait_ready(node, backend, record.resource_id)
                    record.outputs = {**record.outputs, **ready_outputs}
            except Exception as e:
                self._fail(record, node, e)
                raise

            record.inputs = self._recorded_inputs(node)
            record.error = None
            node.outputs = dict(record.outputs)
            self._set_status(record, node, NodeStatus.READY)
            logger.info(
                "node_created",
                node_id=node.id,
                kind=str(node.kind),
                resource_id=record.resource_id,
                elapsed=round(self._clock() - start, 3),
            )
            return Operation.CREATE

    async def update(self, node: ResourceNode, backend: ResourceBackend) -> Operation:
        async with self._store.lock(node.id):
            record = self._store.get(node.id)
            if record is None or not record.is_ready or record.resource_id is None:
                raise NodeError(node.id, str(node.kind), "cannot update a node that is not Ready")

            resolved = self.resolve_inputs(node)
            desired = self._recorded_inputs(node)
            diff = diff_inputs(record.inputs, desired)
            self._sync_record(record, node)
            if not diff:
                node.outputs = dict(record.outputs)
                node.status = record.status
                self._store.put(record)
                logger.debug("node_unchanged", node_id=node.id)
                return Operation.NOOP

            self._set_status(record, node, NodeStatus.UPDATING)
            try:
                inputs = await self._fetch_manifest(node, resolved)
                outputs = await self._call(
                    node, "update", backend.update(node.kind, record.resource_id, inputs, diff)
                )
                record.outputs = {**record.outputs, **outputs}
                if node.needs_readiness_wait:
                    ready_outputs = await self._wait_ready(node, backend, record.resource_id)
                    record.outputs = {**record.outputs, **ready_outputs}
            except Exception as e:
                self._fail(record, node, e)
                raise

            record.inputs = desired
            record.error = None
            node.outputs = dict(record.outputs)
            self._set_status(record, node, NodeStatus.READY)
            logger.info("node_updated", node_id=node.id, kind=str(node.kind), changed=sorted(diff))
            return Operation.UPDATE

    async def noop(self, node: ResourceNode) -> Operation:
        """No backend call; refresh declaration metadata only."""
        async with self._store.lock(node.id):
            record = self._store.get(node.id)
            if record is None or not record.is_ready:
                raise NodeError(node.id, str(node.kind), "no Ready record to keep")
            self._sync_record(record, node)
            self._store.put(record)
            node.outputs = dict(record.outputs)
            node.status = record.status
            return Operation.NOOP

    async def refresh_outputs(self, record_id: str, backend: ResourceBackend) -> bool:
        """Re-read a Ready node's outputs with a side-effect-free get.

        Only adds or overwrites keys, so outputs the backend does not echo
        back survive. Returns whether anything was read.
        """
        async with self._store.lock(record_id):
            record = self._store.get(record_id)
            if record is None or not record.is_ready or record.resource_id is None:
                return False
            node = record.to_node()
            state = await self._call(node, "get", backend.get(record.kind, record.resource_id))
            if not state.exists or not state.outputs:
                return False
            record.outputs = {**record.outputs, **state.outputs}
            self._store.put(record)
            logger.debug("outputs_refreshed", node_id=record_id, keys=sorted(state.outputs))
            return True

    async def destroy(self, node: ResourceNode, backend: ResourceBackend | None) -> Operation:
        async with self._store.lock(node.id):
            record = self._store.get(node.id)
            if record is None:
                logger.debug("node_already_absent", node_id=node.id)
                return Operation.NOOP

            if node.deletion_policy == DeletionPolicy.PROTECT:
                logger.warning("destroy_blocked", node_id=node.id, kind=str(node.kind))
                raise ProtectedResource(node.id, str(node.kind))

            if node.deletion_policy == DeletionPolicy.ABANDON:
                self._store.remove(node.id)
                logger.info("node_abandoned", node_id=node.id, kind=str(node.kind))
                return Operation.DESTROY

            if record.resource_id is None:
                # never reached the backend
                self._store.remove(node.id)
                logger.info("node_forgotten", node_id=node.id, status=str(record.status))
                return Operation.DESTROY

            if backend is None:
                raise NodeError(node.id, str(node.kind), "no backend available for destroy")

            if record.status != NodeStatus.DESTROYING:
                if not can_transition(record.status, NodeStatus.DESTROYING):
                    logger.warning(
                        "node_status_recovered", node_id=node.id, status=str(record.status)
                    )
                    record.status = NodeStatus.FAILED
                self._set_status(record, node, NodeStatus.DESTROYING)

            try:
                await self._delete_and_confirm(node, backend, record.resource_id)
            except Exception as e:
                self._fail(record, node, e)
                raise

            node.status = NodeStatus.DESTROYED
            record.status = NodeStatus.DESTROYED
            self._store.remove(node.id)
            logger.info("node_destroyed", node_id=node.id, kind=str(node.kind))
            return Operation.DESTROY

    async def _delete_and_confirm(
        self, node: ResourceNode, backend: ResourceBackend, resource_id: str
    ) -> None:
        window = self._policies.deletion
        observed: dict[str, ResourceState] = {}

        async def gone() -> ProbeStatus:
            state = await self._call(node, "get", backend.get(node.kind, resource_id))
            observed["last"] = state
            return ProbeStatus.PENDING if state.exists else ProbeStatus.READY

        await self._call(node, "delete", backend.delete(node.kind, resource_id))
        logger.info("delete_requested", node_id=node.id, kind=str(node.kind))

        first = await wait_until_ready(
            gone, window.timeout, window.interval, clock=self._clock, sleep=self._sleep
        )
        if first.ready:
            logger.info("deletion_verified", node_id=node.id, elapsed=round(first.elapsed, 3))
            return

        last = observed.get("last")
        terminating = bool(last and last.terminating)
        clear = getattr(backend, "clear_finalizers", None)
        if not (node.recovers_stuck_deletion and terminating and clear is not None):
            raise TimedOut(node.id, str(node.kind), "deletion", first.elapsed, window.timeout)

        logger.warning(
            "stuck_deletion_detected",
            node_id=node.id,
            kind=str(node.kind),
            elapsed=round(first.elapsed, 3),
        )
        await self._call(node, "clear_finalizers", clear(node.kind, resource_id))
        logger.warning("finalizers_cleared", node_id=node.id, kind=str(node.kind))

        second = await wait_until_ready(
            gone, window.recovery_timeout, window.interval, clock=self._clock, sleep=self._sleep
        )
        if second.ready:
            logger.info(
                "deletion_verified",
                node_id=node.id,
                elapsed=round(first.elapsed + second.elapsed, 3),
                recovered=True,
            )
            return

        logger.error(
            "stuck_deletion_unrecovered",
            node_id=node.id,
            kind=str(node.kind),
            elapsed=round(first.elapsed + second.elapsed, 3),
        )
        raise StuckDeletion(node.id, str(node.kind), first.elapsed + second.elapsed)
