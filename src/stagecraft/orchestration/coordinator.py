"""
Two-phase apply coordinator.

Runs an ApplyPlan stage by stage. Infrastructure steps run to completion
first; at the stage boundary a read-only snapshot of outputs is taken,
carried-over binding sources are re-read, and every ProviderBinding is
resolved so the Application stage can reach the cluster and database it
needs. A binding whose source node was created or updated in the finished
stage is resolved again and its client replaced. Within a stage, steps
start as soon as their upstream nodes are Ready, bounded by a semaphore.

A failed node blocks only its transitive dependents; siblings carry on and
every failure of the pass is aggregated into the ApplyResult. There is no
rollback: a re-run picks up from the recorded state.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Iterable

import structlog

from stagecraft.config.policies import PolicyConfig
from stagecraft.core.errors import BindingUnresolved, NodeError
from stagecraft.graph.models import DeletionPolicy, ProviderBinding, Stage
from stagecraft.orchestration.bindings import BackendSet, BindingResolver
from stagecraft.orchestration.results import ApplyResult, ResultCollector
from stagecraft.planning.plan import ApplyPlan, Operation, PlanStep
from stagecraft.providers.base import ResourceBackend
from stagecraft.reconcile.executor import ReconciliationExecutor
from stagecraft.reconcile.poller import Clock, Sleep
from stagecraft.state.store import StateStore

logger = structlog.get_logger()

StepRunner = Callable[[PlanStep], Awaitable[Operation]]
Upstream = Callable[[PlanStep], set[str]]


class Coordinator:
    """Sequences plan steps across stages and nodes."""

    def __init__(
        self,
        backends: BackendSet,
        store: StateStore,
        policies: PolicyConfig | None = None,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._backends = backends
        self._store = store
        self._policies = policies or PolicyConfig()
        self._clock = clock
        self._executor = ReconciliationExecutor(
            store, self._policies, backends.manifest_fetcher, clock=clock, sleep=sleep
        )
        self._resolver = BindingResolver(backends, self._executor, store)
        self._cancel_requested = False
        self._fresh: set[str] = set()
        # nodes created or updated since bindings were last resolved
        self._changed: set[str] = set()
        self._unresolved: dict[str, list[str]] = {}

    @property
    def executor(self) -> ReconciliationExecutor:
        return self._executor

    @property
    def cancelled(self) -> bool:
        return self._cancel_requested

    def cancel(self) -> None:
        """Stop starting node operations; in-flight calls finish or time out."""
        if not self._cancel_requested:
            logger.warning("cancel_requested")
        self._cancel_requested = True

    # -- apply -----------------------------------------------------------

    async def apply(
        self,
        plan: ApplyPlan,
        *,
        stages: Iterable[Stage] | None = None,
        prune: bool = False,
    ) -> ApplyResult:
        if plan.destroy:
            raise ValueError("destroy plans run through Coordinator.destroy()")

        selected = set(stages) if stages is not None else set(plan.stage_order)
        collector = ResultCollector()
        halted: set[str] = set()
        start = self._clock()
        self._fresh = set()
        self._changed = set()
        for binding in plan.bindings.values():
            binding.reset()

        logger.info(
            "apply_started",
            steps=len(plan.steps()),
            stages=[str(s) for s in plan.stage_order if s in selected],
            prune=prune,
            policies=self._policies.to_dict(),
        )

        for stage in plan.stage_order:
            steps = plan.steps_for(stage)
            if self._cancel_requested:
                for step in steps:
                    collector.record_cancelled(step.node_id)
                continue
            if stage not in selected:
                for step in steps:
                    collector.record_deferred(step.node_id)
                logger.info("apply_stage_deferred", stage=str(stage), steps=len(steps))
                continue

            await self._prepare_stage(steps, plan.bindings)
            logger.info("apply_stage_started", stage=str(stage), steps=len(steps))
            await self._schedule(
                steps,
                upstream=lambda s: self._apply_upstream(s, plan.bindings),
                run=self._apply_step,
                collector=collector,
                halted=halted,
            )
            logger.info("apply_stage_finished", stage=str(stage), halted=len(halted))

        if prune and plan.orphans and selected >= set(plan.stage_order):
            await self._destroy_steps(plan.orphans, plan.bindings, collector, halted)

        result = collector.finalize(self._clock() - start)
        logger.info(
            "apply_finished",
            created=len(result.created),
            updated=len(result.updated),
            unchanged=len(result.unchanged),
            destroyed=len(result.destroyed),
            failed=result.failed_node_ids,
            blocked=len(result.blocked),
            cancelled=len(result.cancelled),
            duration=round(result.duration_seconds, 3),
        )
        return result

    async def _prepare_stage(
        self, steps: list[PlanStep], bindings: dict[str, ProviderBinding]
    ) -> None:
        """Stage boundary: refresh carried-over sources, then resolve bindings."""
        referenced: set[str] = set()
        for step in steps:
            referenced |= {ref.node_id for ref in step.node.references()}
            binding = bindings.get(step.node.binding) if step.node.binding else None
            if binding is not None:
                referenced |= binding.source_node_ids()
        for binding in bindings.values():
            referenced |= binding.source_node_ids()
        await self._refresh_and_resolve(referenced, bindings)

    async def _refresh_and_resolve(
        self, referenced: set[str], bindings: dict[str, ProviderBinding]
    ) -> None:
        # rebind first so carried-over nodes are re-read through current clients
        changed, self._changed = self._changed, set()
        self._unresolved = await self._resolver.resolve(bindings, self._store.snapshot(), changed)

        stale = referenced - self._fresh
        if not stale:
            return
        refreshed = set(await self._resolver.refresh(stale))
        self._fresh |= refreshed
        if refreshed:
            self._unresolved = await self._resolver.resolve(
                bindings, self._store.snapshot(), refreshed
            )

    def _apply_upstream(self, step: PlanStep, bindings: dict[str, ProviderBinding]) -> set[str]:
        upstream = step.node.dependency_ids()
        binding = bindings.get(step.node.binding) if step.node.binding else None
        if binding is not None:
            upstream |= binding.source_node_ids()
        return upstream

    def _unresolved_error(self, step: PlanStep) -> BindingUnresolved:
        name = step.node.binding or ""
        return BindingUnresolved(
            step.node_id, str(step.node.kind), name, self._unresolved.get(name, [])
        )

    def _backend_for(self, step: PlanStep) -> ResourceBackend:
        backend = self._backends.for_node(step.node)
        if backend is None:
            raise self._unresolved_error(step)
        return backend

    async def _apply_step(self, step: PlanStep) -> Operation:
        if step.operation == Operation.NOOP:
            performed = await self._executor.noop(step.node)
        else:
            performed = await self._executor.reconcile(step, self._backend_for(step))
        if performed in (Operation.CREATE, Operation.UPDATE):
            self._fresh.add(step.node_id)
            self._changed.add(step.node_id)
        return performed

    # -- destroy ---------------------------------------------------------

    async def destroy(self, plan: ApplyPlan) -> ApplyResult:
        """Tear down a destroy plan: dependents before their dependencies."""
        if not plan.destroy:
            raise ValueError("Coordinator.destroy() needs a destroy plan")

        collector = ResultCollector(destroy=True)
        start = self._clock()
        self._fresh = set()
        self._changed = set()
        for binding in plan.bindings.values():
            binding.reset()

        logger.info("destroy_started", steps=len(plan.steps()))
        await self._destroy_steps(plan.steps(), plan.bindings, collector, set())
        result = collector.finalize(self._clock() - start)
        logger.info(
            "destroy_finished",
            destroyed=len(result.destroyed),
            failed=result.failed_node_ids,
            blocked=len(result.blocked),
            cancelled=len(result.cancelled),
            duration=round(result.duration_seconds, 3),
        )
        return result

    async def _destroy_steps(
        self,
        steps: list[PlanStep],
        bindings: dict[str, ProviderBinding],
        collector: ResultCollector,
        halted: set[str],
    ) -> None:
        # bindings are needed to reach workloads and grants while tearing down
        sources: set[str] = set()
        for binding in bindings.values():
            sources |= binding.source_node_ids()
        await self._refresh_and_resolve(sources, bindings)

        dependents: dict[str, set[str]] = {step.node_id: set() for step in steps}
        for step in steps:
            for dep in step.node.dependency_ids():
                if dep in dependents:
                    dependents[dep].add(step.node_id)

        for stage in (Stage.APPLICATION, Stage.INFRASTRUCTURE):
            stage_steps = [s for s in steps if s.stage == stage]
            if not stage_steps:
                continue
            logger.info("destroy_stage_started", stage=str(stage), steps=len(stage_steps))
            await self._schedule(
                stage_steps,
                upstream=lambda s: dependents[s.node_id],
                run=self._destroy_step,
                collector=collector,
                halted=halted,
            )

    async def _destroy_step(self, step: PlanStep) -> Operation:
        node = step.node
        backend = self._backends.for_node(node)
        record = self._store.get(node.id)
        # protect and abandon never reach the backend
        needs_backend = (
            node.deletion_policy == DeletionPolicy.STANDARD
            and record is not None
            and record.resource_id is not None
        )
        if backend is None and needs_backend:
            raise self._unresolved_error(step)
        return await self._executor.destroy(node, backend)

    # -- scheduling ------------------------------------------------------

    async def _schedule(
        self,
        steps: list[PlanStep],
        *,
        upstream: Upstream,
        run: StepRunner,
        collector: ResultCollector,
        halted: set[str],
    ) -> None:
        """Dependency-driven execution of one stage with bounded parallelism.

        `halted` accumulates failed and blocked nodes across stages; any step
        whose upstream intersects it is reported blocked and never started.
        """
        pending = {step.node_id: step for step in steps}
        in_stage = set(pending)
        done: set[str] = set()
        running: dict[asyncio.Task[Operation | None], PlanStep] = {}
        semaphore = asyncio.Semaphore(max(1, self._policies.max_concurrency))

        async def guarded(step: PlanStep) -> Operation | None:
            async with semaphore:
                if self._cancel_requested:
                    return None
                return await run(step)

        try:
            while pending or running:
                if self._cancel_requested:
                    for node_id in pending:
                        collector.record_cancelled(node_id)
                    pending.clear()

                for node_id, step in list(pending.items()):
                    deps = upstream(step)
                    failed_deps = sorted(deps & halted)
                    if failed_deps:
                        del pending[node_id]
                        halted.add(node_id)
                        reason = f"upstream '{failed_deps[0]}' did not converge"
                        collector.record_blocked(node_id, reason)
                        logger.warning("node_blocked", node_id=node_id, reason=reason)
                        continue
                    if (deps & in_stage) <= done:
                        del pending[node_id]
                        running[asyncio.create_task(guarded(step))] = step

                if not running:
                    for node_id in pending:
                        collector.record_blocked(node_id, "upstream never completed")
                        halted.add(node_id)
                    break

                finished, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in finished:
                    step = running.pop(task)
                    self._collect(task, step, collector, done, halted)
        except asyncio.CancelledError:
            for task in running:
                task.cancel()
            raise

    def _collect(
        self,
        task: asyncio.Task[Operation | None],
        step: PlanStep,
        collector: ResultCollector,
        done: set[str],
        halted: set[str],
    ) -> None:
        error = task.exception()
        if error is None:
            performed = task.result()
            if performed is None:
                collector.record_cancelled(step.node_id)
                halted.add(step.node_id)
                return
            done.add(step.node_id)
            collector.record(step, performed)
            return

        if not isinstance(error, NodeError):
            error = NodeError(
                step.node_id, str(step.node.kind), f"{type(error).__name__}: {error}"
            )
        halted.add(step.node_id)
        collector.record_failure(error)
