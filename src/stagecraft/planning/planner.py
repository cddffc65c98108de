"""
Dependency resolver and planner.

Builds a directed graph from explicit `depends_on` edges, input references
and provider-binding sources, sorts it deterministically (Kahn's algorithm,
ties broken by node id) and partitions the order into stages. A node that
needs a binding derived from stage S outputs is moved to the start of the
next stage; when no later stage exists the plan is rejected.
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping

import networkx as nx
import structlog

from stagecraft.core.errors import CycleDetected, UnresolvableReference
from stagecraft.graph.loader import Topology
from stagecraft.graph.models import (
    NodeStatus,
    ProviderBinding,
    Reference,
    ResourceNode,
    Stage,
)
from stagecraft.planning.plan import UNKNOWN, ApplyPlan, Operation, PlanStep
from stagecraft.state.store import SENSITIVE_OUTPUTS, NodeRecord, StateSnapshot, StateStore

logger = structlog.get_logger()

StateLike = StateStore | StateSnapshot | Mapping[str, NodeRecord]


def _records(state: StateLike | None) -> dict[str, NodeRecord]:
    if state is None:
        return {}
    if isinstance(state, StateStore):
        return {r.id: r for r in state.records()}
    return dict(state)


def sort_graph(graph: nx.DiGraph) -> list[str]:
    """Deterministic topological order; raises CycleDetected."""
    try:
        return list(nx.lexicographical_topological_sort(graph))
    except nx.NetworkXUnfeasible:
        cycle = [u for u, _ in nx.find_cycle(graph)]
        raise CycleDetected(cycle) from None


def preview_inputs(node: ResourceNode, outputs: Mapping[str, Mapping[str, Any]]) -> Any:
    """Resolve inputs where outputs are already known, else mark them unknown.

    Sensitive outputs are never persisted, so references to them compare by
    reference text, matching how the executor records them.
    """

    def lookup(ref: Reference) -> Any:
        if ref.attribute in SENSITIVE_OUTPUTS:
            return str(ref)
        return outputs.get(ref.node_id, {}).get(ref.attribute, UNKNOWN)

    return node.desired_inputs(lookup)


def _contains_unknown(value: Any) -> bool:
    if isinstance(value, str):
        return UNKNOWN in value
    if isinstance(value, Mapping):
        return any(_contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(_contains_unknown(v) for v in value)
    return False


def diff_inputs(old: Mapping[str, Any], new: Mapping[str, Any]) -> dict[str, Any]:
    """Top-level attribute diff: {attr: {"old": ..., "new": ...}}."""
    diff: dict[str, Any] = {}
    for key in sorted(set(old) | set(new)):
        before = old.get(key)
        after = new.get(key)
        if before != after:
            diff[key] = {"old": before, "new": after}
    return diff


class Planner:
    """Computes ApplyPlans; never touches a backend."""

    def plan_topology(self, topology: Topology, state: StateLike | None = None) -> ApplyPlan:
        return self.plan(
            topology.node_list(),
            topology.bindings,
            state=state,
            excluded=topology.excluded,
        )

    def plan(
        self,
        nodes: Iterable[ResourceNode],
        bindings: Mapping[str, ProviderBinding] | None = None,
        *,
        state: StateLike | None = None,
        excluded: Iterable[str] = (),
    ) -> ApplyPlan:
        index = {node.id: node for node in nodes}
        bindings = dict(bindings or {})
        excluded = set(excluded)
        records = _records(state)

        self._check_references(index, bindings, excluded)
        graph = self._build_graph(index, bindings)
        order = sort_graph(graph)
        effective = self._assign_stages(order, index, bindings)

        plan = ApplyPlan(bindings=bindings)
        known_outputs = {k: r.outputs for k, r in records.items() if r.is_ready}

        for stage in plan.stage_order:
            moved = [n for n in order if effective[n] == stage and index[n].stage != stage]
            native = [n for n in order if effective[n] == stage and index[n].stage == stage]
            plan.stages[stage] = [
                self._step(index[n], stage, records.get(n), known_outputs) for n in moved + native
            ]
            for n in moved:
                plan.promoted[n] = stage

        orphan_records = [r for k, r in records.items() if k not in index]
        if orphan_records:
            plan.orphans = self._destroy_steps(orphan_records, reason="no longer declared")

        logger.debug(
            "plan_built",
            nodes=len(index),
            create=plan.count(Operation.CREATE),
            update=plan.count(Operation.UPDATE),
            noop=plan.count(Operation.NOOP),
            orphans=len(plan.orphans),
            promoted=sorted(plan.promoted),
        )
        return plan

    def plan_destroy(
        self,
        nodes: Iterable[ResourceNode],
        state: StateLike | None = None,
        bindings: Mapping[str, ProviderBinding] | None = None,
    ) -> ApplyPlan:
        """Reverse-order teardown of every tracked node (declared or not)."""
        records = _records(state)
        declared = {node.id: node for node in nodes}

        targets: list[NodeRecord] = []
        for node_id, record in records.items():
            if record.status == NodeStatus.DESTROYED:
                continue
            if node_id in declared:
                # keep the recorded stage, it reflects where the node was applied
                node = declared[node_id]
                record = NodeRecord(
                    id=node.id,
                    kind=node.kind,
                    stage=record.stage,
                    status=record.status,
                    resource_id=record.resource_id,
                    inputs=record.inputs,
                    outputs=record.outputs,
                    depends_on=sorted(set(record.depends_on) | node.dependency_ids()),
                    deletion_policy=node.deletion_policy,
                    binding=node.binding,
                    finalizer_recovery=node.finalizer_recovery,
                )
            targets.append(record)

        plan = ApplyPlan(
            stage_order=list(reversed(Stage.ordered())),
            bindings=dict(bindings or {}),
            destroy=True,
        )
        for step in self._destroy_steps(targets):
            plan.stages.setdefault(step.stage, []).append(step)
        return plan

    def _check_references(
        self,
        index: Mapping[str, ResourceNode],
        bindings: Mapping[str, ProviderBinding],
        excluded: set[str],
    ) -> None:
        def missing_reason(target: str) -> str:
            if target in excluded:
                return "target is excluded by a configuration flag"
            return "no such node"

        for node in index.values():
            for dep in sorted(node.dependency_ids()):
                if dep not in index:
                    raise UnresolvableReference(node.id, dep, missing_reason(dep))
            if node.binding is not None:
                binding = bindings.get(node.binding)
                if binding is None:
                    raise UnresolvableReference(
                        node.id, f"binding:{node.binding}", "no such provider binding"
                    )
                for source in sorted(binding.source_node_ids()):
                    if source not in index:
                        raise UnresolvableReference(
                            node.id,
                            f"binding:{node.binding}",
                            f"binding source '{source}': {missing_reason(source)}",
                        )

    def _build_graph(
        self, index: Mapping[str, ResourceNode], bindings: Mapping[str, ProviderBinding]
    ) -> nx.DiGraph:
        graph = nx.DiGraph()
        graph.add_nodes_from(index)
        for node in index.values():
            for dep in node.dependency_ids():
                graph.add_edge(dep, node.id)
            if node.binding is not None:
                for source in bindings[node.binding].source_node_ids():
                    graph.add_edge(source, node.id)
        return graph

    def _assign_stages(
        self,
        order: list[str],
        index: Mapping[str, ResourceNode],
        bindings: Mapping[str, ProviderBinding],
    ) -> dict[str, Stage]:
        effective: dict[str, Stage] = {}
        for node_id in order:
            node = index[node_id]
            stage = node.stage

            for dep in sorted(node.dependency_ids()):
                declared = index[dep].stage
                if declared.order > node.stage.order:
                    raise UnresolvableReference(
                        node_id, dep, f"target belongs to the later {declared} stage"
                    )
                if effective[dep].order > stage.order:
                    stage = effective[dep]

            if node.binding is not None:
                binding = bindings[node.binding]
                sources = binding.source_node_ids()
                if sources:
                    source_stage = max((effective[s] for s in sources), key=lambda s: s.order)
                    required = source_stage.next()
                    if required is None:
                        raise UnresolvableReference(
                            node_id,
                            f"binding:{binding.name}",
                            f"binding is derived from {source_stage}-stage outputs and no "
                            "later stage can resolve it; apply in separate runs",
                        )
                    if required.order > stage.order:
                        stage = required

            effective[node_id] = stage
        return effective

    def _step(
        self,
        node: ResourceNode,
        stage: Stage,
        record: NodeRecord | None,
        known_outputs: Mapping[str, Mapping[str, Any]],
    ) -> PlanStep:
        preview = preview_inputs(node, known_outputs)

        if record is None:
            return PlanStep(node, Operation.CREATE, stage, diff=diff_inputs({}, preview))
        if record.status != NodeStatus.READY:
            return PlanStep(
                node,
                Operation.CREATE,
                stage,
                diff=diff_inputs({}, preview),
                reason=f"retry from {record.status}",
            )

        diff = diff_inputs(record.inputs, preview)
        if not diff and not _contains_unknown(preview):
            return PlanStep(node, Operation.NOOP, stage)
        return PlanStep(node, Operation.UPDATE, stage, diff=diff)

    def _destroy_steps(
        self, records: list[NodeRecord], reason: str | None = None
    ) -> list[PlanStep]:
        """Dependents first; application stage before infrastructure."""
        ids = {r.id for r in records}
        graph = nx.DiGraph()
        graph.add_nodes_from(ids)
        for record in records:
            for dep in record.depends_on:
                if dep in ids:
                    graph.add_edge(dep, record.id)

        by_id = {r.id: r for r in records}
        reverse = list(reversed(sort_graph(graph)))
        steps: list[PlanStep] = []
        for stage in reversed(Stage.ordered()):
            for node_id in reverse:
                record = by_id[node_id]
                if record.stage == stage:
                    steps.append(
                        PlanStep(record.to_node(), Operation.DESTROY, stage, reason=reason)
                    )
        return steps
