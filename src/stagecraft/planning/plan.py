"""Plan types produced by the planner and consumed by the coordinator."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from stagecraft.graph.models import ProviderBinding, ResourceNode, Stage

UNKNOWN = "(known after apply)"


class Operation(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    NOOP = "noop"
    DESTROY = "destroy"


@dataclass
class PlanStep:
    """One (node, operation) pair in an ApplyPlan."""

    node: ResourceNode
    operation: Operation
    stage: Stage
    diff: dict[str, Any] = field(default_factory=dict)
    reason: str | None = None

    @property
    def node_id(self) -> str:
        return self.node.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.node.id,
            "kind": str(self.node.kind),
            "stage": str(self.stage),
            "operation": str(self.operation),
            "binding": self.node.binding,
            "diff": self.diff,
            "reason": self.reason,
        }


@dataclass
class ApplyPlan:
    """Ordered steps partitioned by stage.

    For an apply plan the stage order is Infrastructure then Application; a
    destroy plan runs the stages in reverse.
    """

    stages: dict[Stage, list[PlanStep]] = field(default_factory=dict)
    stage_order: list[Stage] = field(default_factory=Stage.ordered)
    bindings: dict[str, ProviderBinding] = field(default_factory=dict)
    orphans: list[PlanStep] = field(default_factory=list)
    promoted: dict[str, Stage] = field(default_factory=dict)
    destroy: bool = False

    def steps_for(self, stage: Stage) -> list[PlanStep]:
        return self.stages.get(stage, [])

    def steps(self) -> list[PlanStep]:
        """All steps in execution order, orphans excluded."""
        return [step for stage in self.stage_order for step in self.steps_for(stage)]

    def node_ids(self) -> list[str]:
        return [step.node_id for step in self.steps()]

    def step(self, node_id: str) -> PlanStep | None:
        for step in self.steps() + self.orphans:
            if step.node_id == node_id:
                return step
        return None

    def count(self, operation: Operation) -> int:
        return sum(1 for s in self.steps() + self.orphans if s.operation == operation)

    @property
    def has_changes(self) -> bool:
        return any(s.operation != Operation.NOOP for s in self.steps()) or bool(self.orphans)

    def to_dict(self) -> dict[str, Any]:
        return {
            "destroy": self.destroy,
            "stages": {
                str(stage): [s.to_dict() for s in self.steps_for(stage)] for stage in self.stage_order
            },
            "orphans": [s.to_dict() for s in self.orphans],
            "promoted": {k: str(v) for k, v in self.promoted.items()},
            "bindings": {
                name: {"type": b.type, "sources": sorted(b.source_node_ids())}
                for name, b in self.bindings.items()
            },
            "summary": {op.value: self.count(op) for op in Operation},
        }
