"""Result types for apply and destroy runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from stagecraft.core.errors import NodeError, PartialFailure
from stagecraft.planning.plan import Operation, PlanStep


@dataclass
class ApplyResult:
    """Outcome of one coordinator pass."""

    destroy: bool = False
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    destroyed: List[str] = field(default_factory=list)
    failures: List[NodeError] = field(default_factory=list)
    # node id -> why it was not attempted
    blocked: Dict[str, str] = field(default_factory=dict)
    cancelled: List[str] = field(default_factory=list)
    # steps of stages excluded from this run
    deferred: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def completed(self) -> List[str]:
        """Nodes that reached their target state, in completion order."""
        return self.created + self.updated + self.unchanged + self.destroyed

    @property
    def failed_node_ids(self) -> List[str]:
        return [f.node_id for f in self.failures]

    @property
    def success(self) -> bool:
        """Whether every attempted node converged."""
        return not self.failures and not self.blocked and not self.cancelled

    def raise_for_failures(self) -> None:
        if self.failures:
            raise PartialFailure(self.completed, self.failures)

    def to_dict(self) -> dict[str, Any]:
        return {
            "destroy": self.destroy,
            "success": self.success,
            "created": list(self.created),
            "updated": list(self.updated),
            "unchanged": list(self.unchanged),
            "destroyed": list(self.destroyed),
            "failed": [
                {"id": f.node_id, "kind": f.kind, "error": f.message, "type": type(f).__name__}
                for f in self.failures
            ],
            "blocked": dict(self.blocked),
            "cancelled": list(self.cancelled),
            "deferred": list(self.deferred),
            "duration_seconds": round(self.duration_seconds, 3),
        }


class ResultCollector:
    """Aggregates per-node outcomes while a pass runs."""

    def __init__(self, *, destroy: bool = False) -> None:
        self._result = ApplyResult(destroy=destroy)

    def record(self, step: PlanStep, performed: Operation) -> None:
        """Record a node that reached its target state."""
        if performed == Operation.CREATE:
            self._result.created.append(step.node_id)
        elif performed == Operation.UPDATE:
            self._result.updated.append(step.node_id)
        elif performed == Operation.DESTROY:
            self._result.destroyed.append(step.node_id)
        else:
            self._result.unchanged.append(step.node_id)

    def record_failure(self, error: NodeError) -> None:
        self._result.failures.append(error)

    def record_blocked(self, node_id: str, reason: str) -> None:
        self._result.blocked[node_id] = reason

    def record_cancelled(self, node_id: str) -> None:
        self._result.cancelled.append(node_id)

    def record_deferred(self, node_id: str) -> None:
        self._result.deferred.append(node_id)

    def finalize(self, duration: float) -> ApplyResult:
        """Return the final result with duration set."""
        self._result.duration_seconds = duration
        return self._result
