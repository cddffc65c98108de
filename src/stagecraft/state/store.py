"""
Tracked state for reconciled nodes.

The StateStore is the only shared mutable resource of an apply run. Writers
(the reconciliation executor) serialize per node through `lock(node_id)`;
readers take an immutable snapshot at pass boundaries.
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
import json
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterator, Mapping

import structlog

from stagecraft.core.errors import ConfigurationError
from stagecraft.graph.models import (
    DeletionPolicy,
    NodeStatus,
    Reference,
    ResourceKind,
    ResourceNode,
    Stage,
)

logger = structlog.get_logger()

STATE_VERSION = 1
DEFAULT_STATE_PATH = Path("stagecraft.state.json")

# Output attributes never written to disk; re-read from the backend instead
SENSITIVE_OUTPUTS = frozenset({"access_token", "password", "client_key", "token"})


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def recorded_inputs(node: ResourceNode, outputs: Mapping[str, Mapping[str, Any]]) -> dict[str, Any]:
    """Inputs as persisted: references to sensitive outputs stay symbolic."""

    def lookup(ref: Reference) -> Any:
        if ref.attribute in SENSITIVE_OUTPUTS:
            return str(ref)
        return outputs[ref.node_id][ref.attribute]

    return node.desired_inputs(lookup)


@dataclass
class NodeRecord:
    """Last known state of one node."""

    id: str
    kind: ResourceKind
    stage: Stage
    status: NodeStatus = NodeStatus.PLANNED
    resource_id: str | None = None
    inputs: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    deletion_policy: DeletionPolicy = DeletionPolicy.STANDARD
    binding: str | None = None
    finalizer_recovery: bool | None = None
    error: str | None = None
    updated_at: str = field(default_factory=_now)

    @classmethod
    def for_node(cls, node: ResourceNode) -> NodeRecord:
        return cls(
            id=node.id,
            kind=node.kind,
            stage=node.stage,
            depends_on=sorted(node.depends_on),
            deletion_policy=node.deletion_policy,
            binding=node.binding,
            finalizer_recovery=node.finalizer_recovery,
        )

    def to_node(self) -> ResourceNode:
        """Rebuild a node for destroy planning of records no longer declared."""
        return ResourceNode(
            id=self.id,
            kind=self.kind,
            stage=self.stage,
            depends_on=frozenset(self.depends_on),
            inputs=copy.deepcopy(self.inputs),
            binding=self.binding,
            deletion_policy=self.deletion_policy,
            finalizer_recovery=self.finalizer_recovery,
            outputs=copy.deepcopy(self.outputs),
            status=self.status,
        )

    @property
    def is_ready(self) -> bool:
        return self.status == NodeStatus.READY

    def touch(self) -> None:
        self.updated_at = _now()

    def to_dict(self, *, redact: bool = True) -> dict[str, Any]:
        outputs = self.outputs
        if redact:
            outputs = {k: v for k, v in outputs.items() if k not in SENSITIVE_OUTPUTS}
        return {
            "id": self.id,
            "kind": str(self.kind),
            "stage": str(self.stage),
            "status": str(self.status),
            "resource_id": self.resource_id,
            "inputs": self.inputs,
            "outputs": outputs,
            "depends_on": list(self.depends_on),
            "deletion_policy": str(self.deletion_policy),
            "binding": self.binding,
            "finalizer_recovery": self.finalizer_recovery,
            "error": self.error,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> NodeRecord:
        return cls(
            id=data["id"],
            kind=ResourceKind(data["kind"]),
            stage=Stage(data["stage"]),
            status=NodeStatus(data.get("status", "planned")),
            resource_id=data.get("resource_id"),
            inputs=dict(data.get("inputs") or {}),
            outputs=dict(data.get("outputs") or {}),
            depends_on=list(data.get("depends_on") or []),
            deletion_policy=DeletionPolicy(data.get("deletion_policy", "standard")),
            binding=data.get("binding"),
            finalizer_recovery=data.get("finalizer_recovery"),
            error=data.get("error"),
            updated_at=data.get("updated_at") or _now(),
        )


class StateSnapshot(Mapping[str, NodeRecord]):
    """Read-only, point-in-time copy of the store."""

    def __init__(self, records: Mapping[str, NodeRecord]) -> None:
        self._records = MappingProxyType(copy.deepcopy(dict(records)))

    def __getitem__(self, key: str) -> NodeRecord:
        return self._records[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def is_ready(self, node_id: str) -> bool:
        record = self._records.get(node_id)
        return record is not None and record.is_ready

    def outputs(self) -> dict[str, dict[str, Any]]:
        """Outputs of every Ready node, keyed by node id."""
        return {k: dict(r.outputs) for k, r in self._records.items() if r.is_ready}


class StateStore:
    """Map from node id to its latest record, with per-node locking."""

    def __init__(self, records: Mapping[str, NodeRecord] | None = None) -> None:
        self._records: dict[str, NodeRecord] = dict(records or {})
        self._locks: dict[str, asyncio.Lock] = {}

    def lock(self, node_id: str) -> asyncio.Lock:
        lock = self._locks.get(node_id)
        if lock is None:
            lock = self._locks[node_id] = asyncio.Lock()
        return lock

    def get(self, node_id: str) -> NodeRecord | None:
        return self._records.get(node_id)

    def put(self, record: NodeRecord) -> None:
        record.touch()
        self._records[record.id] = record

    def remove(self, node_id: str) -> NodeRecord | None:
        return self._records.pop(node_id, None)

    def is_ready(self, node_id: str) -> bool:
        record = self._records.get(node_id)
        return record is not None and record.is_ready

    def ids(self) -> list[str]:
        return sorted(self._records)

    def records(self) -> list[NodeRecord]:
        return [self._records[k] for k in sorted(self._records)]

    def snapshot(self) -> StateSnapshot:
        return StateSnapshot(self._records)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._records

    def __len__(self) -> int:
        return len(self._records)


def load_state(path: Path | None = None) -> StateStore:
    state_path = path or DEFAULT_STATE_PATH
    if not state_path.exists():
        return StateStore()
    try:
        data = json.loads(state_path.read_text())
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"State file {state_path} is not valid JSON: {e}") from e

    version = data.get("version", STATE_VERSION)
    if version != STATE_VERSION:
        raise ConfigurationError(
            f"Unsupported state file version {version} (expected {STATE_VERSION})",
            {"path": str(state_path)},
        )
    records = {r["id"]: NodeRecord.from_dict(r) for r in data.get("nodes", [])}
    logger.debug("loaded_state", path=str(state_path), nodes=len(records))
    return StateStore(records)


def _write_atomic(path: Path, content: str) -> None:
    """Write to a temp file beside `path`, then rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise


def save_state(store: StateStore, path: Path | None = None) -> None:
    state_path = path or DEFAULT_STATE_PATH
    payload = {
        "version": STATE_VERSION,
        "nodes": [
            r.to_dict() for r in store.records() if r.status != NodeStatus.DESTROYED
        ],
    }
    _write_atomic(state_path, json.dumps(payload, indent=2, sort_keys=True) + "\n")
