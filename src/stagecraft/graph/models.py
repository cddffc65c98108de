"""
Resource graph models.

A topology is a set of ResourceNodes joined by explicit `depends_on` edges
and by references embedded in their inputs, plus the ProviderBindings that
scope backend calls for nodes living behind a derived connection (cluster
API access, database access).
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Callable, Iterator, Mapping

REFERENCE_PATTERN = re.compile(r"\$\{([^}.\s]+)\.([^}\s]+)\}")


class ResourceKind(StrEnum):
    """Every resource type the orchestrator knows how to reconcile."""

    NETWORK = "Network"
    SUBNET = "Subnet"
    PEERING_RANGE = "PeeringRange"
    PEERING_CONNECTION = "PeeringConnection"
    DATABASE_INSTANCE = "DatabaseInstance"
    DATABASE = "Database"
    DATABASE_USER = "DatabaseUser"
    DATABASE_GRANT = "DatabaseGrant"
    CLUSTER = "Cluster"
    SERVICE_IDENTITY = "ServiceIdentity"
    IDENTITY_BINDING = "IdentityBinding"
    NAMESPACE = "Namespace"
    WORKLOAD_SERVICE_ACCOUNT = "WorkloadServiceAccount"
    CUSTOM_RESOURCE_DEFINITION = "CustomResourceDefinition"
    OPERATOR_DEPLOYMENT = "OperatorDeployment"
    SECRET = "Secret"
    WORKLOAD_INSTANCE = "WorkloadInstance"
    NETWORK_POLICY_CONFIG = "NetworkPolicyConfig"
    CERTIFICATE = "Certificate"
    INGRESS = "Ingress"


# Kinds reconciled through the cluster workload API
WORKLOAD_KINDS = frozenset(
    {
        ResourceKind.NAMESPACE,
        ResourceKind.WORKLOAD_SERVICE_ACCOUNT,
        ResourceKind.CUSTOM_RESOURCE_DEFINITION,
        ResourceKind.OPERATOR_DEPLOYMENT,
        ResourceKind.SECRET,
        ResourceKind.WORKLOAD_INSTANCE,
        ResourceKind.NETWORK_POLICY_CONFIG,
        ResourceKind.CERTIFICATE,
        ResourceKind.INGRESS,
    }
)

# Kinds reconciled through the relational grant interface
GRANT_KINDS = frozenset({ResourceKind.DATABASE_GRANT})

# Kinds whose create is asynchronous on the backend side
READINESS_KINDS = frozenset(
    {
        ResourceKind.CLUSTER,
        ResourceKind.CUSTOM_RESOURCE_DEFINITION,
        ResourceKind.CERTIFICATE,
    }
)

# Kinds whose deletion is known to hang on dangling finalizers
FINALIZER_RECOVERY_KINDS = frozenset(
    {
        ResourceKind.NAMESPACE,
        ResourceKind.CUSTOM_RESOURCE_DEFINITION,
    }
)

# Kinds whose desired state may be pulled from a versioned remote manifest
MANIFEST_KINDS = frozenset(
    {
        ResourceKind.CUSTOM_RESOURCE_DEFINITION,
        ResourceKind.OPERATOR_DEPLOYMENT,
    }
)


class Stage(StrEnum):
    """Apply phase owning a node."""

    INFRASTRUCTURE = "infrastructure"
    APPLICATION = "application"

    @property
    def order(self) -> int:
        return _STAGE_ORDER.index(self)

    def next(self) -> Stage | None:
        idx = self.order + 1
        return _STAGE_ORDER[idx] if idx < len(_STAGE_ORDER) else None

    @classmethod
    def ordered(cls) -> list[Stage]:
        return list(_STAGE_ORDER)

    @classmethod
    def default_for(cls, kind: ResourceKind) -> Stage:
        if kind in WORKLOAD_KINDS or kind in GRANT_KINDS:
            return cls.APPLICATION
        return cls.INFRASTRUCTURE


_STAGE_ORDER = (Stage.INFRASTRUCTURE, Stage.APPLICATION)


class DeletionPolicy(StrEnum):
    PROTECT = "protect"
    STANDARD = "standard"
    ABANDON = "abandon"


class NodeStatus(StrEnum):
    PLANNED = "planned"
    CREATING = "creating"
    READY = "ready"
    UPDATING = "updating"
    DESTROYING = "destroying"
    DESTROYED = "destroyed"
    FAILED = "failed"


_TRANSITIONS: dict[NodeStatus, frozenset[NodeStatus]] = {
    NodeStatus.PLANNED: frozenset({NodeStatus.CREATING}),
    NodeStatus.CREATING: frozenset({NodeStatus.READY, NodeStatus.FAILED}),
    NodeStatus.READY: frozenset({NodeStatus.UPDATING, NodeStatus.DESTROYING}),
    NodeStatus.UPDATING: frozenset({NodeStatus.READY, NodeStatus.FAILED}),
    NodeStatus.DESTROYING: frozenset({NodeStatus.DESTROYED, NodeStatus.FAILED}),
    NodeStatus.DESTROYED: frozenset(),
    # a failed node restarts from planned on the next pass
    NodeStatus.FAILED: frozenset({NodeStatus.PLANNED, NodeStatus.DESTROYING}),
}


def can_transition(current: NodeStatus, target: NodeStatus) -> bool:
    """Whether the per-node state machine allows current -> target."""
    return target in _TRANSITIONS[current]


@dataclass(frozen=True)
class Reference:
    """Pointer to an output attribute of another node."""

    node_id: str
    attribute: str

    def __str__(self) -> str:
        return f"${{{self.node_id}.{self.attribute}}}"


@dataclass(frozen=True)
class Template:
    """A string with one or more embedded references."""

    text: str
    references: tuple[Reference, ...]

    def render(self, lookup: Callable[[Reference], Any]) -> str:
        def _sub(match: re.Match[str]) -> str:
            return str(lookup(Reference(match.group(1), match.group(2))))

        return REFERENCE_PATTERN.sub(_sub, self.text)


def parse_value(value: Any) -> Any:
    """Turn `${node.attr}` strings (at any depth) into Reference/Template."""
    if isinstance(value, str):
        full = REFERENCE_PATTERN.fullmatch(value)
        if full:
            return Reference(full.group(1), full.group(2))
        refs = tuple(Reference(m.group(1), m.group(2)) for m in REFERENCE_PATTERN.finditer(value))
        if refs:
            return Template(value, refs)
        return value
    if isinstance(value, Mapping):
        return {k: parse_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [parse_value(v) for v in value]
    return value


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every reference embedded in a parsed value."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, Template):
        yield from value.references
    elif isinstance(value, Mapping):
        for v in value.values():
            yield from iter_references(v)
    elif isinstance(value, list):
        for v in value:
            yield from iter_references(v)


def resolve_value(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """Replace every reference in a parsed value using `lookup`."""
    if isinstance(value, Reference):
        return lookup(value)
    if isinstance(value, Template):
        return value.render(lookup)
    if isinstance(value, Mapping):
        return {k: resolve_value(v, lookup) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_value(v, lookup) for v in value]
    return value


def unparse_value(value: Any) -> Any:
    """Inverse of parse_value, for display and serialization."""
    if isinstance(value, Reference):
        return str(value)
    if isinstance(value, Template):
        return value.text
    if isinstance(value, Mapping):
        return {k: unparse_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [unparse_value(v) for v in value]
    return value


@dataclass(frozen=True)
class ManifestSource:
    """Versioned remote manifest backing a CRD or operator node."""

    url: str
    version: str | None = None

    @property
    def resolved_url(self) -> str:
        if self.version is not None and "{version}" in self.url:
            return self.url.replace("{version}", self.version)
        return self.url


@dataclass
class ResourceNode:
    """A unit of desired state."""

    id: str
    kind: ResourceKind
    stage: Stage
    depends_on: frozenset[str] = frozenset()
    inputs: dict[str, Any] = field(default_factory=dict)
    binding: str | None = None
    deletion_policy: DeletionPolicy = DeletionPolicy.STANDARD
    finalizer_recovery: bool | None = None
    readiness_timeout: float | None = None
    manifest: ManifestSource | None = None
    outputs: dict[str, Any] = field(default_factory=dict)
    status: NodeStatus = NodeStatus.PLANNED

    def references(self) -> list[Reference]:
        return list(iter_references(self.inputs))

    def dependency_ids(self) -> set[str]:
        """Explicit and reference-derived upstream node ids."""
        return set(self.depends_on) | {ref.node_id for ref in self.references()}

    def desired_inputs(self, lookup: Callable[[Reference], Any]) -> dict[str, Any]:
        """Inputs with references resolved; a manifest contributes its resolved URL."""
        values = resolve_value(self.inputs, lookup)
        if self.manifest is not None:
            values["manifest_url"] = self.manifest.resolved_url
        return values

    @property
    def needs_readiness_wait(self) -> bool:
        return self.kind in READINESS_KINDS

    @property
    def recovers_stuck_deletion(self) -> bool:
        if self.finalizer_recovery is not None:
            return self.finalizer_recovery
        return self.kind in FINALIZER_RECOVERY_KINDS

    def transition(self, target: NodeStatus) -> None:
        if not can_transition(self.status, target):
            raise ValueError(f"{self.id}: illegal status transition {self.status} -> {target}")
        self.status = target

    def describe(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": str(self.kind),
            "stage": str(self.stage),
            "depends_on": sorted(self.depends_on),
            "binding": self.binding,
            "deletion_policy": str(self.deletion_policy),
            "inputs": unparse_value(self.inputs),
        }


class BindingState(StrEnum):
    UNRESOLVED = "unresolved"
    RESOLVED = "resolved"


@dataclass
class ProviderBinding:
    """Connection configuration derived from node outputs.

    Unresolved until every referenced source output exists. Resolved values
    stay fixed until `reset`, which the coordinator calls at a stage boundary
    when a source node changed.
    """

    name: str
    type: str
    sources: dict[str, Any] = field(default_factory=dict)
    values: dict[str, Any] | None = None

    @property
    def state(self) -> BindingState:
        return BindingState.RESOLVED if self.values is not None else BindingState.UNRESOLVED

    @property
    def resolved(self) -> bool:
        return self.values is not None

    def source_node_ids(self) -> set[str]:
        return {ref.node_id for ref in iter_references(self.sources)}

    def missing(self, outputs: Mapping[str, Mapping[str, Any]]) -> list[Reference]:
        return [
            ref
            for ref in iter_references(self.sources)
            if ref.attribute not in outputs.get(ref.node_id, {})
        ]

    def resolve(self, outputs: Mapping[str, Mapping[str, Any]]) -> bool:
        """Attempt unresolved -> resolved; returns whether the binding is usable."""
        if self.resolved:
            return True
        if self.missing(outputs):
            return False
        self.values = resolve_value(
            self.sources, lambda ref: outputs[ref.node_id][ref.attribute]
        )
        return True

    def reset(self) -> None:
        self.values = None
