"""
Topology document loading.

Turns a YAML topology (flags, bindings, resources) into ResourceNodes and
ProviderBindings. Conditional resources switched off by a flag are left out
of the graph entirely; `for_each` declarations expand into one node per
member.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import structlog
import yaml

from stagecraft.core.errors import ConfigurationError
from stagecraft.graph.models import (
    GRANT_KINDS,
    MANIFEST_KINDS,
    WORKLOAD_KINDS,
    DeletionPolicy,
    ManifestSource,
    ProviderBinding,
    ResourceKind,
    ResourceNode,
    Stage,
    parse_value,
)

logger = structlog.get_logger()

EACH_TOKEN = "${each}"


@dataclass
class Topology:
    """Desired state loaded from a topology document."""

    name: str
    nodes: dict[str, ResourceNode] = field(default_factory=dict)
    bindings: dict[str, ProviderBinding] = field(default_factory=dict)
    flags: dict[str, Any] = field(default_factory=dict)
    excluded: set[str] = field(default_factory=set)
    source: Path | None = None

    def node_list(self) -> list[ResourceNode]:
        return [self.nodes[k] for k in sorted(self.nodes)]


def substitute_each(value: Any, member: str) -> Any:
    """Replace `${each}` with a set member at any depth of a raw value."""
    if isinstance(value, str):
        return value.replace(EACH_TOKEN, member)
    if isinstance(value, Mapping):
        return {k: substitute_each(v, member) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [substitute_each(v, member) for v in value]
    return value


def member_id(base_id: str, member: str) -> str:
    return f"{base_id}[{member}]"


def evaluate_condition(condition: Any, flags: Mapping[str, Any], node_id: str) -> bool:
    """Evaluate a `when:` clause: bool, "flag", "!flag", or a list (all must hold)."""
    if condition is None:
        return True
    if isinstance(condition, bool):
        return condition
    if isinstance(condition, list):
        return all(evaluate_condition(c, flags, node_id) for c in condition)
    if isinstance(condition, str):
        negate = condition.startswith("!")
        flag = condition[1:] if negate else condition
        if flag not in flags:
            raise ConfigurationError(
                f"Resource '{node_id}' is conditional on unknown flag '{flag}'",
                {"node_id": node_id, "flag": flag},
            )
        value = bool(flags[flag])
        return not value if negate else value
    raise ConfigurationError(f"Resource '{node_id}' has an invalid 'when' clause: {condition!r}")


def _validate_id(node_id: Any) -> str:
    if not isinstance(node_id, str) or not node_id:
        raise ConfigurationError(f"Resource id must be a non-empty string, got {node_id!r}")
    if "." in node_id or any(ch.isspace() for ch in node_id):
        raise ConfigurationError(
            f"Resource id '{node_id}' may not contain dots or whitespace", {"node_id": node_id}
        )
    return node_id


def _parse_kind(raw: Any, node_id: str) -> ResourceKind:
    try:
        return ResourceKind(raw)
    except ValueError as e:
        raise ConfigurationError(
            f"Resource '{node_id}' has unknown kind '{raw}'", {"node_id": node_id}
        ) from e


def _parse_enum(enum_cls: Any, raw: Any, node_id: str, field_name: str) -> Any:
    try:
        return enum_cls(str(raw).lower())
    except ValueError as e:
        choices = ", ".join(m.value for m in enum_cls)
        raise ConfigurationError(
            f"Resource '{node_id}' has invalid {field_name} '{raw}' (expected one of: {choices})",
            {"node_id": node_id},
        ) from e


def _parse_manifest(raw: Any, node_id: str, kind: ResourceKind) -> ManifestSource | None:
    if raw is None:
        return None
    if kind not in MANIFEST_KINDS:
        raise ConfigurationError(
            f"Resource '{node_id}' of kind {kind} cannot declare a manifest",
            {"node_id": node_id},
        )
    if isinstance(raw, str):
        return ManifestSource(url=raw)
    if isinstance(raw, Mapping) and raw.get("url"):
        version = raw.get("version")
        return ManifestSource(url=str(raw["url"]), version=str(version) if version else None)
    raise ConfigurationError(f"Resource '{node_id}' has an invalid manifest block")


def _build_node(raw: Mapping[str, Any], node_id: str) -> ResourceNode:
    kind = _parse_kind(raw.get("kind"), node_id)

    stage = (
        _parse_enum(Stage, raw["stage"], node_id, "stage")
        if raw.get("stage") is not None
        else Stage.default_for(kind)
    )
    deletion_policy = _parse_enum(
        DeletionPolicy, raw.get("deletion_policy", "standard"), node_id, "deletion_policy"
    )

    binding = raw.get("provider")
    if (kind in WORKLOAD_KINDS or kind in GRANT_KINDS) and not binding:
        raise ConfigurationError(
            f"Resource '{node_id}' of kind {kind} must name a provider binding",
            {"node_id": node_id, "kind": str(kind)},
        )

    spec = raw.get("spec") or {}
    if not isinstance(spec, Mapping):
        raise ConfigurationError(f"Resource '{node_id}' spec must be a mapping")

    depends_on = raw.get("depends_on") or []
    if isinstance(depends_on, str):
        depends_on = [depends_on]

    timeout = raw.get("readiness_timeout")

    return ResourceNode(
        id=node_id,
        kind=kind,
        stage=stage,
        depends_on=frozenset(str(d) for d in depends_on),
        inputs=parse_value(dict(spec)),
        binding=str(binding) if binding else None,
        deletion_policy=deletion_policy,
        finalizer_recovery=raw.get("finalizer_recovery"),
        readiness_timeout=float(timeout) if timeout is not None else None,
        manifest=_parse_manifest(raw.get("manifest"), node_id, kind),
    )


def _parse_binding(raw: Mapping[str, Any]) -> ProviderBinding:
    name = raw.get("name")
    if not name:
        raise ConfigurationError("Every binding needs a name")
    btype = raw.get("type")
    if not btype:
        raise ConfigurationError(f"Binding '{name}' needs a type", {"binding": name})
    sources = raw.get("sources") or {}
    if not isinstance(sources, Mapping):
        raise ConfigurationError(f"Binding '{name}' sources must be a mapping")
    return ProviderBinding(name=str(name), type=str(btype), sources=parse_value(dict(sources)))


def build_topology(
    document: Mapping[str, Any],
    *,
    flag_overrides: Mapping[str, Any] | None = None,
    default_name: str = "topology",
) -> Topology:
    """Build a Topology from an already-parsed document."""
    if not isinstance(document, Mapping):
        raise ConfigurationError("Topology document must be a mapping")

    meta = document.get("topology") or {}
    flags = dict(document.get("flags") or {})
    flags.update(flag_overrides or {})

    topology = Topology(name=str(meta.get("name") or default_name), flags=flags)

    for raw_binding in document.get("bindings") or []:
        binding = _parse_binding(raw_binding)
        if binding.name in topology.bindings:
            raise ConfigurationError(f"Duplicate binding '{binding.name}'")
        topology.bindings[binding.name] = binding

    set_members: dict[str, list[str]] = {}
    pending: list[tuple[str, dict[str, Any]]] = []

    for raw in document.get("resources") or []:
        if not isinstance(raw, Mapping):
            raise ConfigurationError(f"Resource entries must be mappings, got {raw!r}")
        base_id = _validate_id(raw.get("id") or raw.get("name"))

        members = raw.get("for_each")
        if members is not None and not isinstance(members, list):
            raise ConfigurationError(f"Resource '{base_id}' for_each must be a list")

        expanded: list[tuple[str, dict[str, Any]]]
        if members is None:
            expanded = [(base_id, dict(raw))]
        else:
            expanded = [
                (member_id(base_id, str(m)), substitute_each(dict(raw), str(m))) for m in members
            ]
            set_members[base_id] = [node_id for node_id, _ in expanded]

        for node_id, node_raw in expanded:
            if not evaluate_condition(node_raw.get("when"), flags, node_id):
                topology.excluded.add(node_id)
                logger.debug("resource_excluded", node_id=node_id, when=node_raw.get("when"))
                continue
            if node_id in topology.nodes or any(node_id == p for p, _ in pending):
                raise ConfigurationError(f"Duplicate resource id '{node_id}'", {"node_id": node_id})
            pending.append((node_id, node_raw))

    for node_id, node_raw in pending:
        topology.nodes[node_id] = _build_node(node_raw, node_id)

    _expand_set_dependencies(topology, set_members)
    return topology


def _expand_set_dependencies(topology: Topology, set_members: Mapping[str, list[str]]) -> None:
    """Point `depends_on: [set]` at every member; drop edges to excluded nodes."""
    for node in topology.nodes.values():
        deps: set[str] = set()
        for dep in node.depends_on:
            if dep in set_members:
                deps.update(m for m in set_members[dep] if m in topology.nodes)
            elif dep in topology.excluded:
                logger.debug("dependency_dropped", node_id=node.id, excluded=dep)
            else:
                deps.add(dep)
        node.depends_on = frozenset(deps)


def load_topology(
    path: str | Path,
    *,
    flag_overrides: Mapping[str, Any] | None = None,
) -> Topology:
    """Load a topology YAML file."""
    topology_path = Path(path)
    if not topology_path.exists():
        raise ConfigurationError(f"Topology file not found: {topology_path}")

    try:
        with open(topology_path) as f:
            document = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {topology_path}: {e}") from e

    topology = build_topology(
        document, flag_overrides=flag_overrides, default_name=topology_path.stem
    )
    topology.source = topology_path
    logger.debug(
        "loaded_topology",
        path=str(topology_path),
        nodes=len(topology.nodes),
        bindings=len(topology.bindings),
        excluded=len(topology.excluded),
    )
    return topology
