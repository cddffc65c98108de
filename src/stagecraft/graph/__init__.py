"""Resource graph model and topology loading."""

from stagecraft.graph.loader import Topology, build_topology, load_topology
from stagecraft.graph.models import (
    BindingState,
    DeletionPolicy,
    ManifestSource,
    NodeStatus,
    ProviderBinding,
    Reference,
    ResourceKind,
    ResourceNode,
    Stage,
    Template,
    parse_value,
    resolve_value,
)

__all__ = [
    "BindingState",
    "DeletionPolicy",
    "ManifestSource",
    "NodeStatus",
    "ProviderBinding",
    "Reference",
    "ResourceKind",
    "ResourceNode",
    "Stage",
    "Template",
    "Topology",
    "build_topology",
    "load_topology",
    "parse_value",
    "resolve_value",
]
