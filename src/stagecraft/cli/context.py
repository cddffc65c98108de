"""Shared loading for CLI commands: topology, state, policies and backends."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

import yaml

from stagecraft.config import PolicyConfig, get_settings, load_config
from stagecraft.core.errors import ConfigurationError
from stagecraft.graph.loader import Topology, load_topology
from stagecraft.graph.models import GRANT_KINDS, ResourceKind
from stagecraft.orchestration.bindings import BackendSet, live_backends, memory_backends
from stagecraft.state.store import StateStore, load_state


@dataclass
class RunContext:
    topology: Topology
    store: StateStore
    policies: PolicyConfig
    state_path: Path


def parse_flags(pairs: Sequence[str] | None) -> dict[str, Any]:
    """`NAME=VALUE` pairs; values are parsed as YAML scalars (true/false/numbers)."""
    flags: dict[str, Any] = {}
    for pair in pairs or []:
        name, sep, raw = pair.partition("=")
        if not sep or not name:
            raise ConfigurationError(f"Invalid flag '{pair}', expected NAME=VALUE")
        flags[name.strip()] = yaml.safe_load(raw)
    return flags


def state_path_for(explicit: str | None) -> Path:
    return Path(explicit) if explicit else Path(get_settings().state_path)


def load_context(
    topology_path: str,
    *,
    state_path: str | None = None,
    config_path: str | None = None,
    flags: Sequence[str] | None = None,
) -> RunContext:
    path = state_path_for(state_path)
    return RunContext(
        topology=load_topology(topology_path, flag_overrides=parse_flags(flags)),
        store=load_state(path),
        policies=load_config(config_path),
        state_path=path,
    )


def build_backends(kind: str, store: StateStore) -> BackendSet:
    """Live backends, or in-memory fakes seeded with what the state file records."""
    if kind == "live":
        return live_backends()
    if kind != "memory":
        raise ConfigurationError(f"Unknown backend '{kind}'", {"choices": ["live", "memory"]})

    from stagecraft.providers.memory import InMemoryCloudBackend, InMemoryWorkloadBackend

    cloud = InMemoryCloudBackend()
    workload = InMemoryWorkloadBackend()
    for record in store.records():
        if not record.is_ready or record.resource_id is None or record.kind in GRANT_KINDS:
            continue
        target = cloud if record.binding is None else workload
        target.seed(ResourceKind(record.kind), record.resource_id, record.outputs)
    return memory_backends(cloud=cloud, workload=workload)
