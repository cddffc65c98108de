"""
Provider bindings and the backends they scope.

A BackendSet holds the cloud backend, which is always available, plus one
backend per resolved ProviderBinding. The BindingResolver moves bindings
from unresolved to resolved against a read-only state snapshot taken at a
stage boundary, and builds the scoped backends from the resolved values.
A binding whose source outputs changed during the finished stage is
resolved again and its client replaced.
"""

from __future__ import annotations

import inspect
from typing import Any, Iterable, Mapping

import structlog

from stagecraft.config.settings import Settings, get_settings
from stagecraft.core.errors import NodeError
from stagecraft.graph.models import GRANT_KINDS, ProviderBinding, ResourceKind
from stagecraft.providers.base import ManifestFetcher, ResourceBackend
from stagecraft.providers.registry import ProviderRegistry, live_registry, memory_registry
from stagecraft.reconcile.executor import ReconciliationExecutor
from stagecraft.reconcile.grants import GrantBackend
from stagecraft.state.store import StateSnapshot, StateStore

logger = structlog.get_logger()


async def _close_client(name: str, client: Any) -> None:
    close = getattr(client, "close", None)
    if close is None:
        return
    result = close()
    if inspect.isawaitable(result):
        await result
    logger.debug("binding_closed", binding=name)


class BackendSet:
    """Backends available to one run."""

    def __init__(
        self,
        cloud: ResourceBackend,
        registry: ProviderRegistry,
        manifest_fetcher: ManifestFetcher | None = None,
    ) -> None:
        self.cloud = cloud
        self.registry = registry
        self.manifest_fetcher = manifest_fetcher
        self._clients: dict[str, Any] = {}
        self._grant_backends: dict[str, GrantBackend] = {}

    async def bind(self, binding: ProviderBinding) -> Any:
        """Build the scoped client for a resolved binding, closing any it replaces."""
        if binding.values is None:
            raise ValueError(f"binding '{binding.name}' is not resolved")
        client = self.registry.create(binding.type, binding.values)
        previous = self._clients.get(binding.name)
        self._clients[binding.name] = client
        self._grant_backends.pop(binding.name, None)
        if previous is not None and previous is not client:
            await _close_client(binding.name, previous)
        return client

    async def unbind(self, name: str) -> None:
        client = self._clients.pop(name, None)
        self._grant_backends.pop(name, None)
        if client is not None:
            await _close_client(name, client)

    def is_bound(self, name: str) -> bool:
        return name in self._clients

    def for_node(self, node: Any) -> ResourceBackend | None:
        """Backend for anything with `kind` and `binding`; None while unbound."""
        if node.binding is None:
            return self.cloud
        client = self._clients.get(node.binding)
        if client is None:
            return None
        if ResourceKind(node.kind) in GRANT_KINDS:
            backend = self._grant_backends.get(node.binding)
            if backend is None:
                backend = self._grant_backends[node.binding] = GrantBackend(client)
            return backend
        return client

    async def aclose(self) -> None:
        for name, client in list(self._clients.items()):
            await _close_client(name, client)
        self._clients.clear()
        self._grant_backends.clear()


class BindingResolver:
    """Resolves ProviderBindings at stage boundaries."""

    def __init__(self, backends: BackendSet, executor: ReconciliationExecutor, store: StateStore):
        self._backends = backends
        self._executor = executor
        self._store = store

    async def refresh(self, node_ids: Iterable[str]) -> list[str]:
        """Re-read outputs of Ready nodes carried over from prior state.

        Short-lived credentials (cluster tokens) are never persisted, so a
        second invocation must read them again before a binding can resolve.
        A node whose backend is not bound yet is skipped.
        """
        refreshed = []
        for node_id in sorted(set(node_ids)):
            record = self._store.get(node_id)
            if record is None or not record.is_ready:
                continue
            backend = self._backends.for_node(record)
            if backend is None:
                continue
            try:
                if await self._executor.refresh_outputs(node_id, backend):
                    refreshed.append(node_id)
            except NodeError as e:
                # the binding stays unresolved and its dependents report it
                logger.warning("outputs_refresh_failed", node_id=node_id, error=e.message)
        return refreshed

    async def resolve(
        self,
        bindings: Mapping[str, ProviderBinding],
        snapshot: StateSnapshot,
        changed: Iterable[str] = (),
    ) -> dict[str, list[str]]:
        """Resolve unresolved bindings and rebind those whose sources changed.

        `changed` names nodes whose outputs moved since the bindings were last
        resolved (created, updated or re-read). Returns name -> missing
        references for every binding left unresolved.
        """
        outputs = snapshot.outputs()
        changed = set(changed)
        unresolved: dict[str, list[str]] = {}
        for name in sorted(bindings):
            binding = bindings[name]
            if binding.resolved and self._backends.is_bound(name):
                moved = binding.source_node_ids() & changed
                if not moved:
                    continue
                binding.reset()
                logger.info("binding_sources_changed", binding=name, nodes=sorted(moved))
            if not binding.resolve(outputs):
                unresolved[name] = [str(ref) for ref in binding.missing(outputs)]
                logger.debug("binding_unresolved", binding=name, missing=unresolved[name])
                await self._backends.unbind(name)
                continue
            await self._backends.bind(binding)
            logger.info(
                "binding_resolved",
                binding=name,
                type=binding.type,
                sources=sorted(binding.source_node_ids()),
            )
        return unresolved


def live_backends(settings: Settings | None = None) -> BackendSet:
    """Backends talking to the real provider bridge, clusters and databases."""
    from stagecraft.providers.cloud import HttpCloudBackend
    from stagecraft.providers.manifests import HttpManifestFetcher

    settings = settings or get_settings()
    fetcher = HttpManifestFetcher(
        timeout=settings.http_timeout,
        max_retries=settings.http_max_retries,
        backoff_factor=settings.http_retry_backoff_factor,
    )
    return BackendSet(HttpCloudBackend.from_settings(settings), live_registry(settings), fetcher)


def memory_backends(
    cloud: Any = None,
    workload: Any = None,
    grants: Any = None,
    manifests: Any = None,
) -> BackendSet:
    """Backends wired to in-memory fakes (tests and simulation runs)."""
    from stagecraft.providers.memory import (
        InMemoryCloudBackend,
        InMemoryGrantInterface,
        InMemoryManifestFetcher,
        InMemoryWorkloadBackend,
    )

    cloud = cloud if cloud is not None else InMemoryCloudBackend()
    workload = workload if workload is not None else InMemoryWorkloadBackend()
    grants = grants if grants is not None else InMemoryGrantInterface()
    manifests = manifests if manifests is not None else InMemoryManifestFetcher(synthesize=True)
    return BackendSet(cloud, memory_registry(workload, grants), manifests)
