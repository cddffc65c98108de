"""Tests for provider bindings, the registry and backend selection."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from stagecraft.core.errors import ConfigurationError
from stagecraft.graph.models import (
    NodeStatus,
    ProviderBinding,
    ResourceKind,
    ResourceNode,
    Stage,
    parse_value,
)
from stagecraft.orchestration import BackendSet, BindingResolver, memory_backends
from stagecraft.providers.memory import InMemoryGrantInterface, InMemoryWorkloadBackend
from stagecraft.providers.registry import ProviderRegistry, live_registry
from stagecraft.reconcile.executor import ReconciliationExecutor
from stagecraft.reconcile.grants import GrantBackend
from stagecraft.state.store import NodeRecord, StateStore


def cluster_binding():
    return ProviderBinding(
        name="cluster",
        type="kubernetes",
        sources=parse_value({"host": "${gke.endpoint}", "token": "${gke.access_token}"}),
    )


def node(kind, binding=None):
    return ResourceNode(id="n", kind=kind, stage=Stage.APPLICATION, binding=binding)


class TestProviderRegistry:
    """Tests for ProviderRegistry."""

    def test_unknown_type(self):
        with pytest.raises(ConfigurationError, match="'helm' is not registered"):
            ProviderRegistry().create("helm", {})

    def test_register_requires_name(self):
        with pytest.raises(ValueError):
            ProviderRegistry().register("", dict)

    def test_live_registry_types(self):
        registry = live_registry()
        assert "kubernetes" in registry
        assert "postgres" in registry
        assert {spec.name for spec in registry.list()} == {"kubernetes", "postgres"}


class TestBackendSet:
    """Tests for BackendSet.for_node."""

    def test_unbound_nodes_use_cloud(self):
        backends = memory_backends()
        assert backends.for_node(node(ResourceKind.NETWORK)) is backends.cloud

    def test_bound_node_waits_for_binding(self):
        backends = memory_backends()
        assert backends.for_node(node(ResourceKind.NAMESPACE, "cluster")) is None

    @pytest.mark.asyncio
    async def test_bind_scopes_workload_backend(self):
        workload = InMemoryWorkloadBackend()
        backends = memory_backends(workload=workload)
        binding = cluster_binding()
        binding.resolve({"gke": {"endpoint": "e", "access_token": "t"}})

        await backends.bind(binding)

        assert backends.for_node(node(ResourceKind.NAMESPACE, "cluster")) is workload
        assert workload.bound_values == {"host": "e", "token": "t"}

    @pytest.mark.asyncio
    async def test_bind_unresolved_rejected(self):
        with pytest.raises(ValueError, match="not resolved"):
            await memory_backends().bind(cluster_binding())

    @pytest.mark.asyncio
    async def test_grant_nodes_share_one_grant_backend(self):
        backends = memory_backends(grants=InMemoryGrantInterface())
        binding = ProviderBinding(name="db", type="postgres", sources={"host": "h"})
        binding.resolve({})
        await backends.bind(binding)

        first = backends.for_node(node(ResourceKind.DATABASE_GRANT, "db"))
        second = backends.for_node(node(ResourceKind.DATABASE_GRANT, "db"))
        assert isinstance(first, GrantBackend)
        assert first is second

    @pytest.mark.asyncio
    async def test_aclose_forgets_clients(self):
        backends = memory_backends()
        binding = ProviderBinding(name="db", type="postgres", sources={})
        binding.resolve({})
        await backends.bind(binding)
        await backends.aclose()
        assert not backends.is_bound("db")


class TestBindingResolver:
    """Tests for BindingResolver.resolve."""

    @pytest.mark.asyncio
    async def test_reports_missing_references(self, policies):
        backends = memory_backends()
        store = StateStore()
        resolver = BindingResolver(backends, ReconciliationExecutor(store, policies), store)

        unresolved = await resolver.resolve({"cluster": cluster_binding()}, store.snapshot())

        assert unresolved == {"cluster": ["${gke.endpoint}", "${gke.access_token}"]}
        assert not backends.is_bound("cluster")

    @pytest.mark.asyncio
    async def test_unchanged_binding_keeps_its_client(self, policies):
        backends = memory_backends()
        store = gke_store("gke.cluster.local")
        resolver = BindingResolver(backends, ReconciliationExecutor(store, policies), store)
        binding = cluster_binding()

        await resolver.resolve({"cluster": binding}, store.snapshot())
        store.get("gke").outputs["endpoint"] = "moved.cluster.local"
        await resolver.resolve({"cluster": binding}, store.snapshot(), changed={"vpc"})

        assert binding.values["host"] == "gke.cluster.local"

    @pytest.mark.asyncio
    async def test_changed_source_rebinds(self, policies):
        workload = InMemoryWorkloadBackend()
        backends = memory_backends(workload=workload)
        store = gke_store("gke.cluster.local")
        resolver = BindingResolver(backends, ReconciliationExecutor(store, policies), store)
        binding = cluster_binding()

        await resolver.resolve({"cluster": binding}, store.snapshot())
        store.get("gke").outputs["endpoint"] = "moved.cluster.local"
        await resolver.resolve({"cluster": binding}, store.snapshot(), changed={"gke"})

        assert binding.values["host"] == "moved.cluster.local"
        assert workload.bound_values["host"] == "moved.cluster.local"

    @pytest.mark.asyncio
    async def test_changed_source_without_outputs_unbinds(self, policies):
        backends = memory_backends()
        store = gke_store("gke.cluster.local")
        resolver = BindingResolver(backends, ReconciliationExecutor(store, policies), store)
        binding = cluster_binding()

        await resolver.resolve({"cluster": binding}, store.snapshot())
        del store.get("gke").outputs["access_token"]
        unresolved = await resolver.resolve({"cluster": binding}, store.snapshot(), changed={"gke"})

        assert unresolved == {"cluster": ["${gke.access_token}"]}
        assert not backends.is_bound("cluster")


def gke_store(endpoint):
    store = StateStore()
    store.put(
        NodeRecord(
            id="gke",
            kind=ResourceKind.CLUSTER,
            stage=Stage.INFRASTRUCTURE,
            status=NodeStatus.READY,
            resource_id="gke",
            outputs={"endpoint": endpoint, "access_token": "token-1"},
        )
    )
    return store


class TestRebind:
    """Tests for replacing a bound client."""

    @pytest.mark.asyncio
    async def test_replaced_client_is_closed(self):
        first, second = MagicMock(close=AsyncMock()), MagicMock(close=AsyncMock())
        registry = ProviderRegistry()
        registry.register("kubernetes", MagicMock(side_effect=[first, second]))
        backends = BackendSet(memory_backends().cloud, registry)
        binding = ProviderBinding(name="cluster", type="kubernetes", sources={"host": "h"})
        binding.resolve({})

        await backends.bind(binding)
        await backends.bind(binding)

        first.close.assert_awaited_once()
        second.close.assert_not_awaited()
        assert backends.for_node(node(ResourceKind.NAMESPACE, "cluster")) is second

    @pytest.mark.asyncio
    async def test_unbind_closes_client(self):
        client = MagicMock(close=MagicMock())
        registry = ProviderRegistry()
        registry.register("postgres", lambda values: client)
        backends = BackendSet(memory_backends().cloud, registry)
        binding = ProviderBinding(name="db", type="postgres", sources={})
        binding.resolve({})
        await backends.bind(binding)

        await backends.unbind("db")

        client.close.assert_called_once()
        assert not backends.is_bound("db")
