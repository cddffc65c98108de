"""Tests for the two-phase apply coordinator.

These drive full apply and destroy passes against the in-memory
collaborators, covering stage sequencing, binding resolution, failure
isolation, cancellation and bounded parallelism.
"""

import dataclasses

import pytest
from stagecraft.core.errors import (
    BindingUnresolved,
    ExitCode,
    PartialFailure,
    ProtectedResource,
)
from stagecraft.graph.loader import build_topology
from stagecraft.graph.models import BindingState, ResourceKind, Stage
from stagecraft.orchestration import Coordinator, memory_backends
from stagecraft.planning import Planner
from stagecraft.providers.memory import (
    InMemoryCloudBackend,
    InMemoryGrantInterface,
    InMemoryWorkloadBackend,
)
from stagecraft.state.store import StateStore, load_state, save_state


class MovingCloud(InMemoryCloudBackend):
    """Cloud fake whose cluster endpoint moves on every update."""

    async def update(self, kind, resource_id, inputs, diff):
        resource = self.resources.get(resource_id)
        if resource is not None and kind == ResourceKind.CLUSTER:
            moves = self.count("update", resource_id) + 1
            resource.outputs["endpoint"] = f"moved-{moves}.cluster.local"
        return await super().update(kind, resource_id, inputs, diff)


class Fakes:
    """One set of in-memory collaborators shared across passes."""

    def __init__(self, cloud=None):
        self.cloud = cloud or InMemoryCloudBackend()
        self.workload = InMemoryWorkloadBackend()
        self.grants = InMemoryGrantInterface()

    def backends(self):
        return memory_backends(cloud=self.cloud, workload=self.workload, grants=self.grants)


@pytest.fixture
def fakes():
    return Fakes()


async def apply(topology, store, fakes, policies, clock, **kwargs):
    plan = Planner().plan_topology(topology, store)
    coordinator = Coordinator(fakes.backends(), store, policies, clock=clock, sleep=clock.sleep)
    return await coordinator.apply(plan, **kwargs)


async def destroy(topology, store, fakes, policies, clock):
    plan = Planner().plan_destroy(topology.node_list(), store, topology.bindings)
    coordinator = Coordinator(fakes.backends(), store, policies, clock=clock, sleep=clock.sleep)
    return await coordinator.destroy(plan)


class TestApply:
    """Tests for a full two-stage apply."""

    @pytest.mark.asyncio
    async def test_full_apply_converges(self, keycloak_topology, fakes, policies, clock):
        store = StateStore()
        result = await apply(keycloak_topology, store, fakes, policies, clock)

        assert result.success
        assert sorted(result.created) == sorted(keycloak_topology.nodes)
        assert all(store.is_ready(node_id) for node_id in keycloak_topology.nodes)
        assert fakes.workload.bound_values["host"] == "gke.cluster.local"
        assert fakes.grants.bound_values["password"] == "admin-password"
        assert ("keycloak", "database:keycloak", "CONNECT") in fakes.grants.grants
        assert ("audit", "database:keycloak", "CONNECT") in fakes.grants.grants
        assert keycloak_topology.bindings["cluster"].state == BindingState.RESOLVED

    @pytest.mark.asyncio
    async def test_infrastructure_completes_before_application(
        self, keycloak_topology, fakes, policies, clock
    ):
        result = await apply(keycloak_topology, StateStore(), fakes, policies, clock)
        infra = {n for n, node in keycloak_topology.nodes.items() if node.stage == Stage.INFRASTRUCTURE}
        last_infra = max(result.created.index(n) for n in infra)
        first_app = min(result.created.index(n) for n in keycloak_topology.nodes if n not in infra)
        assert last_infra < first_app

    @pytest.mark.asyncio
    async def test_reapply_creates_nothing(self, keycloak_topology, fakes, policies, clock):
        """Ready Infrastructure in prior state is never re-created."""
        store = StateStore()
        await apply(keycloak_topology, store, fakes, policies, clock)
        creates = fakes.cloud.count("create")
        first_token = fakes.workload.bound_values["token"]

        result = await apply(keycloak_topology, store, fakes, policies, clock)

        assert result.success
        assert result.created == []
        assert sorted(result.unchanged) == sorted(keycloak_topology.nodes)
        assert fakes.cloud.count("create") == creates
        assert fakes.cloud.count("update") == 0
        # the short-lived cluster token is re-read for the new pass
        assert fakes.workload.bound_values["token"] != first_token

    @pytest.mark.asyncio
    async def test_second_invocation_from_disk(
        self, keycloak_document, fakes, policies, clock, tmp_path
    ):
        """Redacted credentials are re-read so bindings resolve on a later run."""
        path = tmp_path / "state.json"
        store = StateStore()
        await apply(build_topology(keycloak_document), store, fakes, policies, clock)
        save_state(store, path)

        reloaded = load_state(path)
        assert "access_token" not in reloaded.get("gke").outputs
        assert "password" not in reloaded.get("admin").outputs

        result = await apply(build_topology(keycloak_document), reloaded, fakes, policies, clock)

        assert result.success
        assert result.created == []
        assert reloaded.get("gke").outputs["access_token"].startswith("token-")

    @pytest.mark.asyncio
    async def test_input_change_updates_only_that_node(
        self, keycloak_document, fakes, policies, clock
    ):
        store = StateStore()
        await apply(build_topology(keycloak_document), store, fakes, policies, clock)
        keycloak_document["resources"][1]["spec"]["ip_cidr_range"] = "10.1.0.0/20"

        result = await apply(build_topology(keycloak_document), store, fakes, policies, clock)

        assert result.updated == ["subnet"]
        assert fakes.cloud.count("update") == 1

    @pytest.mark.asyncio
    async def test_cluster_update_rebinds_application_stage(
        self, keycloak_document, policies, clock
    ):
        """Application nodes reach the cluster through its post-update endpoint."""
        fakes = Fakes(MovingCloud())
        store = StateStore()
        await apply(build_topology(keycloak_document), store, fakes, policies, clock)
        assert fakes.workload.bound_values["host"] == "gke.cluster.local"

        keycloak_document["resources"][2]["spec"]["version"] = "1.30"
        keycloak_document["resources"][7]["spec"]["data"]["note"] = "rotated"
        result = await apply(build_topology(keycloak_document), store, fakes, policies, clock)

        assert result.success
        assert sorted(result.updated) == ["db-credentials", "gke"]
        assert store.get("gke").outputs["endpoint"] == "moved-1.cluster.local"
        assert fakes.workload.bound_values["host"] == "moved-1.cluster.local"


class TestFailureIsolation:
    """A failure blocks only its transitive dependents."""

    @pytest.mark.asyncio
    async def test_partial_failure(self, keycloak_topology, policies, clock):
        fakes = Fakes(InMemoryCloudBackend(fail_create={"subnet"}))
        store = StateStore()

        result = await apply(keycloak_topology, store, fakes, policies, clock)

        assert result.failed_node_ids == ["subnet"]
        assert set(result.blocked) == {"gke", "keycloak-ns", "db-credentials"}
        # independent branches still converge
        assert {"vpc", "sql", "admin", "keycloak-db"} <= set(result.created)
        assert {"realm-grants[keycloak]", "realm-grants[audit]"} <= set(result.created)
        assert fakes.cloud.count("create", "gke") == 0
        assert fakes.workload.calls == []

        with pytest.raises(PartialFailure) as exc_info:
            result.raise_for_failures()
        assert exc_info.value.failed_node_id == "subnet"
        assert exc_info.value.exit_code == ExitCode.NODE_FAILED
        assert "vpc" in exc_info.value.completed_node_ids

    @pytest.mark.asyncio
    async def test_rerun_resumes_from_state(self, keycloak_topology, policies, clock):
        fakes = Fakes(InMemoryCloudBackend(fail_create={"subnet"}))
        store = StateStore()
        await apply(keycloak_topology, store, fakes, policies, clock)

        fakes.cloud.fail_create.clear()
        result = await apply(keycloak_topology, store, fakes, policies, clock)

        assert result.success
        assert "vpc" not in result.created
        assert {"subnet", "gke", "keycloak-ns", "db-credentials"} <= set(result.created)
        assert fakes.cloud.count("create", "vpc") == 1

    @pytest.mark.asyncio
    async def test_rerun_adopts_create_that_landed(self, keycloak_topology, fakes, policies, clock):
        """A create that reached the cluster but failed is adopted, not duplicated."""
        fakes.workload.lost_creates.add("keycloak-ns")
        store = StateStore()

        first = await apply(keycloak_topology, store, fakes, policies, clock)
        assert first.failed_node_ids == ["keycloak-ns"]
        assert store.get("keycloak-ns").resource_id is None
        assert "keycloak-ns" in fakes.workload.resources

        result = await apply(keycloak_topology, store, fakes, policies, clock)

        assert result.success
        assert {"keycloak-ns", "db-credentials"} <= set(result.created)
        assert fakes.workload.count("create", "keycloak-ns") == 2
        assert store.is_ready("keycloak-ns")

    @pytest.mark.asyncio
    async def test_unresolved_binding_blocks_consumers(self, keycloak_document, fakes, policies, clock):
        keycloak_document["bindings"][0]["sources"]["token"] = "${gke.kubeconfig}"
        result = await apply(build_topology(keycloak_document), StateStore(), fakes, policies, clock)

        failure = next(f for f in result.failures if f.node_id == "keycloak-ns")
        assert isinstance(failure, BindingUnresolved)
        assert failure.missing == ["${gke.kubeconfig}"]
        assert "db-credentials" in result.blocked
        assert fakes.workload.calls == []
        # grants use the other binding and are unaffected
        assert "realm-grants[keycloak]" in result.created


class TestStagesAndCancel:
    """Tests for stage selection and cancellation."""

    @pytest.mark.asyncio
    async def test_infrastructure_only(self, keycloak_topology, fakes, policies, clock):
        store = StateStore()
        result = await apply(
            keycloak_topology, store, fakes, policies, clock, stages=[Stage.INFRASTRUCTURE]
        )

        assert result.failures == []
        assert set(result.deferred) == {
            "keycloak-ns",
            "db-credentials",
            "realm-grants[keycloak]",
            "realm-grants[audit]",
        }
        assert fakes.workload.calls == []
        assert store.is_ready("gke")

        # a second run picks up the application stage
        result = await apply(keycloak_topology, store, fakes, policies, clock)
        assert set(result.created) == set(
            ["keycloak-ns", "db-credentials", "realm-grants[keycloak]", "realm-grants[audit]"]
        )

    @pytest.mark.asyncio
    async def test_cancel_stops_new_operations(self, keycloak_topology, policies, clock):
        """In-flight steps finish; unstarted steps are reported cancelled."""

        class CancellingCloud(InMemoryCloudBackend):
            coordinator = None

            async def create(self, kind, name, inputs):
                result = await super().create(kind, name, inputs)
                if name == "vpc":
                    self.coordinator.cancel()
                return result

        fakes = Fakes(CancellingCloud())
        store = StateStore()
        plan = Planner().plan_topology(keycloak_topology, store)
        coordinator = Coordinator(
            fakes.backends(), store, policies, clock=clock, sleep=clock.sleep
        )
        fakes.cloud.coordinator = coordinator

        result = await coordinator.apply(plan)

        assert coordinator.cancelled
        assert result.created == ["vpc"]
        assert set(result.cancelled) == set(keycloak_topology.nodes) - {"vpc"}
        assert not result.success
        assert store.is_ready("vpc")
        assert "subnet" not in store

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, policies):
        doc = {"resources": [{"id": f"net-{i}", "kind": "Network"} for i in range(10)]}
        fakes = Fakes(InMemoryCloudBackend(latency=0.01))
        bounded = dataclasses.replace(policies, max_concurrency=3)

        plan = Planner().plan_topology(build_topology(doc))
        result = await Coordinator(fakes.backends(), StateStore(), bounded).apply(plan)

        assert len(result.created) == 10
        assert 2 <= fakes.cloud.max_in_flight <= 3

    @pytest.mark.asyncio
    async def test_dependency_edges_are_sequential(self, policies):
        doc = {
            "resources": [
                {"id": "a", "kind": "Network"},
                {"id": "b", "kind": "Subnet", "depends_on": ["a"]},
                {"id": "c", "kind": "Subnet", "depends_on": ["b"]},
            ]
        }
        fakes = Fakes(InMemoryCloudBackend(latency=0.01))
        plan = Planner().plan_topology(build_topology(doc))
        result = await Coordinator(fakes.backends(), StateStore(), policies).apply(plan)

        assert result.created == ["a", "b", "c"]
        assert fakes.cloud.max_in_flight == 1


class TestPrune:
    """Tests for destroying nodes no longer declared."""

    @pytest.mark.asyncio
    async def test_orphans_only_destroyed_with_prune(self, fakes, policies, clock):
        full = {
            "resources": [
                {"id": "vpc", "kind": "Network"},
                {"id": "legacy", "kind": "Subnet", "depends_on": ["vpc"]},
            ]
        }
        store = StateStore()
        await apply(build_topology(full), store, fakes, policies, clock)
        reduced = build_topology({"resources": [{"id": "vpc", "kind": "Network"}]})

        result = await apply(reduced, store, fakes, policies, clock)
        assert result.destroyed == []
        assert "legacy" in store

        result = await apply(reduced, store, fakes, policies, clock, prune=True)
        assert result.destroyed == ["legacy"]
        assert "legacy" not in store
        assert fakes.cloud.count("delete", "legacy") == 1


class TestDestroy:
    """Tests for Coordinator.destroy."""

    @pytest.mark.asyncio
    async def test_destroy_order(self, keycloak_topology, fakes, policies, clock):
        """Dependents go first; the application stage before infrastructure."""
        store = StateStore()
        await apply(keycloak_topology, store, fakes, policies, clock)

        result = await destroy(keycloak_topology, store, fakes, policies, clock)

        assert result.success
        assert len(store) == 0
        order = result.destroyed
        assert order.index("db-credentials") < order.index("keycloak-ns")
        assert order.index("keycloak-ns") < order.index("gke")
        assert order.index("gke") < order.index("subnet") < order.index("vpc")
        assert order.index("keycloak-db") < order.index("sql")
        assert fakes.grants.grants == set()
        assert fakes.cloud.resources == {}

    @pytest.mark.asyncio
    async def test_protected_node_blocks_its_dependencies(
        self, keycloak_document, fakes, policies, clock
    ):
        keycloak_document["resources"][3]["deletion_policy"] = "protect"
        topology = build_topology(keycloak_document)
        store = StateStore()
        await apply(topology, store, fakes, policies, clock)

        result = await destroy(topology, store, fakes, policies, clock)

        assert [type(f) for f in result.failures] == [ProtectedResource]
        assert result.failures[0].node_id == "sql"
        assert "vpc" in result.blocked
        assert fakes.cloud.count("delete", "sql") == 0
        assert store.is_ready("sql")
        with pytest.raises(PartialFailure) as exc_info:
            result.raise_for_failures()
        assert exc_info.value.exit_code == ExitCode.BLOCKED
