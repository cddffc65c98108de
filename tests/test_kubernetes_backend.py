"""Tests for the Kubernetes workload backend."""

import asyncio
import threading
import time
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client.exceptions import ApiException
from stagecraft.core.errors import ConfigurationError
from stagecraft.graph.models import ResourceKind
from stagecraft.providers.kubernetes import (
    KubernetesBackendError,
    KubernetesWorkloadBackend,
    ObjectRef,
    build_documents,
    decode_refs,
    encode_refs,
    object_ready,
    object_terminating,
)

PEM = "-----BEGIN CERTIFICATE-----\nZmFrZQ==\n-----END CERTIFICATE-----"


@pytest.fixture
def dynamic():
    return MagicMock()


@pytest.fixture
def backend(dynamic):
    """Backend with the client pre-initialized to mocks."""
    backend = KubernetesWorkloadBackend(host="1.2.3.4", ca_certificate=PEM, token="t", timeout=5)
    backend._api_client = MagicMock()
    backend._dynamic_client = dynamic
    return backend


def resource(dynamic):
    return dynamic.resources.get.return_value


class TestBuildDocuments:
    """Tests for rendering node inputs to manifests."""

    def test_namespace(self):
        docs = build_documents(ResourceKind.NAMESPACE, "keycloak-ns", {"name": "keycloak"})
        assert docs == [{"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "keycloak"}}]

    def test_secret_uses_string_data(self):
        [doc] = build_documents(
            ResourceKind.SECRET,
            "db-credentials",
            {"namespace": "keycloak", "data": {"host": "10.0.0.3"}, "labels": {"app": "kc"}},
        )
        assert doc["metadata"] == {
            "name": "db-credentials",
            "namespace": "keycloak",
            "labels": {"app": "kc"},
        }
        assert doc["type"] == "Opaque"
        assert doc["stringData"] == {"host": "10.0.0.3"}

    def test_inline_documents_win(self):
        documents = [{"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "a"}}]
        assert build_documents(ResourceKind.OPERATOR_DEPLOYMENT, "op", {"documents": documents}) == documents

    def test_crd_requires_documents(self):
        with pytest.raises(ConfigurationError, match="needs a manifest"):
            build_documents(ResourceKind.CUSTOM_RESOURCE_DEFINITION, "crds", {})

    def test_custom_api_kind(self):
        [doc] = build_documents(
            ResourceKind.CERTIFICATE,
            "tls",
            {"api_version": "cert-manager.io/v1", "resource_kind": "Certificate", "spec": {"a": 1}},
        )
        assert (doc["apiVersion"], doc["kind"], doc["spec"]) == ("cert-manager.io/v1", "Certificate", {"a": 1})


class TestObjectRefs:
    def test_encode_round_trip(self):
        refs = [ObjectRef("v1", "Namespace", "kc"), ObjectRef("v1", "Secret", "creds", "kc")]
        assert decode_refs(encode_refs(refs)) == refs

    def test_document_without_name(self):
        with pytest.raises(KubernetesBackendError):
            ObjectRef.for_document({"apiVersion": "v1", "kind": "Secret", "metadata": {}})


class TestObjectState:
    """Tests for kind-aware readiness."""

    def test_crd_established(self):
        crd = {
            "kind": "CustomResourceDefinition",
            "status": {"conditions": [{"type": "Established", "status": "True"}]},
        }
        assert object_ready(crd)
        assert not object_ready({"kind": "CustomResourceDefinition", "status": {}})

    def test_managed_certificate(self):
        assert object_ready({"kind": "ManagedCertificate", "status": {"certificateStatus": "Active"}})
        assert not object_ready(
            {"kind": "ManagedCertificate", "status": {"certificateStatus": "Provisioning"}}
        )

    def test_plain_objects_ready_on_existence(self):
        assert object_ready({"kind": "Secret"})

    def test_terminating(self):
        assert object_terminating({"metadata": {"deletionTimestamp": "2024-01-01T00:00:00Z"}})
        assert object_terminating({"kind": "Namespace", "status": {"phase": "Terminating"}})
        assert not object_terminating({"kind": "Namespace", "status": {"phase": "Active"}})


class TestFromBinding:
    def test_missing_values(self):
        with pytest.raises(ConfigurationError, match="token"):
            KubernetesWorkloadBackend.from_binding({"host": "h", "ca_certificate": PEM})

    def test_values(self):
        backend = KubernetesWorkloadBackend.from_binding(
            {"host": "h", "ca_certificate": PEM, "token": "t", "timeout": 9}
        )
        assert backend.timeout == 9.0


class TestWorkloadOperations:
    """Tests for CRUD through the dynamic client."""

    @pytest.mark.asyncio
    async def test_create_namespace(self, backend, dynamic):
        result = await backend.create(ResourceKind.NAMESPACE, "keycloak-ns", {"name": "keycloak"})

        assert result.resource_id == "v1|Namespace||keycloak"
        assert result.outputs["name"] == "keycloak"
        dynamic.resources.get.assert_called_with(api_version="v1", kind="Namespace")
        resource(dynamic).create.assert_called_once()
        assert resource(dynamic).create.call_args.kwargs["body"]["metadata"] == {"name": "keycloak"}

    @pytest.mark.asyncio
    async def test_create_bundle_records_every_object(self, backend, dynamic):
        documents = [
            {"apiVersion": "apiextensions.k8s.io/v1", "kind": "CustomResourceDefinition", "metadata": {"name": f"c{i}"}}
            for i in range(3)
        ]
        result = await backend.create(
            ResourceKind.CUSTOM_RESOURCE_DEFINITION, "crds", {"documents": documents}
        )
        assert [r.name for r in decode_refs(result.resource_id)] == ["c0", "c1", "c2"]
        assert resource(dynamic).create.call_count == 3

    @pytest.mark.asyncio
    async def test_create_adopts_existing_object(self, backend, dynamic):
        resource(dynamic).create.side_effect = ApiException(status=409)

        result = await backend.create(ResourceKind.NAMESPACE, "keycloak-ns", {"name": "keycloak"})

        assert result.resource_id == "v1|Namespace||keycloak"
        kwargs = resource(dynamic).patch.call_args.kwargs
        assert kwargs["name"] == "keycloak"
        assert kwargs["body"]["metadata"] == {"name": "keycloak"}
        assert kwargs["content_type"] == "application/merge-patch+json"

    @pytest.mark.asyncio
    async def test_create_other_errors_propagate(self, backend, dynamic):
        resource(dynamic).create.side_effect = ApiException(status=403)
        with pytest.raises(ApiException):
            await backend.create(ResourceKind.NAMESPACE, "keycloak-ns", {"name": "keycloak"})
        resource(dynamic).patch.assert_not_called()

    @pytest.mark.asyncio
    async def test_bundle_failing_part_way_converges_on_retry(self, backend, dynamic):
        documents = [
            {"apiVersion": "v1", "kind": "ServiceAccount", "metadata": {"name": "operator", "namespace": "kc"}},
            {"apiVersion": "apps/v1", "kind": "Deployment", "metadata": {"name": "operator", "namespace": "kc"}},
        ]
        resource(dynamic).create.side_effect = [
            None,
            ApiException(status=500),
            ApiException(status=409),
            None,
        ]

        with pytest.raises(ApiException):
            await backend.create(ResourceKind.OPERATOR_DEPLOYMENT, "op", {"documents": documents})
        result = await backend.create(
            ResourceKind.OPERATOR_DEPLOYMENT, "op", {"documents": documents}
        )

        assert [(r.kind, r.name) for r in decode_refs(result.resource_id)] == [
            ("ServiceAccount", "operator"),
            ("Deployment", "operator"),
        ]
        assert resource(dynamic).create.call_count == 4
        resource(dynamic).patch.assert_called_once()
        assert resource(dynamic).patch.call_args.kwargs["body"]["kind"] == "ServiceAccount"

    @pytest.mark.asyncio
    async def test_get_not_found_is_absent(self, backend, dynamic):
        resource(dynamic).get.side_effect = ApiException(status=404)
        state = await backend.get(ResourceKind.NAMESPACE, "v1|Namespace||keycloak")
        assert not state.exists

    @pytest.mark.asyncio
    async def test_get_other_errors_propagate(self, backend, dynamic):
        resource(dynamic).get.side_effect = ApiException(status=403)
        with pytest.raises(ApiException):
            await backend.get(ResourceKind.NAMESPACE, "v1|Namespace||keycloak")

    @pytest.mark.asyncio
    async def test_get_terminating_namespace(self, backend, dynamic):
        resource(dynamic).get.return_value = {
            "kind": "Namespace",
            "metadata": {"name": "keycloak", "deletionTimestamp": "2024-01-01T00:00:00Z"},
            "status": {"phase": "Terminating"},
        }
        state = await backend.get(ResourceKind.NAMESPACE, "v1|Namespace||keycloak")
        assert state.exists
        assert state.terminating
        assert not state.ready

    @pytest.mark.asyncio
    async def test_delete_ignores_not_found(self, backend, dynamic):
        resource(dynamic).delete.side_effect = ApiException(status=404)
        await backend.delete(ResourceKind.SECRET, "v1|Secret|keycloak|creds")
        resource(dynamic).delete.assert_called_once_with(name="creds", namespace="keycloak")

    @pytest.mark.asyncio
    async def test_clear_namespace_finalizers_uses_finalize(self, backend, dynamic):
        resource(dynamic).get.return_value = {"kind": "Namespace", "metadata": {"name": "keycloak"}}
        core = MagicMock()
        with patch.object(backend, "_get_core_api", return_value=core):
            await backend.clear_finalizers(ResourceKind.NAMESPACE, "v1|Namespace||keycloak")

        name, body = core.replace_namespace_finalize.call_args.args
        assert name == "keycloak"
        assert body["spec"]["finalizers"] == []
        resource(dynamic).patch.assert_not_called()

    @pytest.mark.asyncio
    async def test_clear_finalizers_patches_other_kinds(self, backend, dynamic):
        resource(dynamic).get.return_value = {"kind": "Certificate", "metadata": {"name": "tls"}}
        await backend.clear_finalizers(ResourceKind.CERTIFICATE, "cert-manager.io/v1|Certificate|kc|tls")
        kwargs = resource(dynamic).patch.call_args.kwargs
        assert kwargs["body"] == {"metadata": {"finalizers": None}}
        assert kwargs["content_type"] == "application/merge-patch+json"

    def test_close_releases_client(self, backend):
        api_client = backend._api_client
        backend.close()
        api_client.close.assert_called_once()
        assert backend._dynamic_client is None


class TestDiscovery:
    """API discovery must not block the event loop."""

    @pytest.mark.asyncio
    async def test_dynamic_client_built_in_worker_thread(self):
        backend = KubernetesWorkloadBackend(host="1.2.3.4", ca_certificate=PEM, token="t", timeout=5)
        backend._api_client = MagicMock()
        threads = []

        def build(api_client):
            threads.append(threading.current_thread())
            return MagicMock()

        with patch("kubernetes.dynamic.DynamicClient", side_effect=build):
            await backend.get(ResourceKind.NAMESPACE, "v1|Namespace||keycloak")

        assert len(threads) == 1
        assert threads[0] is not threading.main_thread()

    @pytest.mark.asyncio
    async def test_slow_discovery_is_bounded_by_call_timeout(self):
        backend = KubernetesWorkloadBackend(
            host="1.2.3.4", ca_certificate=PEM, token="t", timeout=0.05
        )
        backend._api_client = MagicMock()

        def hang(api_client):
            time.sleep(0.5)
            return MagicMock()

        with patch("kubernetes.dynamic.DynamicClient", side_effect=hang):
            with pytest.raises(asyncio.TimeoutError):
                await backend.get(ResourceKind.NAMESPACE, "v1|Namespace||keycloak")
