"""
Cluster workload API backed by the official Kubernetes client.

Every workload node is rendered to one or more manifest documents and
reconciled through the dynamic client, so CRDs, operator bundles and
custom resources share one code path. The connection is scoped by a
resolved `kubernetes` binding (endpoint, CA certificate, access token)
rather than a kubeconfig, since the cluster is created in the same run.
"""

from __future__ import annotations

import asyncio
import base64
import os
import tempfile
import threading
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Mapping

import structlog

from stagecraft.core.errors import ConfigurationError
from stagecraft.graph.models import ResourceKind
from stagecraft.providers.base import CreateResult, ResourceState

logger = structlog.get_logger()

# (apiVersion, kind) used when a node does not spell out its own
DEFAULT_API_KINDS: dict[ResourceKind, tuple[str, str]] = {
    ResourceKind.NAMESPACE: ("v1", "Namespace"),
    ResourceKind.WORKLOAD_SERVICE_ACCOUNT: ("v1", "ServiceAccount"),
    ResourceKind.SECRET: ("v1", "Secret"),
    ResourceKind.INGRESS: ("networking.k8s.io/v1", "Ingress"),
    ResourceKind.CERTIFICATE: ("networking.gke.io/v1", "ManagedCertificate"),
    ResourceKind.NETWORK_POLICY_CONFIG: ("networking.gke.io/v1beta1", "FrontendConfig"),
}

REF_SEPARATOR = ";"
FIELD_SEPARATOR = "|"


class KubernetesBackendError(RuntimeError):
    """Raised when the Kubernetes workload backend cannot act on a node."""


@dataclass(frozen=True)
class ObjectRef:
    api_version: str
    kind: str
    name: str
    namespace: str | None = None

    def encode(self) -> str:
        return FIELD_SEPARATOR.join([self.api_version, self.kind, self.namespace or "", self.name])

    @classmethod
    def decode(cls, raw: str) -> ObjectRef:
        api_version, kind, namespace, name = raw.split(FIELD_SEPARATOR)
        return cls(api_version, kind, name, namespace or None)

    @classmethod
    def for_document(cls, doc: Mapping[str, Any]) -> ObjectRef:
        meta = doc.get("metadata") or {}
        if not meta.get("name"):
            raise KubernetesBackendError(f"{doc.get('kind')} document has no metadata.name")
        return cls(doc["apiVersion"], doc["kind"], meta["name"], meta.get("namespace"))


def encode_refs(refs: list[ObjectRef]) -> str:
    return REF_SEPARATOR.join(ref.encode() for ref in refs)


def decode_refs(resource_id: str) -> list[ObjectRef]:
    return [ObjectRef.decode(part) for part in resource_id.split(REF_SEPARATOR) if part]


def build_documents(kind: ResourceKind, name: str, inputs: Mapping[str, Any]) -> list[dict[str, Any]]:
    """Render a workload node's inputs to manifest documents."""
    documents = inputs.get("documents")
    if documents:
        return [dict(doc) for doc in documents]

    if kind in (ResourceKind.CUSTOM_RESOURCE_DEFINITION, ResourceKind.OPERATOR_DEPLOYMENT):
        raise ConfigurationError(
            f"{kind} '{name}' needs a manifest or inline documents", {"node_id": name}
        )

    api_version, resource_kind = DEFAULT_API_KINDS.get(kind, (None, None))
    api_version = inputs.get("api_version", api_version)
    resource_kind = inputs.get("resource_kind", resource_kind)
    if not api_version or not resource_kind:
        raise ConfigurationError(
            f"{kind} '{name}' must set api_version and resource_kind", {"node_id": name}
        )

    metadata: dict[str, Any] = {"name": inputs.get("name", name)}
    if kind != ResourceKind.NAMESPACE and inputs.get("namespace"):
        metadata["namespace"] = inputs["namespace"]
    for key in ("labels", "annotations"):
        if inputs.get(key):
            metadata[key] = dict(inputs[key])

    doc: dict[str, Any] = {"apiVersion": api_version, "kind": resource_kind, "metadata": metadata}
    if kind == ResourceKind.SECRET:
        doc["type"] = inputs.get("type", "Opaque")
        doc["stringData"] = dict(inputs.get("data") or {})
    elif "spec" in inputs:
        doc["spec"] = inputs["spec"]
    return [doc]


def _is_not_found(exc: BaseException) -> bool:
    return getattr(exc, "status", None) == 404


def _is_conflict(exc: BaseException) -> bool:
    return getattr(exc, "status", None) == 409


def _object_outputs(refs: list[ObjectRef]) -> dict[str, Any]:
    return {
        "name": refs[0].name,
        "namespace": refs[0].namespace,
        "objects": [ref.encode() for ref in refs],
    }


def _conditions(obj: Mapping[str, Any]) -> dict[str, str]:
    status = obj.get("status") or {}
    return {c.get("type"): c.get("status") for c in status.get("conditions") or []}


def object_ready(obj: Mapping[str, Any]) -> bool:
    """Kind-aware readiness of a live object (CRD established, cert issued)."""
    kind = obj.get("kind")
    status = obj.get("status") or {}
    if kind == "CustomResourceDefinition":
        return _conditions(obj).get("Established") == "True"
    if kind == "ManagedCertificate":
        return status.get("certificateStatus") == "Active"
    if kind == "Certificate":
        return _conditions(obj).get("Ready") == "True"
    if kind == "Namespace":
        return status.get("phase", "Active") == "Active"
    return True


def object_terminating(obj: Mapping[str, Any]) -> bool:
    meta = obj.get("metadata") or {}
    status = obj.get("status") or {}
    return bool(meta.get("deletionTimestamp")) or status.get("phase") == "Terminating"


def _decode_ca(ca_certificate: str) -> bytes:
    if ca_certificate.lstrip().startswith("-----BEGIN"):
        return ca_certificate.encode()
    return base64.b64decode(ca_certificate)


@dataclass
class KubernetesWorkloadBackend:
    """
    Workload backend bound to one cluster.

    Configuration (from the resolved binding):
        host: API server endpoint (https:// is added when missing)
        ca_certificate: PEM or base64-encoded PEM cluster CA
        token: short-lived bearer token
    """

    host: str
    ca_certificate: str
    token: str
    timeout: float = 30.0

    # Internal state
    _api_client: Any = field(default=None, repr=False, compare=False)
    _dynamic_client: Any = field(default=None, repr=False, compare=False)
    _ca_file: str | None = field(default=None, repr=False, compare=False)
    _init_lock: Any = field(default_factory=threading.RLock, repr=False, compare=False)

    name = "kubernetes"

    @classmethod
    def from_binding(cls, values: Mapping[str, Any]) -> KubernetesWorkloadBackend:
        missing = [k for k in ("host", "ca_certificate", "token") if not values.get(k)]
        if missing:
            raise ConfigurationError(
                f"kubernetes binding is missing {', '.join(missing)}", {"missing": missing}
            )
        return cls(
            host=str(values["host"]),
            ca_certificate=str(values["ca_certificate"]),
            token=str(values["token"]),
            timeout=float(values.get("timeout", 30.0)),
        )

    def _ensure_initialized(self) -> None:
        """Initialize Kubernetes client if not already done."""
        with self._init_lock:
            if self._api_client is not None:
                return

            from kubernetes import client

            with tempfile.NamedTemporaryFile("wb", suffix=".crt", delete=False) as ca_file:
                ca_file.write(_decode_ca(self.ca_certificate))
            self._ca_file = ca_file.name

            configuration = client.Configuration()
            configuration.host = self.host if "://" in self.host else f"https://{self.host}"
            configuration.ssl_ca_cert = self._ca_file
            configuration.api_key = {"authorization": self.token}
            configuration.api_key_prefix = {"authorization": "Bearer"}

            self._api_client = client.ApiClient(configuration)

    def _get_core_api(self) -> Any:
        """Get CoreV1Api client."""
        self._ensure_initialized()
        from kubernetes import client

        return client.CoreV1Api(self._api_client)

    def _get_dynamic(self) -> Any:
        """Get the dynamic client. Blocking: API discovery runs on first use."""
        with self._init_lock:
            self._ensure_initialized()
            if self._dynamic_client is None:
                from kubernetes.dynamic import DynamicClient

                self._dynamic_client = DynamicClient(self._api_client)
            return self._dynamic_client

    async def _run_sync(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        """Run synchronous kubernetes API call in executor."""
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(
            loop.run_in_executor(None, partial(func, *args, **kwargs)), timeout=self.timeout
        )

    def _lookup(self, ref: ObjectRef) -> Any:
        return self._get_dynamic().resources.get(api_version=ref.api_version, kind=ref.kind)

    async def _resource(self, ref: ObjectRef) -> Any:
        # discovery cache misses go to the API server
        return await self._run_sync(self._lookup, ref)

    async def _read(self, ref: ObjectRef) -> dict[str, Any] | None:
        resource = await self._resource(ref)
        try:
            obj = await self._run_sync(resource.get, name=ref.name, namespace=ref.namespace)
        except Exception as e:
            if _is_not_found(e):
                return None
            raise
        return obj.to_dict() if hasattr(obj, "to_dict") else dict(obj)

    async def _patch(self, resource: Any, ref: ObjectRef, body: dict[str, Any]) -> None:
        await self._run_sync(
            resource.patch,
            body=body,
            name=ref.name,
            namespace=ref.namespace,
            content_type="application/merge-patch+json",
        )

    async def create(self, kind: ResourceKind, name: str, inputs: dict[str, Any]) -> CreateResult:
        documents = build_documents(kind, name, inputs)
        refs: list[ObjectRef] = []
        for doc in documents:
            ref = ObjectRef.for_document(doc)
            resource = await self._resource(ref)
            try:
                await self._run_sync(resource.create, body=doc, namespace=ref.namespace)
                logger.debug("kubernetes_object_created", kind=ref.kind, name=ref.name)
            except Exception as e:
                if not _is_conflict(e):
                    raise
                # left behind by an earlier attempt at this node
                await self._patch(resource, ref, doc)
                logger.info("kubernetes_object_adopted", kind=ref.kind, name=ref.name)
            refs.append(ref)

        return CreateResult(resource_id=encode_refs(refs), outputs=_object_outputs(refs))

    async def update(
        self,
        kind: ResourceKind,
        resource_id: str,
        inputs: dict[str, Any],
        diff: dict[str, Any],
    ) -> dict[str, Any]:
        documents = build_documents(kind, decode_refs(resource_id)[0].name, inputs)
        refs = []
        for doc in documents:
            ref = ObjectRef.for_document(doc)
            await self._patch(await self._resource(ref), ref, doc)
            refs.append(ref)
        return _object_outputs(refs)

    async def get(self, kind: ResourceKind, resource_id: str) -> ResourceState:
        objects = []
        for ref in decode_refs(resource_id):
            obj = await self._read(ref)
            if obj is not None:
                objects.append(obj)

        if not objects:
            return ResourceState.absent()
        return ResourceState(
            exists=True,
            ready=len(objects) == len(decode_refs(resource_id)) and all(map(object_ready, objects)),
            terminating=any(map(object_terminating, objects)),
        )

    async def delete(self, kind: ResourceKind, resource_id: str) -> None:
        for ref in reversed(decode_refs(resource_id)):
            resource = await self._resource(ref)
            try:
                await self._run_sync(resource.delete, name=ref.name, namespace=ref.namespace)
            except Exception as e:
                if not _is_not_found(e):
                    raise
            logger.debug("kubernetes_object_deleted", kind=ref.kind, name=ref.name)

    async def clear_finalizers(self, kind: ResourceKind, resource_id: str) -> None:
        for ref in decode_refs(resource_id):
            obj = await self._read(ref)
            if obj is None:
                continue
            if ref.kind == "Namespace":
                # namespace finalizers live in spec and only the finalize subresource clears them
                core = self._get_core_api()
                body = {
                    "apiVersion": "v1",
                    "kind": "Namespace",
                    "metadata": {"name": ref.name},
                    "spec": {"finalizers": []},
                }
                await self._run_sync(core.replace_namespace_finalize, ref.name, body)
            else:
                await self._patch(
                    await self._resource(ref), ref, {"metadata": {"finalizers": None}}
                )
            logger.warning("kubernetes_finalizers_cleared", kind=ref.kind, name=ref.name)

    def close(self) -> None:
        if self._api_client is not None:
            self._api_client.close()
            self._api_client = None
            self._dynamic_client = None
        if self._ca_file and os.path.exists(self._ca_file):
            os.unlink(self._ca_file)
            self._ca_file = None
