"""
In-memory collaborators.

Used by the test suite and by `stagecraft apply --backend memory` to
simulate a run end to end. Each fake records its calls and exposes
programmable faults: failing creates, creates that land but report an error, resources that report not-ready for a
number of reads, stale reads right after create, and deletions stuck on
finalizers.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
from dataclasses import dataclass, field
from typing import Any, Mapping

import structlog

from stagecraft.core.errors import ManifestFetchError
from stagecraft.graph.models import WORKLOAD_KINDS, ResourceKind
from stagecraft.providers.base import CreateResult, ResourceState

logger = structlog.get_logger()


class FakeBackendError(RuntimeError):
    """Error raised by an in-memory backend when a fault is injected."""


@dataclass
class FakeResource:
    kind: ResourceKind
    name: str
    inputs: dict[str, Any]
    outputs: dict[str, Any]
    pending_reads: int = 0
    stale_reads: int = 0
    terminating: bool = False
    delete_reads: int = 0


@dataclass(frozen=True)
class Call:
    operation: str
    kind: str
    target: str


def _kind_outputs(kind: ResourceKind, name: str, inputs: Mapping[str, Any]) -> dict[str, Any]:
    """Plausible provider outputs per kind."""
    if kind in (ResourceKind.NETWORK, ResourceKind.SUBNET):
        collection = "networks" if kind == ResourceKind.NETWORK else "subnetworks"
        return {"self_link": f"projects/demo/global/{collection}/{name}"}
    if kind == ResourceKind.PEERING_RANGE:
        return {"address": "10.100.0.0", "prefix_length": inputs.get("prefix_length", 16)}
    if kind == ResourceKind.DATABASE_INSTANCE:
        return {
            "host": "10.100.0.3",
            "port": 5432,
            "connection_name": f"demo:region:{name}",
        }
    if kind in (ResourceKind.DATABASE, ResourceKind.DATABASE_USER):
        outputs: dict[str, Any] = {"name": inputs.get("name", name)}
        if kind == ResourceKind.DATABASE_USER:
            outputs["password"] = f"{name}-password"
        return outputs
    if kind == ResourceKind.CLUSTER:
        return {
            "endpoint": f"{name}.cluster.local",
            "ca_certificate": "-----BEGIN CERTIFICATE-----\nZmFrZQ==\n-----END CERTIFICATE-----",
        }
    if kind == ResourceKind.SERVICE_IDENTITY:
        return {"email": f"{name}@demo.iam.example.com"}
    if kind in WORKLOAD_KINDS:
        outputs = {"name": inputs.get("name", name)}
        if inputs.get("namespace"):
            outputs["namespace"] = inputs["namespace"]
        return outputs
    return {}


@dataclass
class InMemoryCloudBackend:
    """Cloud resource API fake."""

    name: str = "cloud"
    fail_create: set[str] = field(default_factory=set)
    fail_update: set[str] = field(default_factory=set)
    fail_delete: set[str] = field(default_factory=set)
    # name -> number of reads reporting not-ready before Ready
    ready_after: dict[str, int] = field(default_factory=dict)
    never_ready: set[str] = field(default_factory=set)
    failed_readiness: set[str] = field(default_factory=set)
    # creates that land on the backend but report an error, once per name
    lost_creates: set[str] = field(default_factory=set)
    # reads right after create that still report the resource absent
    stale_reads: int = 0
    # reads after delete before the resource disappears
    delete_reads: int = 0
    latency: float = 0.0

    resources: dict[str, FakeResource] = field(default_factory=dict)
    calls: list[Call] = field(default_factory=list)
    in_flight: int = 0
    max_in_flight: int = 0
    _tokens: Any = field(default_factory=lambda: itertools.count(1), repr=False)

    def count(self, operation: str, target: str | None = None) -> int:
        return sum(
            1 for c in self.calls if c.operation == operation and (target is None or c.target == target)
        )

    def seed(self, kind: ResourceKind, name: str, outputs: Mapping[str, Any] | None = None) -> None:
        """Pretend a resource already exists and is Ready."""
        self.resources[name] = FakeResource(
            kind=kind, name=name, inputs={}, outputs={**_kind_outputs(kind, name, {}), **(outputs or {})}
        )

    async def _enter(self, operation: str, kind: ResourceKind, target: str) -> None:
        self.calls.append(Call(operation, str(kind), target))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.latency:
                await asyncio.sleep(self.latency)
        except BaseException:
            self.in_flight -= 1
            raise

    def _exit(self) -> None:
        self.in_flight -= 1

    def _live_outputs(self, resource: FakeResource) -> dict[str, Any]:
        outputs = dict(resource.outputs)
        if resource.kind == ResourceKind.CLUSTER:
            # short-lived credential, different on every read
            outputs["access_token"] = f"token-{next(self._tokens)}"
        return outputs

    async def create(self, kind: ResourceKind, name: str, inputs: dict[str, Any]) -> CreateResult:
        await self._enter("create", kind, name)
        try:
            if name in self.fail_create:
                raise FakeBackendError(f"create of {kind} {name} rejected")
            existing = self.resources.get(name)
            if existing is not None and not existing.terminating:
                existing.inputs = copy.deepcopy(inputs)
                return CreateResult(resource_id=name, outputs=self._live_outputs(existing))
            resource = FakeResource(
                kind=kind,
                name=name,
                inputs=copy.deepcopy(inputs),
                outputs={"id": name, **_kind_outputs(kind, name, inputs)},
                pending_reads=self.ready_after.get(name, 0),
                stale_reads=self.stale_reads,
            )
            self.resources[name] = resource
            if name in self.lost_creates:
                self.lost_creates.discard(name)
                raise FakeBackendError(f"create of {kind} {name} timed out")
            return CreateResult(resource_id=name, outputs=self._live_outputs(resource))
        finally:
            self._exit()

    async def update(
        self,
        kind: ResourceKind,
        resource_id: str,
        inputs: dict[str, Any],
        diff: dict[str, Any],
    ) -> dict[str, Any]:
        await self._enter("update", kind, resource_id)
        try:
            if resource_id in self.fail_update:
                raise FakeBackendError(f"update of {kind} {resource_id} rejected")
            resource = self.resources.get(resource_id)
            if resource is None:
                raise FakeBackendError(f"{kind} {resource_id} not found")
            resource.inputs = copy.deepcopy(inputs)
            return self._live_outputs(resource)
        finally:
            self._exit()

    async def get(self, kind: ResourceKind, resource_id: str) -> ResourceState:
        self.calls.append(Call("get", str(kind), resource_id))
        resource = self.resources.get(resource_id)
        if resource is None:
            return ResourceState.absent()

        if resource.stale_reads > 0:
            resource.stale_reads -= 1
            return ResourceState.absent()

        if resource.terminating:
            if resource.delete_reads > 0:
                resource.delete_reads -= 1
                return ResourceState(exists=True, terminating=True)
            if self._holds_deletion(resource):
                return ResourceState(exists=True, terminating=True)
            del self.resources[resource_id]
            return ResourceState.absent()

        if resource.name in self.failed_readiness:
            return ResourceState(exists=True, failed=True, message="provisioning failed")
        if resource.name in self.never_ready:
            return ResourceState(exists=True)
        if resource.pending_reads > 0:
            resource.pending_reads -= 1
            return ResourceState(exists=True)
        return ResourceState(exists=True, ready=True, outputs=self._live_outputs(resource))

    def _holds_deletion(self, resource: FakeResource) -> bool:
        return False

    async def delete(self, kind: ResourceKind, resource_id: str) -> None:
        await self._enter("delete", kind, resource_id)
        try:
            if resource_id in self.fail_delete:
                raise FakeBackendError(f"delete of {kind} {resource_id} rejected")
            resource = self.resources.get(resource_id)
            if resource is not None and not resource.terminating:
                resource.terminating = True
                resource.delete_reads = self.delete_reads
        finally:
            self._exit()


@dataclass
class InMemoryWorkloadBackend(InMemoryCloudBackend):
    """Cluster workload API fake with finalizer behavior."""

    name: str = "kubernetes"
    # names whose deletion hangs on finalizers
    stuck: set[str] = field(default_factory=set)
    finalizer_clear_fixes: bool = True
    bound_values: dict[str, Any] | None = None

    def bind(self, values: Mapping[str, Any]) -> InMemoryWorkloadBackend:
        self.bound_values = dict(values)
        return self

    def _holds_deletion(self, resource: FakeResource) -> bool:
        return resource.name in self.stuck

    async def clear_finalizers(self, kind: ResourceKind, resource_id: str) -> None:
        self.calls.append(Call("clear_finalizers", str(kind), resource_id))
        if self.finalizer_clear_fixes:
            self.stuck.discard(resource_id)
        logger.debug("fake_finalizers_cleared", resource_id=resource_id)


@dataclass
class InMemoryGrantInterface:
    """Relational grant interface fake."""

    failing_principals: set[str] = field(default_factory=set)
    grants: set[tuple[str, str, str]] = field(default_factory=set)
    calls: list[Call] = field(default_factory=list)
    bound_values: dict[str, Any] | None = None

    def bind(self, values: Mapping[str, Any]) -> InMemoryGrantInterface:
        self.bound_values = dict(values)
        return self

    async def grant(self, principal: str, target: str, privilege: str) -> None:
        self.calls.append(Call("grant", privilege, f"{principal}@{target}"))
        if principal in self.failing_principals:
            raise FakeBackendError(f'role "{principal}" does not exist')
        self.grants.add((principal, target, privilege))

    async def revoke(self, principal: str, target: str, privilege: str) -> None:
        self.calls.append(Call("revoke", privilege, f"{principal}@{target}"))
        if privilege.upper() == "ALL":
            self.grants = {g for g in self.grants if g[:2] != (principal, target)}
        else:
            self.grants.discard((principal, target, privilege))


@dataclass
class InMemoryManifestFetcher:
    """Serves manifests from a url -> documents map.

    Unknown URLs fail closed unless `synthesize` is set, in which case a
    single placeholder document is served (simulation runs).
    """

    manifests: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    synthesize: bool = False
    calls: list[str] = field(default_factory=list)

    async def fetch_manifest(self, url: str) -> list[dict[str, Any]]:
        self.calls.append(url)
        documents = self.manifests.get(url)
        if documents:
            return copy.deepcopy(documents)
        if self.synthesize:
            name = url.rstrip("/").rsplit("/", 1)[-1] or "manifest"
            return [{"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": name}}]
        raise ManifestFetchError(url, "not found")
