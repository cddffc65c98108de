from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from stagecraft.graph.models import ResourceKind


@dataclass(frozen=True)
class CreateResult:
    """Identifier and observed outputs of a freshly created resource."""

    resource_id: str
    outputs: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ResourceState:
    """Point-in-time backend view of a resource.

    `get` may lag behind `create`: a resource created a moment ago can still
    report `exists=False`.
    """

    exists: bool
    ready: bool = False
    terminating: bool = False
    failed: bool = False
    message: str | None = None
    outputs: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def absent(cls) -> ResourceState:
        return cls(exists=False)


@runtime_checkable
class ResourceBackend(Protocol):
    """CRUD contract shared by the cloud and cluster workload APIs."""

    name: str

    async def create(self, kind: ResourceKind, name: str, inputs: dict[str, Any]) -> CreateResult:
        """Create the resource, or adopt one already living under `name`.

        A create that landed but was not recorded (partial bundle, timed-out
        call) is retried with the same name, so an existing object is patched
        to `inputs` and returned instead of failing with a conflict.
        """
        ...

    async def update(
        self,
        kind: ResourceKind,
        resource_id: str,
        inputs: dict[str, Any],
        diff: dict[str, Any],
    ) -> dict[str, Any]:
        ...

    async def get(self, kind: ResourceKind, resource_id: str) -> ResourceState:
        ...

    async def delete(self, kind: ResourceKind, resource_id: str) -> None:
        ...


@runtime_checkable
class WorkloadBackend(ResourceBackend, Protocol):
    """Cluster workload API, scoped by a resolved cluster binding."""

    async def clear_finalizers(self, kind: ResourceKind, resource_id: str) -> None:
        """Forcibly empty the finalizer list through the low-level API."""
        ...


@runtime_checkable
class GrantInterface(Protocol):
    """Relational grant interface, scoped by a resolved database binding."""

    async def grant(self, principal: str, target: str, privilege: str) -> None:
        ...

    async def revoke(self, principal: str, target: str, privilege: str) -> None:
        ...


@runtime_checkable
class ManifestFetcher(Protocol):
    """Fetches versioned multi-document manifests; fails closed."""

    async def fetch_manifest(self, url: str) -> list[dict[str, Any]]:
        ...
