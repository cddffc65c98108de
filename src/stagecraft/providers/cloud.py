"""
Cloud resource API adapter.

Talks to a provider bridge exposing one REST collection per resource kind:

    POST   /v1/resources/{kind}          {"name", "spec"} -> {"id", "outputs"}
    PATCH  /v1/resources/{kind}/{id}     {"spec", "changes"} -> {"outputs"}
    GET    /v1/resources/{kind}/{id}     -> {"state", "outputs", "message"}
    DELETE /v1/resources/{kind}/{id}

A POST for a name that already exists answers 409; the existing resource is
adopted under that name and patched to the requested spec.
"""

from __future__ import annotations

from typing import Any

import structlog

from stagecraft.config.settings import Settings, get_settings
from stagecraft.graph.models import ResourceKind
from stagecraft.providers.base import CreateResult, ResourceState
from stagecraft.providers.http import BaseHTTPClient, PermanentHTTPError

logger = structlog.get_logger()

READY_STATES = frozenset({"RUNNING", "READY", "ACTIVE", "AVAILABLE"})
TERMINATING_STATES = frozenset({"DELETING", "STOPPING", "TERMINATING"})
FAILED_STATES = frozenset({"ERROR", "FAILED", "DEGRADED"})


class BridgeClient(BaseHTTPClient):
    """HTTP client for the provider bridge, with bearer auth."""

    def __init__(self, base_url: str, token: str | None = None, **kwargs: Any) -> None:
        super().__init__(base_url, **kwargs)
        self._token = token

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers


class HttpCloudBackend:
    """Cloud resource API over the provider bridge."""

    name = "cloud"

    def __init__(self, base_url: str, token: str | None = None, **kwargs: Any) -> None:
        self._http = BridgeClient(base_url, token, **kwargs)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> HttpCloudBackend:
        settings = settings or get_settings()
        return cls(
            settings.cloud_api_url,
            settings.cloud_api_token,
            timeout=settings.http_timeout,
            max_retries=settings.http_max_retries,
            backoff_factor=settings.http_retry_backoff_factor,
        )

    @staticmethod
    def _path(kind: ResourceKind, resource_id: str | None = None) -> str:
        path = f"/v1/resources/{kind}"
        return f"{path}/{resource_id}" if resource_id else path

    async def create(self, kind: ResourceKind, name: str, inputs: dict[str, Any]) -> CreateResult:
        try:
            data = await self._http.post(self._path(kind), json={"name": name, "spec": inputs})
        except PermanentHTTPError as e:
            if e.status_code != 409:
                raise
            outputs = await self.update(kind, name, inputs, dict.fromkeys(inputs))
            logger.info("cloud_resource_adopted", kind=str(kind), resource_id=name)
            return CreateResult(resource_id=name, outputs=outputs)
        resource_id = data.get("id") or name
        logger.debug("cloud_resource_created", kind=str(kind), resource_id=resource_id)
        return CreateResult(resource_id=str(resource_id), outputs=dict(data.get("outputs") or {}))

    async def update(
        self,
        kind: ResourceKind,
        resource_id: str,
        inputs: dict[str, Any],
        diff: dict[str, Any],
    ) -> dict[str, Any]:
        data = await self._http.patch(
            self._path(kind, resource_id), json={"spec": inputs, "changes": sorted(diff)}
        )
        return dict(data.get("outputs") or {})

    async def get(self, kind: ResourceKind, resource_id: str) -> ResourceState:
        try:
            data = await self._http.get(self._path(kind, resource_id))
        except PermanentHTTPError as e:
            if e.status_code == 404:
                return ResourceState.absent()
            raise

        state = str(data.get("state", "")).upper()
        return ResourceState(
            exists=True,
            ready=state in READY_STATES,
            terminating=state in TERMINATING_STATES,
            failed=state in FAILED_STATES,
            message=data.get("message"),
            outputs=dict(data.get("outputs") or {}),
        )

    async def delete(self, kind: ResourceKind, resource_id: str) -> None:
        try:
            await self._http.delete(self._path(kind, resource_id))
        except PermanentHTTPError as e:
            if e.status_code != 404:
                raise
            logger.debug("cloud_resource_already_absent", kind=str(kind), resource_id=resource_id)
