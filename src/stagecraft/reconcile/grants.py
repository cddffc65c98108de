"""
Grant sub-resolver.

Database grants are declared as sets ("these principals get these
privileges on that target") and expanded into one node per principal, so a
failing grant never takes its siblings down. GrantBackend adapts the
relational Grant(principal, target, privilege) interface to the CRUD
contract the executor drives.
"""

from __future__ import annotations

import dataclasses
from typing import Any, Iterable

import structlog

from stagecraft.core.errors import ConfigurationError, NodeError
from stagecraft.graph.loader import member_id, substitute_each
from stagecraft.graph.models import (
    GRANT_KINDS,
    ResourceKind,
    ResourceNode,
    parse_value,
    unparse_value,
)
from stagecraft.providers.base import CreateResult, GrantInterface, ResourceState
from stagecraft.state.store import StateSnapshot, StateStore

logger = structlog.get_logger()

_ID_SEPARATOR = "|"


def expand_grant_set(template: ResourceNode, principals: Iterable[str]) -> list[ResourceNode]:
    """One independent grant node per principal, `${each}` substituted."""
    if template.kind not in GRANT_KINDS:
        raise ConfigurationError(
            f"Resource '{template.id}' is a {template.kind}, not a grant",
            {"node_id": template.id},
        )
    raw_inputs = unparse_value(template.inputs)
    return [
        dataclasses.replace(
            template,
            id=member_id(template.id, str(principal)),
            inputs=parse_value(substitute_each(raw_inputs, str(principal))),
            outputs={},
        )
        for principal in principals
    ]


def _privileges(inputs: dict[str, Any]) -> list[str]:
    raw = inputs.get("privileges", inputs.get("privilege"))
    if raw is None:
        return []
    if isinstance(raw, str):
        return [raw]
    return [str(p) for p in raw]


def grant_id(principal: str, target: str) -> str:
    return f"{principal}{_ID_SEPARATOR}{target}"


def parse_grant_id(resource_id: str) -> tuple[str, str]:
    principal, _, target = resource_id.partition(_ID_SEPARATOR)
    return principal, target


def ensure_grant_prerequisites(node: ResourceNode, state: StateStore | StateSnapshot) -> None:
    """A grant runs only once its principal and target nodes are Ready."""
    for dep in sorted(node.dependency_ids()):
        if not state.is_ready(dep):
            raise NodeError(node.id, str(node.kind), f"prerequisite '{dep}' is not ready")


class GrantBackend:
    """ResourceBackend over a GrantInterface.

    The resource id is `principal|target`; destroy revokes ALL on the target.
    """

    name = "grants"

    def __init__(self, interface: GrantInterface) -> None:
        self._interface = interface
        self._revoked: set[str] = set()

    def _parse_inputs(self, inputs: dict[str, Any]) -> tuple[str, str, list[str]]:
        principal = inputs.get("principal")
        target = inputs.get("target")
        privileges = _privileges(inputs)
        if not principal or not target or not privileges:
            raise ValueError("grant needs principal, target and at least one privilege")
        return str(principal), str(target), privileges

    async def create(self, kind: ResourceKind, name: str, inputs: dict[str, Any]) -> CreateResult:
        principal, target, privileges = self._parse_inputs(inputs)
        for privilege in privileges:
            await self._interface.grant(principal, target, privilege)
        resource_id = grant_id(principal, target)
        self._revoked.discard(resource_id)
        logger.info("grant_applied", node_id=name, principal=principal, target=target)
        return CreateResult(
            resource_id=resource_id,
            outputs={"principal": principal, "target": target, "privileges": sorted(privileges)},
        )

    async def update(
        self,
        kind: ResourceKind,
        resource_id: str,
        inputs: dict[str, Any],
        diff: dict[str, Any],
    ) -> dict[str, Any]:
        old_principal, old_target = parse_grant_id(resource_id)
        principal, target, privileges = self._parse_inputs(inputs)
        if (principal, target) != (old_principal, old_target):
            raise ValueError("a grant's principal and target cannot change; replace the node")

        old_privileges = set(privileges)
        if "privileges" in diff or "privilege" in diff:
            change = diff.get("privileges", diff.get("privilege"))
            old_privileges = set(_privileges({"privileges": change["old"]}))

        for privilege in sorted(old_privileges - set(privileges)):
            await self._interface.revoke(principal, target, privilege)
        for privilege in sorted(set(privileges) - old_privileges):
            await self._interface.grant(principal, target, privilege)

        return {"principal": principal, "target": target, "privileges": sorted(privileges)}

    async def get(self, kind: ResourceKind, resource_id: str) -> ResourceState:
        # grants have no read path; anything not revoked through this adapter is assumed held
        if resource_id in self._revoked:
            return ResourceState.absent()
        principal, target = parse_grant_id(resource_id)
        return ResourceState(
            exists=True, ready=True, outputs={"principal": principal, "target": target}
        )

    async def delete(self, kind: ResourceKind, resource_id: str) -> None:
        principal, target = parse_grant_id(resource_id)
        await self._interface.revoke(principal, target, "ALL")
        self._revoked.add(resource_id)
        logger.info("grant_revoked", principal=principal, target=target)
