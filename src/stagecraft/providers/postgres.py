"""
Relational grant interface on PostgreSQL.

Scoped by a resolved `postgres` binding. Targets are addressed as
`database:<name>`, `schema:<name>` or `table:<schema>.<name>`; identifiers
are quoted by the dialect and privileges checked against an allow-list, so
no topology value is ever interpolated into SQL unquoted.
"""

from __future__ import annotations

from typing import Any, Mapping

import structlog
from sqlalchemy import text
from sqlalchemy.engine import URL
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from stagecraft.core.errors import ConfigurationError

logger = structlog.get_logger()

ALLOWED_PRIVILEGES: dict[str, frozenset[str]] = {
    "database": frozenset({"ALL", "CONNECT", "CREATE", "TEMPORARY"}),
    "schema": frozenset({"ALL", "CREATE", "USAGE"}),
    "table": frozenset({"ALL", "SELECT", "INSERT", "UPDATE", "DELETE", "TRUNCATE", "REFERENCES"}),
}

_OBJECT_KEYWORDS = {"database": "DATABASE", "schema": "SCHEMA", "table": "TABLE"}


class SqlGrantInterface:
    """GRANT/REVOKE through SQLAlchemy (psycopg driver)."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._preparer = engine.dialect.identifier_preparer

    @classmethod
    def from_binding(cls, values: Mapping[str, Any]) -> SqlGrantInterface:
        missing = [k for k in ("host", "username", "password") if not values.get(k)]
        if missing:
            raise ConfigurationError(
                f"postgres binding is missing {', '.join(missing)}", {"missing": missing}
            )
        url = URL.create(
            "postgresql+psycopg",
            username=str(values["username"]),
            password=str(values["password"]),
            host=str(values["host"]),
            port=int(values.get("port", 5432)),
            database=str(values.get("database", "postgres")),
        )
        engine = create_async_engine(url, pool_pre_ping=True, pool_size=2, max_overflow=2)
        return cls(engine)

    def _target_sql(self, target: str) -> tuple[str, str]:
        object_type, sep, name = target.partition(":")
        if not sep or object_type not in _OBJECT_KEYWORDS or not name:
            raise ValueError(f"invalid grant target '{target}'")
        parts = name.split(".") if object_type == "table" else [name]
        quoted = ".".join(self._preparer.quote_identifier(p) for p in parts)
        return object_type, f"{_OBJECT_KEYWORDS[object_type]} {quoted}"

    def _privilege_sql(self, object_type: str, privilege: str) -> str:
        normalized = privilege.strip().upper()
        if normalized not in ALLOWED_PRIVILEGES[object_type]:
            raise ValueError(f"privilege '{privilege}' is not allowed on a {object_type}")
        return "ALL PRIVILEGES" if normalized == "ALL" else normalized

    def grant_statement(self, principal: str, target: str, privilege: str) -> str:
        object_type, target_sql = self._target_sql(target)
        privilege_sql = self._privilege_sql(object_type, privilege)
        role = self._preparer.quote_identifier(principal)
        return f"GRANT {privilege_sql} ON {target_sql} TO {role}"

    def revoke_statement(self, principal: str, target: str, privilege: str) -> str:
        object_type, target_sql = self._target_sql(target)
        privilege_sql = self._privilege_sql(object_type, privilege)
        role = self._preparer.quote_identifier(principal)
        return f"REVOKE {privilege_sql} ON {target_sql} FROM {role}"

    async def _execute(self, statement: str) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(text(statement))

    async def grant(self, principal: str, target: str, privilege: str) -> None:
        await self._execute(self.grant_statement(principal, target, privilege))
        logger.debug("privilege_granted", principal=principal, target=target, privilege=privilege)

    async def revoke(self, principal: str, target: str, privilege: str) -> None:
        await self._execute(self.revoke_statement(principal, target, privilege))
        logger.debug("privilege_revoked", principal=principal, target=target, privilege=privilege)

    async def close(self) -> None:
        await self._engine.dispose()
