"""Root test configuration."""

import logging

import pytest
import structlog
from stagecraft.config.policies import DeletionWindow, PolicyConfig, ReadinessPolicy
from stagecraft.graph.loader import build_topology


def pytest_configure(config):
    """Configure structlog for tests to suppress debug/info output."""
    logging.basicConfig(level=logging.WARNING, force=True)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


class FakeClock:
    """Manual clock; `sleep` advances time instead of waiting."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def policies():
    """Short, deterministic budgets for executor and coordinator tests."""
    return PolicyConfig(
        max_concurrency=4,
        backend_call_timeout=5.0,
        readiness=ReadinessPolicy(interval=1.0, default_timeout=10.0),
        deletion=DeletionWindow(timeout=5.0, recovery_timeout=3.0, interval=1.0),
    )


KEYCLOAK_TOPOLOGY = {
    "topology": {"name": "keycloak"},
    "flags": {"deploy_keycloak": True},
    "bindings": [
        {
            "name": "cluster",
            "type": "kubernetes",
            "sources": {
                "host": "${gke.endpoint}",
                "ca_certificate": "${gke.ca_certificate}",
                "token": "${gke.access_token}",
            },
        },
        {
            "name": "database",
            "type": "postgres",
            "sources": {
                "host": "${sql.host}",
                "username": "${admin.name}",
                "password": "${admin.password}",
            },
        },
    ],
    "resources": [
        {"id": "vpc", "kind": "Network", "spec": {"auto_create_subnetworks": False}},
        {
            "id": "subnet",
            "kind": "Subnet",
            "spec": {"network": "${vpc.self_link}", "ip_cidr_range": "10.0.0.0/20"},
        },
        {
            "id": "gke",
            "kind": "Cluster",
            "depends_on": ["subnet"],
            "spec": {"network": "${vpc.self_link}", "subnetwork": "${subnet.self_link}"},
        },
        {"id": "sql", "kind": "DatabaseInstance", "depends_on": ["vpc"]},
        {"id": "admin", "kind": "DatabaseUser", "depends_on": ["sql"], "spec": {"name": "admin"}},
        {"id": "keycloak-db", "kind": "Database", "depends_on": ["sql"], "spec": {"name": "keycloak"}},
        {
            "id": "keycloak-ns",
            "kind": "Namespace",
            "provider": "cluster",
            "when": "deploy_keycloak",
            "spec": {"name": "keycloak"},
        },
        {
            "id": "db-credentials",
            "kind": "Secret",
            "provider": "cluster",
            "depends_on": ["keycloak-ns"],
            "spec": {
                "namespace": "keycloak",
                "data": {"host": "${sql.host}", "database": "${keycloak-db.name}"},
            },
        },
        {
            "id": "realm-grants",
            "kind": "DatabaseGrant",
            "provider": "database",
            "for_each": ["keycloak", "audit"],
            "depends_on": ["keycloak-db"],
            "spec": {
                "principal": "${each}",
                "target": "database:${keycloak-db.name}",
                "privileges": ["CONNECT"],
            },
        },
    ],
}


@pytest.fixture
def keycloak_document():
    import copy

    return copy.deepcopy(KEYCLOAK_TOPOLOGY)


@pytest.fixture
def keycloak_topology(keycloak_document):
    return build_topology(keycloak_document)
