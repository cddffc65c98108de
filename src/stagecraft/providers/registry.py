from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping

from stagecraft.config.settings import Settings, get_settings
from stagecraft.core.errors import ConfigurationError

# Builds a scoped backend from resolved binding values
BindingFactory = Callable[[Mapping[str, Any]], Any]


@dataclass(frozen=True)
class ProviderSpec:
    """Metadata describing a registered binding type."""

    name: str
    factory: BindingFactory
    description: str | None = None


class ProviderRegistry:
    """Maps a ProviderBinding type (`kubernetes`, `postgres`) to a backend factory."""

    def __init__(self) -> None:
        self._providers: Dict[str, ProviderSpec] = {}

    def register(
        self,
        name: str,
        factory: BindingFactory,
        *,
        description: str | None = None,
    ) -> None:
        if not name:
            raise ValueError("Provider name is required")
        self._providers[name] = ProviderSpec(name=name, factory=factory, description=description)

    def create(self, name: str, values: Mapping[str, Any]) -> Any:
        spec = self._providers.get(name)
        if spec is None:
            raise ConfigurationError(
                f"Binding type '{name}' is not registered",
                {"available": sorted(self._providers)},
            )
        return spec.factory(values)

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    def list(self) -> List[ProviderSpec]:
        return list(self._providers.values())


def live_registry(settings: Settings | None = None) -> ProviderRegistry:
    """Registry backed by the real cluster and database clients."""
    from stagecraft.providers.kubernetes import KubernetesWorkloadBackend
    from stagecraft.providers.postgres import SqlGrantInterface

    settings = settings or get_settings()

    def kubernetes_factory(values: Mapping[str, Any]) -> KubernetesWorkloadBackend:
        return KubernetesWorkloadBackend.from_binding(
            {"timeout": settings.backend_call_timeout, **values}
        )

    registry = ProviderRegistry()
    registry.register(
        "kubernetes", kubernetes_factory, description="Cluster workload API (official client)"
    )
    registry.register(
        "postgres", SqlGrantInterface.from_binding, description="PostgreSQL grants (SQLAlchemy)"
    )
    return registry


def memory_registry(workload: Any, grants: Any) -> ProviderRegistry:
    """Registry whose factories bind the given in-memory fakes."""
    registry = ProviderRegistry()
    registry.register("kubernetes", workload.bind, description="In-memory workload API")
    registry.register("postgres", grants.bind, description="In-memory grant interface")
    return registry
