"""External collaborator contracts and their adapters."""

from stagecraft.providers.base import (
    CreateResult,
    GrantInterface,
    ManifestFetcher,
    ResourceBackend,
    ResourceState,
    WorkloadBackend,
)
from stagecraft.providers.registry import (
    ProviderRegistry,
    ProviderSpec,
    live_registry,
    memory_registry,
)

__all__ = [
    "CreateResult",
    "GrantInterface",
    "ManifestFetcher",
    "ProviderRegistry",
    "ProviderSpec",
    "ResourceBackend",
    "ResourceState",
    "WorkloadBackend",
    "live_registry",
    "memory_registry",
]
