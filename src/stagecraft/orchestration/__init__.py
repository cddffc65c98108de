"""Two-phase apply orchestration."""

from stagecraft.orchestration.bindings import (
    BackendSet,
    BindingResolver,
    live_backends,
    memory_backends,
)
from stagecraft.orchestration.coordinator import Coordinator
from stagecraft.orchestration.results import ApplyResult, ResultCollector

__all__ = [
    "ApplyResult",
    "BackendSet",
    "BindingResolver",
    "Coordinator",
    "ResultCollector",
    "live_backends",
    "memory_backends",
]
