"""Core modules for Stagecraft - centralized error definitions."""

from stagecraft.core.errors import (
    BackendCallFailed,
    BindingUnresolved,
    ConfigurationError,
    CycleDetected,
    ExitCode,
    ManifestFetchError,
    NodeError,
    PartialFailure,
    PlanningError,
    ProtectedResource,
    ProviderError,
    StagecraftError,
    StuckDeletion,
    TimedOut,
    UnresolvableReference,
    format_error_message,
    main_with_error_handling,
)

__all__ = [
    "ExitCode",
    "StagecraftError",
    "ConfigurationError",
    "ProviderError",
    "ManifestFetchError",
    # Planning
    "PlanningError",
    "CycleDetected",
    "UnresolvableReference",
    # Apply
    "NodeError",
    "BackendCallFailed",
    "BindingUnresolved",
    "TimedOut",
    "StuckDeletion",
    "ProtectedResource",
    "PartialFailure",
    # Helpers
    "format_error_message",
    "main_with_error_handling",
]
