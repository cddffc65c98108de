"""
Timing and concurrency policies for an apply run.

Defaults come from Settings (environment); a config file may override any
of them per project. Durations are seconds.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from stagecraft.config.settings import Settings, get_settings


@dataclass
class ReadinessPolicy:
    """Fixed-interval readiness polling budgets."""

    interval: float = 5.0
    default_timeout: float = 300.0
    timeouts: dict[str, float] = field(default_factory=dict)

    def timeout_for(self, kind: str) -> float:
        return self.timeouts.get(kind, self.default_timeout)

    def to_dict(self) -> dict[str, Any]:
        return {
            "interval": self.interval,
            "default_timeout": self.default_timeout,
            "timeouts": dict(self.timeouts),
        }


@dataclass
class DeletionWindow:
    """Bounded windows for delete confirmation and stuck-deletion recovery."""

    timeout: float = 300.0
    recovery_timeout: float = 120.0
    interval: float = 5.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "timeout": self.timeout,
            "recovery_timeout": self.recovery_timeout,
            "interval": self.interval,
        }


@dataclass
class PolicyConfig:
    """Complete policy set consumed by the coordinator and executor."""

    max_concurrency: int = 10
    backend_call_timeout: float = 120.0
    readiness: ReadinessPolicy = field(default_factory=ReadinessPolicy)
    deletion: DeletionWindow = field(default_factory=DeletionWindow)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> PolicyConfig:
        settings = settings or get_settings()
        return cls(
            max_concurrency=settings.max_concurrency,
            backend_call_timeout=settings.backend_call_timeout,
            readiness=ReadinessPolicy(
                interval=settings.poll_interval_seconds,
                default_timeout=settings.default_ready_timeout,
                timeouts={
                    "Cluster": settings.cluster_ready_timeout,
                    "CustomResourceDefinition": settings.crd_established_timeout,
                    "Certificate": settings.certificate_ready_timeout,
                },
            ),
            deletion=DeletionWindow(
                timeout=settings.deletion_timeout,
                recovery_timeout=settings.finalizer_recovery_timeout,
                interval=settings.poll_interval_seconds,
            ),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any], base: PolicyConfig | None = None) -> PolicyConfig:
        """Overlay a config-file `policies:` section on top of `base`."""
        base = base or cls.from_settings()
        readiness_data = data.get("readiness", {}) or {}
        deletion_data = data.get("deletion", {}) or {}

        timeouts = dict(base.readiness.timeouts)
        timeouts.update({str(k): float(v) for k, v in (readiness_data.get("timeouts") or {}).items()})

        return cls(
            max_concurrency=int(data.get("max_concurrency", base.max_concurrency)),
            backend_call_timeout=float(data.get("backend_call_timeout", base.backend_call_timeout)),
            readiness=ReadinessPolicy(
                interval=float(readiness_data.get("interval", base.readiness.interval)),
                default_timeout=float(
                    readiness_data.get("default_timeout", base.readiness.default_timeout)
                ),
                timeouts=timeouts,
            ),
            deletion=DeletionWindow(
                timeout=float(deletion_data.get("timeout", base.deletion.timeout)),
                recovery_timeout=float(
                    deletion_data.get("recovery_timeout", base.deletion.recovery_timeout)
                ),
                interval=float(deletion_data.get("interval", base.deletion.interval)),
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_concurrency": self.max_concurrency,
            "backend_call_timeout": self.backend_call_timeout,
            "readiness": self.readiness.to_dict(),
            "deletion": self.deletion.to_dict(),
        }
