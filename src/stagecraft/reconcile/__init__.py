"""Per-node reconciliation: executor, readiness poller and grants."""

from stagecraft.reconcile.executor import ReconciliationExecutor
from stagecraft.reconcile.grants import GrantBackend, ensure_grant_prerequisites, expand_grant_set
from stagecraft.reconcile.poller import (
    PollOutcome,
    PollResult,
    ProbeStatus,
    ensure_ready,
    wait_until_ready,
)

__all__ = [
    "GrantBackend",
    "PollOutcome",
    "PollResult",
    "ProbeStatus",
    "ReconciliationExecutor",
    "ensure_grant_prerequisites",
    "expand_grant_set",
    "ensure_ready",
    "wait_until_ready",
]
