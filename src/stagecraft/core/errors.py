"""
Unified error handling for Stagecraft.

Every failure raised by the planner, coordinator or executor is a
StagecraftError carrying an exit code, so the CLI can map any outcome to a
process status without inspecting messages.

Exit Codes:
- 0: Success (full convergence)
- 2: Blocked (destroy attempted against a protected resource)
- 10: Configuration error
- 11: Provider error (external service failure outside a node operation)
- 12: Plan error (cycle or unresolvable reference, nothing was applied)
- 13: Node failed (one or more nodes ended in Failed)
- 14: Timed out (readiness or deletion wait exceeded its budget)
- 127: Unknown/internal error
"""

from __future__ import annotations

import functools
import sys
import traceback
from enum import IntEnum
from typing import Any, Callable, Sequence, TypeVar

import structlog

logger = structlog.get_logger()


class ExitCode(IntEnum):
    """Standardized exit codes for CLI commands."""

    SUCCESS = 0
    BLOCKED = 2
    CONFIG_ERROR = 10
    PROVIDER_ERROR = 11
    PLAN_ERROR = 12
    NODE_FAILED = 13
    TIMED_OUT = 14
    UNKNOWN_ERROR = 127


class StagecraftError(Exception):
    """Base exception for Stagecraft errors with exit code support."""

    exit_code: ExitCode = ExitCode.UNKNOWN_ERROR
    show_traceback: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(StagecraftError):
    """Raised for invalid topology documents or settings."""

    exit_code = ExitCode.CONFIG_ERROR


class ProviderError(StagecraftError):
    """Raised when an external collaborator fails outside a node operation."""

    exit_code = ExitCode.PROVIDER_ERROR


class ManifestFetchError(ProviderError):
    """Raised when a remote manifest cannot be fetched or parsed."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"Manifest fetch failed for {url}: {reason}", {"url": url})
        self.url = url
        self.reason = reason


class PlanningError(StagecraftError):
    """Raised at plan time; no backend mutation has happened."""

    exit_code = ExitCode.PLAN_ERROR


class CycleDetected(PlanningError):
    """The dependency graph is not a DAG."""

    def __init__(self, cycle: Sequence[str]):
        path = " -> ".join([*cycle, cycle[0]]) if cycle else "?"
        super().__init__(f"Dependency cycle detected: {path}", {"cycle": list(cycle)})
        self.cycle = list(cycle)


class UnresolvableReference(PlanningError):
    """A reference points at a node or binding that cannot exist in time."""

    def __init__(self, node_id: str, target: str, reason: str):
        super().__init__(
            f"Node '{node_id}' references '{target}': {reason}",
            {"node_id": node_id, "target": target},
        )
        self.node_id = node_id
        self.target = target
        self.reason = reason


class NodeError(StagecraftError):
    """An apply-time failure attributed to one node."""

    exit_code = ExitCode.NODE_FAILED

    def __init__(self, node_id: str, kind: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            f"[{kind} {node_id}] {message}",
            {"node_id": node_id, "kind": kind, **(details or {})},
        )
        self.node_id = node_id
        self.kind = kind


class BackendCallFailed(NodeError):
    """Wraps the collaborator error raised during a node operation."""

    def __init__(self, node_id: str, kind: str, operation: str, cause: BaseException):
        super().__init__(
            node_id,
            kind,
            f"{operation} failed: {cause}",
            {"operation": operation, "cause": type(cause).__name__},
        )
        self.operation = operation
        self.cause = cause


class TimedOut(NodeError):
    """A readiness or deletion wait exceeded its budget."""

    exit_code = ExitCode.TIMED_OUT

    def __init__(self, node_id: str, kind: str, waiting_for: str, elapsed: float, budget: float):
        super().__init__(
            node_id,
            kind,
            f"timed out waiting for {waiting_for} after {elapsed:.1f}s (budget {budget:.1f}s)",
            {"waiting_for": waiting_for, "elapsed": round(elapsed, 3), "budget": budget},
        )
        self.waiting_for = waiting_for
        self.elapsed = elapsed
        self.budget = budget


class StuckDeletion(NodeError):
    """Destroy did not complete even after forced finalizer removal."""

    def __init__(self, node_id: str, kind: str, elapsed: float):
        super().__init__(
            node_id,
            kind,
            f"still present {elapsed:.1f}s after delete and forced finalizer clear; "
            "manual intervention required",
            {"elapsed": round(elapsed, 3)},
        )
        self.elapsed = elapsed


class ProtectedResource(NodeError):
    """Destroy attempted against a node with deletion_policy=protect."""

    exit_code = ExitCode.BLOCKED

    def __init__(self, node_id: str, kind: str):
        super().__init__(node_id, kind, "deletion_policy is protect; refusing to destroy")


class BindingUnresolved(NodeError):
    """The node's provider binding could not be resolved; it was never attempted."""

    def __init__(self, node_id: str, kind: str, binding: str, missing: Sequence[str] = ()):
        reason = f"missing {', '.join(missing)}" if missing else "binding is not available"
        super().__init__(
            node_id,
            kind,
            f"provider binding '{binding}' is unresolved ({reason}); not attempted",
            {"binding": binding, "missing": list(missing)},
        )
        self.binding = binding
        self.missing = list(missing)


class PartialFailure(StagecraftError):
    """Raised after an apply pass in which at least one node failed."""

    def __init__(self, completed_node_ids: Sequence[str], failures: Sequence[NodeError]):
        ids = ", ".join(f.node_id for f in failures)
        super().__init__(
            f"{len(failures)} node(s) failed: {ids}",
            {"completed": len(completed_node_ids), "failed": [f.node_id for f in failures]},
        )
        self.completed_node_ids = list(completed_node_ids)
        self.failures = list(failures)
        self.exit_code = _aggregate_exit_code(self.failures)

    @property
    def failed_node_id(self) -> str | None:
        return self.failures[0].node_id if self.failures else None

    @property
    def cause(self) -> NodeError | None:
        return self.failures[0] if self.failures else None


def _aggregate_exit_code(failures: Sequence[NodeError]) -> ExitCode:
    codes = {f.exit_code for f in failures}
    if ExitCode.NODE_FAILED in codes:
        return ExitCode.NODE_FAILED
    if ExitCode.TIMED_OUT in codes:
        return ExitCode.TIMED_OUT
    if ExitCode.BLOCKED in codes:
        return ExitCode.BLOCKED
    return ExitCode.NODE_FAILED


# Type variable for decorated functions
F = TypeVar("F", bound=Callable[..., int])


def main_with_error_handling(
    *,
    show_traceback: bool = False,
    log_errors: bool = True,
) -> Callable[[F], F]:
    """
    Decorator for CLI main functions that provides unified error handling.

    Catches exceptions and converts them to appropriate exit codes with
    consistent error reporting.

    Args:
        show_traceback: If True, show full traceback for unexpected errors
        log_errors: If True, log errors to structlog

    Exit codes:
        - StagecraftError subclasses: Uses the error's exit_code
        - KeyboardInterrupt: Returns 130 (standard for SIGINT)
        - Other exceptions: Returns 127 (unknown error)
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> int:
            try:
                return func(*args, **kwargs)
            except StagecraftError as e:
                if log_errors:
                    logger.error(
                        "command_error",
                        error_type=type(e).__name__,
                        message=e.message,
                        exit_code=int(e.exit_code),
                        **e.details,
                    )
                if e.show_traceback or show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return e.exit_code
            except KeyboardInterrupt:
                if log_errors:
                    logger.info("command_interrupted")
                return 130  # Standard exit code for SIGINT
            except Exception as e:
                if log_errors:
                    logger.error(
                        "unexpected_error",
                        error_type=type(e).__name__,
                        message=str(e),
                        exit_code=int(ExitCode.UNKNOWN_ERROR),
                    )
                if show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return ExitCode.UNKNOWN_ERROR

        return wrapper  # type: ignore[return-value]

    return decorator


def format_error_message(error: StagecraftError) -> str:
    """Format an error message for display to users."""
    msg = error.message
    if error.details:
        detail_str = ", ".join(f"{k}={v}" for k, v in error.details.items())
        msg = f"{msg} ({detail_str})"
    return msg
