"""
CLI command for applying a topology.

Runs the two-stage apply and persists the state file whatever the outcome,
so an interrupted or partially failed run is resumed by the next apply.
"""

from __future__ import annotations

import asyncio
import json
import signal
import uuid
from typing import List, Optional

import structlog

from stagecraft.cli.context import RunContext, build_backends, load_context
from stagecraft.cli.plan import print_plan_summary
from stagecraft.cli.ux import console, error, header, success, warning
from stagecraft.core.errors import ExitCode
from stagecraft.graph.models import Stage
from stagecraft.logging import bind_run
from stagecraft.orchestration import ApplyResult, BackendSet, Coordinator
from stagecraft.planning import ApplyPlan, Planner
from stagecraft.state.store import save_state

logger = structlog.get_logger()

CANCELLED_EXIT_CODE = 130

STAGE_CHOICES = {
    "infrastructure": [Stage.INFRASTRUCTURE],
    "all": None,
}


def print_apply_summary(result: ApplyResult) -> None:
    """Print the outcome of an apply or destroy pass."""
    verb = "Destroy" if result.destroy else "Apply"
    header(f"{verb} finished in {result.duration_seconds:.1f}s")

    for node_id in result.created:
        console.print(f"  [success]+ {node_id}[/success]")
    for node_id in result.updated:
        console.print(f"  [warning]~ {node_id}[/warning]")
    for node_id in result.destroyed:
        console.print(f"  [error]- {node_id}[/error]")
    for failure in result.failures:
        console.print(f"  [error]✗ {failure.node_id}[/error] [muted]{failure.message}[/muted]")
    for node_id, reason in result.blocked.items():
        console.print(f"  [warning]… {node_id}[/warning] [muted]blocked: {reason}[/muted]")
    for node_id in result.cancelled:
        console.print(f"  [muted]○ {node_id} (cancelled)[/muted]")
    if result.deferred:
        console.print(f"  [muted]{len(result.deferred)} node(s) deferred to a later stage[/muted]")

    console.print()
    if result.success:
        success(f"{len(result.completed)} node(s) converged")
    elif result.cancelled:
        warning("Run cancelled; re-run to continue from the recorded state")
    else:
        error(f"{len(result.failures)} failed, {len(result.blocked)} blocked")
    console.print()


def exit_code_for(result: ApplyResult) -> int:
    """Raise PartialFailure for failed nodes; otherwise map the result to an exit code."""
    if result.cancelled:
        return CANCELLED_EXIT_CODE
    result.raise_for_failures()
    if result.blocked:
        return ExitCode.NODE_FAILED
    return ExitCode.SUCCESS


async def run_coordinated(
    ctx: RunContext,
    plan: ApplyPlan,
    backends: BackendSet,
    *,
    stages: Optional[List[Stage]] = None,
    prune: bool = False,
) -> ApplyResult:
    """Run an apply or destroy plan, cancelling cleanly on SIGINT."""
    bind_run(uuid.uuid4().hex[:12], topology=ctx.topology.name)
    coordinator = Coordinator(backends, ctx.store, ctx.policies)
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, coordinator.cancel)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        handler_installed = False

    try:
        if plan.destroy:
            return await coordinator.destroy(plan)
        return await coordinator.apply(plan, stages=stages, prune=prune)
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)
        await backends.aclose()
        save_state(ctx.store, ctx.state_path)


def apply_command(
    topology: str,
    state_path: Optional[str] = None,
    config_path: Optional[str] = None,
    flags: Optional[List[str]] = None,
    stage: str = "all",
    prune: bool = False,
    backend: str = "live",
    output_format: str = "text",
    verbose: bool = False,
) -> int:
    """
    Converge the topology.

    Args:
        topology: Path to the topology YAML file
        state_path: State file; defaults to STAGECRAFT_STATE_PATH
        config_path: Policy config file (timeouts, concurrency)
        flags: NAME=VALUE overrides for topology flags
        stage: "infrastructure" stops at the stage boundary, "all" runs both
        prune: Destroy recorded nodes that are no longer declared
        backend: "live" for real providers, "memory" for in-process fakes
        output_format: "text" or "json"
        verbose: Show unchanged nodes and attribute diffs in the plan

    Returns:
        Exit code (0 on full convergence)
    """
    ctx = load_context(topology, state_path=state_path, config_path=config_path, flags=flags)
    plan = Planner().plan_topology(ctx.topology, ctx.store)
    if output_format != "json":
        print_plan_summary(plan, f"Apply: {ctx.topology.name}", verbose=verbose)

    backends = build_backends(backend, ctx.store)
    result = asyncio.run(
        run_coordinated(ctx, plan, backends, stages=STAGE_CHOICES[stage], prune=prune)
    )
    logger.info("state_saved", path=str(ctx.state_path), nodes=len(ctx.store))

    if output_format == "json":
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print_apply_summary(result)
    return exit_code_for(result)
