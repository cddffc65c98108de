"""
CLI command for planning (dry-run) an apply or destroy.
"""

import json
from typing import List, Optional

from stagecraft.cli.context import load_context
from stagecraft.cli.ux import console, header, info
from stagecraft.planning import ApplyPlan, Operation, Planner

_OPERATION_STYLE = {
    Operation.CREATE: ("success", "+"),
    Operation.UPDATE: ("warning", "~"),
    Operation.NOOP: ("muted", " "),
    Operation.DESTROY: ("error", "-"),
}


def print_plan_summary(plan: ApplyPlan, title: str, verbose: bool = False) -> None:
    """Print the plan grouped by stage."""
    header(title)

    for stage in plan.stage_order:
        steps = plan.steps_for(stage)
        if not steps:
            continue
        console.print(f"\n[bold]{stage.value.capitalize()} stage[/bold]")
        for step in steps:
            if step.operation == Operation.NOOP and not verbose:
                continue
            style, marker = _OPERATION_STYLE[step.operation]
            suffix = ""
            if step.node_id in plan.promoted:
                suffix = " [highlight](moved: needs a binding from an earlier stage)[/highlight]"
            elif step.reason:
                suffix = f" [muted]({step.reason})[/muted]"
            console.print(
                f"  [{style}]{marker} {step.node_id}[/{style}] [muted]{step.node.kind}[/muted]{suffix}"
            )
            if verbose:
                for attr, change in step.diff.items():
                    console.print(
                        f"      [muted]{attr}:[/muted] {change['old']!r} → {change['new']!r}"
                    )

    if plan.orphans:
        console.print("\n[bold]No longer declared[/bold] [muted](destroyed with --prune)[/muted]")
        for step in plan.orphans:
            console.print(f"  [error]- {step.node_id}[/error] [muted]{step.node.kind}[/muted]")

    console.print()
    summary = ", ".join(f"{plan.count(op)} to {op.value}" for op in Operation if op != Operation.NOOP)
    if plan.has_changes:
        console.print(f"[bold]Plan:[/bold] {summary}")
    else:
        info("No changes. Infrastructure matches the topology.")
    console.print()


def plan_command(
    topology: str,
    state_path: Optional[str] = None,
    config_path: Optional[str] = None,
    flags: Optional[List[str]] = None,
    destroy: bool = False,
    output_format: str = "text",
    verbose: bool = False,
) -> int:
    """
    Preview the steps an apply (or destroy) would take.

    Planning never calls a backend. Cycles and unresolvable references raise
    PlanningError, which the CLI maps to exit code 12.
    """
    ctx = load_context(topology, state_path=state_path, config_path=config_path, flags=flags)
    planner = Planner()
    if destroy:
        plan = planner.plan_destroy(ctx.topology.node_list(), ctx.store, ctx.topology.bindings)
    else:
        plan = planner.plan_topology(ctx.topology, ctx.store)

    if output_format == "json":
        print(json.dumps(plan.to_dict(), indent=2, default=str))
    else:
        verb = "Destroy" if destroy else "Plan"
        print_plan_summary(plan, f"{verb}: {ctx.topology.name}", verbose=verbose)
    return 0
