"""
CLI command for tearing down everything the state file tracks.
"""

from __future__ import annotations

import asyncio
import json
from typing import List, Optional

from stagecraft.cli.apply import exit_code_for, print_apply_summary, run_coordinated
from stagecraft.cli.context import build_backends, load_context
from stagecraft.cli.plan import print_plan_summary
from stagecraft.cli.ux import confirm, info, is_interactive, warning
from stagecraft.core.errors import ExitCode
from stagecraft.planning import Planner


def destroy_command(
    topology: str,
    state_path: Optional[str] = None,
    config_path: Optional[str] = None,
    flags: Optional[List[str]] = None,
    backend: str = "live",
    yes: bool = False,
    output_format: str = "text",
) -> int:
    """
    Destroy tracked nodes, dependents before dependencies.

    Without --yes the user is asked to confirm; when nobody can answer the
    command refuses and exits with BLOCKED.
    """
    ctx = load_context(topology, state_path=state_path, config_path=config_path, flags=flags)
    plan = Planner().plan_destroy(ctx.topology.node_list(), ctx.store, ctx.topology.bindings)

    if not plan.steps():
        info("Nothing to destroy; the state file tracks no resources.")
        return ExitCode.SUCCESS

    if output_format != "json":
        print_plan_summary(plan, f"Destroy: {ctx.topology.name}")

    if not yes:
        if not is_interactive():
            warning("Refusing to destroy without --yes in a non-interactive session")
            return ExitCode.BLOCKED
        if not confirm(f"Destroy {len(plan.steps())} resource(s)?"):
            info("Destroy aborted")
            return ExitCode.BLOCKED

    backends = build_backends(backend, ctx.store)
    result = asyncio.run(run_coordinated(ctx, plan, backends))

    if output_format == "json":
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print_apply_summary(result)
    return exit_code_for(result)
