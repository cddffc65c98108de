"""
CLI command for inspecting the state file.
"""

from __future__ import annotations

import argparse
import json
from typing import Optional

from stagecraft.cli.context import state_path_for
from stagecraft.cli.ux import console, info, print_table
from stagecraft.graph.models import NodeStatus
from stagecraft.state.store import load_state

_STATUS_STYLE = {
    NodeStatus.READY: "success",
    NodeStatus.FAILED: "error",
    NodeStatus.PLANNED: "muted",
}


def state_show_command(state_path: Optional[str] = None, output_format: str = "table") -> int:
    """Print every tracked node. Sensitive outputs stay redacted."""
    path = state_path_for(state_path)
    store = load_state(path)

    if output_format == "json":
        print(json.dumps({"nodes": [r.to_dict() for r in store.records()]}, indent=2))
        return 0

    if not len(store):
        info(f"No nodes recorded in {path}")
        return 0

    rows = []
    for record in store.records():
        style = _STATUS_STYLE.get(record.status, "warning")
        rows.append(
            [
                record.id,
                str(record.kind),
                str(record.stage),
                f"[{style}]{record.status}[/{style}]",
                record.resource_id or "-",
                record.error or "",
            ]
        )
    print_table(
        f"State: {path}",
        ["Node", "Kind", "Stage", "Status", "Resource", "Error"],
        rows,
    )
    console.print()
    return 0


def register_state_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register state subcommand parser."""
    state_parser = subparsers.add_parser("state", help="Inspect recorded state")
    state_sub = state_parser.add_subparsers(dest="state_command")
    show_parser = state_sub.add_parser("show", help="List tracked nodes and their status")
    show_parser.add_argument("--state", dest="state_path", help="State file path")
    show_parser.add_argument(
        "--format",
        "-f",
        dest="output_format",
        choices=["table", "json"],
        default="table",
        help="Output format (default: table)",
    )


def handle_state_command(args: argparse.Namespace) -> int:
    """Handle state command from CLI args."""
    if getattr(args, "state_command", None) != "show":
        info("Usage: stagecraft state show [--state PATH] [--format table|json]")
        return 1
    return state_show_command(
        state_path=getattr(args, "state_path", None),
        output_format=getattr(args, "output_format", "table"),
    )
