"""Dependency resolution and apply planning."""

from stagecraft.planning.plan import UNKNOWN, ApplyPlan, Operation, PlanStep
from stagecraft.planning.planner import Planner, diff_inputs, preview_inputs, sort_graph

__all__ = [
    "UNKNOWN",
    "ApplyPlan",
    "Operation",
    "PlanStep",
    "Planner",
    "diff_inputs",
    "preview_inputs",
    "sort_graph",
]
