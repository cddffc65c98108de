"""
CLI commands for Stagecraft.
"""

from stagecraft.cli.apply import apply_command
from stagecraft.cli.destroy import destroy_command
from stagecraft.cli.plan import plan_command
from stagecraft.cli.state import state_show_command

__all__ = [
    "apply_command",
    "destroy_command",
    "plan_command",
    "state_show_command",
]
