"""Persistent node state."""

from stagecraft.state.store import (
    DEFAULT_STATE_PATH,
    NodeRecord,
    StateSnapshot,
    StateStore,
    load_state,
    recorded_inputs,
    save_state,
)

__all__ = [
    "DEFAULT_STATE_PATH",
    "NodeRecord",
    "StateSnapshot",
    "StateStore",
    "load_state",
    "recorded_inputs",
    "save_state",
]
