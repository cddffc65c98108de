"""Stagecraft: two-stage convergent infrastructure orchestrator."""

__version__ = "0.1.0"
