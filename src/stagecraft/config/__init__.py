"""
Stagecraft Configuration System.

Provides:
- Pydantic-based settings (environment variables, .env files)
- Policy configuration (readiness budgets, deletion windows, concurrency)
- Per-project and user-level config files
"""

from stagecraft.config.loader import ConfigLoader, get_config_path, load_config
from stagecraft.config.policies import DeletionWindow, PolicyConfig, ReadinessPolicy
from stagecraft.config.settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
    "PolicyConfig",
    "ReadinessPolicy",
    "DeletionWindow",
    "ConfigLoader",
    "load_config",
    "get_config_path",
]
