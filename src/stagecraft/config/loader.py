"""
Configuration file loading and merging.

Search order:
1. Explicit path (--config flag)
2. .stagecraft/config.yaml (project root)
3. ~/.stagecraft/config.yaml (user home)
4. Defaults from Settings (STAGECRAFT_* environment)
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog
import yaml

from stagecraft.config.policies import PolicyConfig
from stagecraft.config.settings import Settings, get_settings
from stagecraft.core.errors import ConfigurationError

logger = structlog.get_logger()


def get_config_path(explicit_path: str | Path | None = None) -> Path | None:
    """
    Find the configuration file to use.

    Returns:
        Path to config file or None if not found
    """
    if explicit_path:
        path = Path(explicit_path)
        if path.exists():
            return path
        raise ConfigurationError(f"Config file not found: {path}", {"path": str(path)})

    cwd_config = Path.cwd() / ".stagecraft" / "config.yaml"
    if cwd_config.exists():
        return cwd_config

    home_config = Path.home() / ".stagecraft" / "config.yaml"
    if home_config.exists():
        return home_config

    return None


class ConfigLoader:
    """
    Loads policy configuration from a YAML file layered over Settings.
    """

    def __init__(self, config_path: Path | None = None, settings: Settings | None = None):
        self.config_path = config_path
        self.settings = settings or get_settings()

    def load(self) -> PolicyConfig:
        """Load configuration from file or return Settings-derived defaults."""
        base = PolicyConfig.from_settings(self.settings)
        if self.config_path is None or not self.config_path.exists():
            return base
        data = self._read(self.config_path)
        logger.debug("loaded_config", path=str(self.config_path))
        return PolicyConfig.from_dict(data.get("policies", {}) or {}, base=base)

    def _read(self, path: Path) -> dict[str, Any]:
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}", {"path": str(path)}) from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {path} must contain a mapping")
        return data


def load_config(path: str | Path | None = None) -> PolicyConfig:
    """
    Convenience function to load policy configuration.

    Args:
        path: Optional explicit config file path

    Returns:
        PolicyConfig instance
    """
    loader = ConfigLoader(get_config_path(path))
    return loader.load()
