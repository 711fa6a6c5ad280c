"""
Configuration

YAML-backed configuration with dot-notation access, e.g.
``config.get("scheduler.window_days", 3)``. Every caller supplies its own
default, so a missing or partial config file is always valid.
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from rhythm.logger import get_logger


DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"


class ConfigError(Exception):
    """Raised when the config file exists but cannot be parsed."""


class Config:
    """Nested dict wrapper with dotted-key lookups."""

    def __init__(self, values: Optional[Dict[str, Any]] = None, path: Optional[Path] = None):
        self._values = values or {}
        self.path = path

    def get(self, key: str, default=None):
        node = self._values
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def set(self, key: str, value):
        """Set a dotted key, creating intermediate sections as needed."""
        parts = key.split(".")
        node = self._values
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = value

    def as_dict(self) -> Dict[str, Any]:
        return self._values

    def __repr__(self):
        return f"Config(path={self.path!s})"


def load_config(path=None) -> Config:
    """Load config from ``path``, ``$RHYTHM_CONFIG`` or ./config.yaml.

    A missing file yields an empty Config (all defaults).
    """
    if path is None:
        path = os.environ.get("RHYTHM_CONFIG") or DEFAULT_CONFIG_PATH
    path = Path(path)

    if not path.exists():
        get_logger(__name__).warning(f"Config file not found at {path}, using defaults")
        return Config({}, path)

    try:
        with open(path) as f:
            values = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e

    if not isinstance(values, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at top level")

    return Config(values, path)
