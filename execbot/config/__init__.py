"""
Configuration package.

This package contains environment settings and per-instrument YAML overrides.
"""

from execbot.config.config import Settings, env_bool
from execbot.config.instrument_config import apply_overrides, load_instrument_overrides, unknown_keys

__all__ = [
    "Settings",
    "env_bool",
    "apply_overrides",
    "load_instrument_overrides",
    "unknown_keys",
]
