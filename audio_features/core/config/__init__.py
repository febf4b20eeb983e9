"""
Config - Application configuration.

- settings.py: dataclass settings from environment
- config.py: YAML file with analysis profiles and defaults
"""

from .settings import (
    Settings,
    InterpolationMode,
    LogLevel,
    get_settings,
    reset_settings,
)
from .config import Config, get_config, reset_config

__all__ = [
    # Settings
    "Settings",
    "InterpolationMode",
    "LogLevel",
    "get_settings",
    "reset_settings",
    # YAML config
    "Config",
    "get_config",
    "reset_config",
]
