"""
logging-config.yaml loader.

Layout:
    default_level: INFO
    json_format: false
    components:
      sampling: {level: DEBUG, json_format: true}
      cache: ERROR
    modules:
      audio_features.core.cache.store: DEBUG

Environment overrides: LOG_LEVEL_<COMPONENT> / LOG_JSON_FORMAT_<COMPONENT>,
and LOG_LEVEL / LOG_JSON_FORMAT for the default component.
"""

import os
import yaml
from pathlib import Path
from typing import Any, Dict, Optional

CONFIG_FILE_NAME = "logging-config.yaml"
SEARCH_DEPTH = 5

_TRUE_VALUES = ('true', '1', 'yes')


def find_config_file(start: Optional[Path] = None) -> Optional[Path]:
    """First logging-config.yaml in `start` or up to SEARCH_DEPTH parents."""
    current = start or Path(__file__).parent
    for _ in range(SEARCH_DEPTH):
        candidate = current / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate
        current = current.parent
    return None


def _env_override(prefix: str, component: str) -> Optional[str]:
    value = os.getenv(f"{prefix}_{component.upper().replace('-', '_')}")
    if value:
        return value
    if component == 'default':
        return os.getenv(prefix) or None
    return None


class LoggingConfig:
    """Levels and console format per component, plus per-module levels."""

    _instance: Optional['LoggingConfig'] = None

    def __init__(self, config_path: Optional[str] = None):
        path = Path(config_path) if config_path else find_config_file()
        self._config: Dict[str, Any] = {}
        if path is not None and path.exists():
            with open(path) as f:
                self._config = yaml.safe_load(f) or {}

    @classmethod
    def get_instance(cls) -> 'LoggingConfig':
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the singleton so the next access re-reads the file."""
        cls._instance = None

    def _component(self, component: str) -> Any:
        return (self._config.get('components') or {}).get(component)

    def get_level(self, component: str = 'default') -> str:
        """Level name for a component (env, then component entry, then default_level)."""
        override = _env_override('LOG_LEVEL', component)
        if override:
            return override.upper()

        entry = self._component(component)
        if isinstance(entry, str):
            return entry.upper()
        if isinstance(entry, dict) and 'level' in entry:
            return str(entry['level']).upper()
        return str(self._config.get('default_level', 'INFO')).upper()

    def get_json_format(self, component: str = 'default') -> bool:
        override = _env_override('LOG_JSON_FORMAT', component)
        if override:
            return override.lower() in _TRUE_VALUES

        entry = self._component(component)
        if isinstance(entry, dict) and 'json_format' in entry:
            return bool(entry['json_format'])
        return bool(self._config.get('json_format', False))

    def module_levels(self) -> Dict[str, str]:
        return {
            name: str(level).upper()
            for name, level in (self._config.get('modules') or {}).items()
        }

    def get_module_level(self, module_name: str) -> Optional[str]:
        return self.module_levels().get(module_name)


def get_logging_config() -> LoggingConfig:
    return LoggingConfig.get_instance()
