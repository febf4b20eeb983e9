"""YAML configuration (analysis profiles, calculator defaults)."""

import os
import yaml
from pathlib import Path
from typing import Any, Dict, Optional

from audio_features.core.errors import ConfigurationError


class Config:
    """Configuration manager backed by a YAML file."""

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize configuration.

        Args:
            config_path: Path to custom config file. If None, uses default config.
        """
        self._config: Dict[str, Any] = {}
        self.path: Optional[Path] = None
        self._load_config(config_path)

    def _load_config(self, config_path: Optional[str] = None) -> None:
        """Load configuration from YAML file."""
        if config_path is None:
            project_root = Path(__file__).parent.parent.parent.parent
            path = project_root / "config" / "default_config.yaml"
        else:
            path = Path(os.path.expanduser(str(config_path)))

        if not path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {path}",
                data={"config_path": str(path)},
            )

        with open(path, 'r') as f:
            loaded = yaml.safe_load(f)

        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigurationError(
                f"Configuration root must be a mapping: {path}",
                data={"config_path": str(path)},
            )

        self._config = loaded or {}
        self.path = path

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> 'Config':
        """Build a config from an in-memory mapping (no file)."""
        config = cls.__new__(cls)
        config._config = dict(values)
        config.path = None
        return config

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key_path: Dot-separated path to config value (e.g., 'analysis.hop_size')
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        value: Any = self._config

        for key in key_path.split('.'):
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value

    def set(self, key_path: str, value: Any) -> None:
        """
        Set configuration value using dot notation.

        Args:
            key_path: Dot-separated path to config value
            value: Value to set
        """
        keys = key_path.split('.')
        config = self._config

        for key in keys[:-1]:
            if key not in config:
                config[key] = {}
            config = config[key]

        config[keys[-1]] = value

    def save(self, output_path: str) -> None:
        """
        Save current configuration to file.

        Args:
            output_path: Path to save configuration
        """
        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, 'w') as f:
            yaml.dump(self._config, f, default_flow_style=False, sort_keys=False)

    @property
    def analysis(self) -> Dict[str, Any]:
        """Get default analysis settings."""
        return self._config.get('analysis', {})

    @property
    def profiles(self) -> Dict[str, Any]:
        """Get analysis profile definitions."""
        return self._config.get('profiles', {})

    @property
    def sampling(self) -> Dict[str, Any]:
        """Get sampling settings."""
        return self._config.get('sampling', {})

    @property
    def channel_aliases(self) -> Dict[str, int]:
        """Get extra well-known channel aliases."""
        return self._config.get('channel_aliases', {})


# Global config instance
_config_instance: Optional[Config] = None


def get_config(config_path: Optional[str] = None) -> Config:
    """
    Get global configuration instance.

    Args:
        config_path: Path to custom config file (only used on first call)

    Returns:
        Config instance
    """
    global _config_instance

    if _config_instance is None:
        _config_instance = Config(config_path)

    return _config_instance


def reset_config() -> None:
    """Forget the global configuration instance."""
    global _config_instance
    _config_instance = None
