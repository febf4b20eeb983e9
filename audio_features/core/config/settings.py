"""
Settings - Application configuration using dataclasses.

Environment variables:
- AF_TICKS_PER_QUARTER: tick resolution (pulses per quarter note)
- AF_DEFAULT_BPM: tempo used when no tempo map is supplied
- AF_WINDOW_SIZE / AF_HOP_SIZE: default analysis window and hop (samples)
- AF_YIELD_EVERY: frames per cooperative analysis slice
- AF_MAX_WORKERS: thread pool size for concurrent sources (0 = cooperative)
- AF_INTERPOLATION: default sampling interpolation (hold, linear, spline)
- AF_CONFIG_PATH: YAML config with analysis profiles
- LOG_LEVEL, LOG_JSON: logging
"""

import os
from enum import Enum
from typing import Optional
from dataclasses import dataclass, field


class InterpolationMode(str, Enum):
    """Interpolation options for tempo-aligned sampling."""
    HOLD = "hold"
    LINEAR = "linear"
    SPLINE = "spline"


class LogLevel(str, Enum):
    """Log level options."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


@dataclass
class Settings:
    """Application settings from environment."""

    # Timing
    ticks_per_quarter: int = field(
        default_factory=lambda: int(os.getenv("AF_TICKS_PER_QUARTER", "960"))
    )
    default_bpm: float = field(
        default_factory=lambda: float(os.getenv("AF_DEFAULT_BPM", "120"))
    )

    # Analysis
    window_size: int = field(
        default_factory=lambda: int(os.getenv("AF_WINDOW_SIZE", "2048"))
    )
    hop_size: int = field(
        default_factory=lambda: int(os.getenv("AF_HOP_SIZE", "512"))
    )
    yield_every: int = field(
        default_factory=lambda: int(os.getenv("AF_YIELD_EVERY", "100"))
    )

    # Sampling
    interpolation: InterpolationMode = field(
        default_factory=lambda: InterpolationMode(os.getenv("AF_INTERPOLATION", "linear"))
    )

    # Config file
    config_path: Optional[str] = field(
        default_factory=lambda: os.getenv("AF_CONFIG_PATH")
    )

    # Logging
    log_level: LogLevel = field(
        default_factory=lambda: LogLevel(os.getenv("LOG_LEVEL", "INFO").upper())
    )
    log_json: bool = field(
        default_factory=lambda: os.getenv("LOG_JSON", "false").lower() == "true"
    )

    # Performance
    max_workers: int = field(
        default_factory=lambda: int(os.getenv("AF_MAX_WORKERS", "4"))
    )


# Singleton instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get settings singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Forget the cached settings (re-read environment on next access)."""
    global _settings
    _settings = None
