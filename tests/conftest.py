"""
Pytest configuration for audio-feature-cache tests.

Automatically adds project root to sys.path so that 'from audio_features...' imports work.
Defines markers and shared fixtures.
"""
import sys
import numpy as np
import pytest
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from audio_features.common.logging import set_correlation_id
from audio_features.common.primitives import AudioBuffer, TempoMapper
from audio_features.core.cache import (
    AnalysisParams,
    AudioFeatureCache,
    AudioFeatureTrack,
    FeatureCacheStore,
    TempoProjection,
)
from audio_features.core.config import reset_config, reset_settings
from audio_features.modules.analysis import AnalysisScheduler, CalculatorRegistry


# =============================================================================
# Pytest Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "critical: Critical class tests (100% coverage)")
    config.addinivalue_line("markers", "invariant: Architectural invariant tests")
    config.addinivalue_line("markers", "slow: Slow tests (long synthetic audio)")
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Scheduler + store + sampling together")


# =============================================================================
# Global State
# =============================================================================

@pytest.fixture(autouse=True)
def reset_global_state(monkeypatch):
    """Fresh settings/config singletons and no correlation id per test."""
    for name in ("AF_MAX_WORKERS", "AF_YIELD_EVERY", "AF_INTERPOLATION", "AF_CONFIG_PATH"):
        monkeypatch.delenv(name, raising=False)
    reset_settings()
    reset_config()
    set_correlation_id(None)
    yield
    reset_settings()
    reset_config()


@pytest.fixture
def project_root() -> Path:
    """Return project root path."""
    return PROJECT_ROOT


# =============================================================================
# Audio Fixtures
# =============================================================================

SAMPLE_RATE = 44100


def make_sine(frequency: float = 440.0, duration: float = 2.0, sr: int = SAMPLE_RATE,
              amplitude: float = 0.5) -> np.ndarray:
    t = np.arange(int(sr * duration), dtype=np.float64) / sr
    return (amplitude * np.sin(2 * np.pi * frequency * t)).astype(np.float32)


@pytest.fixture
def sine_audio() -> AudioBuffer:
    """2-second 440 Hz mono sine at 44.1 kHz."""
    return AudioBuffer(SAMPLE_RATE, make_sine())


@pytest.fixture
def short_audio() -> AudioBuffer:
    """0.5-second 440 Hz mono sine (fast scheduler tests)."""
    return AudioBuffer(SAMPLE_RATE, make_sine(duration=0.5))


@pytest.fixture
def stereo_audio() -> AudioBuffer:
    """Left 440 Hz, right 880 Hz at half level, with named channels."""
    return AudioBuffer.from_channels(
        SAMPLE_RATE,
        [make_sine(440.0, 1.0), make_sine(880.0, 1.0, amplitude=0.25)],
        channel_aliases={"Left": 0, "Right": 1},
    )


@pytest.fixture
def small_params() -> AnalysisParams:
    return AnalysisParams(window_size=1024, hop_size=512)


# =============================================================================
# Tempo Fixtures
# =============================================================================

@pytest.fixture
def tempo_mapper() -> TempoMapper:
    """Constant 120 BPM at 960 PPQ (1920 ticks per second)."""
    return TempoMapper(ticks_per_quarter=960, default_bpm=120.0)


# =============================================================================
# Store / Registry / Scheduler
# =============================================================================

@pytest.fixture
def store() -> FeatureCacheStore:
    return FeatureCacheStore()


@pytest.fixture
def registry(store) -> CalculatorRegistry:
    return CalculatorRegistry.with_builtins(store)


@pytest.fixture
def scheduler(registry, store):
    """Cooperative scheduler (nothing runs until run_pending/run_until_idle)."""
    scheduler = AnalysisScheduler(registry, store, max_workers=0, yield_every=32)
    yield scheduler
    scheduler.shutdown()


# =============================================================================
# Hand-built Caches
# =============================================================================

def make_track(key: str = "rms", values=None, calculator_id: str = None, version: int = 1,
               hop_seconds: float = 0.5, hop_ticks: float = 960.0, fmt: str = "float32",
               channels: int = 1, **kwargs) -> AudioFeatureTrack:
    """Track whose frame i holds `values[i]` (default: 0, 1, 2, ... 9)."""
    if values is None:
        values = np.arange(10, dtype=np.float32)
    data = np.asarray(values)
    frame_count = data.shape[0]
    return AudioFeatureTrack(
        key=key,
        calculator_id=calculator_id or key.split(":")[0],
        version=version,
        frame_count=frame_count,
        channels=channels,
        format=fmt,
        hop_seconds=hop_seconds,
        hop_ticks=hop_ticks,
        data=data,
        **kwargs,
    )


def make_cache(tracks=None, source_id: str = "kick", hop_seconds: float = 0.5,
               hop_ticks: float = 960.0, tempo_map_hash=None, start_tick: float = 0.0,
               **kwargs) -> AudioFeatureCache:
    tracks = tracks if tracks is not None else [make_track()]
    frame_count = max((t.frame_count for t in tracks), default=0)
    return AudioFeatureCache(
        source_id=source_id,
        hop_seconds=hop_seconds,
        hop_ticks=hop_ticks,
        frame_count=frame_count,
        tempo_projection=TempoProjection(start_tick, tempo_map_hash),
        feature_tracks={t.key: t for t in tracks},
        **kwargs,
    )


@pytest.fixture
def track_factory():
    return make_track


@pytest.fixture
def cache_factory():
    return make_cache
