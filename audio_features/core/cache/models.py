"""
Domain Models for the Feature Cache.

Immutable value objects. A cache update never mutates an existing
AudioFeatureCache; it builds a new instance and the store swaps the
reference.

Domain entities:
- AudioFeatureTrack: one feature's time series for one source
- AudioFeatureCache: all tracks of one source + shared hop/tempo metadata
- CacheStatus: lifecycle state with structured stale reason
- AnalysisParams: window/hop/FFT settings recorded with a cache
- TempoProjection: tempo-map alignment a cache was quantized against
"""

import math
import time
import numpy as np
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Union

from audio_features.core.errors import ValidationError

CACHE_PAYLOAD_VERSION = 2
DEFAULT_PROFILE_ID = "default"


class FeatureFormat(str, Enum):
    """Encoding of a track's data buffer."""
    FLOAT32 = "float32"
    UINT8 = "uint8"
    INT16 = "int16"
    MINMAX = "minmax"

    @property
    def dtype(self) -> np.dtype:
        return np.dtype({
            FeatureFormat.FLOAT32: np.float32,
            FeatureFormat.UINT8: np.uint8,
            FeatureFormat.INT16: np.int16,
            FeatureFormat.MINMAX: np.float32,
        }[self])

    @property
    def element_size(self) -> int:
        return self.dtype.itemsize


class CacheState(str, Enum):
    """Lifecycle of one source's cache."""
    IDLE = "idle"
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"
    STALE = "stale"


class StaleReason(str, Enum):
    """Why cached content is known to be outdated."""
    CALCULATOR_UPGRADED = "calculator-upgraded"
    TEMPO_CHANGED = "tempo-changed"
    MANUAL = "manual"


@dataclass(frozen=True)
class CacheStatus:
    """Status of one source's cache."""
    state: CacheState = CacheState.IDLE
    reason: Optional[StaleReason] = None
    progress: Optional[float] = None
    message: Optional[str] = None
    calculator_id: Optional[str] = None
    job_id: Optional[str] = None
    source_hash: Optional[str] = None
    updated_at: float = field(default_factory=time.time)

    @classmethod
    def idle(cls) -> 'CacheStatus':
        return cls(CacheState.IDLE)

    @classmethod
    def pending(cls, job_id: Optional[str] = None, progress: float = 0.0) -> 'CacheStatus':
        return cls(CacheState.PENDING, progress=progress, job_id=job_id)

    @classmethod
    def ready(cls, source_hash: Optional[str] = None) -> 'CacheStatus':
        return cls(CacheState.READY, progress=1.0, source_hash=source_hash)

    @classmethod
    def failed(cls, calculator_id: Optional[str], message: str) -> 'CacheStatus':
        return cls(CacheState.FAILED, message=message, calculator_id=calculator_id)

    @classmethod
    def stale(
        cls,
        reason: StaleReason,
        message: Optional[str] = None,
        calculator_id: Optional[str] = None,
        source_hash: Optional[str] = None,
    ) -> 'CacheStatus':
        return cls(
            CacheState.STALE,
            reason=reason,
            message=message,
            calculator_id=calculator_id,
            source_hash=source_hash,
        )

    def with_progress(self, progress: float) -> 'CacheStatus':
        return replace(self, progress=max(0.0, min(1.0, progress)), updated_at=time.time())

    def to_dict(self) -> dict:
        return {
            'state': self.state.value,
            'reason': self.reason.value if self.reason else None,
            'progress': self.progress,
            'message': self.message,
            'calculator_id': self.calculator_id,
            'job_id': self.job_id,
            'source_hash': self.source_hash,
            'updated_at': self.updated_at,
        }


@dataclass(frozen=True)
class TempoProjection:
    """Tempo alignment recorded with a cache."""
    start_tick: float = 0.0
    tempo_map_hash: Optional[str] = None

    def to_dict(self) -> dict:
        return {'startTick': self.start_tick, 'tempoMapHash': self.tempo_map_hash}

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> 'TempoProjection':
        d = d or {}
        return cls(
            start_tick=float(d.get('startTick', 0.0) or 0.0),
            tempo_map_hash=d.get('tempoMapHash'),
        )


@dataclass(frozen=True)
class AnalysisParams:
    """Parameters an analysis pass ran with."""
    window_size: int = 2048
    hop_size: int = 512
    fft_size: Optional[int] = None
    sample_rate: Optional[int] = None
    min_decibels: float = -80.0
    max_decibels: float = 0.0
    window: str = "hann"
    tempo_map_hash: Optional[str] = None
    analysis_profile_id: str = DEFAULT_PROFILE_ID
    calculator_versions: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self):
        if self.window_size <= 0 or self.hop_size <= 0:
            raise ValidationError(
                "window_size and hop_size must be positive",
                data={"window_size": self.window_size, "hop_size": self.hop_size},
            )
        if self.fft_size is not None and self.fft_size < self.window_size:
            raise ValidationError(
                f"fft_size {self.fft_size} is smaller than window_size {self.window_size}",
                data={"fft_size": self.fft_size, "window_size": self.window_size},
            )
        if self.min_decibels >= self.max_decibels:
            raise ValidationError(
                "min_decibels must be below max_decibels",
                data={"min_decibels": self.min_decibels, "max_decibels": self.max_decibels},
            )
        object.__setattr__(self, "calculator_versions", dict(self.calculator_versions))

    @property
    def overlap(self) -> float:
        return self.window_size / self.hop_size if self.window_size > self.hop_size else 1.0

    def with_updates(self, **changes) -> 'AnalysisParams':
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            'windowSize': self.window_size,
            'hopSize': self.hop_size,
            'fftSize': self.fft_size,
            'sampleRate': self.sample_rate,
            'minDecibels': self.min_decibels,
            'maxDecibels': self.max_decibels,
            'window': self.window,
            'overlap': self.overlap,
            'tempoMapHash': self.tempo_map_hash,
            'analysisProfileId': self.analysis_profile_id,
            'calculatorVersions': dict(self.calculator_versions),
        }

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> 'AnalysisParams':
        d = d or {}
        return cls(
            window_size=int(d.get('windowSize', 2048)),
            hop_size=int(d.get('hopSize', 512)),
            fft_size=d.get('fftSize'),
            sample_rate=d.get('sampleRate'),
            min_decibels=float(d.get('minDecibels', -80.0)),
            max_decibels=float(d.get('maxDecibels', 0.0)),
            window=d.get('window', 'hann'),
            tempo_map_hash=d.get('tempoMapHash'),
            analysis_profile_id=d.get('analysisProfileId') or DEFAULT_PROFILE_ID,
            calculator_versions={k: int(v) for k, v in (d.get('calculatorVersions') or {}).items()},
        )


@dataclass(frozen=True, eq=False)
class MinMaxData:
    """Parallel min/max arrays of a `minmax` track."""
    min: np.ndarray
    max: np.ndarray


TrackData = Union[np.ndarray, MinMaxData]


def _freeze(array: np.ndarray) -> np.ndarray:
    if array.flags.writeable:
        array.setflags(write=False)
    return array


@dataclass(frozen=True, eq=False)
class AudioFeatureTrack:
    """
    One feature's time series for one source.

    `data` is shaped (frame_count, channels). For the minmax format it is a
    MinMaxData pair with two arrays of that shape. Buffers are frozen on
    construction so a track can be shared by several cache generations.
    """
    key: str
    calculator_id: str
    version: int
    frame_count: int
    channels: int
    format: FeatureFormat
    hop_seconds: float
    hop_ticks: float
    data: TrackData
    channel_aliases: Mapping[str, int] = field(default_factory=dict)
    analysis_profile_id: Optional[str] = None
    metadata: Mapping[str, object] = field(default_factory=dict)
    analysis_params: Mapping[str, object] = field(default_factory=dict)

    def __post_init__(self):
        fmt = FeatureFormat(self.format)
        object.__setattr__(self, "format", fmt)

        if self.frame_count < 0 or self.channels <= 0:
            raise ValidationError(
                f"track {self.key}: invalid frame_count/channels",
                data={"key": self.key, "frame_count": self.frame_count, "channels": self.channels},
            )
        if not (self.hop_seconds > 0 and math.isfinite(self.hop_seconds)):
            raise ValidationError(
                f"track {self.key}: hop_seconds must be positive",
                data={"key": self.key, "hop_seconds": self.hop_seconds},
            )

        expected = self.frame_count * self.channels
        shape = (self.frame_count, self.channels)

        if fmt is FeatureFormat.MINMAX:
            if not isinstance(self.data, MinMaxData):
                raise ValidationError(
                    f"track {self.key}: minmax data requires MinMaxData",
                    data={"key": self.key},
                )
            arrays = []
            for array in (self.data.min, self.data.max):
                array = np.asarray(array, dtype=np.float32)
                if array.size != expected:
                    raise ValidationError(
                        f"track {self.key}: minmax buffer holds {array.size} values, expected {expected}",
                        data={"key": self.key, "size": int(array.size), "expected": expected},
                    )
                arrays.append(_freeze(array if array.shape == shape else array.reshape(shape)))
            object.__setattr__(self, "data", MinMaxData(arrays[0], arrays[1]))
        else:
            array = np.asarray(self.data)
            if array.dtype != fmt.dtype:
                array = array.astype(fmt.dtype)
            if array.size != expected:
                raise ValidationError(
                    f"track {self.key}: buffer holds {array.size} values, expected {expected}",
                    data={"key": self.key, "size": int(array.size), "expected": expected},
                )
            if array.shape != shape:
                array = array.reshape(shape)
            object.__setattr__(self, "data", _freeze(array))

        object.__setattr__(self, "channel_aliases", MappingProxyType(dict(self.channel_aliases or {})))
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata or {})))
        object.__setattr__(self, "analysis_params", MappingProxyType(dict(self.analysis_params or {})))

    @property
    def element_size(self) -> int:
        return self.format.element_size

    @property
    def nbytes(self) -> int:
        if isinstance(self.data, MinMaxData):
            return int(self.data.min.nbytes + self.data.max.nbytes)
        return int(self.data.nbytes)

    def with_timing(self, hop_seconds: float, hop_ticks: float) -> 'AudioFeatureTrack':
        """Same data buffers, new hop metadata."""
        return replace(self, hop_seconds=hop_seconds, hop_ticks=hop_ticks)


@dataclass(frozen=True, eq=False)
class AudioFeatureCache:
    """
    Per-source container of feature tracks.

    Every track shares the cache's tempo projection and its hop is the
    canonical hop scaled by a constant (e.g. 1/8 for waveform), so the
    tick/seconds ratio is identical across tracks.
    """
    source_id: str
    hop_seconds: float
    hop_ticks: float
    frame_count: int
    tempo_projection: TempoProjection = field(default_factory=TempoProjection)
    feature_tracks: Mapping[str, AudioFeatureTrack] = field(default_factory=dict)
    analysis_params: AnalysisParams = field(default_factory=AnalysisParams)
    channel_aliases: Mapping[str, int] = field(default_factory=dict)
    input_hash: Optional[str] = None
    version: int = CACHE_PAYLOAD_VERSION

    def __post_init__(self):
        if not (self.hop_seconds > 0 and math.isfinite(self.hop_seconds)):
            raise ValidationError(
                f"cache {self.source_id}: hop_seconds must be positive",
                data={"source_id": self.source_id, "hop_seconds": self.hop_seconds},
            )
        ratio = self.hop_ticks / self.hop_seconds
        for key, track in self.feature_tracks.items():
            track_ratio = track.hop_ticks / track.hop_seconds
            if not math.isclose(track_ratio, ratio, rel_tol=1e-6, abs_tol=1e-9):
                raise ValidationError(
                    f"cache {self.source_id}: track {key} hop metadata is not aligned with the cache",
                    data={"source_id": self.source_id, "key": key},
                )
        object.__setattr__(self, "feature_tracks", MappingProxyType(dict(self.feature_tracks)))
        object.__setattr__(self, "channel_aliases", MappingProxyType(dict(self.channel_aliases or {})))

    @property
    def tempo_map_hash(self) -> Optional[str]:
        return self.tempo_projection.tempo_map_hash

    def track(self, key: str) -> Optional[AudioFeatureTrack]:
        return self.feature_tracks.get(key)

    def calculator_versions(self) -> Dict[str, int]:
        return {t.calculator_id: t.version for t in self.feature_tracks.values()}

    @property
    def nbytes(self) -> int:
        return sum(t.nbytes for t in self.feature_tracks.values())
