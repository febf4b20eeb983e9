"""
Tempo-Aligned View Adapter - tick-addressed reads from feature caches.

Converts a musical position (tick) into a fractional frame index of a
track and interpolates its values. Every call returns diagnostics; no
call raises. Degraded reads carry a FallbackReason:

- data returned, flagged: cache-pending, cache-stale, tempo-mismatch,
  tick-out-of-range (clamped to the first/last frame)
- no data: cache-missing, cache-failed, feature-missing,
  channel-unresolved, invalid-tick, invalid-hop, internal-error

Frame position:
- cache aligned to the live tempo map and the map is constant:
  (tick - start_tick) / hop_ticks
- otherwise through the mapper: (seconds(tick) - seconds(start_tick)) / hop_seconds

Usage:
    adapter = TempoAlignedViewAdapter(tempo_mapper, diagnostics=channel)
    result = adapter.sample(cache, "rms", None, tick=1920)
    if result.values is not None:
        level = result.values[0]
"""

import math
import time
import numpy as np
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional, Tuple, Union, TYPE_CHECKING

from audio_features.common.logging import get_logger
from audio_features.common.monitoring import DiagnosticsChannel
from audio_features.common.primitives import TempoMapper
from audio_features.core.cache.models import (
    AudioFeatureCache,
    AudioFeatureTrack,
    CacheState,
    CacheStatus,
    FeatureFormat,
    MinMaxData,
)
from audio_features.core.config import InterpolationMode, get_settings
from audio_features.core.errors import ChannelResolutionError
from .channels import resolve_channel
from .identity import resolve_feature_track

if TYPE_CHECKING:
    from audio_features.core.cache.interfaces import ICacheStatusProvider
    from audio_features.modules.intents.descriptors import Descriptor

logger = get_logger(__name__)


class FallbackReason(str, Enum):
    """Why a read was degraded."""
    CACHE_MISSING = "cache-missing"
    CACHE_FAILED = "cache-failed"
    CACHE_PENDING = "cache-pending"
    CACHE_STALE = "cache-stale"
    TEMPO_MISMATCH = "tempo-mismatch"
    FEATURE_MISSING = "feature-missing"
    CHANNEL_UNRESOLVED = "channel-unresolved"
    TICK_OUT_OF_RANGE = "tick-out-of-range"
    INVALID_TICK = "invalid-tick"
    INVALID_HOP = "invalid-hop"
    INTERNAL_ERROR = "internal-error"


@dataclass
class SampleDiagnostics:
    """Per-call diagnostics of a sample / sample_range read."""
    source_id: Optional[str]
    feature_key: Optional[str]
    cache_hit: bool = False
    interpolation: str = InterpolationMode.LINEAR.value
    mapper_latency_ns: int = 0
    frame_count: int = 0
    request_start_tick: Optional[float] = None
    request_end_tick: Optional[float] = None
    fallback_reason: Optional[FallbackReason] = None
    flags: Tuple[FallbackReason, ...] = ()
    track_key: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def flag(self, reason: FallbackReason) -> None:
        if reason not in self.flags:
            self.flags = self.flags + (reason,)
        if self.fallback_reason is None:
            self.fallback_reason = reason

    def to_dict(self) -> dict:
        return {
            "source_id": self.source_id,
            "feature_key": self.feature_key,
            "track_key": self.track_key,
            "cache_hit": self.cache_hit,
            "interpolation": self.interpolation,
            "mapper_latency_ns": self.mapper_latency_ns,
            "frame_count": self.frame_count,
            "request_start_tick": self.request_start_tick,
            "request_end_tick": self.request_end_tick,
            "fallback_reason": self.fallback_reason.value if self.fallback_reason else None,
            "flags": [f.value for f in self.flags],
            "timestamp": self.timestamp,
        }


@dataclass
class SampleResult:
    """One interpolated frame (values is None when nothing could be read)."""
    values: Optional[np.ndarray]
    diagnostics: SampleDiagnostics
    frame_index: Optional[int] = None
    fractional_index: Optional[float] = None
    format: Optional[FeatureFormat] = None

    @property
    def ok(self) -> bool:
        return self.values is not None


@dataclass
class RangeResult:
    """
    Dense native-hop slice of a track.

    Attributes:
        data: float32 (frames, channels); minmax tracks give (frames, 2) [min, max]
        frame_ticks: Tick of each frame under the live tempo map
        frame_seconds: Seconds of each frame
        first_frame: Track index of the first returned frame
    """
    data: Optional[np.ndarray]
    diagnostics: SampleDiagnostics
    frame_ticks: Optional[np.ndarray] = None
    frame_seconds: Optional[np.ndarray] = None
    first_frame: int = 0
    hop_ticks: Optional[float] = None
    format: Optional[FeatureFormat] = None

    @property
    def ok(self) -> bool:
        return self.data is not None

    @property
    def frame_count(self) -> int:
        return 0 if self.data is None else int(self.data.shape[0])


def catmull_rom(p0, p1, p2, p3, t: float):
    t2 = t * t
    t3 = t2 * t
    return 0.5 * (
        2 * p1
        + (-p0 + p2) * t
        + (2 * p0 - 5 * p1 + 4 * p2 - p3) * t2
        + (-p0 + 3 * p1 - 3 * p2 + p3) * t3
    )


class _Unresolvable(Exception):
    """Internal early exit carrying the fallback reason."""

    def __init__(self, reason: FallbackReason):
        super().__init__(reason.value)
        self.reason = reason


class TempoAlignedViewAdapter:
    """Reads tempo-aligned samples out of AudioFeatureCaches."""

    def __init__(
        self,
        tempo_mapper: Optional[TempoMapper] = None,
        diagnostics: Optional[DiagnosticsChannel] = None,
        status_provider: Optional['ICacheStatusProvider'] = None,
        extra_aliases: Optional[Mapping[str, int]] = None,
        default_interpolation: Union[InterpolationMode, str, None] = None,
        smoothing: int = 0,
    ):
        settings = get_settings()
        self.tempo_mapper = tempo_mapper or TempoMapper(
            ticks_per_quarter=settings.ticks_per_quarter,
            default_bpm=settings.default_bpm,
        )
        self.diagnostics = diagnostics
        self.status_provider = status_provider
        self.extra_aliases = dict(extra_aliases or {})
        self.default_interpolation = InterpolationMode(default_interpolation or settings.interpolation)
        self.smoothing = max(0, int(smoothing))

    def set_tempo_mapper(self, tempo_mapper: TempoMapper) -> None:
        self.tempo_mapper = tempo_mapper

    # ============== Public API ==============

    def sample(
        self,
        cache: Optional[AudioFeatureCache],
        feature_key: Optional[str] = None,
        descriptor: Optional['Descriptor'] = None,
        tick: float = 0.0,
        interpolation: Union[InterpolationMode, str, None] = None,
        smoothing: Optional[int] = None,
        status: Optional[CacheStatus] = None,
    ) -> SampleResult:
        """
        Interpolated values of one track at `tick`.

        Args:
            cache: Source cache (None -> cache-missing)
            feature_key: Track key (defaults to descriptor.feature_key)
            descriptor: Channel / band / profile selector
            tick: Musical position
            interpolation: hold | linear | spline
            smoothing: Box-average radius in frames (replaces interpolation)
            status: Cache status (looked up from the status provider if omitted)
        """
        feature_key = feature_key or getattr(descriptor, "feature_key", None)
        diagnostics = SampleDiagnostics(
            source_id=getattr(cache, "source_id", None),
            feature_key=feature_key,
            request_start_tick=tick,
            request_end_tick=tick,
        )
        try:
            mode = self._mode(interpolation)
            diagnostics.interpolation = mode.value
            result = self._sample(cache, feature_key, descriptor, tick, mode, smoothing, status, diagnostics)
        except _Unresolvable as stop:
            diagnostics.flag(stop.reason)
            result = SampleResult(None, diagnostics)
        except Exception as e:
            logger.error(f"Sampling {feature_key} failed: {e}", data=diagnostics.to_dict(), exc_info=True)
            diagnostics.flag(FallbackReason.INTERNAL_ERROR)
            result = SampleResult(None, diagnostics)
        self._emit(diagnostics)
        return result

    def sample_range(
        self,
        cache: Optional[AudioFeatureCache],
        descriptor: Union['Descriptor', str, None],
        start_tick: float,
        end_tick: float,
        frame_padding: int = 0,
        status: Optional[CacheStatus] = None,
    ) -> RangeResult:
        """
        Native-hop frames covering [start_tick, end_tick] (plus padding).

        Never upsamples: one row per stored frame in the window.
        """
        feature_key = descriptor if isinstance(descriptor, str) else getattr(descriptor, "feature_key", None)
        descriptor = None if isinstance(descriptor, str) else descriptor
        diagnostics = SampleDiagnostics(
            source_id=getattr(cache, "source_id", None),
            feature_key=feature_key,
            interpolation=InterpolationMode.HOLD.value,
            request_start_tick=start_tick,
            request_end_tick=end_tick,
        )
        try:
            result = self._sample_range(
                cache, feature_key, descriptor, start_tick, end_tick, frame_padding, status, diagnostics
            )
        except _Unresolvable as stop:
            diagnostics.flag(stop.reason)
            result = RangeResult(None, diagnostics)
        except Exception as e:
            logger.error(f"Range read of {feature_key} failed: {e}", data=diagnostics.to_dict(), exc_info=True)
            diagnostics.flag(FallbackReason.INTERNAL_ERROR)
            result = RangeResult(None, diagnostics)
        self._emit(diagnostics)
        return result

    # ============== Resolution ==============

    def _mode(self, interpolation) -> InterpolationMode:
        if interpolation is None:
            return self.default_interpolation
        try:
            return InterpolationMode(interpolation)
        except ValueError:
            logger.debug(f"Unknown interpolation {interpolation!r}, using {self.default_interpolation.value}")
            return self.default_interpolation

    def _resolve(
        self,
        cache: Optional[AudioFeatureCache],
        feature_key: Optional[str],
        descriptor,
        status: Optional[CacheStatus],
        diagnostics: SampleDiagnostics,
    ) -> Tuple[AudioFeatureTrack, Optional[int]]:
        """Cache/status/track/channel checks shared by both reads."""
        if cache is None:
            raise _Unresolvable(FallbackReason.CACHE_MISSING)

        if status is None and self.status_provider is not None:
            status = self.status_provider.status(cache.source_id)
        if status is not None:
            if status.state is CacheState.FAILED:
                raise _Unresolvable(FallbackReason.CACHE_FAILED)
            if status.state is CacheState.PENDING:
                diagnostics.flag(FallbackReason.CACHE_PENDING)
            elif status.state is CacheState.STALE:
                diagnostics.flag(FallbackReason.CACHE_STALE)

        profile_id = getattr(descriptor, "analysis_profile_id", None)
        key, track = resolve_feature_track(cache, feature_key, profile_id)
        diagnostics.track_key = key
        if track is None or track.frame_count <= 0:
            raise _Unresolvable(FallbackReason.FEATURE_MISSING)
        diagnostics.cache_hit = True

        if cache.tempo_map_hash is not None and cache.tempo_map_hash != self.tempo_mapper.hash:
            diagnostics.flag(FallbackReason.TEMPO_MISMATCH)

        column = self._column(track, cache, descriptor)
        return track, column

    def _column(self, track: AudioFeatureTrack, cache: AudioFeatureCache, descriptor) -> Optional[int]:
        """Selected column, or None for all columns."""
        if descriptor is None:
            return None
        channel = getattr(descriptor, "channel", None)
        band = getattr(descriptor, "band_index", None)
        try:
            if channel is not None:
                return resolve_channel(channel, track, cache.channel_aliases, self.extra_aliases)
            if band is not None:
                return resolve_channel(int(band), track)
        except ChannelResolutionError:
            raise _Unresolvable(FallbackReason.CHANNEL_UNRESOLVED) from None
        return None

    def _frame_position(
        self,
        track: AudioFeatureTrack,
        cache: AudioFeatureCache,
        ticks: np.ndarray,
    ) -> np.ndarray:
        """Fractional frame index of each tick."""
        mapper = self.tempo_mapper
        start_tick = cache.tempo_projection.start_tick
        aligned = cache.tempo_map_hash is None or cache.tempo_map_hash == mapper.hash
        if aligned and mapper.is_constant and track.hop_ticks > 0:
            return (ticks - start_tick) / track.hop_ticks
        start_seconds = mapper.ticks_to_seconds(start_tick)
        return (mapper.ticks_to_seconds_batch(ticks) - start_seconds) / track.hop_seconds

    # ============== Reads ==============

    def _rows(self, track: AudioFeatureTrack, indices: np.ndarray, column: Optional[int]) -> np.ndarray:
        """Normalized float64 rows (len(indices), width)."""
        data = track.data
        if isinstance(data, MinMaxData):
            col = 0 if column is None else column
            return np.stack([data.min[indices, col], data.max[indices, col]], axis=1).astype(np.float64)
        rows = data[indices] if column is None else data[indices, column:column + 1]
        rows = rows.astype(np.float64)
        if track.format is FeatureFormat.UINT8:
            rows /= 255.0
        elif track.format is FeatureFormat.INT16:
            rows /= 32768.0
        return rows

    def _sample(
        self,
        cache,
        feature_key,
        descriptor,
        tick,
        mode: InterpolationMode,
        smoothing: Optional[int],
        status,
        diagnostics: SampleDiagnostics,
    ) -> SampleResult:
        try:
            tick = float(tick)
        except (TypeError, ValueError):
            raise _Unresolvable(FallbackReason.INVALID_TICK)
        if not math.isfinite(tick):
            raise _Unresolvable(FallbackReason.INVALID_TICK)

        track, column = self._resolve(cache, feature_key, descriptor, status, diagnostics)
        if not (track.hop_seconds > 0 and math.isfinite(track.hop_seconds)):
            raise _Unresolvable(FallbackReason.INVALID_HOP)

        started = time.perf_counter_ns()
        position = float(self._frame_position(track, cache, np.array([tick]))[0])
        diagnostics.mapper_latency_ns = time.perf_counter_ns() - started
        if not math.isfinite(position):
            raise _Unresolvable(FallbackReason.INVALID_TICK)

        last = track.frame_count - 1
        if position < 0 or position > last:
            diagnostics.flag(FallbackReason.TICK_OUT_OF_RANGE)
            position = min(max(position, 0.0), float(last))

        base = int(math.floor(position))
        frac = position - base
        radius = self.smoothing if smoothing is None else max(0, int(smoothing))

        if radius > 0:
            indices = np.clip(np.arange(base - radius, base + radius + 1), 0, last)
            values = self._rows(track, indices, column).mean(axis=0)
            frame_index = base
        elif mode is InterpolationMode.HOLD:
            frame_index = min(last, int(math.floor(position + 0.5)))
            values = self._rows(track, np.array([frame_index]), column)[0]
        elif mode is InterpolationMode.SPLINE:
            indices = np.clip(np.array([base - 1, base, base + 1, base + 2]), 0, last)
            p0, p1, p2, p3 = self._rows(track, indices, column)
            values = catmull_rom(p0, p1, p2, p3, frac)
            frame_index = base
        else:
            indices = np.array([base, min(base + 1, last)])
            v0, v1 = self._rows(track, indices, column)
            values = v0 + (v1 - v0) * frac
            frame_index = base

        diagnostics.frame_count = 1
        return SampleResult(
            values=np.asarray(values, dtype=np.float64),
            diagnostics=diagnostics,
            frame_index=frame_index,
            fractional_index=position,
            format=track.format,
        )

    def _sample_range(
        self,
        cache,
        feature_key,
        descriptor,
        start_tick,
        end_tick,
        frame_padding: int,
        status,
        diagnostics: SampleDiagnostics,
    ) -> RangeResult:
        try:
            bounds = sorted((float(start_tick), float(end_tick)))
        except (TypeError, ValueError):
            raise _Unresolvable(FallbackReason.INVALID_TICK)
        if not all(math.isfinite(b) for b in bounds):
            raise _Unresolvable(FallbackReason.INVALID_TICK)

        track, column = self._resolve(cache, feature_key, descriptor, status, diagnostics)
        if not (track.hop_seconds > 0 and math.isfinite(track.hop_seconds)):
            raise _Unresolvable(FallbackReason.INVALID_HOP)

        mapper = self.tempo_mapper
        started = time.perf_counter_ns()
        positions = self._frame_position(track, cache, np.array(bounds))
        padding = max(0, int(frame_padding))
        last = track.frame_count - 1
        first_frame = int(math.floor(positions[0])) - padding
        last_frame = int(math.floor(positions[1])) + padding
        if first_frame < 0 or last_frame > last:
            diagnostics.flag(FallbackReason.TICK_OUT_OF_RANGE)
        first_frame = min(max(first_frame, 0), last)
        last_frame = min(max(last_frame, first_frame), last)

        indices = np.arange(first_frame, last_frame + 1)
        start_seconds = mapper.ticks_to_seconds(cache.tempo_projection.start_tick)
        frame_seconds = start_seconds + indices * track.hop_seconds
        frame_ticks = mapper.project_frame_ticks(start_seconds, track.hop_seconds, len(indices), first_frame)
        diagnostics.mapper_latency_ns = time.perf_counter_ns() - started

        data = self._rows(track, indices, column).astype(np.float32)
        diagnostics.frame_count = len(indices)
        return RangeResult(
            data=data,
            diagnostics=diagnostics,
            frame_ticks=frame_ticks,
            frame_seconds=frame_seconds,
            first_frame=first_frame,
            hop_ticks=track.hop_ticks,
            format=track.format,
        )

    def _emit(self, diagnostics: SampleDiagnostics) -> None:
        if self.diagnostics is not None:
            self.diagnostics.emit_sample(diagnostics)
