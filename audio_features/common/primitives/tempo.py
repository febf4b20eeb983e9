"""
Tempo Primitives - tick <-> seconds projection over a tempo map.

A tempo map is an ordered list of TempoSegment entries keyed by their
starting tick. Each segment is either constant ("step") or ramps linearly
in BPM across its tick range towards `end_bpm` (or the next segment's bpm).

Within a segment conversions are closed-form:

    constant:  sec = s0 + (t - t0) * 60 / (ppq * b0)
    ramp:      bpm(t) = b0 + k * (t - t0)
               sec    = s0 + 60 / (ppq * k) * ln(bpm(t) / b0)
               t      = t0 + b0 * (exp((sec - s0) * ppq * k / 60) - 1) / k

Seconds at each segment boundary are precomputed, so a lookup is one
bisect (O(log segments)) plus O(1) arithmetic. Batch variants use
np.searchsorted over the same tables.

Times before tick 0 (or second 0) extrapolate at the first segment's
starting tempo.
"""

import bisect
import hashlib
import json
import math
import time
import numpy as np
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence

from audio_features.core.errors import ValidationError

DEFAULT_TICKS_PER_QUARTER = 960
DEFAULT_BPM = 120.0

# Slopes below this (bpm per tick) are treated as constant tempo
_RAMP_EPSILON = 1e-12

# Receives (event, duration_ns) after each conversion
TempoProfiler = Callable[[str, int], None]


@dataclass(frozen=True)
class TempoSegment:
    """One tempo-map entry starting at `start_tick`."""
    start_tick: float
    bpm: float
    curve: str = "step"  # step | linear
    end_bpm: Optional[float] = None

    def to_dict(self) -> dict:
        d = {"start_tick": self.start_tick, "bpm": self.bpm, "curve": self.curve}
        if self.end_bpm is not None:
            d["end_bpm"] = self.end_bpm
        return d

    @classmethod
    def from_dict(cls, d: dict) -> 'TempoSegment':
        return cls(
            start_tick=float(d.get("start_tick", d.get("startTick", 0.0))),
            bpm=float(d["bpm"]),
            curve=d.get("curve", "step"),
            end_bpm=d.get("end_bpm", d.get("endBpm")),
        )


def _validate_segments(segments: Sequence[TempoSegment]) -> List[TempoSegment]:
    ordered = sorted(segments, key=lambda s: s.start_tick)
    previous: Optional[float] = None
    for segment in ordered:
        if not math.isfinite(segment.start_tick) or segment.start_tick < 0:
            raise ValidationError(
                f"tempo segment start_tick must be finite and >= 0, got {segment.start_tick}",
                data={"segment": segment.to_dict()},
            )
        if not (segment.bpm > 0 and math.isfinite(segment.bpm)):
            raise ValidationError(
                f"tempo segment bpm must be positive, got {segment.bpm}",
                data={"segment": segment.to_dict()},
            )
        if segment.curve not in ("step", "linear"):
            raise ValidationError(
                f"tempo segment curve must be 'step' or 'linear', got {segment.curve!r}",
                data={"segment": segment.to_dict()},
            )
        if segment.end_bpm is not None and not (segment.end_bpm > 0):
            raise ValidationError(
                f"tempo segment end_bpm must be positive, got {segment.end_bpm}",
                data={"segment": segment.to_dict()},
            )
        if previous is not None and segment.start_tick == previous:
            raise ValidationError(
                f"duplicate tempo segment at tick {segment.start_tick}",
                data={"start_tick": segment.start_tick},
            )
        previous = segment.start_tick
    return ordered


def compute_tempo_map_hash(
    segments: Iterable[TempoSegment],
    ticks_per_quarter: int = DEFAULT_TICKS_PER_QUARTER,
    default_bpm: float = DEFAULT_BPM,
) -> str:
    """Stable 16-hex-digit fingerprint of a tempo map."""
    payload = {
        "ppq": int(ticks_per_quarter),
        "segments": [
            [float(s.start_tick), float(s.bpm), s.curve, None if s.end_bpm is None else float(s.end_bpm)]
            for s in sorted(segments, key=lambda s: s.start_tick)
        ],
    }
    if not payload["segments"]:
        payload["default_bpm"] = float(default_bpm)
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha1(canonical.encode("utf-8")).hexdigest()[:16]


class TempoMapper:
    """
    Stateless tick <-> seconds projection.

    Usage:
        mapper = TempoMapper([TempoSegment(0, 120), TempoSegment(3840, 90)])
        seconds = mapper.ticks_to_seconds(4800)
        ticks = mapper.seconds_to_ticks(seconds)
    """

    def __init__(
        self,
        segments: Optional[Sequence[TempoSegment]] = None,
        ticks_per_quarter: int = DEFAULT_TICKS_PER_QUARTER,
        default_bpm: float = DEFAULT_BPM,
        profiler: Optional[TempoProfiler] = None,
    ):
        if ticks_per_quarter <= 0:
            raise ValidationError(
                f"ticks_per_quarter must be positive, got {ticks_per_quarter}",
                data={"ticks_per_quarter": ticks_per_quarter},
            )
        if not default_bpm > 0:
            raise ValidationError(
                f"default_bpm must be positive, got {default_bpm}",
                data={"default_bpm": default_bpm},
            )

        self.ticks_per_quarter = int(ticks_per_quarter)
        self.default_bpm = float(default_bpm)
        self.profiler = profiler

        ordered = _validate_segments(list(segments or []))
        self.segments: tuple = tuple(ordered)

        if not ordered:
            ordered = [TempoSegment(0.0, self.default_bpm)]
        elif ordered[0].start_tick > 0:
            ordered = [TempoSegment(0.0, self.default_bpm)] + ordered
        # hash covers the effective map, default prefix included
        self.hash = compute_tempo_map_hash(ordered, self.ticks_per_quarter, self.default_bpm)

        self._build_tables(ordered)

    def _build_tables(self, ordered: List[TempoSegment]) -> None:
        count = len(ordered)
        start_ticks = np.empty(count, dtype=np.float64)
        start_bpm = np.empty(count, dtype=np.float64)
        slopes = np.zeros(count, dtype=np.float64)
        start_seconds = np.zeros(count, dtype=np.float64)

        for i, segment in enumerate(ordered):
            start_ticks[i] = segment.start_tick
            start_bpm[i] = segment.bpm
            if segment.curve == "linear" and i + 1 < count:
                target = segment.end_bpm if segment.end_bpm is not None else ordered[i + 1].bpm
                span = ordered[i + 1].start_tick - segment.start_tick
                slope = (target - segment.bpm) / span
                if abs(slope) >= _RAMP_EPSILON:
                    slopes[i] = slope

        for i in range(1, count):
            start_seconds[i] = start_seconds[i - 1] + self._segment_seconds(
                start_bpm[i - 1], slopes[i - 1], start_ticks[i] - start_ticks[i - 1]
            )

        for table in (start_ticks, start_bpm, slopes, start_seconds):
            table.setflags(write=False)

        self._start_ticks = start_ticks
        self._start_bpm = start_bpm
        self._slopes = slopes
        self._start_seconds = start_seconds
        self._start_ticks_list = start_ticks.tolist()
        self._start_seconds_list = start_seconds.tolist()

    def _segment_seconds(self, bpm: float, slope: float, dt: float) -> float:
        """Seconds elapsed `dt` ticks into a segment."""
        if slope == 0.0:
            return dt * 60.0 / (self.ticks_per_quarter * bpm)
        return 60.0 / (self.ticks_per_quarter * slope) * math.log1p(slope * dt / bpm)

    def _segment_ticks(self, bpm: float, slope: float, ds: float) -> float:
        """Ticks elapsed `ds` seconds into a segment."""
        if slope == 0.0:
            return ds * self.ticks_per_quarter * bpm / 60.0
        return bpm * math.expm1(ds * self.ticks_per_quarter * slope / 60.0) / slope

    def _record(self, event: str, started_ns: int) -> None:
        if self.profiler is not None:
            self.profiler(event, time.perf_counter_ns() - started_ns)

    # ============== Properties ==============

    @property
    def is_constant(self) -> bool:
        """True when the whole map runs at one fixed tempo."""
        return bool(np.all(self._slopes == 0.0) and np.all(self._start_bpm == self._start_bpm[0]))

    @property
    def seconds_per_tick(self) -> float:
        """Seconds per tick at tick 0."""
        return 60.0 / (self.ticks_per_quarter * float(self._start_bpm[0]))

    def bpm_at_tick(self, tick: float) -> float:
        index = max(0, bisect.bisect_right(self._start_ticks_list, tick) - 1)
        dt = tick - self._start_ticks_list[index]
        if dt < 0:
            return float(self._start_bpm[0])
        return float(self._start_bpm[index] + self._slopes[index] * dt)

    # ============== Scalar Conversion ==============

    def ticks_to_seconds(self, tick: float) -> float:
        started = time.perf_counter_ns() if self.profiler else 0
        tick = float(tick)
        if tick < 0:
            result = tick * 60.0 / (self.ticks_per_quarter * float(self._start_bpm[0]))
        else:
            index = max(0, bisect.bisect_right(self._start_ticks_list, tick) - 1)
            result = self._start_seconds_list[index] + self._segment_seconds(
                float(self._start_bpm[index]),
                float(self._slopes[index]),
                tick - self._start_ticks_list[index],
            )
        if self.profiler:
            self._record("ticks-to-seconds", started)
        return result

    def seconds_to_ticks(self, seconds: float) -> float:
        started = time.perf_counter_ns() if self.profiler else 0
        seconds = float(seconds)
        if seconds < 0:
            result = seconds * self.ticks_per_quarter * float(self._start_bpm[0]) / 60.0
        else:
            index = max(0, bisect.bisect_right(self._start_seconds_list, seconds) - 1)
            result = self._start_ticks_list[index] + self._segment_ticks(
                float(self._start_bpm[index]),
                float(self._slopes[index]),
                seconds - self._start_seconds_list[index],
            )
        if self.profiler:
            self._record("seconds-to-ticks", started)
        return result

    # ============== Batch Conversion ==============

    def ticks_to_seconds_batch(self, ticks) -> np.ndarray:
        """Vectorized ticks_to_seconds (float64)."""
        started = time.perf_counter_ns() if self.profiler else 0
        t = np.asarray(ticks, dtype=np.float64)
        index = np.clip(np.searchsorted(self._start_ticks, t, side="right") - 1, 0, None)
        bpm = self._start_bpm[index]
        slope = np.where(t < 0, 0.0, self._slopes[index])
        dt = t - self._start_ticks[index]
        ramp = slope != 0.0
        safe_slope = np.where(ramp, slope, 1.0)
        constant_part = dt * 60.0 / (self.ticks_per_quarter * bpm)
        with np.errstate(invalid="ignore", divide="ignore"):
            ramp_part = 60.0 / (self.ticks_per_quarter * safe_slope) * np.log1p(safe_slope * dt / bpm)
        result = self._start_seconds[index] + np.where(ramp, ramp_part, constant_part)
        if self.profiler:
            self._record("ticks-batch", started)
        return result

    def seconds_to_ticks_batch(self, seconds) -> np.ndarray:
        """Vectorized seconds_to_ticks (float64)."""
        started = time.perf_counter_ns() if self.profiler else 0
        s = np.asarray(seconds, dtype=np.float64)
        index = np.clip(np.searchsorted(self._start_seconds, s, side="right") - 1, 0, None)
        bpm = self._start_bpm[index]
        slope = np.where(s < 0, 0.0, self._slopes[index])
        ds = s - self._start_seconds[index]
        ramp = slope != 0.0
        safe_slope = np.where(ramp, slope, 1.0)
        constant_part = ds * self.ticks_per_quarter * bpm / 60.0
        with np.errstate(over="ignore"):
            ramp_part = bpm * np.expm1(ds * self.ticks_per_quarter * safe_slope / 60.0) / safe_slope
        result = self._start_ticks[index] + np.where(ramp, ramp_part, constant_part)
        if self.profiler:
            self._record("seconds-batch", started)
        return result

    def project_frame_ticks(
        self,
        start_seconds: float,
        hop_seconds: float,
        frame_count: int,
        first_frame: int = 0,
    ) -> np.ndarray:
        """Tick of each analysis frame (frame i sits at start + i * hop)."""
        seconds = start_seconds + (np.arange(frame_count, dtype=np.float64) + first_frame) * hop_seconds
        return self.seconds_to_ticks_batch(seconds)

    def to_dict(self) -> dict:
        return {
            "ticks_per_quarter": self.ticks_per_quarter,
            "default_bpm": self.default_bpm,
            "segments": [s.to_dict() for s in self.segments],
            "hash": self.hash,
        }

    def __repr__(self) -> str:
        return (
            f"TempoMapper(segments={len(self.segments)}, ppq={self.ticks_per_quarter}, "
            f"hash={self.hash})"
        )
