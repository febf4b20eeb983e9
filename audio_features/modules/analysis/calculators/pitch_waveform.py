"""
Pitch waveform calculator.

For each canonical frame, detects the fundamental with YIN and extracts one
period of the mono mix starting at the rising zero crossing nearest the
frame center. Rows are zero-padded to the longest cycle; the real length of
each row is kept in `metadata["frame_lengths"]` and the detected frequency
(0 for unvoiced frames) in `metadata["frequencies"]`.

Not a built-in; register it explicitly:

    registry.register(PitchWaveformCalculator())
"""

from typing import List, Optional, Tuple

import numpy as np
from scipy.signal import correlate

from audio_features.core.interfaces import CalculationSteps
from .base import BaseCalculator, CalculatorContext

YIN_THRESHOLD = 0.1
MIN_FREQUENCY = 50.0
MAX_FREQUENCY = 2000.0


def _difference(frame: np.ndarray, max_tau: int) -> np.ndarray:
    """YIN difference d(tau) for tau in [0, max_tau], via autocorrelation."""
    x = frame.astype(np.float64)
    n = len(x)
    # Positive lags start at the center of the full correlation
    autocorr = correlate(x, x, mode='full')[n - 1:n + max_tau]

    energy = np.concatenate(([0.0], np.cumsum(x * x)))
    tau = np.arange(max_tau + 1)
    diff = energy[n - tau] + (energy[n] - energy[tau]) - 2.0 * autocorr
    return np.maximum(diff, 0.0)


def detect_yin_pitch(
    frame: np.ndarray,
    sample_rate: int,
    threshold: float = YIN_THRESHOLD,
    min_frequency: float = MIN_FREQUENCY,
    max_frequency: float = MAX_FREQUENCY,
) -> Optional[float]:
    """
    Fundamental frequency of `frame` in Hz, or None when unvoiced.

    Picks the first lag whose cumulative mean normalized difference falls
    below `threshold` (descending to its local minimum), else the global
    minimum, then refines it with parabolic interpolation.
    """
    n = len(frame)
    if n < 3:
        return None
    max_tau = min(int(sample_rate // max(1.0, min_frequency)), n - 1)
    min_tau = max(1, int(sample_rate // max(1.0, max_frequency)))
    if max_tau <= min_tau:
        return None

    diff = _difference(frame, max_tau)
    running = np.cumsum(diff[1:])
    if running[-1] <= 0:
        return None

    cmnd = np.ones(max_tau + 1)
    taus = np.arange(1, max_tau + 1)
    positive = running > 0
    cmnd[1:][positive] = diff[1:][positive] * taus[positive] / running[positive]

    window = cmnd[min_tau:]
    below = np.flatnonzero(window < threshold)
    if below.size:
        best = min_tau + int(below[0])
        while best + 1 <= max_tau and cmnd[best + 1] <= cmnd[best]:
            best += 1
    else:
        best = min_tau + int(np.argmin(window))

    refined = float(best)
    if 1 < best < max_tau:
        prev, curr, nxt = cmnd[best - 1], cmnd[best], cmnd[best + 1]
        denom = 2.0 * curr - prev - nxt
        if denom != 0:
            refined = best + (nxt - prev) / (2.0 * denom)

    if not np.isfinite(refined) or refined <= 0:
        return None
    frequency = sample_rate / refined
    return float(frequency) if np.isfinite(frequency) and frequency > 0 else None


def nearest_zero_crossing(
    samples: np.ndarray,
    center: int,
    window_start: int,
    window_end: int,
    preferred_length: int,
) -> Optional[int]:
    """
    Index just after the zero crossing nearest `center` within the window.

    Rising crossings win over falling ones. Without any crossing, falls back
    to half a period before the center.
    """
    total = len(samples)
    if total == 0:
        return None
    start = max(0, min(window_start, total - 1))
    end = max(start, min(window_end, total) - 1)
    if end <= start:
        return None

    radius = max(1, min(total, preferred_length * 2))
    search_start = max(start, center - radius)
    search_end = min(end, center + radius)

    a = samples[search_start:search_end + 1]
    b = np.zeros(len(a), dtype=samples.dtype)
    following = samples[search_start + 1:search_end + 2]
    b[:len(following)] = following

    rising = (a <= 0) & (b > 0)
    crossing = rising | ((a >= 0) & (b < 0))
    distance = np.abs(np.arange(search_start, search_end + 1) - center)

    for mask in (rising, crossing):
        hits = np.flatnonzero(mask)
        if hits.size:
            index = search_start + int(hits[np.argmin(distance[hits])]) + 1
            return max(start, min(index, total))

    fallback = max(start, min(center - preferred_length // 2, end + 1))
    return max(start, min(fallback, total))


class PitchWaveformCalculator(BaseCalculator):
    """One pitch period per frame, aligned on a rising zero crossing."""

    id = "pitch-waveform"
    version = 1
    feature_key = "pitch-waveform"
    label = "Pitch Waveform"
    default_params = {
        "yin_threshold": YIN_THRESHOLD,
        "min_frequency": MIN_FREQUENCY,
        "max_frequency": MAX_FREQUENCY,
    }

    def __init__(
        self,
        threshold: float = YIN_THRESHOLD,
        min_frequency: float = MIN_FREQUENCY,
        max_frequency: float = MAX_FREQUENCY,
    ):
        self.threshold = threshold
        self.min_frequency = min_frequency
        self.max_frequency = max_frequency

    def _frame_cycle(
        self,
        mono: np.ndarray,
        start: int,
        window_size: int,
        sample_rate: int,
        max_frequency: float,
    ) -> Tuple[float, np.ndarray]:
        total = len(mono)
        window_end = min(start + window_size, total)
        length = max(0, window_end - start)
        if length <= 3:
            return 0.0, mono[:0]

        pitch = detect_yin_pitch(
            mono[start:window_end], sample_rate, self.threshold, self.min_frequency, max_frequency,
        )
        if pitch is None:
            return 0.0, mono[:0]

        period = max(2, int(round(sample_rate / pitch)))
        center = min(total - 1, start + length // 2)
        crossing = nearest_zero_crossing(mono, center, start, window_end, period)
        if crossing is None:
            return pitch, mono[:0]
        return pitch, mono[crossing:min(total, crossing + period)]

    def steps(self, context: CalculatorContext) -> CalculationSteps:
        mono = context.get_mono()
        total = len(mono)
        sample_rate = context.sample_rate
        window_size = context.params.window_size
        hop_size = context.params.hop_size
        frame_count = context.frame_count
        max_frequency = min(sample_rate / 2 - 1, self.max_frequency)

        frequencies = np.zeros(frame_count, dtype=np.float32)
        cycles: List[np.ndarray] = []

        for start, stop in context.slices(frame_count):
            context.check_cancelled()
            for frame in range(start, stop):
                frame_start = min(frame * hop_size, total)
                pitch, cycle = self._frame_cycle(mono, frame_start, window_size, sample_rate, max_frequency)
                frequencies[frame] = pitch
                cycles.append(cycle)
            context.report_progress(stop, frame_count)
            yield stop

        lengths = [len(c) for c in cycles]
        width = max([1] + lengths)
        data = np.zeros((frame_count, width), dtype=np.float32)
        for frame, cycle in enumerate(cycles):
            data[frame, :len(cycle)] = cycle

        return self.build_track(
            context,
            data,
            channels=width,
            metadata={
                "window_size": window_size,
                "hop_size": hop_size,
                "sample_rate": sample_rate,
                "frame_lengths": lengths,
                "frequencies": frequencies.tolist(),
                "max_frame_length": max(lengths, default=0),
                "yin_threshold": self.threshold,
                "min_frequency": self.min_frequency,
                "max_frequency": max_frequency,
            },
        )
