"""
Spectrogram calculator.

Per frame: window of `window_size` samples from the mono mix (zero-padded
past the end), Hann window, radix-2 FFT of `fft_size`, magnitude scaled by
2/window_size, converted to dB and clamped to [min_decibels, max_decibels].

Output: float32, frame_count x (fft_size/2 + 1) bins.
"""

import numpy as np

from audio_features.common.primitives import (
    frame_signal,
    get_fft_plan,
    hann_window,
    next_power_of_two,
)
from audio_features.core.cache.models import AnalysisParams
from audio_features.core.interfaces import CalculationSteps
from .base import BaseCalculator, CalculatorContext

SPECTROGRAM_EPSILON = 1e-8


def resolve_fft_size(params: AnalysisParams) -> int:
    """Explicit fft_size, else the window size rounded up to a power of two."""
    return next_power_of_two(max(2, params.fft_size or params.window_size))


class SpectrogramCalculator(BaseCalculator):
    """Magnitude spectrogram in decibels."""

    id = "spectrogram"
    version = 2
    feature_key = "spectrogram"
    label = "Spectrogram"

    def prepare(self, params: AnalysisParams) -> None:
        # Build the shared plan before the first slice
        get_fft_plan(resolve_fft_size(params))

    def steps(self, context: CalculatorContext) -> CalculationSteps:
        params = context.params
        window_size = params.window_size
        hop_size = params.hop_size
        fft_size = resolve_fft_size(params)
        plan = get_fft_plan(fft_size)
        window = hann_window(window_size)
        scale = 2.0 / max(1, window_size)
        frame_count = context.frame_count
        mono = context.get_mono()

        output = np.empty((frame_count, plan.bin_count), dtype=np.float32)

        for start, stop in context.slices(frame_count):
            context.check_cancelled()
            frames = frame_signal(mono, window_size, hop_size, start, stop) * window
            if fft_size > window_size:
                frames = np.pad(frames, ((0, 0), (0, fft_size - window_size)))
            magnitude = plan.magnitude(frames) * scale
            decibels = 20.0 * np.log10(magnitude + SPECTROGRAM_EPSILON)
            output[start:stop] = np.clip(decibels, params.min_decibels, params.max_decibels)
            context.report_progress(stop, frame_count)
            yield stop

        return self.build_track(
            context,
            output,
            channels=plan.bin_count,
            metadata={
                "fft_size": fft_size,
                "hop_size": hop_size,
                "sample_rate": context.sample_rate,
                "window": "hann",
                "min_decibels": params.min_decibels,
                "max_decibels": params.max_decibels,
            },
            analysis_params={
                "fft_size": fft_size,
                "window_size": window_size,
                "hop_size": hop_size,
                "min_decibels": params.min_decibels,
                "max_decibels": params.max_decibels,
                "window": "hann",
            },
        )
