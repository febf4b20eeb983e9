"""RMS loudness envelope: sqrt(mean(x^2)) over the analysis window at each hop."""

import numpy as np

from audio_features.common.primitives import frame_signal
from audio_features.core.interfaces import CalculationSteps
from .base import BaseCalculator, CalculatorContext


class RmsCalculator(BaseCalculator):
    """Mono RMS envelope (float32, 1 channel)."""

    id = "rms"
    version = 1
    feature_key = "rms"
    label = "RMS"

    def steps(self, context: CalculatorContext) -> CalculationSteps:
        window_size = context.params.window_size
        hop_size = context.params.hop_size
        frame_count = context.frame_count
        mono = context.get_mono()
        length = len(mono)

        output = np.empty(frame_count, dtype=np.float32)

        for start, stop in context.slices(frame_count):
            context.check_cancelled()
            frames = frame_signal(mono, window_size, hop_size, start, stop).astype(np.float64)
            sum_squares = np.einsum("ij,ij->i", frames, frames)
            # Mean over the samples actually present (trailing window may be short)
            starts = np.arange(start, stop, dtype=np.int64) * hop_size
            counts = np.clip(length - starts, 1, window_size)
            output[start:stop] = np.sqrt(sum_squares / counts)
            context.report_progress(stop, frame_count)
            yield stop

        return self.build_track(context, output, metadata={"window_size": window_size})
