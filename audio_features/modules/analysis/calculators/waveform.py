"""
Waveform calculator.

Min/max peaks of the mono mix at 8x the canonical hop resolution. Frame i
covers samples [floor(i * hop), ceil((i + 1) * hop)) with the last frame
running to the end of the signal. Format `minmax`.
"""

import math
import numpy as np

from audio_features.core.cache.models import MinMaxData
from audio_features.core.interfaces import CalculationSteps
from .base import BaseCalculator, CalculatorContext

OVERSAMPLE_FACTOR = 8


class WaveformCalculator(BaseCalculator):
    """Min/max waveform overview."""

    id = "waveform"
    version = 1
    feature_key = "waveform"
    label = "Waveform"

    def steps(self, context: CalculatorContext) -> CalculationSteps:
        mono = context.get_mono()
        total = len(mono)
        hop = max(context.params.hop_size / OVERSAMPLE_FACTOR, 1.0)
        hop_seconds = hop / context.sample_rate
        hop_ticks = context.hop_ticks * hop_seconds / context.hop_seconds
        frame_count = max(1, math.ceil(total / hop))

        minimum = np.zeros(frame_count, dtype=np.float32)
        maximum = np.zeros(frame_count, dtype=np.float32)

        if total > 0:
            index = np.arange(frame_count, dtype=np.float64)
            starts = np.floor(index * hop).astype(np.int64)
            ends = np.minimum(np.ceil((index + 1) * hop).astype(np.int64), total)
            ends[-1] = total

            for start, stop in context.slices(frame_count):
                context.check_cancelled()
                first = int(starts[start])
                last = int(ends[stop - 1])
                local = mono[first:last]
                offsets = starts[start:stop] - first

                lo = np.minimum.reduceat(local, offsets)
                hi = np.maximum.reduceat(local, offsets)

                # reduceat stops at the next frame's start; a fractional hop
                # extends the range by one sample (the next frame's first).
                if stop - start > 1:
                    overlap = ends[start:stop - 1] > starts[start + 1:stop]
                    if overlap.any():
                        shared = local[offsets[1:]]
                        lo[:-1] = np.where(overlap, np.minimum(lo[:-1], shared), lo[:-1])
                        hi[:-1] = np.where(overlap, np.maximum(hi[:-1], shared), hi[:-1])

                minimum[start:stop] = lo
                maximum[start:stop] = hi
                context.report_progress(stop, frame_count)
                yield stop
        else:
            context.check_cancelled()
            context.report_progress(frame_count, frame_count)
            yield frame_count

        return self.build_track(
            context,
            MinMaxData(minimum, maximum),
            format="minmax",
            frame_count=frame_count,
            hop_seconds=hop_seconds,
            hop_ticks=hop_ticks,
            metadata={"hop_size": hop, "oversample_factor": OVERSAMPLE_FACTOR},
        )
