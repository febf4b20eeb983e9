"""
Primitives - pure numpy building blocks shared by calculators and sampling.

- audio.py: AudioBuffer, mono mix, framing, Hann window
- fft.py: radix-2 FFT engine with cached plans
- tempo.py: tick <-> seconds projection
"""

from .audio import (
    AudioBuffer,
    mix_to_mono,
    hann_window,
    compute_frame_count,
    frame_signal,
)
from .fft import FFTPlan, cached_plan_sizes, get_fft_plan, is_power_of_two, next_power_of_two
from .tempo import (
    TempoSegment,
    TempoMapper,
    TempoProfiler,
    compute_tempo_map_hash,
    DEFAULT_TICKS_PER_QUARTER,
    DEFAULT_BPM,
)

__all__ = [
    # Audio
    'AudioBuffer',
    'mix_to_mono',
    'hann_window',
    'compute_frame_count',
    'frame_signal',
    # FFT
    'FFTPlan',
    'cached_plan_sizes',
    'get_fft_plan',
    'is_power_of_two',
    'next_power_of_two',
    # Tempo
    'TempoSegment',
    'TempoMapper',
    'TempoProfiler',
    'compute_tempo_map_hash',
    'DEFAULT_TICKS_PER_QUARTER',
    'DEFAULT_BPM',
]
