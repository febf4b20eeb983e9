"""
Calculators - turn decoded audio into feature tracks.

Each calculator:
- Has a stable id and an integer version
- Exposes a step generator the scheduler advances in bounded slices
- Returns one AudioFeatureTrack (or a list of them)

BUILTIN_CALCULATORS are registered by CalculatorRegistry.with_builtins();
PitchWaveformCalculator is opt-in.

Usage:
    from audio_features.modules.analysis.calculators import SpectrogramCalculator

    track = SpectrogramCalculator().calculate(context)
"""

from .base import (
    BaseCalculator,
    CalculatorContext,
    ProgressCallback,
    DEFAULT_YIELD_EVERY,
    as_track_list,
)
from .spectrogram import SpectrogramCalculator, resolve_fft_size
from .rms import RmsCalculator
from .waveform import WaveformCalculator, OVERSAMPLE_FACTOR
from .pitch_waveform import PitchWaveformCalculator, detect_yin_pitch

BUILTIN_CALCULATORS = (SpectrogramCalculator, RmsCalculator, WaveformCalculator)

__all__ = [
    'BaseCalculator',
    'CalculatorContext',
    'ProgressCallback',
    'DEFAULT_YIELD_EVERY',
    'as_track_list',
    'SpectrogramCalculator',
    'resolve_fft_size',
    'RmsCalculator',
    'WaveformCalculator',
    'OVERSAMPLE_FACTOR',
    'PitchWaveformCalculator',
    'detect_yin_pitch',
    'BUILTIN_CALCULATORS',
]
