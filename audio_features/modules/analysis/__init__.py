"""
Analysis - calculators, registry, profiles and the job scheduler.

Usage:
    from audio_features.modules.analysis import AnalysisScheduler, CalculatorRegistry

    registry = CalculatorRegistry.with_builtins(store)
    scheduler = AnalysisScheduler(registry, store)
    handle = scheduler.schedule("kick", audio, params)
"""

from .calculators import (
    BaseCalculator,
    CalculatorContext,
    SpectrogramCalculator,
    RmsCalculator,
    WaveformCalculator,
    PitchWaveformCalculator,
    BUILTIN_CALCULATORS,
)
from .registry import CalculatorRegistry
from .profiles import AnalysisProfile, ProfileRegistry, adhoc_profile_id
from .scheduler import AnalysisScheduler, AnalysisJob, AnalysisTask, JobHandle

__all__ = [
    'BaseCalculator',
    'CalculatorContext',
    'SpectrogramCalculator',
    'RmsCalculator',
    'WaveformCalculator',
    'PitchWaveformCalculator',
    'BUILTIN_CALCULATORS',
    'CalculatorRegistry',
    'AnalysisProfile',
    'ProfileRegistry',
    'adhoc_profile_id',
    'AnalysisScheduler',
    'AnalysisJob',
    'AnalysisTask',
    'JobHandle',
]
