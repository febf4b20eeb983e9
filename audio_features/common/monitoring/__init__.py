"""Diagnostics and resource monitoring."""

from .diagnostics import (
    DiagnosticsChannel,
    JobMetrics,
    ProgressEvent,
    ProgressListener,
    SampleListener,
)

__all__ = [
    'DiagnosticsChannel',
    'JobMetrics',
    'ProgressEvent',
    'ProgressListener',
    'SampleListener',
]
