"""
Base classes for calculators.

CalculatorContext holds everything one calculator needs for one job.
BaseCalculator turns a step generator into a blocking `calculate` and
provides the default track serializers.
"""

import threading
import numpy as np
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from audio_features.common.primitives import AudioBuffer, TempoMapper, mix_to_mono
from audio_features.core.cache.models import (
    AnalysisParams,
    AudioFeatureTrack,
    TempoProjection,
)
from audio_features.core.cache.serialization import serialize_track, deserialize_track
from audio_features.core.errors import AnalysisCancelled
from audio_features.core.interfaces import CalculationResult, CalculationSteps
from audio_features.modules.sampling.identity import build_track_key

# Args: (processed frames, total frames)
ProgressCallback = Callable[[int, int], None]

DEFAULT_YIELD_EVERY = 100


@dataclass
class CalculatorContext:
    """
    Per-calculator view of an analysis job.

    Attributes:
        source_id: Audio source being analyzed
        audio: Decoded PCM
        params: Analysis parameters (window/hop/FFT)
        hop_seconds: Canonical hop in seconds (hop_size / sample_rate)
        hop_ticks: Canonical hop in ticks under the job's tempo map
        frame_count: Canonical frame count
        tempo_mapper: Tempo map the hop was quantized against
        tempo_projection: Start tick + tempo hash recorded on tracks
        cancel_event: Cooperative cancellation token
        progress_callback: Receives (processed, total) after each slice
        yield_every: Frames per slice
        mono: Shared read-only mono mix (computed on first use if absent)
    """
    source_id: str
    audio: AudioBuffer
    params: AnalysisParams
    hop_seconds: float
    hop_ticks: float
    frame_count: int
    tempo_mapper: TempoMapper
    tempo_projection: TempoProjection = field(default_factory=TempoProjection)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    progress_callback: Optional[ProgressCallback] = None
    yield_every: int = DEFAULT_YIELD_EVERY
    mono: Optional[np.ndarray] = None

    def __post_init__(self):
        self.yield_every = max(1, int(self.yield_every))

    def get_mono(self) -> np.ndarray:
        if self.mono is None:
            mono = mix_to_mono(self.audio)
            mono.setflags(write=False)
            self.mono = mono
        return self.mono

    @property
    def sample_rate(self) -> int:
        return self.audio.sample_rate

    @property
    def profile_id(self) -> str:
        return self.params.analysis_profile_id

    def track_key(self, feature_key: str) -> str:
        return build_track_key(feature_key, self.profile_id)

    def check_cancelled(self):
        """Raise AnalysisCancelled if the job's token is set."""
        if self.cancel_event.is_set():
            raise AnalysisCancelled(
                f"Analysis of {self.source_id} cancelled",
                data={"source_id": self.source_id},
            )

    def report_progress(self, processed: int, total: int):
        """Report progress to callback if set."""
        if self.progress_callback:
            self.progress_callback(processed, total)

    def slices(self, total: int):
        """(start, stop) frame ranges of at most `yield_every` frames."""
        for start in range(0, total, self.yield_every):
            yield start, min(total, start + self.yield_every)


class BaseCalculator(ABC):
    """
    Abstract base class for calculators.

    Subclasses implement `steps`: a generator that yields the number of
    frames processed after each slice and returns the finished track(s).
    """

    id: str = ""
    version: int = 1
    feature_key: str = ""
    label: Optional[str] = None
    default_params: Dict[str, Any] = {}

    @property
    def name(self) -> str:
        return self.label or self.__class__.__name__

    def prepare(self, params: AnalysisParams) -> None:
        """Per-job hook run before the first step."""
        return None

    @abstractmethod
    def steps(self, context: CalculatorContext) -> CalculationSteps:
        """Step-driven computation."""
        pass

    def calculate(self, context: CalculatorContext) -> CalculationResult:
        """Run all steps and return the track(s)."""
        self.prepare(context.params)
        generator = self.steps(context)
        while True:
            try:
                next(generator)
            except StopIteration as stop:
                return stop.value

    def serialize_track(self, track: AudioFeatureTrack) -> Dict[str, Any]:
        return serialize_track(track)

    def deserialize_track(self, payload: Dict[str, Any]) -> AudioFeatureTrack:
        return deserialize_track(payload)

    def build_track(self, context: CalculatorContext, data, **overrides) -> AudioFeatureTrack:
        """Track at the canonical hop with this calculator's identity."""
        fields = dict(
            key=context.track_key(self.feature_key),
            calculator_id=self.id,
            version=self.version,
            frame_count=context.frame_count,
            channels=1,
            format="float32",
            hop_seconds=context.hop_seconds,
            hop_ticks=context.hop_ticks,
            data=data,
            analysis_profile_id=context.profile_id,
        )
        fields.update(overrides)
        return AudioFeatureTrack(**fields)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(id={self.id!r}, version={self.version})"


def as_track_list(result: CalculationResult) -> List[AudioFeatureTrack]:
    """Normalize a calculator result to a list of tracks."""
    if result is None:
        return []
    if isinstance(result, AudioFeatureTrack):
        return [result]
    return list(result)
