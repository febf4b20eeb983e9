"""
Calculator Protocol - Interface for feature calculators.

A calculator turns one AudioBuffer into one or more AudioFeatureTracks.
Work is exposed as a step generator so the scheduler can advance it in
bounded slices and check cancellation between them; `calculate` drives
the same generator to completion.
"""

from typing import Any, Dict, Generator, List, Protocol, Union

CalculationResult = Union[Any, List[Any]]

# Yields frames processed so far; returns the track(s)
CalculationSteps = Generator[int, None, CalculationResult]


class CalculatorProtocol(Protocol):
    """Protocol for feature calculators (DI interface)."""

    @property
    def id(self) -> str:
        """Stable calculator id (e.g. 'spectrogram')."""
        ...

    @property
    def version(self) -> int:
        """Algorithm version; bump to invalidate caches built by older ones."""
        ...

    @property
    def feature_key(self) -> str:
        """Default feature key of the produced track."""
        ...

    def prepare(self, params: Any) -> None:
        """Per-job hook run before the first step (may be a no-op)."""
        ...

    def steps(self, context: Any) -> CalculationSteps:
        """Step-driven computation."""
        ...

    def calculate(self, context: Any) -> CalculationResult:
        """Run `steps` to completion."""
        ...

    def serialize_track(self, track: Any) -> Dict[str, Any]:
        """Track -> JSON-safe dict."""
        ...

    def deserialize_track(self, payload: Dict[str, Any]) -> Any:
        """JSON-safe dict -> track."""
        ...
