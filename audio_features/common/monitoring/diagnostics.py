"""Diagnostics channel and job resource metrics."""

import threading
import psutil
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, List, Optional

from audio_features.common.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    """Progress of one calculator inside an analysis job."""
    source_id: str
    calculator_id: str
    processed: int
    total: int
    job_id: Optional[str] = None

    @property
    def ratio(self) -> float:
        return self.processed / self.total if self.total > 0 else 1.0

    def to_dict(self) -> dict:
        return asdict(self)


ProgressListener = Callable[[ProgressEvent], None]
SampleListener = Callable[[Any], None]


class DiagnosticsChannel:
    """
    Fan-out of progress events and per-sample diagnostics.

    Listener exceptions are logged and swallowed so observability
    consumers can never break analysis or rendering.

    Usage:
        channel = DiagnosticsChannel()
        unsubscribe = channel.on_progress(lambda e: print(e.ratio))
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._progress: List[ProgressListener] = []
        self._samples: List[SampleListener] = []

    def on_progress(self, listener: ProgressListener) -> Callable[[], None]:
        """Register a progress listener. Returns an unsubscribe callable."""
        with self._lock:
            self._progress.append(listener)
        return lambda: self._remove(self._progress, listener)

    def on_sample(self, listener: SampleListener) -> Callable[[], None]:
        """Register a sample-diagnostics listener. Returns an unsubscribe callable."""
        with self._lock:
            self._samples.append(listener)
        return lambda: self._remove(self._samples, listener)

    def _remove(self, listeners: list, listener) -> None:
        with self._lock:
            if listener in listeners:
                listeners.remove(listener)

    def emit_progress(self, event: ProgressEvent) -> None:
        with self._lock:
            listeners = list(self._progress)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Progress listener failed: {e}", data={
                    "source_id": event.source_id,
                    "calculator_id": event.calculator_id,
                })

    def emit_sample(self, diagnostics: Any) -> None:
        with self._lock:
            listeners = list(self._samples)
        if not listeners:
            return
        for listener in listeners:
            try:
                listener(diagnostics)
            except Exception as e:
                logger.warning(f"Sample diagnostics listener failed: {e}")


class JobMetrics:
    """Process memory snapshots around analysis jobs."""

    def __init__(self):
        self.process = psutil.Process()

    def get_memory_mb(self) -> float:
        """Get current memory usage in MB."""
        try:
            return self.process.memory_info().rss / 1024 / 1024
        except psutil.Error:
            return 0.0

    def record_job(
        self,
        job_id: str,
        source_id: str,
        duration_sec: float,
        memory_before_mb: float,
        outcome: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Log one finished job and return the logged metrics."""
        memory_after_mb = self.get_memory_mb()
        metrics = {
            "job_id": job_id,
            "source_id": source_id,
            "outcome": outcome,
            "duration_sec": round(duration_sec, 3),
            "memory_before_mb": round(memory_before_mb, 1),
            "memory_after_mb": round(memory_after_mb, 1),
            "memory_delta_mb": round(memory_after_mb - memory_before_mb, 1),
            **(context or {}),
        }
        logger.info(f"Job {job_id} {outcome} in {duration_sec:.2f}s", data=metrics)
        return metrics
