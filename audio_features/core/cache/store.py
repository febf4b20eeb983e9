"""
Feature Cache Store - owner of every source's cache and status.

Single entry point for cache state. Entries are created on first binding
of a source and destroyed only by clear().

Concurrency:
- Every write builds a new immutable AudioFeatureCache and replaces the
  dict entry under one lock (atomic reference swap).
- Reads take no lock; they see either the previous or the new cache,
  never a partially written one.

Usage:
    store = FeatureCacheStore()
    store.bind("kick", audio)
    store.ingest("kick", result_cache)
    cache = store.get("kick")
    store.invalidate_by_calculator("spectrogram", min_version=3)
"""

import math
import threading
from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterable, List, Optional, TYPE_CHECKING

from audio_features.common.logging import get_logger
from audio_features.core.errors import CacheError, TempoProjectionMismatch
from .interfaces import ICacheStatusProvider, CacheStats
from .models import (
    AudioFeatureCache,
    CacheState,
    CacheStatus,
    StaleReason,
)

if TYPE_CHECKING:
    from audio_features.common.primitives import AudioBuffer
    from .models import AnalysisParams

logger = get_logger(__name__)

StatusListener = Callable[[str, CacheStatus], None]


@dataclass(frozen=True)
class SourceBinding:
    """What a source was last analyzed from (needed for reanalyze)."""
    source_id: str
    audio: Optional['AudioBuffer'] = None
    params: Optional['AnalysisParams'] = None


class FeatureCacheStore(ICacheStatusProvider):
    """Owns AudioFeatureCache + CacheStatus per audio source."""

    def __init__(self):
        self._lock = threading.RLock()
        self._caches: Dict[str, AudioFeatureCache] = {}
        self._statuses: Dict[str, CacheStatus] = {}
        self._bindings: Dict[str, SourceBinding] = {}
        self._listeners: List[StatusListener] = []
        self._tempo_map_hash: Optional[str] = None

    # ============== Bindings ==============

    def bind(
        self,
        source_id: str,
        audio: Optional['AudioBuffer'] = None,
        params: Optional['AnalysisParams'] = None,
    ) -> SourceBinding:
        """Create (or refresh) the entry for a source. New entries start IDLE."""
        if not source_id:
            raise CacheError("source_id must be a non-empty string")
        with self._lock:
            previous = self._bindings.get(source_id)
            binding = SourceBinding(
                source_id,
                audio if audio is not None else (previous.audio if previous else None),
                params if params is not None else (previous.params if previous else None),
            )
            self._bindings[source_id] = binding
            created = source_id not in self._statuses
            if created:
                self._statuses[source_id] = CacheStatus.idle()
        if created:
            logger.debug(f"Bound source {source_id}", data={"source_id": source_id})
            self._notify(source_id, self._statuses[source_id])
        return binding

    def binding(self, source_id: str) -> Optional[SourceBinding]:
        return self._bindings.get(source_id)

    def is_bound(self, source_id: str) -> bool:
        return source_id in self._statuses

    # ============== Reads ==============

    def get(self, source_id: str) -> Optional[AudioFeatureCache]:
        return self._caches.get(source_id)

    def status(self, source_id: str) -> CacheStatus:
        status = self._statuses.get(source_id)
        return status if status is not None else CacheStatus.idle()

    def exists(self, source_id: str) -> bool:
        return source_id in self._caches

    def list_sources(self) -> List[str]:
        return list(self._statuses)

    def get_stats(self) -> CacheStats:
        statuses = list(self._statuses.values())
        caches = list(self._caches.values())

        def count(state: CacheState) -> int:
            return sum(1 for s in statuses if s.state is state)

        return CacheStats(
            source_count=len(statuses),
            ready_count=count(CacheState.READY),
            pending_count=count(CacheState.PENDING),
            stale_count=count(CacheState.STALE),
            failed_count=count(CacheState.FAILED),
            track_count=sum(len(c.feature_tracks) for c in caches),
            total_size_mb=round(sum(c.nbytes for c in caches) / 1024 / 1024, 3),
        )

    def input_drifted(self, source_id: str, audio: 'AudioBuffer') -> bool:
        """True when the cache was built from different PCM than `audio`."""
        cache = self._caches.get(source_id)
        if cache is None or cache.input_hash is None:
            return False
        return cache.input_hash != audio.content_hash()

    # ============== Status ==============

    def on_status_change(self, listener: StatusListener) -> Callable[[], None]:
        """Register a (source_id, status) listener. Returns an unsubscribe callable."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
        return unsubscribe

    def _notify(self, source_id: str, status: CacheStatus) -> None:
        for listener in list(self._listeners):
            try:
                listener(source_id, status)
            except Exception as e:
                logger.warning(f"Status listener failed: {e}", data={"source_id": source_id})

    def set_status(self, source_id: str, status: CacheStatus) -> None:
        with self._lock:
            if source_id not in self._statuses:
                raise CacheError(
                    f"Source {source_id} is not bound",
                    data={"source_id": source_id},
                )
            self._statuses[source_id] = status
        self._notify(source_id, status)

    def update_progress(self, source_id: str, job_id: str, progress: float) -> None:
        """Update the progress ratio of a PENDING status owned by `job_id`."""
        with self._lock:
            current = self._statuses.get(source_id)
            if current is None or current.state is not CacheState.PENDING or current.job_id != job_id:
                return
            status = current.with_progress(progress)
            self._statuses[source_id] = status
        self._notify(source_id, status)

    # ============== Writes ==============

    def ingest(
        self,
        source_id: str,
        result: AudioFeatureCache,
        replaced_calculators: Optional[Iterable[str]] = None,
    ) -> AudioFeatureCache:
        """
        Merge a job result into the source's cache and mark it READY
        (STALE when it is aligned to a tempo map other than the live one).

        Tracks of calculators that were not re-run are preserved as-is.
        Existing tracks of `replaced_calculators` (default: the calculators
        present in `result`) are dropped before the merge.

        Returns:
            The new cache instance.
        """
        if result.source_id != source_id:
            raise CacheError(
                f"Result for {result.source_id} cannot be ingested into {source_id}",
                data={"source_id": source_id, "result_source_id": result.source_id},
            )
        rerun = set(replaced_calculators) if replaced_calculators is not None else {
            t.calculator_id for t in result.feature_tracks.values()
        }

        with self._lock:
            existing = self._caches.get(source_id)
            if existing is None:
                merged = result
            else:
                ratio = result.hop_ticks / result.hop_seconds
                existing_ratio = existing.hop_ticks / existing.hop_seconds
                preserved = {}
                for key, track in existing.feature_tracks.items():
                    if track.calculator_id in rerun or key in result.feature_tracks:
                        continue
                    if not math.isclose(existing_ratio, ratio, rel_tol=1e-9):
                        track = track.with_timing(track.hop_seconds, track.hop_seconds * ratio)
                    preserved[key] = track

                versions = dict(existing.analysis_params.calculator_versions)
                for calculator_id in rerun:
                    versions.pop(calculator_id, None)
                versions.update(result.analysis_params.calculator_versions)

                aliases = dict(existing.channel_aliases)
                aliases.update(result.channel_aliases)

                merged = replace(
                    result,
                    feature_tracks={**preserved, **result.feature_tracks},
                    analysis_params=replace(result.analysis_params, calculator_versions=versions),
                    channel_aliases=aliases,
                )

            self._caches[source_id] = merged
            self._bindings.setdefault(source_id, SourceBinding(source_id))
            live_hash = self._tempo_map_hash
            if live_hash is not None and merged.tempo_map_hash not in (None, live_hash):
                mismatch = TempoProjectionMismatch(
                    f"{source_id} analyzed against tempo map {merged.tempo_map_hash}, live map is {live_hash}",
                    data={
                        "source_id": source_id,
                        "tempo_map_hash": merged.tempo_map_hash,
                        "live_tempo_map_hash": live_hash,
                    },
                )
                status = CacheStatus.stale(
                    StaleReason.TEMPO_CHANGED,
                    message=mismatch.message,
                    source_hash=merged.input_hash,
                )
            else:
                status = CacheStatus.ready(source_hash=merged.input_hash)
            self._statuses[source_id] = status

        logger.info(f"Ingested {len(result.feature_tracks)} track(s) into {source_id}", data={
            "source_id": source_id,
            "tracks": sorted(result.feature_tracks),
            "total_tracks": len(merged.feature_tracks),
            "frame_count": merged.frame_count,
            "state": status.state.value,
        })
        self._notify(source_id, status)
        return merged

    def put(self, cache: AudioFeatureCache, status: Optional[CacheStatus] = None) -> None:
        """Install a cache wholesale (e.g. loaded from a persisted payload)."""
        with self._lock:
            self._caches[cache.source_id] = cache
            self._bindings.setdefault(cache.source_id, SourceBinding(cache.source_id))
            new_status = status or CacheStatus.ready(source_hash=cache.input_hash)
            self._statuses[cache.source_id] = new_status
        self._notify(cache.source_id, new_status)

    def mark_stale(
        self,
        source_id: str,
        reason: StaleReason = StaleReason.MANUAL,
        message: Optional[str] = None,
        calculator_id: Optional[str] = None,
    ) -> bool:
        """
        Move a READY/FAILED source to STALE.

        Returns:
            True if the status changed
        """
        with self._lock:
            current = self._statuses.get(source_id)
            if current is None or current.state not in (CacheState.READY, CacheState.FAILED):
                return False
            status = CacheStatus.stale(
                reason,
                message=message,
                calculator_id=calculator_id,
                source_hash=current.source_hash,
            )
            self._statuses[source_id] = status

        logger.info(f"Marked {source_id} stale ({reason.value})", data={
            "source_id": source_id,
            "reason": reason.value,
            "calculator_id": calculator_id,
        })
        self._notify(source_id, status)
        return True

    def invalidate_by_calculator(self, calculator_id: str, min_version: int) -> List[str]:
        """
        Mark every cache holding a track of (calculator_id, version < min_version) stale.

        Returns:
            Source ids whose status changed
        """
        marked = []
        for source_id, cache in list(self._caches.items()):
            outdated = [
                t for t in cache.feature_tracks.values()
                if t.calculator_id == calculator_id and t.version < min_version
            ]
            if not outdated:
                continue
            if self.mark_stale(
                source_id,
                StaleReason.CALCULATOR_UPGRADED,
                message=f"{calculator_id} upgraded to v{min_version}",
                calculator_id=calculator_id,
            ):
                marked.append(source_id)
        return marked

    def invalidate_by_tempo_change(self, source_id: str, tempo_map_hash: Optional[str] = None) -> bool:
        """
        Mark a source stale because the live tempo map changed.

        With `tempo_map_hash`, only caches aligned to a different hash are marked.
        """
        cache = self._caches.get(source_id)
        if cache is None:
            return False
        if tempo_map_hash is not None and cache.tempo_map_hash == tempo_map_hash:
            return False
        return self.mark_stale(
            source_id,
            StaleReason.TEMPO_CHANGED,
            message=f"tempo map {cache.tempo_map_hash} -> {tempo_map_hash}",
        )

    @property
    def tempo_map_hash(self) -> Optional[str]:
        """Hash of the live tempo map, if one was announced."""
        return self._tempo_map_hash

    def set_tempo_map_hash(self, tempo_map_hash: Optional[str]) -> None:
        """Announce the live tempo map; later ingests aligned to another map land STALE."""
        with self._lock:
            self._tempo_map_hash = tempo_map_hash

    def invalidate_all_by_tempo(self, tempo_map_hash: str) -> List[str]:
        """Announce a new live tempo map and mark every cache aligned to another one stale."""
        self.set_tempo_map_hash(tempo_map_hash)
        return [
            source_id for source_id in list(self._caches)
            if self.invalidate_by_tempo_change(source_id, tempo_map_hash)
        ]

    def clear(self, source_id: str) -> bool:
        """Drop the source's cache, status and binding entirely."""
        with self._lock:
            had_entry = source_id in self._statuses or source_id in self._caches
            self._caches.pop(source_id, None)
            self._statuses.pop(source_id, None)
            self._bindings.pop(source_id, None)
        if had_entry:
            logger.info(f"Cleared cache for {source_id}", data={"source_id": source_id})
            self._notify(source_id, CacheStatus.idle())
        return had_entry
