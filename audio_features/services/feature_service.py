"""
FeatureService - Unified interface for the audio feature cache.

Wires the registry, store, scheduler, view adapter and intent bus into the
API rendering/UI collaborators call.

Architecture:
    - The store owns every cache and status
    - The scheduler is the only writer of analysis results
    - Sampling reads caches lock-free and never raises
    - Intents describe what is needed; regeneration is always explicit

Usage:
    from audio_features.services import create_feature_service

    service = create_feature_service()
    service.bind_source("kick", audio)
    service.schedule("kick").result()

    result = service.sample("kick", "rms", tick=960)
    service.reanalyze("kick", ["rms"])
"""

from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from audio_features.common.logging import get_logger, setup_logging
from audio_features.common.monitoring import DiagnosticsChannel
from audio_features.common.primitives import AudioBuffer, TempoMapper, TempoSegment
from audio_features.core.cache import (
    AnalysisParams,
    AudioFeatureCache,
    CacheStats,
    CacheStatus,
    FeatureCacheStore,
    SourceBinding,
    deserialize_cache,
    serialize_cache,
)
from audio_features.core.config import Config, InterpolationMode, get_config, get_settings
from audio_features.core.errors import CacheError
from audio_features.core.interfaces import CalculatorProtocol
from audio_features.modules.analysis import (
    AnalysisScheduler,
    CalculatorRegistry,
    JobHandle,
    ProfileRegistry,
)
from audio_features.modules.analysis.scheduler import JobProgressCallback
from audio_features.modules.intents import AnalysisIntentBus, CacheDiff, Descriptor, create_descriptor
from audio_features.modules.sampling.view_adapter import (
    RangeResult,
    SampleResult,
    TempoAlignedViewAdapter,
)

logger = get_logger(__name__)


class FeatureService:
    """Consumer API over one registry/store/scheduler set."""

    def __init__(
        self,
        registry: Optional[CalculatorRegistry] = None,
        store: Optional[FeatureCacheStore] = None,
        scheduler: Optional[AnalysisScheduler] = None,
        profiles: Optional[ProfileRegistry] = None,
        tempo_mapper: Optional[TempoMapper] = None,
        diagnostics: Optional[DiagnosticsChannel] = None,
        intents: Optional[AnalysisIntentBus] = None,
        extra_aliases: Optional[Dict[str, int]] = None,
        max_workers: Optional[int] = None,
        yield_every: Optional[int] = None,
        interpolation: Union[InterpolationMode, str, None] = None,
        smoothing: int = 0,
    ):
        settings = get_settings()
        self.store = store or FeatureCacheStore()
        self.registry = registry or CalculatorRegistry.with_builtins(self.store)
        self.diagnostics = diagnostics or DiagnosticsChannel()
        self.scheduler = scheduler or AnalysisScheduler(
            self.registry,
            self.store,
            diagnostics=self.diagnostics,
            max_workers=max_workers,
            yield_every=yield_every,
        )
        self.profiles = profiles or ProfileRegistry()
        self.tempo_mapper = tempo_mapper or TempoMapper(
            ticks_per_quarter=settings.ticks_per_quarter,
            default_bpm=settings.default_bpm,
        )
        self.store.set_tempo_map_hash(self.tempo_mapper.hash)
        self.intents = intents or AnalysisIntentBus()
        self.view = TempoAlignedViewAdapter(
            self.tempo_mapper,
            diagnostics=self.diagnostics,
            status_provider=self.store,
            extra_aliases=extra_aliases,
            default_interpolation=interpolation,
            smoothing=smoothing,
        )

    # ============== Sources ==============

    def bind_source(
        self,
        source_id: str,
        audio: AudioBuffer,
        profile_id: Optional[str] = None,
    ) -> SourceBinding:
        """Attach decoded audio to a source (status IDLE on first bind)."""
        params = self.profiles.params_for(profile_id, audio.sample_rate)
        binding = self.store.bind(source_id, audio, params)
        if self.store.input_drifted(source_id, audio):
            logger.info(f"Audio for {source_id} changed since last analysis", data={"source_id": source_id})
        return binding

    def status(self, source_id: str) -> CacheStatus:
        return self.store.status(source_id)

    def cache(self, source_id: str) -> Optional[AudioFeatureCache]:
        return self.store.get(source_id)

    def stats(self) -> CacheStats:
        return self.store.get_stats()

    def clear(self, source_id: str) -> bool:
        """Cancel the source's jobs and drop its cache entirely."""
        self.scheduler.cancel_source(source_id)
        return self.store.clear(source_id)

    # ============== Calculators ==============

    def register_calculator(self, calculator: CalculatorProtocol) -> List[str]:
        """Register a calculator; returns sources marked stale by an upgrade."""
        return self.registry.register(calculator)

    # ============== Analysis ==============

    def schedule(
        self,
        source_id: str,
        audio: Optional[AudioBuffer] = None,
        calculator_ids: Optional[Sequence[str]] = None,
        profile_id: Optional[str] = None,
        params: Optional[AnalysisParams] = None,
        merge: bool = False,
        on_progress: Optional[JobProgressCallback] = None,
        start_tick: float = 0.0,
    ) -> JobHandle:
        """
        Analyze a source with the live tempo map.

        Falls back to the bound audio/params when not given.

        Raises:
            CacheError: no audio given or bound
            UnknownCalculator: any id is not registered
        """
        binding = self.store.binding(source_id)
        if audio is None:
            audio = binding.audio if binding is not None else None
        if audio is None:
            raise CacheError(f"No audio bound for {source_id}", data={"source_id": source_id})
        if params is None:
            if profile_id is not None or binding is None or binding.params is None:
                params = self.profiles.params_for(profile_id, audio.sample_rate)
            else:
                params = binding.params
        return self.scheduler.schedule(
            source_id,
            audio,
            params,
            calculator_ids=calculator_ids,
            merge=merge,
            on_progress=on_progress,
            tempo_mapper=self.tempo_mapper,
            start_tick=start_tick,
        )

    def reanalyze(
        self,
        source_id: str,
        calculator_ids: Sequence[str],
        on_progress: Optional[JobProgressCallback] = None,
    ) -> JobHandle:
        """Merge job: recompute only `calculator_ids`, keep the other tracks."""
        return self.scheduler.reanalyze(
            source_id,
            calculator_ids,
            on_progress=on_progress,
            tempo_mapper=self.tempo_mapper,
        )

    def run_until_idle(self) -> int:
        """Drive cooperative jobs (scheduler created with max_workers=0)."""
        return self.scheduler.run_until_idle()

    # ============== Tempo ==============

    def set_tempo_map(
        self,
        segments: Union[TempoMapper, Iterable[TempoSegment], None],
        ticks_per_quarter: Optional[int] = None,
        default_bpm: Optional[float] = None,
    ) -> List[str]:
        """
        Replace the live tempo map.

        Returns:
            Sources marked stale because they were aligned to another map
        """
        if isinstance(segments, TempoMapper):
            mapper = segments
        else:
            mapper = TempoMapper(
                list(segments or []),
                ticks_per_quarter=ticks_per_quarter or self.tempo_mapper.ticks_per_quarter,
                default_bpm=default_bpm or self.tempo_mapper.default_bpm,
            )
        previous = self.tempo_mapper.hash
        self.tempo_mapper = mapper
        self.view.set_tempo_mapper(mapper)
        if mapper.hash == previous:
            return []
        marked = self.store.invalidate_all_by_tempo(mapper.hash)
        logger.info(f"Tempo map changed {previous} -> {mapper.hash}", data={
            "previous_hash": previous,
            "tempo_map_hash": mapper.hash,
            "stale_sources": marked,
        })
        return marked

    # ============== Sampling ==============

    def sample(
        self,
        source_id: str,
        feature_key: Optional[str] = None,
        tick: float = 0.0,
        descriptor: Optional[Descriptor] = None,
        interpolation: Union[InterpolationMode, str, None] = None,
        smoothing: Optional[int] = None,
    ) -> SampleResult:
        return self.view.sample(
            self.store.get(source_id),
            feature_key,
            descriptor,
            tick,
            interpolation=interpolation,
            smoothing=smoothing,
            status=self.store.status(source_id),
        )

    def sample_range(
        self,
        source_id: str,
        descriptor: Union[Descriptor, str],
        start_tick: float,
        end_tick: float,
        frame_padding: int = 0,
    ) -> RangeResult:
        return self.view.sample_range(
            self.store.get(source_id),
            descriptor,
            start_tick,
            end_tick,
            frame_padding=frame_padding,
            status=self.store.status(source_id),
        )

    # ============== Intents ==============

    def publish_intent(
        self,
        consumer_id: str,
        source_id: Optional[str],
        descriptors: Iterable[Union[Descriptor, str]],
        profile: Optional[str] = None,
    ) -> bool:
        resolved = [
            create_descriptor(d, registry=self.registry) if isinstance(d, str) else d
            for d in descriptors
        ]
        return self.intents.publish(consumer_id, source_id, resolved, profile=profile)

    def unpublish_intent(self, consumer_id: str) -> bool:
        return self.intents.unpublish(consumer_id)

    def diff(self, source_id: str) -> CacheDiff:
        return self.intents.diff(
            source_id,
            self.store.get(source_id),
            self.store.status(source_id),
            registry=self.registry,
        )

    # ============== Persistence ==============

    def serialize(self, source_id: str) -> Optional[Dict[str, Any]]:
        cache = self.store.get(source_id)
        if cache is None:
            return None
        return serialize_cache(cache, self.registry)

    def load(self, payload: Dict[str, Any]) -> AudioFeatureCache:
        """
        Install a persisted cache.

        The status is READY, or STALE when the payload was aligned to
        another tempo map or built by older calculator versions.
        """
        cache = deserialize_cache(payload, self.registry)
        self.store.put(cache)
        if cache.tempo_map_hash is not None and cache.tempo_map_hash != self.tempo_mapper.hash:
            self.store.invalidate_by_tempo_change(cache.source_id, self.tempo_mapper.hash)
        else:
            versions = self.registry.versions()
            for track in cache.feature_tracks.values():
                registered = versions.get(track.calculator_id)
                if registered is not None and track.version < registered:
                    self.store.invalidate_by_calculator(track.calculator_id, registered)
                    break
        return cache

    def shutdown(self) -> None:
        self.scheduler.shutdown()


def create_feature_service(
    config: Optional[Config] = None,
    max_workers: Optional[int] = None,
    setup_logs: bool = False,
) -> FeatureService:
    """
    FeatureService with profiles, timing, sampling and channel aliases from the YAML config.

    Args:
        config: Loaded config (default: AF_CONFIG_PATH or config/default_config.yaml)
        max_workers: Thread pool size (0 = cooperative, default from settings)
        setup_logs: Configure root logging from LOG_LEVEL / LOG_JSON first
    """
    settings = get_settings()
    if setup_logs:
        setup_logging(level=settings.log_level.value, json_format=settings.log_json, component="analysis")
    config = config or get_config(settings.config_path)
    store = FeatureCacheStore()
    sampling = config.sampling or {}
    tempo_mapper = TempoMapper(
        ticks_per_quarter=int(config.get('timing.ticks_per_quarter', settings.ticks_per_quarter)),
        default_bpm=float(config.get('timing.default_bpm', settings.default_bpm)),
    )
    yield_every = config.get('analysis.yield_every')
    return FeatureService(
        registry=CalculatorRegistry.with_builtins(store),
        store=store,
        profiles=ProfileRegistry.from_config(config),
        tempo_mapper=tempo_mapper,
        extra_aliases={str(k): int(v) for k, v in (config.channel_aliases or {}).items()},
        max_workers=max_workers,
        yield_every=int(yield_every) if yield_every is not None else None,
        interpolation=sampling.get('interpolation'),
        smoothing=int(sampling.get('smoothing', 0) or 0),
    )
