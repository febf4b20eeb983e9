"""
Integration tests for FeatureService.

Tests cover:
1. Bind -> schedule -> sample end to end
2. Tempo map changes marking caches stale and reanalysis
3. Intents and required-versus-cached diffs
4. Persistence (serialize / load with stale detection)
5. Construction from YAML config
"""

import numpy as np
import pytest

from audio_features.common.primitives import TempoSegment
from audio_features.core.cache import CacheState, StaleReason
from audio_features.core.config import Config, InterpolationMode
from audio_features.core.errors import CacheError
from audio_features.modules.analysis import AnalysisProfile, RmsCalculator
from audio_features.modules.intents import Descriptor
from audio_features.modules.sampling.view_adapter import FallbackReason
from audio_features.services import FeatureService, create_feature_service


class RmsV2(RmsCalculator):
    version = 2


@pytest.fixture
def service():
    service = FeatureService(max_workers=0, yield_every=64)
    yield service
    service.shutdown()


@pytest.fixture
def analyzed(service, sine_audio):
    service.bind_source("kick", sine_audio)
    handle = service.schedule("kick")
    service.run_until_idle()
    handle.result()
    return service


# =============================================================================
# End-to-end Tests
# =============================================================================

@pytest.mark.integration
class TestAnalyzeAndSample:
    """Tests for the bind/schedule/sample path."""

    def test_bind_starts_idle(self, service, sine_audio):
        service.bind_source("kick", sine_audio)

        assert service.status("kick").state is CacheState.IDLE
        assert service.cache("kick") is None

    def test_schedule_and_sample(self, analyzed):
        result = analyzed.sample("kick", "rms", tick=960)

        assert analyzed.status("kick").state is CacheState.READY
        assert result.ok
        assert result.values[0] == pytest.approx(0.5 / np.sqrt(2), abs=0.01)
        assert result.diagnostics.fallback_reason is None

    def test_spectrogram_band(self, analyzed):
        bin_440 = round(440 * 2048 / 44100)

        peak = analyzed.sample("kick", descriptor=Descriptor("spectrogram", band_index=bin_440), tick=960)
        quiet = analyzed.sample("kick", descriptor=Descriptor("spectrogram", band_index=400), tick=960)

        assert peak.values[0] > quiet.values[0]

    def test_sample_range(self, analyzed):
        cache = analyzed.cache("kick")

        result = analyzed.sample_range("kick", "rms", 0, 1920)

        assert result.ok
        assert result.frame_count == int(1920 // cache.hop_ticks) + 1
        assert np.all(np.diff(result.frame_ticks) > 0)

    def test_schedule_without_audio(self, service):
        with pytest.raises(CacheError):
            service.schedule("nothing-bound")

    def test_progress_callback(self, service, short_audio):
        events = []
        service.bind_source("kick", short_audio)

        service.schedule("kick", calculator_ids=["rms"], on_progress=events.append)
        service.run_until_idle()

        assert events and events[-1].processed == events[-1].total

    def test_profile_binding(self, service, short_audio):
        service.profiles.add(AnalysisProfile("detail", window_size=1024, hop_size=256))
        service.bind_source("kick", short_audio, profile_id="detail")

        service.schedule("kick", calculator_ids=["rms"])
        service.run_until_idle()

        assert set(service.cache("kick").feature_tracks) == {"rms:detail"}
        result = service.sample("kick", descriptor=Descriptor("rms", analysis_profile_id="detail"), tick=0)
        assert result.diagnostics.track_key == "rms:detail"

    def test_clear(self, analyzed):
        assert analyzed.clear("kick") is True

        assert analyzed.cache("kick") is None
        assert analyzed.status("kick").state is CacheState.IDLE
        assert analyzed.sample("kick", "rms", tick=0).diagnostics.fallback_reason is FallbackReason.CACHE_MISSING

    def test_stats(self, analyzed):
        stats = analyzed.stats()

        assert stats.ready_count == 1
        assert stats.track_count == 3

    def test_calculator_upgrade(self, analyzed):
        assert analyzed.register_calculator(RmsV2()) == ["kick"]
        assert analyzed.status("kick").reason is StaleReason.CALCULATOR_UPGRADED


# =============================================================================
# Tempo Tests
# =============================================================================

@pytest.mark.integration
@pytest.mark.critical
class TestTempoChanges:
    """Tests for live tempo map replacement."""

    def test_same_map_is_noop(self, analyzed):
        assert analyzed.set_tempo_map([TempoSegment(0, 120)]) == []
        assert analyzed.status("kick").state is CacheState.READY

    def test_new_map_marks_stale(self, analyzed):
        marked = analyzed.set_tempo_map([TempoSegment(0, 140)])

        assert marked == ["kick"]
        status = analyzed.status("kick")
        assert status.state is CacheState.STALE
        assert status.reason is StaleReason.TEMPO_CHANGED

        result = analyzed.sample("kick", "rms", tick=960)
        assert result.ok
        assert FallbackReason.CACHE_STALE in result.diagnostics.flags
        assert FallbackReason.TEMPO_MISMATCH in result.diagnostics.flags

    def test_tempo_change_during_running_job(self, service, sine_audio):
        service.bind_source("kick", sine_audio)
        handle = service.schedule("kick", calculator_ids=["rms"])
        service.scheduler.run_pending()
        assert service.status("kick").state is CacheState.PENDING

        assert service.set_tempo_map([TempoSegment(0, 90)]) == []
        service.run_until_idle()

        cache = handle.result()
        status = service.status("kick")
        assert cache.tempo_map_hash != service.tempo_mapper.hash
        assert status.state is CacheState.STALE
        assert status.reason is StaleReason.TEMPO_CHANGED

        service.reanalyze("kick", ["rms"])
        service.run_until_idle()

        assert service.status("kick").state is CacheState.READY
        assert service.cache("kick").tempo_map_hash == service.tempo_mapper.hash

    def test_reanalysis_realigns(self, analyzed):
        analyzed.set_tempo_map([TempoSegment(0, 140)])

        analyzed.reanalyze("kick", ["rms"])
        analyzed.run_until_idle()

        cache = analyzed.cache("kick")
        assert analyzed.status("kick").state is CacheState.READY
        assert cache.tempo_map_hash == analyzed.tempo_mapper.hash
        ratio = cache.hop_ticks / cache.hop_seconds
        for track in cache.feature_tracks.values():
            assert track.hop_ticks / track.hop_seconds == pytest.approx(ratio)
        assert analyzed.sample("kick", "spectrogram", tick=960).diagnostics.flags == ()


# =============================================================================
# Intent Tests
# =============================================================================

@pytest.mark.integration
class TestIntents:
    """Tests for intents through the service."""

    def test_diff_before_and_after_analysis(self, service, sine_audio):
        service.publish_intent("meter", "kick", ["rms", "waveform"])
        service.bind_source("kick", sine_audio)

        before = service.diff("kick")
        service.schedule("kick")
        service.run_until_idle()
        after = service.diff("kick")

        assert before.missing == ("match:feature:rms|calc:rms", "match:feature:waveform|calc:waveform")
        assert after.satisfied
        assert after.extraneous == ("spectrogram",)

    def test_unpublish_keeps_cache(self, analyzed):
        analyzed.publish_intent("meter", "kick", ["rms"])

        assert analyzed.unpublish_intent("meter") is True
        assert analyzed.cache("kick") is not None


# =============================================================================
# Persistence Tests
# =============================================================================

@pytest.mark.integration
class TestPersistence:
    """Tests for serialize / load."""

    def test_unknown_source(self, service):
        assert service.serialize("nope") is None

    def test_load_into_fresh_service(self, analyzed):
        payload = analyzed.serialize("kick")
        other = FeatureService(max_workers=0)

        cache = other.load(payload)

        assert other.status("kick").state is CacheState.READY
        assert set(cache.feature_tracks) == {"spectrogram", "rms", "waveform"}
        np.testing.assert_allclose(
            other.sample("kick", "rms", tick=960).values,
            analyzed.sample("kick", "rms", tick=960).values,
        )

    def test_load_with_other_tempo(self, analyzed):
        payload = analyzed.serialize("kick")
        other = FeatureService(max_workers=0)
        other.set_tempo_map([TempoSegment(0, 90)])

        other.load(payload)

        assert other.status("kick").reason is StaleReason.TEMPO_CHANGED

    def test_load_with_newer_calculator(self, analyzed):
        payload = analyzed.serialize("kick")
        other = FeatureService(max_workers=0)
        other.register_calculator(RmsV2())

        other.load(payload)

        status = other.status("kick")
        assert status.state is CacheState.STALE
        assert status.reason is StaleReason.CALCULATOR_UPGRADED


# =============================================================================
# Construction Tests
# =============================================================================

@pytest.mark.unit
class TestCreateFeatureService:
    """Tests for create_feature_service."""

    def test_from_default_config(self):
        service = create_feature_service(max_workers=0)

        assert "fast" in service.profiles
        assert service.view.extra_aliases["front-left"] == 0
        assert service.scheduler.yield_every == 100

    def test_from_dict_config(self):
        config = Config.from_dict({
            "analysis": {"yield_every": 16},
            "timing": {"ticks_per_quarter": 480, "default_bpm": 100},
            "sampling": {"interpolation": "hold", "smoothing": 2},
            "profiles": {"detail": {"window_size": 1024, "hop_size": 256}},
            "channel_aliases": {"Kick In": 1},
        })

        service = create_feature_service(config, max_workers=0)

        assert service.tempo_mapper.ticks_per_quarter == 480
        assert service.tempo_mapper.default_bpm == 100.0
        assert service.scheduler.yield_every == 16
        assert service.view.default_interpolation is InterpolationMode.HOLD
        assert service.view.smoothing == 2
        assert service.view.extra_aliases == {"Kick In": 1}
        assert "detail" in service.profiles


@pytest.mark.integration
@pytest.mark.slow
def test_thread_pool_service(sine_audio):
    service = FeatureService(max_workers=2)
    try:
        service.bind_source("kick", sine_audio)
        cache = service.schedule("kick").result(timeout=120)
    finally:
        service.shutdown()

    assert len(cache.feature_tracks) == 3
    assert service.status("kick").state is CacheState.READY
