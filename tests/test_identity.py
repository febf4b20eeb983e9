"""
Unit tests for feature track identity.

Tests cover:
1. Track key construction per analysis profile
2. Key parsing
3. Candidate order and track resolution
"""

import pytest

from audio_features.modules.sampling.identity import (
    build_track_key,
    parse_track_key,
    resolve_feature_track,
    sanitize_profile_id,
    track_key_candidates,
)

from conftest import make_cache, make_track


@pytest.mark.unit
class TestTrackKeys:
    """Tests for build_track_key / parse_track_key."""

    def test_default_profile_is_plain(self):
        assert build_track_key("spectrogram") == "spectrogram"
        assert build_track_key("spectrogram", "default") == "spectrogram"
        assert build_track_key("spectrogram", "  ") == "spectrogram"

    def test_named_profile(self):
        assert build_track_key("spectrogram", " detail ") == "spectrogram:detail"

    def test_empty_feature(self):
        assert build_track_key("") == "unknown"

    def test_parse(self):
        assert parse_track_key("spectrogram:detail") == ("spectrogram", "detail")
        assert parse_track_key("rms") == ("rms", "default")
        assert parse_track_key(":detail") == (":detail", "default")
        assert parse_track_key(None) == ("", "default")

    def test_sanitize_profile_id(self):
        assert sanitize_profile_id(" fast ") == "fast"
        assert sanitize_profile_id("") is None
        assert sanitize_profile_id(3) is None


@pytest.mark.unit
class TestResolution:
    """Tests for candidate keys and lookup."""

    def test_candidates_order(self):
        assert track_key_candidates("rms", "detail") == ["rms", "rms:detail", "rms:default"]

    def test_candidates_for_profiled_key(self):
        assert track_key_candidates("rms:detail") == ["rms:detail", "rms", "rms:default"]

    def test_candidates_empty(self):
        assert track_key_candidates("  ") == []

    def test_plain_key_preferred(self):
        cache = make_cache([make_track("rms"), make_track("rms:detail", calculator_id="rms")])

        key, track = resolve_feature_track(cache, "rms", "detail")

        assert key == "rms"
        assert track is cache.feature_tracks["rms"]

    def test_profile_track_found(self):
        cache = make_cache([make_track("rms:detail", calculator_id="rms")])

        key, track = resolve_feature_track(cache, "rms", "detail")

        assert key == "rms:detail"
        assert track.calculator_id == "rms"

    def test_missing_track(self):
        assert resolve_feature_track(make_cache(), "chroma") == ("chroma", None)

    def test_no_cache(self):
        assert resolve_feature_track(None, "rms") == (None, None)
