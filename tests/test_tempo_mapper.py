"""
Unit tests for the tempo mapper.

Tests cover:
1. Constant tempo conversion and round trips
2. Step and linear-ramp tempo maps
3. Batch conversion parity with scalar conversion
4. Negative positions, validation and hashing
"""

import math
import numpy as np
import pytest

from audio_features.common.primitives import TempoMapper, TempoSegment, compute_tempo_map_hash
from audio_features.core.errors import ValidationError


# =============================================================================
# Constant Tempo
# =============================================================================

@pytest.mark.unit
class TestConstantTempo:
    """Tests for a map without segments (default tempo)."""

    def test_one_second_is_two_beats_at_120(self, tempo_mapper):
        assert tempo_mapper.ticks_to_seconds(1920) == pytest.approx(1.0)
        assert tempo_mapper.seconds_to_ticks(1.0) == pytest.approx(1920.0)

    def test_round_trip(self, tempo_mapper):
        for tick in (0.0, 1.5, 960.0, 123456.789):
            assert tempo_mapper.seconds_to_ticks(tempo_mapper.ticks_to_seconds(tick)) == pytest.approx(tick)

    def test_is_constant(self, tempo_mapper):
        assert tempo_mapper.is_constant
        assert tempo_mapper.seconds_per_tick == pytest.approx(1 / 1920)

    def test_negative_ticks_extrapolate(self, tempo_mapper):
        assert tempo_mapper.ticks_to_seconds(-1920) == pytest.approx(-1.0)
        assert tempo_mapper.seconds_to_ticks(-0.5) == pytest.approx(-960.0)


# =============================================================================
# Tempo Changes
# =============================================================================

@pytest.mark.unit
class TestTempoChanges:
    """Tests for step and linear tempo segments."""

    def test_step_change(self):
        mapper = TempoMapper([TempoSegment(0, 120), TempoSegment(3840, 60)])

        assert mapper.ticks_to_seconds(3840) == pytest.approx(2.0)
        # 960 ticks = one beat at 60 BPM
        assert mapper.ticks_to_seconds(4800) == pytest.approx(3.0)
        assert mapper.seconds_to_ticks(3.0) == pytest.approx(4800)
        assert not mapper.is_constant

    def test_segment_after_zero_gets_default_prefix(self):
        mapper = TempoMapper([TempoSegment(1920, 60)], default_bpm=120)

        assert mapper.ticks_to_seconds(1920) == pytest.approx(1.0)
        assert mapper.ticks_to_seconds(2880) == pytest.approx(2.0)

    def test_linear_ramp_closed_form(self):
        mapper = TempoMapper([
            TempoSegment(0, 120, curve="linear"),
            TempoSegment(3840, 240),
        ])
        slope = 120 / 3840
        expected = 60.0 / (960 * slope) * math.log(240 / 120)

        assert mapper.ticks_to_seconds(3840) == pytest.approx(expected)
        assert mapper.bpm_at_tick(1920) == pytest.approx(180.0)

    def test_linear_ramp_round_trip(self):
        mapper = TempoMapper([
            TempoSegment(0, 100, curve="linear", end_bpm=140),
            TempoSegment(7680, 140),
        ])
        for tick in (0.0, 100.0, 3000.0, 7679.0, 9000.0):
            assert mapper.seconds_to_ticks(mapper.ticks_to_seconds(tick)) == pytest.approx(tick, abs=1e-6)

    def test_batch_matches_scalar(self):
        mapper = TempoMapper([
            TempoSegment(0, 128, curve="linear"),
            TempoSegment(1920, 96),
            TempoSegment(5760, 150),
        ])
        ticks = np.array([-480.0, 0.0, 500.0, 1920.0, 4000.0, 9000.0])

        seconds = mapper.ticks_to_seconds_batch(ticks)

        np.testing.assert_allclose(seconds, [mapper.ticks_to_seconds(t) for t in ticks], rtol=1e-12)
        np.testing.assert_allclose(mapper.seconds_to_ticks_batch(seconds), ticks, atol=1e-6)

    def test_project_frame_ticks(self, tempo_mapper):
        ticks = tempo_mapper.project_frame_ticks(0.0, 0.5, 3)
        shifted = tempo_mapper.project_frame_ticks(0.25, 0.5, 2, first_frame=2)

        np.testing.assert_allclose(ticks, [0.0, 960.0, 1920.0])
        np.testing.assert_allclose(shifted, [2400.0, 3360.0])

    def test_profiler_receives_events(self):
        events = []
        mapper = TempoMapper(profiler=lambda event, ns: events.append((event, ns)))

        mapper.ticks_to_seconds(10)
        mapper.seconds_to_ticks_batch([1.0, 2.0])

        assert [e for e, _ in events] == ["ticks-to-seconds", "seconds-batch"]
        assert all(ns >= 0 for _, ns in events)


# =============================================================================
# Validation and Hashing
# =============================================================================

@pytest.mark.unit
class TestTempoValidation:
    """Tests for invalid maps and the tempo map hash."""

    @pytest.mark.parametrize("segments", [
        [TempoSegment(0, 0)],
        [TempoSegment(0, -10)],
        [TempoSegment(-1, 120)],
        [TempoSegment(0, 120, curve="exp")],
        [TempoSegment(0, 120), TempoSegment(0, 90)],
    ])
    def test_invalid_segments(self, segments):
        with pytest.raises(ValidationError):
            TempoMapper(segments)

    def test_invalid_ppq(self):
        with pytest.raises(ValidationError):
            TempoMapper(ticks_per_quarter=0)

    def test_hash_is_order_independent(self):
        a = [TempoSegment(0, 120), TempoSegment(960, 90)]

        assert TempoMapper(a).hash == TempoMapper(list(reversed(a))).hash

    def test_hash_changes_with_tempo(self):
        assert TempoMapper([TempoSegment(0, 120)]).hash != TempoMapper([TempoSegment(0, 121)]).hash
        assert TempoMapper(default_bpm=120).hash != TempoMapper(default_bpm=100).hash

    def test_hash_of_equivalent_maps(self):
        assert TempoMapper([TempoSegment(0, 120)]).hash == TempoMapper(default_bpm=120).hash
        assert TempoMapper([TempoSegment(960, 90)], default_bpm=120).hash == \
            TempoMapper([TempoSegment(0.0, 120.0), TempoSegment(960.0, 90.0)]).hash

    def test_hash_format(self):
        digest = compute_tempo_map_hash([TempoSegment(0, 120)])

        assert len(digest) == 16
        int(digest, 16)

    def test_segment_from_dict_accepts_camel_case(self):
        segment = TempoSegment.from_dict({"startTick": 960, "bpm": 90, "endBpm": 100, "curve": "linear"})

        assert segment == TempoSegment(960.0, 90.0, "linear", 100)
