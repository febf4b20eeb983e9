"""
Unit tests for the diagnostics channel and job metrics.

Tests cover:
1. Progress events (ratio, serialization)
2. Listener fan-out and unsubscribe
3. Listener failures isolated from emitters
4. Job memory metrics
"""

import logging

import pytest

from audio_features.common.monitoring import DiagnosticsChannel, JobMetrics, ProgressEvent


# =============================================================================
# Progress Event Tests
# =============================================================================

@pytest.mark.unit
class TestProgressEvent:
    """Tests for ProgressEvent."""

    def test_ratio(self):
        assert ProgressEvent("kick", "rms", 25, 100).ratio == 0.25

    def test_ratio_empty_total(self):
        assert ProgressEvent("kick", "rms", 0, 0).ratio == 1.0

    def test_to_dict(self):
        event = ProgressEvent("kick", "rms", 3, 9, job_id="job-1")

        assert event.to_dict() == {
            "source_id": "kick",
            "calculator_id": "rms",
            "processed": 3,
            "total": 9,
            "job_id": "job-1",
        }


# =============================================================================
# Channel Tests
# =============================================================================

@pytest.mark.unit
class TestDiagnosticsChannel:
    """Tests for DiagnosticsChannel."""

    def test_progress_fan_out(self):
        channel = DiagnosticsChannel()
        first, second = [], []
        channel.on_progress(first.append)
        channel.on_progress(second.append)
        event = ProgressEvent("kick", "rms", 1, 2)

        channel.emit_progress(event)

        assert first == [event]
        assert second == [event]

    def test_unsubscribe(self):
        channel = DiagnosticsChannel()
        received = []
        unsubscribe = channel.on_sample(received.append)

        channel.emit_sample("a")
        unsubscribe()
        unsubscribe()
        channel.emit_sample("b")

        assert received == ["a"]

    def test_failing_listener_isolated(self, caplog):
        channel = DiagnosticsChannel()
        received = []

        def broken(event):
            raise RuntimeError("listener down")

        channel.on_progress(broken)
        channel.on_progress(received.append)

        with caplog.at_level(logging.WARNING, logger="audio_features.common.monitoring.diagnostics"):
            channel.emit_progress(ProgressEvent("kick", "rms", 1, 1))

        assert len(received) == 1
        assert "listener down" in caplog.records[-1].getMessage()
        assert caplog.records[-1].structured_data["source_id"] == "kick"

    def test_failing_sample_listener(self):
        channel = DiagnosticsChannel()
        channel.on_sample(lambda d: 1 / 0)

        channel.emit_sample({"tick": 0})

    def test_no_listeners(self):
        DiagnosticsChannel().emit_sample(object())


# =============================================================================
# Job Metrics Tests
# =============================================================================

@pytest.mark.unit
class TestJobMetrics:
    """Tests for JobMetrics."""

    def test_memory_positive(self):
        assert JobMetrics().get_memory_mb() > 0

    def test_record_job(self, caplog):
        metrics = JobMetrics()

        with caplog.at_level(logging.INFO, logger="audio_features.common.monitoring.diagnostics"):
            result = metrics.record_job(
                "job-1", "kick", 1.23456, 10.0, "completed", context={"calculators": ["rms"]}
            )

        assert result["duration_sec"] == 1.235
        assert result["outcome"] == "completed"
        assert result["calculators"] == ["rms"]
        assert result["memory_delta_mb"] == pytest.approx(result["memory_after_mb"] - 10.0, abs=0.11)
        assert caplog.records[-1].structured_data == result
