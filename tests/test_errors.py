"""
Unit tests for the error hierarchy.

Tests cover:
1. Structured data, cause and to_dict
2. Correlation / job context captured at construction
3. Per-class log levels
4. Built-in exception compatibility
"""

import logging

import pytest

from audio_features.common.logging import job_context, set_correlation_id
from audio_features.core.errors import (
    AnalysisCancelled,
    AudioFeatureError,
    CacheError,
    CalculatorError,
    ChannelResolutionError,
    ConfigurationError,
    TempoProjectionMismatch,
    UnknownCalculator,
    UnsupportedFormat,
    ValidationError,
)


@pytest.mark.unit
class TestErrorPayload:
    """Tests for structured error data."""

    def test_to_dict(self):
        cause = RuntimeError("disk full")
        error = CacheError("Cannot store cache", data={"source_id": "kick"}, cause=cause)

        payload = error.to_dict()

        assert payload["error"] == "CacheError"
        assert payload["message"] == "Cannot store cache"
        assert payload["data"] == {"source_id": "kick"}
        assert payload["source_id"] == "kick"
        assert payload["cause"] == "disk full"

    def test_context_captured(self):
        set_correlation_id("corr-1")

        with job_context("job-9", "snare"):
            error = AudioFeatureError("inside job")

        assert error.correlation_id == "corr-1"
        assert error.job_id == "job-9"
        assert error.source_id == "snare"

    def test_calculator_error(self):
        error = CalculatorError("rms", "bad frame", data={"frame": 3})

        assert error.calculator_id == "rms"
        assert error.data == {"calculator_id": "rms", "frame": 3}
        assert str(error) == "bad frame"

    def test_unknown_calculator_is_key_error(self):
        error = UnknownCalculator("chroma")

        assert isinstance(error, KeyError)
        assert str(error) == "Unknown calculator: chroma"

    @pytest.mark.parametrize("cls,builtin", [
        (ValidationError, ValueError),
        (UnsupportedFormat, ValueError),
        (ChannelResolutionError, LookupError),
    ])
    def test_builtin_bases(self, cls, builtin):
        assert issubclass(cls, builtin)
        assert issubclass(cls, AudioFeatureError)


@pytest.mark.unit
class TestErrorLogging:
    """Tests for self-logging on construction."""

    @pytest.mark.parametrize("cls,level", [
        (AnalysisCancelled, logging.INFO),
        (TempoProjectionMismatch, logging.INFO),
        (ChannelResolutionError, logging.DEBUG),
        (ValidationError, logging.WARNING),
        (ConfigurationError, logging.ERROR),
        (CacheError, logging.ERROR),
    ])
    def test_log_level(self, caplog, cls, level):
        with caplog.at_level(logging.DEBUG, logger="audio_features.core.errors"):
            cls("something happened", data={"source_id": "kick"})

        record = caplog.records[-1]
        assert record.levelno == level
        assert record.structured_data["error_type"] == cls.__name__
        assert record.structured_data["source_id"] == "kick"

    def test_cause_attached_for_errors(self, caplog):
        with caplog.at_level(logging.ERROR, logger="audio_features.core.errors"):
            CalculatorError("spectrogram", "fft failed", cause=MemoryError("no memory"))

        record = caplog.records[-1]
        assert record.structured_data["cause"] == "no memory"
        assert record.exc_info is not None
