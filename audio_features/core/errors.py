"""
Custom error classes with structured logging and error propagation.

All errors include correlation context and structured data for observability.

Propagation policy:
- Calculator failures are caught at the job boundary and turned into
  CacheStatus values; they never reach the sampling API.
- Sampling degrades to None plus a fallback reason; ChannelResolutionError
  and TempoProjectionMismatch are reported, not raised, on that path.
- Programmer errors (invalid arguments, violated invariants) raise
  ValidationError synchronously at the call site.
"""

import logging
from typing import Optional, Dict, Any

from audio_features.common.logging import get_logger
from audio_features.common.logging.correlation import (
    get_correlation_id,
    get_source_id,
    get_job_id,
)

logger = get_logger(__name__)


class AudioFeatureError(Exception):
    """
    Base error class for all audio feature errors.

    Automatically logs itself with correlation context when created.
    """

    log_level: int = logging.ERROR

    def __init__(
        self,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        """
        Initialize error with structured context.

        Args:
            message: Human-readable error message
            data: Structured data for observability
            cause: Original exception that caused this error
        """
        super().__init__(message)
        self.message = message
        self.data = data or {}
        self.cause = cause

        self.correlation_id = get_correlation_id()
        self.source_id = self.data.get("source_id") or get_source_id()
        self.job_id = get_job_id()

        self._log_error()

    def _log_error(self):
        """Log error with structured data."""
        log_data = {
            "error_type": self.__class__.__name__,
            "correlation_id": self.correlation_id,
            "source_id": self.source_id,
            "job_id": self.job_id,
            **self.data,
        }

        if self.cause:
            log_data["cause"] = str(self.cause)

        logger.log(
            self.log_level,
            self.message,
            extra={"structured_data": log_data},
            exc_info=self.cause if self.log_level >= logging.ERROR else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "data": self.data,
            "correlation_id": self.correlation_id,
            "source_id": self.source_id,
            "job_id": self.job_id,
            "cause": str(self.cause) if self.cause else None,
        }


# Analysis errors
class AnalysisCancelled(AudioFeatureError):
    """Cooperative abort of an analysis job. Not a failure."""
    log_level = logging.INFO


class CalculatorError(AudioFeatureError):
    """A calculator raised while computing a track."""

    def __init__(
        self,
        calculator_id: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        self.calculator_id = calculator_id
        super().__init__(
            message,
            data={"calculator_id": calculator_id, **(data or {})},
            cause=cause,
        )


class UnknownCalculator(AudioFeatureError, KeyError):
    """A schedule or lookup referenced an unregistered calculator id."""
    log_level = logging.WARNING

    def __init__(self, calculator_id: str, data: Optional[Dict[str, Any]] = None):
        self.calculator_id = calculator_id
        super().__init__(
            f"Unknown calculator: {calculator_id}",
            data={"calculator_id": calculator_id, **(data or {})},
        )

    def __str__(self) -> str:
        return self.message


# Serialization errors
class UnsupportedFormat(AudioFeatureError, ValueError):
    """Deserializing a track with an unrecognized format."""
    log_level = logging.WARNING


# Sampling errors
class ChannelResolutionError(AudioFeatureError, LookupError):
    """Descriptor channel alias absent from both track and cache tables."""
    log_level = logging.DEBUG


class TempoProjectionMismatch(AudioFeatureError):
    """Cache tempo hash differs from the live tempo map."""
    log_level = logging.INFO


# Cache errors
class CacheError(AudioFeatureError):
    """Error accessing the feature cache store."""
    pass


# Configuration errors
class ConfigurationError(AudioFeatureError):
    """Error in configuration."""
    pass


# Validation errors
class ValidationError(AudioFeatureError, ValueError):
    """Invalid argument or violated invariant (programmer error)."""
    log_level = logging.WARNING
