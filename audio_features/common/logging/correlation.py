"""Correlation context for tracing analysis jobs across threads."""

import uuid
import logging
import contextvars
from contextlib import contextmanager
from typing import Iterator


# Context variable for correlation ID (thread-safe, async-safe)
correlation_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "correlation_id", default=None
)

# Context variable for the audio source being analyzed
source_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "source_id", default=None
)

# Context variable for job ID
job_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "job_id", default=None
)


def generate_correlation_id() -> str:
    """Generate unique correlation ID."""
    return str(uuid.uuid4())[:8]


def get_correlation_id() -> str | None:
    """Get current correlation ID from context."""
    return correlation_id_var.get()


def set_correlation_id(cid: str | None):
    """Set correlation ID in context."""
    correlation_id_var.set(cid)


def get_source_id() -> str | None:
    """Get current source ID from context."""
    return source_id_var.get()


def set_source_id(sid: str | None):
    """Set source ID in context."""
    source_id_var.set(sid)


def get_job_id() -> str | None:
    """Get current job ID from context."""
    return job_id_var.get()


def set_job_id(jid: str | None):
    """Set job ID in context."""
    job_id_var.set(jid)


@contextmanager
def job_context(job_id: str, source_id: str, correlation_id: str | None = None) -> Iterator[str]:
    """
    Bind job/source/correlation IDs for the duration of a job slice.

    Worker threads do not inherit the scheduling thread's context, so the
    scheduler enters this around every unit of work it runs.

    Yields:
        The correlation ID in effect.
    """
    cid = correlation_id or get_correlation_id() or generate_correlation_id()
    tokens = (
        correlation_id_var.set(cid),
        source_id_var.set(source_id),
        job_id_var.set(job_id),
    )
    try:
        yield cid
    finally:
        job_id_var.reset(tokens[2])
        source_id_var.reset(tokens[1])
        correlation_id_var.reset(tokens[0])


class CorrelationLogFilter(logging.Filter):
    """
    Logging filter that adds correlation_id, source_id, job_id to log records.

    Use with standard logging to auto-inject context vars.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id()
        record.source_id = get_source_id()
        record.job_id = get_job_id()
        return True
