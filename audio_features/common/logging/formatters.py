"""JSON formatter and the `data=`-aware logger adapter."""

import json
import logging
import traceback
from datetime import datetime, timezone
from typing import Any

# Record attributes set by CorrelationLogFilter / the adapter
CONTEXT_FIELDS = ("correlation_id", "source_id", "job_id")

_PACKAGE_PREFIXES = (("audio_features",), ("modules",))


def component_for(logger_name: str) -> str:
    """
    Short component name for a logger.

    audio_features.modules.analysis.scheduler -> analysis.scheduler
    audio_features.core.cache.store -> core.cache.store
    """
    if logger_name == "__main__":
        return "main"
    parts = logger_name.split(".")
    for prefix in _PACKAGE_PREFIXES:
        if tuple(parts[:len(prefix)]) == prefix:
            parts = parts[len(prefix):]
    return ".".join(parts) or logger_name


def _exception_block(exc_info) -> dict[str, Any]:
    exc_type, exc_value, _ = exc_info
    return {
        "type": exc_type.__name__ if exc_type else None,
        "message": str(exc_value) if exc_value else None,
        "traceback": traceback.format_exception(*exc_info),
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per record: context ids, `data`, exception."""

    def __init__(
        self,
        include_timestamp: bool = True,
        include_level: bool = True,
        include_logger: bool = True,
        include_path: bool = False,
        extra_fields: dict[str, Any] | None = None,
    ):
        super().__init__()
        self.include_timestamp = include_timestamp
        self.include_level = include_level
        self.include_logger = include_logger
        self.include_path = include_path
        self.extra_fields = dict(extra_fields or {})

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {}
        if self.include_timestamp:
            entry["timestamp"] = datetime.fromtimestamp(record.created, timezone.utc).isoformat()
        if self.include_level:
            entry["level"] = record.levelname
        entry["component"] = component_for(record.name)
        if self.include_logger:
            entry["logger"] = record.name
        if self.include_path:
            entry["path"] = f"{record.pathname}:{record.lineno}"

        entry["message"] = (record.getMessage() or "").strip()

        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value:
                entry[name] = value

        data = getattr(record, "structured_data", None)
        if data:
            entry["data"] = data
        if record.exc_info:
            entry["exception"] = _exception_block(record.exc_info)

        entry.update(self.extra_fields)
        return json.dumps(entry, ensure_ascii=False, default=str)


class StructuredLogAdapter(logging.LoggerAdapter):
    """
    Adapter accepting `data=` on every log call.

    The dict lands on the record as `structured_data`; JSONFormatter writes
    it under "data".

        logger = get_logger(__name__)
        logger.info("Ingested tracks", data={"source_id": "kick", "tracks": 3})
    """

    def __init__(self, logger: logging.Logger, extra: dict | None = None):
        super().__init__(logger, extra or {})
        self._context: dict[str, str] = {}

    def set_correlation_id(self, correlation_id: str):
        self._context["correlation_id"] = correlation_id

    def set_job_id(self, job_id: str):
        self._context["job_id"] = job_id

    def clear_context(self):
        self._context.clear()

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        extra = {**self.extra, **self._context, **(kwargs.get("extra") or {})}
        data = kwargs.pop("data", None)
        if data:
            extra["structured_data"] = data
        kwargs["extra"] = extra
        return msg, kwargs
