"""Root logging setup and the module logger factory."""

import logging
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Optional

from .formatters import JSONFormatter, StructuredLogAdapter
from .correlation import CorrelationLogFilter
from .logging_config import get_logging_config

TEXT_FORMAT = "%(asctime)s %(levelname)-7s [%(correlation_id)s] %(name)s: %(message)s"
TEXT_DATE_FORMAT = "%H:%M:%S"

_logging_configured = False


def _console_handler(level: int, json_format: bool, log_filter: logging.Filter) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.addFilter(log_filter)
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt=TEXT_DATE_FORMAT))
    return handler


def _file_handler(
    log_file: str,
    level: int,
    max_bytes: int,
    backup_count: int,
    log_filter: logging.Filter,
) -> logging.Handler:
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    handler.setLevel(level)
    handler.addFilter(log_filter)
    # File output is always JSON lines
    handler.setFormatter(JSONFormatter(include_path=True))
    return handler


def setup_logging(
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    json_format: Optional[bool] = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 3,
    component: str = "default",
    force: bool = False,
) -> None:
    """
    Configure the root logger once per process.

    Level and console format fall back to logging-config.yaml (and its
    LOG_LEVEL* / LOG_JSON_FORMAT* env overrides) for `component`.
    Per-module levels from the same file are applied last.

    Args:
        level: DEBUG / INFO / WARNING / ERROR
        log_file: Also write JSON lines to this rotating file
        json_format: JSON console output instead of text
        max_bytes: Rotation size of the log file
        backup_count: Rotated files kept
        component: Section of logging-config.yaml to read
        force: Replace an existing configuration
    """
    global _logging_configured
    if _logging_configured and not force:
        return

    config = get_logging_config()
    numeric_level = getattr(logging, (level or config.get_level(component)).upper())
    if json_format is None:
        json_format = config.get_json_format(component)

    root = logging.getLogger()
    root.setLevel(numeric_level)
    root.handlers.clear()

    log_filter = CorrelationLogFilter()
    root.addHandler(_console_handler(numeric_level, json_format, log_filter))
    if log_file:
        root.addHandler(_file_handler(log_file, numeric_level, max_bytes, backup_count, log_filter))

    for module_name, module_level in config.module_levels().items():
        logging.getLogger(module_name).setLevel(getattr(logging, module_level))

    _logging_configured = True


def get_logger(name: str) -> StructuredLogAdapter:
    """Logger for `name` (usually __name__) that accepts `data=`."""
    return StructuredLogAdapter(logging.getLogger(name))
