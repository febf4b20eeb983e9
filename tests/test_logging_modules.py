"""
Unit tests for logging modules.

Tests cover:
1. Correlation / source / job context variables
2. JSON formatter and structured adapter
3. Centralized logging configuration (YAML + env overrides)
4. Root logger setup
"""

import importlib
import json
import logging
import sys
import threading
from logging.handlers import RotatingFileHandler

import pytest

from audio_features.common.logging import (
    CorrelationLogFilter,
    JSONFormatter,
    LoggingConfig,
    generate_correlation_id,
    get_correlation_id,
    get_job_id,
    get_logger,
    get_logging_config,
    get_source_id,
    job_context,
    set_correlation_id,
    setup_logging,
)

from audio_features.common.logging.logging_config import find_config_file

logger_module = importlib.import_module("audio_features.common.logging.logger")

LOG_ENV_VARS = (
    "LOG_LEVEL", "LOG_JSON", "LOG_JSON_FORMAT",
    "LOG_LEVEL_SAMPLING", "LOG_LEVEL_ANALYSIS", "LOG_JSON_FORMAT_SAMPLING",
)


@pytest.fixture(autouse=True)
def clean_logging_env(monkeypatch):
    for name in LOG_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    LoggingConfig.reset_instance()
    yield
    LoggingConfig.reset_instance()


@pytest.fixture
def root_logger_state(monkeypatch):
    """Restore root handlers/level after setup_logging."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    monkeypatch.setattr(logger_module, "_logging_configured", False)
    yield root
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)
    logging.getLogger("audio_features.modules.sampling.view_adapter").setLevel(logging.NOTSET)
    logging.getLogger("audio_features.modules.sampling.channels").setLevel(logging.NOTSET)


def make_record(name="test", level=logging.INFO, msg="Test message", exc_info=None):
    return logging.LogRecord(
        name=name,
        level=level,
        pathname="test.py",
        lineno=10,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


# =============================================================================
# Correlation Context Tests
# =============================================================================

@pytest.mark.unit
class TestCorrelationContext:
    """Tests for correlation / job context variables."""

    def test_default_is_none(self):
        assert get_correlation_id() is None
        assert get_job_id() is None
        assert get_source_id() is None

    def test_set_and_get(self):
        set_correlation_id("test-correlation-123")

        assert get_correlation_id() == "test-correlation-123"

    def test_generated_ids_unique(self):
        ids = [generate_correlation_id() for _ in range(10)]

        assert len(set(ids)) == len(ids)
        assert all(len(i) == 8 for i in ids)

    def test_thread_isolation(self):
        results = {}

        def set_and_get(thread_id):
            set_correlation_id(f"thread-{thread_id}")
            results[thread_id] = get_correlation_id()

        threads = [threading.Thread(target=set_and_get, args=(i,)) for i in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results == {i: f"thread-{i}" for i in range(5)}

    def test_job_context_binds_and_restores(self):
        with job_context("job-1", "kick") as cid:
            assert get_job_id() == "job-1"
            assert get_source_id() == "kick"
            assert get_correlation_id() == cid
            assert cid

        assert get_job_id() is None
        assert get_source_id() is None
        assert get_correlation_id() is None

    def test_job_context_keeps_existing_correlation(self):
        set_correlation_id("outer")

        with job_context("job-1", "kick") as cid:
            assert cid == "outer"

    def test_nested_job_context(self):
        with job_context("job-1", "kick", correlation_id="c1"):
            with job_context("job-2", "snare"):
                assert get_job_id() == "job-2"
                assert get_correlation_id() == "c1"
            assert get_job_id() == "job-1"
            assert get_source_id() == "kick"

    def test_filter_injects_context(self):
        record = make_record()

        with job_context("job-7", "hat", correlation_id="abc"):
            assert CorrelationLogFilter().filter(record) is True

        assert (record.correlation_id, record.source_id, record.job_id) == ("abc", "hat", "job-7")


# =============================================================================
# Formatter / Adapter Tests
# =============================================================================

@pytest.mark.unit
class TestJSONFormatter:
    """Tests for JSON log formatter."""

    def test_basic(self):
        parsed = json.loads(JSONFormatter().format(make_record()))

        assert parsed["message"] == "Test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test"
        assert "timestamp" in parsed
        assert "path" not in parsed

    def test_context_and_structured_data(self):
        record = make_record()
        record.correlation_id = "corr-789"
        record.source_id = "kick"
        record.job_id = "job-123"
        record.structured_data = {"frames": 169}

        parsed = json.loads(JSONFormatter().format(record))

        assert parsed["correlation_id"] == "corr-789"
        assert parsed["source_id"] == "kick"
        assert parsed["job_id"] == "job-123"
        assert parsed["data"] == {"frames": 169}

    def test_exception(self):
        try:
            raise ValueError("Test error")
        except ValueError:
            record = make_record(level=logging.ERROR, msg="Error occurred", exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert parsed["exception"]["type"] == "ValueError"
        assert parsed["exception"]["message"] == "Test error"

    def test_extra_fields_and_path(self):
        formatter = JSONFormatter(include_path=True, include_timestamp=False, extra_fields={"service": "af"})

        parsed = json.loads(formatter.format(make_record()))

        assert parsed["service"] == "af"
        assert parsed["path"] == "test.py:10"
        assert "timestamp" not in parsed

    @pytest.mark.parametrize("name,component", [
        ("audio_features.modules.analysis.scheduler", "analysis.scheduler"),
        ("audio_features.core.cache.store", "core.cache.store"),
        ("__main__", "main"),
        ("numpy", "numpy"),
    ])
    def test_component(self, name, component):
        assert json.loads(JSONFormatter().format(make_record(name=name)))["component"] == component


@pytest.mark.unit
class TestStructuredLogAdapter:
    """Tests for StructuredLogAdapter."""

    def test_data_becomes_structured_data(self, caplog):
        logger = get_logger("audio_features.tests.adapter")

        with caplog.at_level(logging.INFO, logger="audio_features.tests.adapter"):
            logger.info("Ingested tracks", data={"source_id": "kick", "tracks": 3})

        assert caplog.records[-1].structured_data == {"source_id": "kick", "tracks": 3}

    def test_adapter_context_fields(self, caplog):
        logger = get_logger("audio_features.tests.adapter")
        logger.set_correlation_id("corr-1")
        logger.set_job_id("job-1")

        with caplog.at_level(logging.DEBUG, logger="audio_features.tests.adapter"):
            logger.debug("step")
            logger.clear_context()
            logger.warning("after clear")

        first, second = caplog.records[-2:]
        assert (first.correlation_id, first.job_id) == ("corr-1", "job-1")
        assert not hasattr(second, "job_id")

    def test_data_on_every_level(self, caplog):
        logger = get_logger("audio_features.tests.adapter")

        with caplog.at_level(logging.DEBUG, logger="audio_features.tests.adapter"):
            try:
                raise RuntimeError("boom")
            except RuntimeError:
                logger.exception("Step failed", data={"job_id": "job-9"})
            logger.critical("Worker lost", data={"source_id": "kick"})
            logger.info("No data")

        failed, lost, plain = caplog.records[-3:]
        assert failed.structured_data == {"job_id": "job-9"}
        assert failed.exc_info is not None
        assert lost.structured_data == {"source_id": "kick"}
        assert not hasattr(plain, "structured_data")


# =============================================================================
# Logging Config Tests
# =============================================================================

@pytest.fixture
def logging_yaml(tmp_path):
    path = tmp_path / "logging-config.yaml"
    path.write_text(
        "default_level: warning\n"
        "json_format: false\n"
        "components:\n"
        "  sampling:\n"
        "    level: debug\n"
        "    json_format: true\n"
        "  cache: error\n"
        "modules:\n"
        "  audio_features.core.cache.store: debug\n"
    )
    return str(path)


@pytest.mark.unit
class TestLoggingConfig:
    """Tests for LoggingConfig."""

    def test_component_levels(self, logging_yaml):
        config = LoggingConfig(logging_yaml)

        assert config.get_level("sampling") == "DEBUG"
        assert config.get_level("cache") == "ERROR"
        assert config.get_level("analysis") == "WARNING"
        assert config.get_level() == "WARNING"

    def test_env_overrides(self, logging_yaml, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL_SAMPLING", "info")
        monkeypatch.setenv("LOG_LEVEL", "error")
        monkeypatch.setenv("LOG_JSON_FORMAT", "yes")
        config = LoggingConfig(logging_yaml)

        assert config.get_level("sampling") == "INFO"
        assert config.get_level() == "ERROR"
        assert config.get_json_format() is True

    def test_json_format(self, logging_yaml):
        config = LoggingConfig(logging_yaml)

        assert config.get_json_format("sampling") is True
        assert config.get_json_format("cache") is False

    def test_module_levels(self, logging_yaml):
        config = LoggingConfig(logging_yaml)

        assert config.module_levels() == {"audio_features.core.cache.store": "DEBUG"}
        assert config.get_module_level("audio_features.core.cache.store") == "DEBUG"
        assert config.get_module_level("audio_features.core.errors") is None

    def test_missing_file_defaults(self, tmp_path):
        config = LoggingConfig(str(tmp_path / "absent.yaml"))

        assert config.get_level() == "INFO"
        assert config.module_levels() == {}

    def test_project_file_found(self):
        config = get_logging_config()

        assert config is get_logging_config()
        assert config.get_level("sampling") == "WARNING"

    def test_file_found_in_parent(self, logging_yaml, tmp_path):
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)

        assert find_config_file(nested) == tmp_path / "logging-config.yaml"
        assert find_config_file(tmp_path / "a" / "b" / "c" / "d" / "e") is None


# =============================================================================
# Setup Tests
# =============================================================================

@pytest.mark.unit
class TestSetupLogging:
    """Tests for setup_logging."""

    def test_console_and_file_handlers(self, root_logger_state, tmp_path):
        log_file = tmp_path / "logs" / "audio-features.log"

        setup_logging(level="DEBUG", log_file=str(log_file), json_format=True, force=True)
        get_logger("audio_features.tests.setup").info("hello", data={"frames": 4})
        for handler in root_logger_state.handlers:
            handler.flush()

        assert root_logger_state.level == logging.DEBUG
        assert any(isinstance(h, RotatingFileHandler) for h in root_logger_state.handlers)
        entry = json.loads(log_file.read_text().strip().splitlines()[-1])
        assert entry["message"] == "hello"
        assert entry["data"] == {"frames": 4}

    def test_configured_once(self, root_logger_state):
        setup_logging(level="INFO")
        handlers = list(root_logger_state.handlers)

        setup_logging(level="DEBUG")

        assert root_logger_state.handlers == handlers
        assert root_logger_state.level == logging.INFO

    def test_module_levels_applied(self, root_logger_state):
        setup_logging(level="DEBUG")

        assert logging.getLogger("audio_features.modules.sampling.view_adapter").level == logging.WARNING

    def test_factory_reads_settings(self, root_logger_state, monkeypatch):
        from audio_features.services import create_feature_service

        monkeypatch.setenv("LOG_LEVEL", "debug")
        monkeypatch.setenv("LOG_JSON", "true")

        service = create_feature_service(max_workers=0, setup_logs=True)
        service.shutdown()

        assert root_logger_state.level == logging.DEBUG
        assert any(isinstance(h.formatter, JSONFormatter) for h in root_logger_state.handlers)
