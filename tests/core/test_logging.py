"""Tests for structured logging helpers."""

import json

import structlog

from docbuild.core.logging import LogContext, bind_context, clear_context, configure_logging, get_logger


class TestLogContext:
    def setup_method(self):
        clear_context()

    def teardown_method(self):
        clear_context()

    def test_binds_and_unbinds(self):
        with LogContext(package="serde", attempt_id=4):
            assert structlog.contextvars.get_contextvars() == {"package": "serde", "attempt_id": 4}
        assert structlog.contextvars.get_contextvars() == {}

    def test_keeps_outer_context(self):
        bind_context(worker_id="w1")
        with LogContext(package="serde"):
            pass
        assert structlog.contextvars.get_contextvars() == {"worker_id": "w1"}


class TestConfigureLogging:
    def teardown_method(self):
        structlog.reset_defaults()
        clear_context()

    def test_json_output(self, capsys):
        configure_logging(level="INFO", json_format=True, service="docbuild-test")
        with LogContext(package="serde"):
            get_logger("docbuild.test").info("build_started", slot=1)

        line = capsys.readouterr().err.strip().splitlines()[-1]
        event = json.loads(line)
        assert event["event"] == "build_started"
        assert event["package"] == "serde"
        assert event["slot"] == 1
        assert event["service"] == "docbuild-test"
        assert event["level"] == "info"

    def test_level_filter(self, capsys):
        configure_logging(level="WARNING", json_format=True)
        get_logger("docbuild.test").info("quiet")
        assert "quiet" not in capsys.readouterr().err
