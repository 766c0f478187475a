"""Tests for clusterdeck.core.logging."""

import json

import structlog

from clusterdeck.core.logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
)


class TestConfigureLogging:
    def teardown_method(self):
        clear_context()
        structlog.reset_defaults()

    def test_json_output_is_ecs_shaped(self, capsys):
        configure_logging(level="INFO", json_format=True, service="worker")
        get_logger("test").info("task.started", submission_id="sub-1")

        line = capsys.readouterr().err.strip().splitlines()[-1]
        event = json.loads(line)
        assert event["event"] == "task.started"
        assert event["log.level"] == "info"
        assert event["service.name"] == "worker"
        assert event["submission_id"] == "sub-1"
        assert "@timestamp" in event

    def test_level_filters(self, capsys):
        configure_logging(level="WARNING", json_format=True)
        get_logger("test").info("hidden")
        assert "hidden" not in capsys.readouterr().err

    def test_log_context_binds_and_unbinds(self, capsys):
        configure_logging(level="INFO", json_format=True)
        log = get_logger("test")
        with LogContext(worker_id="worker-1"):
            log.info("inside")
        log.info("outside")

        lines = [json.loads(x) for x in capsys.readouterr().err.strip().splitlines()]
        inside = next(e for e in lines if e["event"] == "inside")
        outside = next(e for e in lines if e["event"] == "outside")
        assert inside["worker_id"] == "worker-1"
        assert "worker_id" not in outside

    def test_bind_context(self, capsys):
        configure_logging(level="INFO", json_format=True)
        bind_context(request_id="r-1")
        get_logger("test").info("bound")
        event = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
        assert event["request_id"] == "r-1"
