from __future__ import annotations

import json
import logging

from finance_engine.common.logging import JsonLogFormatter, bind_correlation_id, log_event


def _capture(logger_name: str):
    records: list[logging.LogRecord] = []

    class _Collect(logging.Handler):
        def emit(self, record: logging.LogRecord) -> None:
            records.append(record)

    logger = logging.getLogger(logger_name)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    logger.handlers = [_Collect()]
    return logger, records


def test_log_event_emits_one_json_line_with_bound_correlation_id():
    logger, records = _capture("finance_engine.test_logging")
    fmt = JsonLogFormatter(service="finance-test", env="test", version="v1", sha="abc")

    with bind_correlation_id(correlation_id="run-123"):
        log_event(logger, "earnings.snapshot_written", user_id="c1", period="2025-02", net_earned=10)
        line = fmt.format(records[0])

    payload = json.loads(line)
    assert "\n" not in line
    assert payload["event_type"] == "earnings.snapshot_written"
    assert payload["severity"] == "INFO"
    assert payload["correlation_id"] == "run-123"
    assert payload["service"] == "finance-test"
    assert payload["user_id"] == "c1"
    assert payload["net_earned"] == 10


def test_correlation_id_is_unbound_after_the_block():
    logger, records = _capture("finance_engine.test_logging_unbound")
    fmt = JsonLogFormatter(service="finance-test", env="test", version="v1", sha="abc")

    with bind_correlation_id() as cid:
        assert cid
    log_event(logger, "platform.liability_negative", severity="WARNING", shortfall_tokens=5)

    payload = json.loads(fmt.format(records[0]))
    assert payload["correlation_id"] is None
    assert payload["severity"] == "WARNING"
    assert records[0].levelno == logging.WARNING


def test_formatter_defaults_come_from_deployment_env(monkeypatch):
    monkeypatch.setenv("FINANCE_ENV", "prod")
    monkeypatch.setenv("GIT_SHA", "deadbeef")
    monkeypatch.delenv("CLOUD_RUN_JOB", raising=False)
    logger, records = _capture("finance_engine.test_logging_defaults")
    fmt = JsonLogFormatter(service=None, env=None, version=None, sha=None)

    log_event(logger, "batch.started", run_id="r1")
    payload = json.loads(fmt.format(records[0]))

    assert payload["service"] == "finance-engine"
    assert payload["env"] == "prod"
    assert payload["sha"] == "deadbeef"
    assert payload["version"]
