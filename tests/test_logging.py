from __future__ import annotations

import json

from structlog.testing import capture_logs

from planexec.logging import (
    _add_execution_id,
    _redact_secrets,
    bind_execution_id,
    configure_logging,
    get_execution_id,
    get_logger,
    log_execution_summary,
    unbind_execution_id,
)


def test_execution_id_added_while_bound():
    token = bind_execution_id("exec-42")
    try:
        assert get_execution_id() == "exec-42"
        assert _add_execution_id(None, "info", {"event": "x"})["execution_id"] == "exec-42"
    finally:
        unbind_execution_id(token)
    assert get_execution_id() is None
    assert "execution_id" not in _add_execution_id(None, "info", {"event": "x"})


def test_explicit_execution_id_not_overwritten():
    token = bind_execution_id("exec-42")
    try:
        event = _add_execution_id(None, "info", {"event": "x", "execution_id": "other"})
    finally:
        unbind_execution_id(token)
    assert event["execution_id"] == "other"


def test_secrets_redacted():
    event = _redact_secrets(None, "info", {"api_key": "sk-1234567890", "name": "plain"})
    assert event["api_key"] == "sk***90"
    assert event["name"] == "plain"


def test_execution_summary_logged():
    with capture_logs() as logs:
        log_execution_summary({"total_steps": 3, "completed_steps": 3, "progress": 100})
    assert logs[0]["event"] == "execution_summary"
    assert logs[0]["total_steps"] == 3


def test_json_pipeline_stamps_execution_id_and_redacts(capsys):
    configure_logging(level="INFO", json_output=True)
    try:
        token = bind_execution_id("exec-7")
        try:
            get_logger("planexec.tests").info("tool_called", api_key="sk-abcdef12")
        finally:
            unbind_execution_id(token)
        lines = capsys.readouterr().out.strip().splitlines()
    finally:
        configure_logging()
    payload = json.loads(lines[-1])
    assert payload["event"] == "tool_called"
    assert payload["execution_id"] == "exec-7"
    assert payload["api_key"] == "sk***12"
    assert payload["level"] == "info"


def test_level_filters_lower_events(capsys):
    configure_logging(level="WARNING", json_output=True)
    try:
        log = get_logger("planexec.tests.quiet")
        log.info("not_shown")
        log.warning("shown")
        out = capsys.readouterr().out
    finally:
        configure_logging()
    assert "not_shown" not in out
    assert '"event": "shown"' in out
