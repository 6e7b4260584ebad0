"""Tests for the structured logging system."""

import json
import logging

from inbox_triage.logging.audit import audit
from inbox_triage.logging.config import current_user_var, request_id_var, setup_logging, sync_id_var


def read_log(capsys) -> dict:
    captured = capsys.readouterr()
    return json.loads(captured.out.strip().splitlines()[-1])


def test_json_format(capsys):
    """Log output should be valid JSON with expected fields."""
    setup_logging(level="debug")
    logging.getLogger("test").info("test message")

    log = read_log(capsys)

    assert log["level"] == "info"
    assert log["message"] == "test message"
    assert log["logger"] == "test"
    assert "timestamp" in log
    assert log["request_id"] == "-"
    assert "sync_id" not in log


def test_context_vars_appear_in_log(capsys):
    setup_logging(level="debug")
    req_token = request_id_var.set("abc123")
    user_token = current_user_var.set("owner@example.com")
    sync_token = sync_id_var.set("5f2e9a01")

    try:
        logging.getLogger("test").info("user action")
        log = read_log(capsys)

        assert log["request_id"] == "abc123"
        assert log["user"] == "owner@example.com"
        assert log["sync_id"] == "5f2e9a01"
    finally:
        request_id_var.reset(req_token)
        current_user_var.reset(user_token)
        sync_id_var.reset(sync_token)


def test_extra_fields(capsys):
    """Extra kwargs should appear as top-level fields in the JSON."""
    setup_logging(level="debug")
    logging.getLogger("test").info("message stored", extra={"external_id": "18c2a", "latency_ms": 450})

    log = read_log(capsys)

    assert log["external_id"] == "18c2a"
    assert log["latency_ms"] == 450


def test_exception_logging(capsys):
    setup_logging(level="debug")
    logger = logging.getLogger("test")

    try:
        raise ValueError("something went wrong")
    except ValueError:
        logger.exception("operation failed")

    log = read_log(capsys)

    assert log["level"] == "error"
    assert log["exception_type"] == "ValueError"
    assert log["exception_message"] == "something went wrong"
    assert "traceback" in log


def test_audit_levels(capsys):
    setup_logging(level="debug")

    audit.info("message.triaged", external_id="18c2b", category="COMPLAINT")
    log = read_log(capsys)
    assert (log["level"], log["action"], log["category"]) == ("info", "message.triaged", "COMPLAINT")

    audit.warning("message.triage_failed", external_id="18c2b", stage="validation")
    log = read_log(capsys)
    assert (log["level"], log["stage"]) == ("warning", "validation")

    audit.error("sync.aborted", reason="generation_unavailable")
    log = read_log(capsys)
    assert (log["level"], log["reason"]) == ("error", "generation_unavailable")


def test_level_filtering(capsys):
    setup_logging(level="warning")
    logging.getLogger("test").info("hidden")
    assert capsys.readouterr().out == ""


def test_noisy_libraries_quieted():
    setup_logging(level="debug")
    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("anthropic").level == logging.WARNING


def test_audit_renames_reserved_record_fields(capsys):
    setup_logging(level="info")

    audit.info("sync.completed", created=3, name="inbox", fetched=4)
    log = read_log(capsys)

    assert log["field_created"] == 3
    assert log["field_name"] == "inbox"
    assert log["fetched"] == 4
    assert log["logger"] == "audit"
