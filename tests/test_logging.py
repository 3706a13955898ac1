"""Tests for the structured logging system (guardian_kernel/logging_config.py)."""

import json
import logging
from datetime import datetime, timezone
from io import StringIO
from uuid import uuid4

import pytest

from guardian_kernel.exceptions import NotEligibleError
from guardian_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state between tests."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


def _parse_log(stream: StringIO) -> dict:
    """Parse the first JSON log line from a stream."""
    line = stream.getvalue().strip().split("\n")[0]
    return json.loads(line)


def _parse_all_logs(stream: StringIO) -> list[dict]:
    lines = stream.getvalue().strip().split("\n")
    return [json.loads(line) for line in lines if line]


# ---------------------------------------------------------------------------
# StructuredFormatter tests
# ---------------------------------------------------------------------------


class TestStructuredFormatter:
    """Tests for JSON log output format."""

    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("hello")

        record = _parse_log(stream)
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "guardian.test"
        assert "ts" in record

    def test_extra_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("appeal_created", extra={"steps": 2, "status": "in_review"})

        record = _parse_log(stream)
        assert record["steps"] == 2
        assert record["status"] == "in_review"

    def test_context_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        LogContext.set(correlation_id="abc-123", appeal_id="a-1", actor="bob@example.com")
        get_logger("test").info("test_msg")

        record = _parse_log(stream)
        assert record["correlation_id"] == "abc-123"
        assert record["appeal_id"] == "a-1"
        assert record["actor"] == "bob@example.com"

    def test_exception_fields(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise ValueError("boom")
        except ValueError:
            get_logger("test").error("failed", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_type"] == "ValueError"
        assert record["exc_message"] == "boom"
        assert "traceback" in record

    def test_guardian_exception_code_extracted(self):
        """Guardian exceptions carry a .code attribute and structured fields."""
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise NotEligibleError("a-1", "manager", "mallory@example.com")
        except NotEligibleError:
            get_logger("test").error("decision_refused", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_code"] == "NOT_ELIGIBLE"
        assert record["exc_type"] == "NotEligibleError"
        assert record["exc_step_name"] == "manager"
        assert record["exc_approver"] == "mallory@example.com"

    def test_no_context_fields_when_empty(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("bare_message")

        record = _parse_log(stream)
        assert "correlation_id" not in record
        assert "appeal_id" not in record

    def test_uuid_and_datetime_serialized(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        uid = uuid4()
        when = datetime(2024, 1, 2, 3, 4, tzinfo=timezone.utc)
        get_logger("test").info(
            "grant_issued", extra={"grant_id": uid, "expires_at": when, "tags": ("a",)},
        )

        record = _parse_log(stream)
        assert record["grant_id"] == str(uid)
        assert record["expires_at"] == when.isoformat()
        assert record["tags"] == ["a"]

    def test_valid_json_every_line(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("first")
        logger.warning("second", extra={"k": "v"})
        logger.debug("third")

        logs = _parse_all_logs(stream)
        # INFO by default, so the debug line is dropped
        assert len(logs) == 2
        for record in logs:
            assert {"ts", "level", "logger", "message"} <= set(record)


# ---------------------------------------------------------------------------
# LogContext tests
# ---------------------------------------------------------------------------


class TestLogContext:

    def test_set_and_get(self):
        LogContext.set(correlation_id="x", grant_id="g")
        assert LogContext.get_all() == {"correlation_id": "x", "grant_id": "g"}

    def test_clear(self):
        LogContext.set(correlation_id="x")
        LogContext.clear()
        assert LogContext.get_all() == {}

    def test_bind_context_manager(self):
        LogContext.set(appeal_id="outer")
        with LogContext.bind(appeal_id="inner"):
            assert LogContext.get_all()["appeal_id"] == "inner"
        assert LogContext.get_all()["appeal_id"] == "outer"

    def test_bind_restores_none(self):
        assert "actor" not in LogContext.get_all()
        with LogContext.bind(actor="temp"):
            assert LogContext.get_all()["actor"] == "temp"
        assert "actor" not in LogContext.get_all()

    def test_bind_ignores_none_and_unknown_fields(self):
        with LogContext.bind(appeal_id=None, tenant="t"):
            assert LogContext.get_all() == {}

    def test_bind_stringifies_values(self):
        uid = uuid4()
        with LogContext.bind(appeal_id=uid):
            assert LogContext.get_all()["appeal_id"] == str(uid)

    def test_all_fields(self):
        LogContext.set(correlation_id="c", appeal_id="a", grant_id="g", actor="u")
        assert LogContext.get_all() == {
            "correlation_id": "c", "appeal_id": "a", "grant_id": "g", "actor": "u",
        }


# ---------------------------------------------------------------------------
# configure_logging tests
# ---------------------------------------------------------------------------


class TestConfigureLogging:

    def test_idempotent(self):
        h1, _ = _make_handler()
        configure_logging(handler=h1)
        h2, _ = _make_handler()
        configure_logging(handler=h2)  # second call is no-op
        assert len(logging.getLogger("guardian").handlers) == 1

    def test_get_logger_returns_child(self):
        assert get_logger("services.appeal").name == "guardian.services.appeal"

    def test_logger_hierarchy(self):
        """Child loggers inherit the guardian root config."""
        handler, stream = _make_handler()
        configure_logging(handler=handler, level=logging.DEBUG)
        get_logger("deep.nested.module").debug("hierarchy_test")

        record = _parse_log(stream)
        assert record["message"] == "hierarchy_test"
        assert record["logger"] == "guardian.deep.nested.module"
