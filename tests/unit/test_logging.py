"""Tests for structured logging with request-scoped context."""

import json
import logging

import pytest

from qa_access.observability.logging import (
    HumanReadableFormatter,
    StructuredFormatter,
    clear_log_context,
    get_log_context,
    new_request_id,
    set_log_context,
)


@pytest.fixture(autouse=True)
def _clean_context():
    clear_log_context()
    yield
    clear_log_context()


def _record(msg="Audit credit consumed"):
    return logging.LogRecord("qa_access.test", logging.INFO, __file__, 1, msg, None, None)


def test_context_fields_skip_empty_values():
    set_log_context(instance_id="inst-1")
    assert get_log_context() == {"instance_id": "inst-1"}


def test_new_request_id_reuses_incoming_header():
    assert new_request_id("abc-123") == "abc-123"
    assert get_log_context()["request_id"] == "abc-123"


def test_new_request_id_generated():
    request_id = new_request_id()
    assert len(request_id) == 16


def test_structured_formatter_includes_context():
    set_log_context(instance_id="inst-1", user_id="u1")
    entry = json.loads(StructuredFormatter().format(_record()))
    assert entry["message"] == "Audit credit consumed"
    assert entry["level"] == "INFO"
    assert entry["instance_id"] == "inst-1"
    assert entry["user_id"] == "u1"


def test_human_formatter_appends_short_labels():
    set_log_context(user_id="u1", request_id="r1")
    line = HumanReadableFormatter().format(_record())
    assert line.endswith("[user=u1, req=r1]")
