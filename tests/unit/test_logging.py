"""JSON logging: mandatory fields, context binding and PII redaction."""

import json
import logging
import sys

import pytest

from backend.core.observability import bind_context
from backend.core.observability.logging import JSONFormatter, clear_context, get_trace_id


def _record(msg, **extra):
    record = logging.LogRecord(
        name="agents.subscriptions.dunning",
        level=logging.INFO,
        pathname="",
        lineno=0,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    @pytest.fixture
    def formatter(self):
        return JSONFormatter()

    @pytest.fixture(autouse=True)
    def _clean_context(self):
        clear_context()
        yield
        clear_context()

    def test_mandatory_fields(self, formatter):
        data = json.loads(formatter.format(_record("Charge attempt recorded")))

        assert data["trace_id"] == "unknown"
        assert data["tenant_id"] == "unknown"
        assert data["level"] == "info"
        assert data["logger"] == "agents.subscriptions.dunning"
        assert data["msg"] == "Charge attempt recorded"
        assert "ts_utc" in data

    def test_bound_context_is_logged(self, formatter):
        trace_id = bind_context("11111111-1111-1111-1111-111111111111")

        data = json.loads(formatter.format(_record("Billing run started")))

        assert get_trace_id() == trace_id
        assert data["trace_id"] == trace_id
        assert data["tenant_id"] == "11111111-1111-1111-1111-111111111111"

    def test_explicit_trace_id_is_kept(self):
        assert bind_context("t", trace_id="trace-123") == "trace-123"
        assert get_trace_id() == "trace-123"

    def test_extras_are_included(self, formatter):
        data = json.loads(formatter.format(_record("Payment expired", payment_id="p1", settling_attempts=3)))

        assert data["payment_id"] == "p1"
        assert data["settling_attempts"] == 3

    def test_payment_token_redaction(self, formatter):
        data = json.loads(
            formatter.format(_record("Charging with tok_abcd1234", payment_method="pm_zyxw9876"))
        )

        assert "tok_abcd1234" not in data["msg"]
        assert data["msg"].endswith("tok_***1234")
        assert data["payment_method"] == "pm_***9876"

    def test_iban_redaction(self, formatter):
        data = json.loads(formatter.format(_record("Debit from DE89370400440532013000")))

        assert "DE89370400440532013000" not in data["msg"]
        assert "DE**" in data["msg"]

    def test_email_redaction(self, formatter):
        data = json.loads(formatter.format(_record("Receipt to john.doe@example.com")))

        assert "john.doe@example.com" not in data["msg"]
        assert "@example.com" in data["msg"]

    def test_exception_is_formatted(self, formatter):
        try:
            raise RuntimeError("processor down")
        except RuntimeError:
            record = _record("Processor call failed")
            record.exc_info = sys.exc_info()

        data = json.loads(formatter.format(record))

        assert "RuntimeError: processor down" in data["exc_info"]
