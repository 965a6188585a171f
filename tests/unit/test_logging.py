import json
import logging

import pytest

from services.payments.middleware.trace import normalize_path
from services.shared.logging import JsonFormatter, log_exception, trace_id_var

pytestmark = [pytest.mark.unit]


def _record(msg="webhook_received", **extra):
    record = logging.LogRecord("payments.webhook", logging.INFO, __file__, 1, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_context_and_trace_id():
    token = trace_id_var.set("trace-abc")
    try:
        line = JsonFormatter("payment-service").format(_record(event_id="evt_1", event_type="invoice.paid"))
    finally:
        trace_id_var.reset(token)

    payload = json.loads(line)
    assert payload["msg"] == "webhook_received"
    assert payload["service"] == "payment-service"
    assert payload["level"] == "INFO"
    assert payload["trace_id"] == "trace-abc"
    assert payload["event_id"] == "evt_1"
    assert "lineno" not in payload


def test_json_formatter_masks_credentials():
    line = JsonFormatter("payment-service").format(
        _record(user_id="user-1", refresh_token="eyJ.secret", password_hash="$2b$12$abc")
    )

    payload = json.loads(line)
    assert payload["user_id"] == "user-1"
    assert payload["refresh_token"] == "***"
    assert payload["password_hash"] == "***"


def test_log_exception_records_type_and_level(caplog):
    logger = logging.getLogger("payments.test")
    with caplog.at_level(logging.DEBUG, logger="payments.test"):
        log_exception(logger, "project_provisioning_failed", ValueError("boom"), {"invoice_id": "inv-1"},
                      level=logging.CRITICAL)

    record = caplog.records[-1]
    assert record.levelno == logging.CRITICAL
    assert record.error_type == "ValueError"
    assert record.error == "boom"
    assert record.invoice_id == "inv-1"


def test_normalize_path_hides_ids():
    assert normalize_path("/auth/session/cs_test_a1B2c3") == "/auth/session/{id}"
    assert normalize_path("/auth/session/cs_live_ZZ9") == "/auth/session/{id}"
    assert normalize_path("/x/123e4567-e89b-12d3-a456-426614174000") == "/x/{id}"
    assert normalize_path("/webhook") == "/webhook"
