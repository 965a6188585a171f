import hashlib
import hmac
import json
import time
from datetime import datetime, timezone

import pytest

from services.payments.errors import MalformedPayload, SignatureInvalid
from services.payments.services import stripe_service

pytestmark = [pytest.mark.unit]

SECRET = "whsec_unit_test"


def sign(payload: bytes, secret: str = SECRET, timestamp: int | None = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def _event_body(**overrides) -> bytes:
    body = {
        "id": "evt_123",
        "type": "checkout.session.completed",
        "created": 1700000000,
        "data": {"object": {"id": "cs_test_abc", "amount_total": 4900}},
    }
    body.update(overrides)
    return json.dumps(body).encode()


def test_verify_event_returns_decoded_event():
    payload = _event_body()
    event = stripe_service.verify_event(payload, sign(payload), SECRET)
    assert event.id == "evt_123"
    assert event.type == "checkout.session.completed"
    assert event.data_object == {"id": "cs_test_abc", "amount_total": 4900}
    assert event.created == 1700000000


def test_verify_event_rejects_wrong_secret():
    payload = _event_body()
    with pytest.raises(SignatureInvalid):
        stripe_service.verify_event(payload, sign(payload, secret="whsec_other"), SECRET)


def test_verify_event_rejects_tampered_body():
    payload = _event_body()
    header = sign(payload)
    tampered = payload.replace(b"4900", b"1")
    with pytest.raises(SignatureInvalid):
        stripe_service.verify_event(tampered, header, SECRET)


def test_verify_event_rejects_stale_timestamp():
    payload = _event_body()
    header = sign(payload, timestamp=int(time.time()) - 3600)
    with pytest.raises(SignatureInvalid):
        stripe_service.verify_event(payload, header, SECRET)


def test_verify_event_rejects_garbage_header():
    payload = _event_body()
    with pytest.raises(SignatureInvalid):
        stripe_service.verify_event(payload, "not-a-signature", SECRET)


def test_verify_event_rejects_signed_non_json():
    payload = b"definitely not json"
    with pytest.raises(MalformedPayload):
        stripe_service.verify_event(payload, sign(payload), SECRET)


def test_verify_event_requires_data_object():
    payload = json.dumps({"id": "evt_1", "type": "invoice.paid", "data": {}}).encode()
    with pytest.raises(MalformedPayload, match="data.object"):
        stripe_service.verify_event(payload, sign(payload), SECRET)


def test_verify_event_rejects_non_utf8_body():
    payload = b"\xff\xfe\x00"
    with pytest.raises(MalformedPayload):
        stripe_service.verify_event(payload, sign(payload), SECRET)


def test_subscription_period_reads_top_level_fields():
    start, end = stripe_service.subscription_period(
        {"current_period_start": 1700000000, "current_period_end": 1702592000}
    )
    assert start == datetime.fromtimestamp(1700000000, tz=timezone.utc)
    assert end == datetime.fromtimestamp(1702592000, tz=timezone.utc)


def test_subscription_period_falls_back_to_first_item():
    start, end = stripe_service.subscription_period(
        {"items": {"data": [{"current_period_start": 1700000000, "current_period_end": 1702592000}]}}
    )
    assert start.year == 2023
    assert end > start


def test_subscription_period_missing_is_none():
    assert stripe_service.subscription_period({}) == (None, None)


def test_invoice_subscription_id_variants():
    assert stripe_service.invoice_subscription_id({"subscription": "sub_1"}) == "sub_1"
    assert stripe_service.invoice_subscription_id({"subscription": {"id": "sub_2"}}) == "sub_2"
    assert (
        stripe_service.invoice_subscription_id(
            {"parent": {"subscription_details": {"subscription": "sub_3"}}}
        )
        == "sub_3"
    )
    assert stripe_service.invoice_subscription_id({"subscription": None}) is None


def test_unit_amount_from_first_item():
    sub = {"items": {"data": [{"price": {"unit_amount": 1500}}]}}
    assert stripe_service.subscription_unit_amount_cents(sub) == 1500
    assert stripe_service.subscription_unit_amount_cents({}) == 0


def test_expandable_id():
    assert stripe_service.expandable_id("pi_1") == "pi_1"
    assert stripe_service.expandable_id({"id": "pi_2", "amount": 1}) == "pi_2"
    assert stripe_service.expandable_id(None) is None
