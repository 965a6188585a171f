"""Stripe integration: webhook verification and subscription lookups."""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import stripe

from services.payments.errors import MalformedPayload, SignatureInvalid
from services.payments.models import ExternalEvent

logger = logging.getLogger("payments.stripe")

DEFAULT_TOLERANCE_SECONDS = 300


def configure(api_key: str) -> None:
    stripe.api_key = api_key


def verify_event(
    payload: bytes,
    sig_header: str,
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
) -> ExternalEvent:
    """
    Check the stripe-signature header against the raw request body and
    decode the event.

    The body must be the exact bytes Stripe sent; the signature covers them,
    not a re-serialised form.
    """
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedPayload("Webhook body is not valid UTF-8") from exc

    try:
        stripe.WebhookSignature.verify_header(text, sig_header, secret, tolerance)
    except stripe.SignatureVerificationError as exc:
        raise SignatureInvalid(str(exc)) from exc

    try:
        body = json.loads(text)
    except ValueError as exc:
        raise MalformedPayload("Webhook body is not valid JSON") from exc

    if not isinstance(body, dict):
        raise MalformedPayload("Webhook body is not a JSON object")
    event_id = body.get("id")
    event_type = body.get("type")
    data = body.get("data")
    data_object = data.get("object") if isinstance(data, dict) else None
    if not isinstance(event_id, str) or not event_id:
        raise MalformedPayload("Event has no id")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedPayload("Event has no type")
    if not isinstance(data_object, dict):
        raise MalformedPayload("Event has no data.object")

    return ExternalEvent(
        id=event_id,
        type=event_type,
        data_object=data_object,
        created=body.get("created"),
    )


def _plain(obj: Any) -> dict:
    if isinstance(obj, dict) and not isinstance(obj, stripe.StripeObject):
        return obj
    # StripeObject renders itself as JSON on every SDK version.
    return json.loads(str(obj))


async def retrieve_subscription(subscription_id: str) -> dict:
    """Retrieve a Stripe subscription by ID as a plain dict."""
    subscription = await asyncio.to_thread(stripe.Subscription.retrieve, subscription_id)
    return _plain(subscription)


def to_datetime(timestamp: Optional[int]) -> Optional[datetime]:
    if not timestamp:
        return None
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc)


def _first_item(subscription: dict) -> dict:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def subscription_period(subscription: dict) -> tuple[Optional[datetime], Optional[datetime]]:
    """
    Current period bounds. Newer API versions moved them from the
    subscription onto each subscription item.
    """
    item = _first_item(subscription)
    start = subscription.get("current_period_start") or item.get("current_period_start")
    end = subscription.get("current_period_end") or item.get("current_period_end")
    return to_datetime(start), to_datetime(end)


def subscription_unit_amount_cents(subscription: dict) -> int:
    price = _first_item(subscription).get("price") or {}
    return int(price.get("unit_amount") or 0)


def invoice_subscription_id(invoice: dict) -> Optional[str]:
    subscription = invoice.get("subscription")
    if subscription is None:
        details = (invoice.get("parent") or {}).get("subscription_details") or {}
        subscription = details.get("subscription")
    if isinstance(subscription, dict):
        return subscription.get("id")
    return subscription or None


def expandable_id(value: Any) -> Optional[str]:
    """Return the id of a field Stripe may send either as an id or expanded."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None
