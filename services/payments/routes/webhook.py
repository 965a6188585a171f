"""Stripe webhook endpoint."""

import logging
import time

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from services.payments.dependencies import get_dedup, get_event_router, get_webhook_secret
from services.payments.errors import MalformedPayload, SignatureInvalid
from services.payments.services.stripe_service import verify_event
from services.shared.metrics import webhook_events_total, webhook_processing_seconds

logger = logging.getLogger("payments.webhook")

router = APIRouter(tags=["webhook"])


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    dedup=Depends(get_dedup),
    event_router=Depends(get_event_router),
    webhook_secret: str = Depends(get_webhook_secret),
):
    """
    Verify, deduplicate and process one Stripe event.

    200 for processed, ignored and duplicate events; 400 when the body
    fails verification; 500 when the handler raised, after releasing
    the event id so Stripe's retry is processed.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        webhook_events_total.labels(event_type="unknown", result="rejected").inc()
        raise HTTPException(400, "Missing signature")

    try:
        event = verify_event(payload, sig_header, webhook_secret)
    except SignatureInvalid as exc:
        logger.warning("webhook_signature_invalid", extra={"error": str(exc)})
        webhook_events_total.labels(event_type="unknown", result="rejected").inc()
        raise HTTPException(400, f"Webhook Error: {exc}")
    except MalformedPayload as exc:
        logger.warning("webhook_payload_malformed", extra={"error": str(exc)})
        webhook_events_total.labels(event_type="unknown", result="rejected").inc()
        raise HTTPException(400, f"Webhook Error: {exc}")

    logger.info("webhook_received", extra={"event_id": event.id, "event_type": event.type})

    if not await dedup.try_acquire(event.id, event.type):
        webhook_events_total.labels(event_type=event.type, result="duplicate").inc()
        return {"received": True, "duplicate": True}

    started = time.monotonic()
    try:
        handled = await event_router.route(event)
    except Exception:
        await dedup.release(event.id)
        webhook_events_total.labels(event_type=event.type, result="failed").inc()
        logger.exception(
            "webhook_handler_failed",
            extra={"event_id": event.id, "event_type": event.type},
        )
        return JSONResponse(status_code=500, content={"error": "Webhook handler failed"})
    finally:
        webhook_processing_seconds.labels(event_type=event.type).observe(time.monotonic() - started)

    webhook_events_total.labels(
        event_type=event.type, result="processed" if handled else "ignored"
    ).inc()
    return {"received": True}
