"""Dispatch of verified Stripe events to their handlers."""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from services.payments.checkout_intent import STORAGE_ADDON, cents_to_amount
from services.payments.db import queries
from services.payments.models import ExternalEvent
from services.payments.phoenix import PhoenixWorkflow
from services.payments.services import stripe_service
from services.payments.services.notifications import NotificationGateway
from services.payments.settings import GIB
from services.shared.best_effort import best_effort
from services.shared.logging import log_event, log_exception

logger = logging.getLogger("payments.webhook")

Handler = Callable[[dict[str, Any]], Awaitable[None]]

SUBSCRIPTION_STATUS_MAP = {
    "active": "active",
    "past_due": "past_due",
    "canceled": "cancelled",
    "trialing": "trialing",
    "unpaid": "past_due",
}


def _invoice_number(prefix: str, client_id: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{str(client_id)[:8]}"


def _storage_gb(metadata: dict[str, Any]) -> int:
    try:
        return max(0, int(metadata.get("storageGb") or 0))
    except (TypeError, ValueError):
        return 0


class EventRouter:
    """
    Maps Stripe event types to handlers. Unknown types are acknowledged
    without processing. Each handler commits its own ledger changes.
    """

    def __init__(
        self,
        pool,
        workflow: PhoenixWorkflow,
        notifications: NotificationGateway,
        storage_base_bytes: int = 5 * GIB,
    ):
        self.pool = pool
        self.workflow = workflow
        self.notifications = notifications
        self.storage_base_bytes = storage_base_bytes
        self._handlers: dict[str, Handler] = {
            "checkout.session.completed": workflow.handle_checkout_completed,
            "checkout.session.expired": self.handle_checkout_expired,
            "payment_intent.succeeded": self.handle_payment_succeeded,
            "payment_intent.payment_failed": self.handle_payment_failed,
            "invoice.paid": self.handle_invoice_paid,
            "invoice.payment_failed": self.handle_invoice_payment_failed,
            "customer.subscription.updated": self.handle_subscription_updated,
            "customer.subscription.deleted": self.handle_subscription_deleted,
        }

    @property
    def event_types(self) -> frozenset[str]:
        return frozenset(self._handlers)

    async def route(self, event: ExternalEvent) -> bool:
        """Run the handler for event.type. False when the type is not handled."""
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info("webhook_event_unhandled", extra={"event_id": event.id, "event_type": event.type})
            return False
        await handler(event.data_object)
        return True

    async def _staff_ids(self) -> list[str]:
        try:
            async with self.pool.acquire() as conn:
                return await queries.fetch_staff_user_ids(conn)
        except Exception as exc:
            log_exception(logger, "staff_lookup_failed", exc, level=logging.WARNING)
            return []

    async def _notify_staff(
        self,
        notification_type: str,
        data: dict[str, Any],
        link: str,
        entity_type: str,
        entity_id: Optional[str],
    ) -> None:
        async def _send() -> None:
            admin_ids = await self._staff_ids()
            if admin_ids:
                await self.notifications.notify_admins(
                    admin_ids, notification_type, data, link, entity_type, entity_id
                )

        await best_effort(f"staff:{notification_type}", _send, entity_id=entity_id)

    # ── Checkout ─────────────────────────────────────────────

    async def handle_checkout_expired(self, session: dict[str, Any]) -> None:
        session_id = session["id"]
        async with self.pool.acquire() as conn:
            invoice = await queries.find_invoice_by_session(conn, session_id)
            if invoice is None:
                logger.info("expired_session_without_invoice", extra={"session_id": session_id})
                return
            if invoice["status"] in ("paid", "cancelled"):
                logger.info(
                    "expired_session_invoice_unchanged",
                    extra={"session_id": session_id, "invoice_id": invoice["id"], "status": invoice["status"]},
                )
                return
            await queries.set_invoice_status(conn, invoice["id"], "cancelled")
        log_event(logger, "invoice_cancelled", invoice_id=invoice["id"], session_id=session_id)

    # ── One-off payment intents ──────────────────────────────

    async def handle_payment_succeeded(self, payment_intent: dict[str, Any]) -> None:
        log_event(
            logger,
            "payment_intent_succeeded",
            payment_intent_id=payment_intent.get("id"),
            amount=payment_intent.get("amount"),
        )

    async def handle_payment_failed(self, payment_intent: dict[str, Any]) -> None:
        payment_intent_id = payment_intent["id"]
        async with self.pool.acquire() as conn:
            invoice = await queries.find_invoice_by_payment_intent(conn, payment_intent_id)
            if invoice is None:
                logger.info("failed_payment_without_invoice", extra={"payment_intent_id": payment_intent_id})
                return
            await queries.set_invoice_status(conn, invoice["id"], "failed")
        log_event(logger, "invoice_marked_failed", invoice_id=invoice["id"], client_id=invoice["client_id"])

        amount = float(invoice["amount"] or 0)
        await best_effort(
            "payment_failed",
            lambda: self.notifications.send_payment_failed(invoice["client_id"], amount),
            client_id=invoice["client_id"],
        )
        await self._notify_staff(
            "admin.payment_failed",
            {"clientName": "Client", "amount": f"{invoice['amount']}€"},
            "/payments",
            "invoice",
            invoice["id"],
        )

    # ── Recurring invoices ───────────────────────────────────

    async def handle_invoice_paid(self, stripe_invoice: dict[str, Any]) -> None:
        subscription_id = stripe_service.invoice_subscription_id(stripe_invoice)
        if not subscription_id:
            logger.info("invoice_paid_without_subscription", extra={"stripe_invoice_id": stripe_invoice.get("id")})
            return

        billing_reason = stripe_invoice.get("billing_reason")
        async with self.pool.acquire() as conn:
            subscription = await queries.find_subscription(conn, subscription_id)
            if subscription is None:
                logger.info("invoice_paid_unknown_subscription", extra={"subscription_id": subscription_id})
                return
            if billing_reason == "subscription_create":
                # First period was invoiced by checkout.session.completed.
                logger.info("invoice_paid_initial_skipped", extra={"subscription_id": subscription_id})
                return

            payment_intent_id = stripe_service.expandable_id(stripe_invoice.get("payment_intent"))
            client_id = subscription["client_id"]
            paid_at = stripe_service.to_datetime(
                (stripe_invoice.get("status_transitions") or {}).get("paid_at")
            ) or datetime.now(timezone.utc)

            async with conn.transaction():
                existing = await queries.find_recurring_invoice(conn, payment_intent_id, stripe_invoice["id"])
                if existing is not None:
                    logger.info(
                        "recurring_invoice_already_recorded",
                        extra={"invoice_id": existing["id"], "stripe_invoice_id": stripe_invoice["id"]},
                    )
                    return
                invoice = await queries.insert_invoice(
                    conn,
                    client_id=client_id,
                    invoice_number=_invoice_number("INV-REC", client_id),
                    amount=cents_to_amount(stripe_invoice.get("amount_paid") or 0),
                    currency=stripe_invoice.get("currency") or "eur",
                    status="paid",
                    paid_at=paid_at,
                    plan_id=subscription["plan_id"],
                    plan_name=f"Abonnement {subscription['plan_id']}",
                    description=f"Paiement récurrent - {billing_reason}",
                    payment_intent_id=payment_intent_id,
                    customer_id=stripe_service.expandable_id(stripe_invoice.get("customer")),
                    metadata={
                        "stripeInvoiceId": stripe_invoice["id"],
                        "billingReason": billing_reason,
                        "subscriptionId": subscription_id,
                        "periodStart": stripe_invoice.get("period_start"),
                        "periodEnd": stripe_invoice.get("period_end"),
                        "type": "recurring",
                    },
                )
                await queries.renew_subscription_period(
                    conn,
                    subscription_id,
                    stripe_service.to_datetime(stripe_invoice.get("period_start")),
                    stripe_service.to_datetime(stripe_invoice.get("period_end")),
                )

        log_event(
            logger,
            "recurring_payment_recorded",
            invoice_id=invoice["id"],
            client_id=client_id,
            subscription_id=subscription_id,
            amount=str(invoice["amount"]),
        )

    async def handle_invoice_payment_failed(self, stripe_invoice: dict[str, Any]) -> None:
        subscription_id = stripe_service.invoice_subscription_id(stripe_invoice)
        if not subscription_id:
            logger.info("invoice_failed_without_subscription", extra={"stripe_invoice_id": stripe_invoice.get("id")})
            return

        amount_due = cents_to_amount(stripe_invoice.get("amount_due") or 0)
        async with self.pool.acquire() as conn:
            subscription = await queries.find_subscription(conn, subscription_id)
            if subscription is None:
                logger.info("invoice_failed_unknown_subscription", extra={"subscription_id": subscription_id})
                return
            client_id = subscription["client_id"]
            async with conn.transaction():
                await queries.set_subscription_status(conn, subscription_id, "past_due")
                # One row per dunning attempt.
                invoice = await queries.insert_invoice(
                    conn,
                    client_id=client_id,
                    invoice_number=_invoice_number("INV-FAIL", client_id),
                    amount=amount_due,
                    currency=stripe_invoice.get("currency") or "eur",
                    status="failed",
                    plan_id=subscription["plan_id"],
                    plan_name=f"Abonnement {subscription['plan_id']}",
                    description=f"Paiement récurrent échoué - {stripe_invoice.get('billing_reason')}",
                    payment_intent_id=stripe_service.expandable_id(stripe_invoice.get("payment_intent")),
                    customer_id=stripe_service.expandable_id(stripe_invoice.get("customer")),
                    metadata={
                        "stripeInvoiceId": stripe_invoice.get("id"),
                        "billingReason": stripe_invoice.get("billing_reason"),
                        "subscriptionId": subscription_id,
                        "type": "recurring_failed",
                        "attemptCount": stripe_invoice.get("attempt_count"),
                    },
                )

        log_event(
            logger,
            "recurring_payment_failed",
            level="WARNING",
            invoice_id=invoice["id"],
            client_id=client_id,
            subscription_id=subscription_id,
            attempt=stripe_invoice.get("attempt_count"),
        )
        await best_effort(
            "payment_failed",
            lambda: self.notifications.send_payment_failed(client_id, float(amount_due)),
            client_id=client_id,
        )
        await self._notify_staff(
            "admin.payment_failed",
            {"clientName": "Client", "amount": f"{amount_due}€"},
            "/payments",
            "invoice",
            invoice["invoice_number"],
        )

    # ── Subscription lifecycle ───────────────────────────────

    async def handle_subscription_updated(self, stripe_sub: dict[str, Any]) -> None:
        subscription_id = stripe_sub["id"]
        async with self.pool.acquire() as conn:
            subscription = await queries.find_subscription(conn, subscription_id)
            if subscription is None:
                logger.info("subscription_update_unknown", extra={"subscription_id": subscription_id})
                return

            status = SUBSCRIPTION_STATUS_MAP.get(stripe_sub.get("status"), subscription["status"])
            period_start, period_end = stripe_service.subscription_period(stripe_sub)
            cancel_at_period_end = bool(stripe_sub.get("cancel_at_period_end"))
            await queries.mirror_subscription(
                conn,
                subscription_id,
                status=status,
                current_period_start=period_start,
                current_period_end=period_end,
                cancel_at_period_end=cancel_at_period_end,
                trial_end=stripe_service.to_datetime(stripe_sub.get("trial_end")),
            )

        log_event(logger, "subscription_updated", subscription_id=subscription_id, status=status)
        if cancel_at_period_end:
            log_event(
                logger,
                "subscription_cancellation_scheduled",
                subscription_id=subscription_id,
                cancels_at=period_end.isoformat() if period_end else None,
            )

    async def handle_subscription_deleted(self, stripe_sub: dict[str, Any]) -> None:
        subscription_id = stripe_sub["id"]
        metadata = stripe_sub.get("metadata") or {}
        is_storage_addon = metadata.get("type") == STORAGE_ADDON
        storage_gb = _storage_gb(metadata) if is_storage_addon else 0
        quota = None

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                subscription = await queries.find_subscription(conn, subscription_id, for_update=True)
                if subscription is None:
                    logger.info("subscription_delete_unknown", extra={"subscription_id": subscription_id})
                    return
                # status may already read cancelled from an earlier updated event
                if subscription["cancelled_at"] is not None:
                    logger.info("subscription_already_cancelled", extra={"subscription_id": subscription_id})
                    return
                await queries.cancel_subscription(conn, subscription_id)
                if storage_gb > 0:
                    quota = await queries.remove_storage(
                        conn, subscription["client_id"], storage_gb * GIB, self.storage_base_bytes
                    )

        client_id = subscription["client_id"]
        log_event(
            logger,
            "subscription_cancelled",
            subscription_id=subscription_id,
            client_id=client_id,
            storage_gb_removed=storage_gb,
        )

        if quota is not None:
            await self._check_over_quota(client_id, quota)
        elif is_storage_addon and storage_gb > 0:
            logger.info("storage_quota_missing", extra={"client_id": client_id})

        await best_effort(
            "subscription_cancelled",
            lambda: self.notifications.send_subscription_cancelled(client_id),
            client_id=client_id,
        )
        await self._notify_staff(
            "admin.subscription_cancelled",
            {"clientName": "Client"},
            "/users",
            "subscription",
            subscription["id"],
        )

    async def _check_over_quota(self, client_id: str, quota: dict[str, Any]) -> None:
        used = int(quota["used_storage_bytes"] or 0)
        limit = int(quota["storage_limit_bytes"])
        if used <= limit:
            return
        used_gb = round(used / GIB)
        limit_gb = round(limit / GIB)
        log_event(
            logger,
            "storage_over_quota",
            level="WARNING",
            client_id=client_id,
            used_bytes=used,
            limit_bytes=limit,
        )
        await best_effort(
            "storage_over_quota",
            lambda: self.notifications.create_custom(
                user_id=client_id,
                notification_type="storage.over_quota",
                category="storage",
                title="Stockage dépassé",
                message=(
                    "Votre abonnement stockage a été annulé. "
                    f"Vous utilisez actuellement {used_gb}GB sur {limit_gb}GB disponibles."
                ),
                priority="high",
            ),
            client_id=client_id,
        )
