"""
Checkout-completed workflow.

A completed checkout is parsed into a CheckoutIntent and handled by one of
three branches: a storage addon purchase, a new account paying during
registration, or an existing user paying an invoice created before
checkout. The last two then record the subscription and ask the project
service to provision the purchase.

Ledger writes commit before any downstream call. Provisioning failures
are logged as critical and never undo the paid invoice; notification
failures are logged and swallowed.
"""
from __future__ import annotations

import asyncio
import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from services.payments.checkout_intent import (
    CompletedCheckout,
    ExistingUserPaymentIntent,
    PendingRegistrationIntent,
    PlanSelection,
    StorageAddonIntent,
    cents_to_amount,
    parse_checkout_intent,
)
from services.payments.db import queries
from services.payments.pending_auth import PendingAuthExchange
from services.payments.services import stripe_service
from services.payments.services.notifications import NotificationGateway
from services.payments.services.provisioner import ProjectProvisioner, build_project_request
from services.payments.services.tokens import TokenIssuer, issue_session_tokens, random_password_hash
from services.payments.settings import GIB
from services.shared.best_effort import best_effort
from services.shared.logging import log_event, log_exception
from services.shared.metrics import provisioning_failures_total

logger = logging.getLogger("payments.phoenix")

CLIENT_ROLES = ["client"]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _invoice_number(prefix: str, client_id: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{str(client_id)[:8]}"


def _subscription_status(stripe_status: Optional[str]) -> str:
    return "trialing" if stripe_status == "trialing" else "active"


def _amount_cents(amount: Any) -> int:
    return int(round(float(amount or 0) * 100))


class PhoenixWorkflow:
    def __init__(
        self,
        pool,
        *,
        provisioner: ProjectProvisioner,
        notifications: NotificationGateway,
        pending_auth: PendingAuthExchange,
        token_issuer: TokenIssuer,
        storage_base_bytes: int = 5 * GIB,
        retrieve_subscription: Callable[[str], Awaitable[dict]] = stripe_service.retrieve_subscription,
    ):
        self.pool = pool
        self.provisioner = provisioner
        self.notifications = notifications
        self.pending_auth = pending_auth
        self.token_issuer = token_issuer
        self.storage_base_bytes = storage_base_bytes
        self.retrieve_subscription = retrieve_subscription

    async def handle_checkout_completed(self, session: dict[str, Any]) -> None:
        checkout = CompletedCheckout.from_session(session)
        intent = parse_checkout_intent(checkout.metadata)
        log_event(
            logger,
            "checkout_completed",
            session_id=checkout.session_id,
            intent=type(intent).__name__,
            amount_cents=checkout.amount_total_cents,
        )

        if isinstance(intent, StorageAddonIntent):
            await self._storage_addon(checkout, intent)
        elif isinstance(intent, PendingRegistrationIntent):
            await self._pending_registration(checkout, intent)
        elif isinstance(intent, ExistingUserPaymentIntent):
            await self._existing_user_payment(checkout, intent)
        else:
            raise TypeError(f"Unhandled checkout intent: {intent!r}")

    # ── Storage addon ────────────────────────────────────────

    async def _storage_addon(self, checkout: CompletedCheckout, intent: StorageAddonIntent) -> None:
        if not checkout.subscription_id:
            logger.error(
                "storage_addon_without_subscription",
                extra={"session_id": checkout.session_id, "client_id": intent.client_id},
            )
            return

        stripe_sub = await self.retrieve_subscription(checkout.subscription_id)
        amount = cents_to_amount(stripe_service.subscription_unit_amount_cents(stripe_sub))
        period_start, period_end = stripe_service.subscription_period(stripe_sub)
        gb = intent.storage_gb

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                existing = await queries.find_invoice_by_session(conn, checkout.session_id)
                if existing is not None and existing["status"] != "cancelled":
                    logger.info(
                        "storage_addon_already_recorded",
                        extra={"session_id": checkout.session_id, "invoice_id": existing["id"]},
                    )
                    return

                invoice = await queries.insert_invoice(
                    conn,
                    client_id=intent.client_id,
                    invoice_number=_invoice_number("INV-STORAGE", intent.client_id),
                    amount=amount,
                    status="paid",
                    paid_at=_now(),
                    plan_id=intent.storage_plan_id,
                    plan_name=f"Stockage supplémentaire +{gb}GB",
                    description=f"Abonnement stockage additionnel - {gb}GB/mois",
                    checkout_session_id=checkout.session_id,
                    customer_id=checkout.customer_id,
                    metadata={
                        "type": "storage_addon",
                        "storageGb": gb,
                        "storagePlanId": intent.storage_plan_id,
                        "stripeSubscriptionId": checkout.subscription_id,
                    },
                )
                await queries.upsert_subscription(
                    conn,
                    client_id=intent.client_id,
                    plan_id=intent.storage_plan_id or "storage",
                    stripe_subscription_id=checkout.subscription_id,
                    stripe_customer_id=checkout.customer_id,
                    status=_subscription_status(stripe_sub.get("status")),
                    current_period_start=period_start,
                    current_period_end=period_end,
                )
                quota = await queries.add_storage(
                    conn,
                    intent.client_id,
                    intent.storage_plan_id,
                    gb * GIB,
                    self.storage_base_bytes,
                )
            user = await queries.find_user(conn, intent.client_id)

        log_event(
            logger,
            "storage_addon_recorded",
            client_id=intent.client_id,
            invoice_id=invoice["id"],
            storage_gb=gb,
            storage_limit_bytes=quota["storage_limit_bytes"],
            subscription_id=checkout.subscription_id,
        )

        if user is not None:
            await best_effort(
                "storage_payment_success",
                lambda: self.notifications.send_payment_success(
                    user_id=intent.client_id,
                    email=user["email"],
                    first_name=user.get("first_name") or "Client",
                    invoice_id=invoice["id"],
                    invoice_number=invoice["invoice_number"],
                    plan_name=f"Stockage +{gb}GB",
                    amount_cents=_amount_cents(amount),
                ),
                client_id=intent.client_id,
            )

    # ── New account ──────────────────────────────────────────

    async def _pending_registration(
        self, checkout: CompletedCheckout, intent: PendingRegistrationIntent
    ) -> None:
        pending = intent.user
        plans = intent.plans
        password_hash = pending.password_hash
        if not password_hash:
            password_hash = await asyncio.to_thread(random_password_hash)

        plan_id, plan_name = plans.derive_plan()

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                existing = await queries.find_invoice_by_session(conn, checkout.session_id)
                if existing is not None and existing["status"] != "cancelled":
                    logger.info(
                        "registration_already_recorded",
                        extra={"session_id": checkout.session_id, "invoice_id": existing["id"]},
                    )
                    return

                user = await queries.insert_user(
                    conn,
                    email=pending.email,
                    password_hash=password_hash,
                    first_name=pending.first_name,
                    last_name=pending.last_name,
                    company_name=pending.company,
                    phone=pending.phone,
                    avatar_url=pending.avatar_url,
                    roles=CLIENT_ROLES,
                    email_verified=pending.is_oauth,
                )
                tokens = await issue_session_tokens(
                    conn, self.token_issuer, user["id"], user["email"], CLIENT_ROLES
                )
                invoice = await queries.insert_invoice(
                    conn,
                    client_id=user["id"],
                    invoice_number=_invoice_number(f"INV-{plans.case}", user["id"]),
                    amount=cents_to_amount(checkout.amount_total_cents),
                    status="paid",
                    paid_at=_now(),
                    plan_id=plan_id,
                    plan_name=plan_name,
                    description=plans.invoice_description or f"{plan_name} - Paiement initial",
                    checkout_session_id=checkout.session_id,
                    payment_intent_id=checkout.payment_intent_id,
                    customer_id=checkout.customer_id,
                    metadata=checkout.invoice_metadata(plans.case),
                )

        log_event(
            logger,
            "registration_recorded",
            user_id=user["id"],
            invoice_id=invoice["id"],
            case=plans.case,
            plan_id=plan_id,
            oauth=pending.is_oauth,
        )
        await self.pending_auth.stage(checkout.session_id, tokens)

        await self.create_project_and_workflow(invoice, user["id"], checkout, plans)

        first_name = user.get("first_name") or "Client"
        await best_effort(
            "welcome",
            lambda: self.notifications.send_welcome(
                user_id=user["id"], email=user["email"], first_name=first_name
            ),
            user_id=user["id"],
        )
        await best_effort(
            "payment_success",
            lambda: self.notifications.send_payment_success(
                user_id=user["id"],
                email=user["email"],
                first_name=first_name,
                invoice_id=invoice["id"],
                invoice_number=invoice["invoice_number"],
                plan_name=invoice["plan_name"] or "Votre formule",
                amount_cents=checkout.amount_total_cents,
            ),
            user_id=user["id"],
        )
        if not pending.is_oauth:
            verification_token = secrets.token_hex(32)
            await best_effort(
                "verification_email",
                lambda: self.notifications.send_verification_email(
                    user_id=user["id"],
                    email=user["email"],
                    first_name=first_name,
                    verification_token=verification_token,
                ),
                user_id=user["id"],
            )

    # ── Existing user ────────────────────────────────────────

    async def _existing_user_payment(
        self, checkout: CompletedCheckout, intent: ExistingUserPaymentIntent
    ) -> None:
        async with self.pool.acquire() as conn:
            invoice = await queries.find_invoice_by_session(conn, checkout.session_id)
            if invoice is None:
                logger.error("invoice_not_found_for_session", extra={"session_id": checkout.session_id})
                return
            if invoice["status"] == "paid":
                logger.info(
                    "invoice_already_paid",
                    extra={"session_id": checkout.session_id, "invoice_id": invoice["id"]},
                )
                return
            invoice = await queries.mark_invoice_paid(conn, invoice["id"], checkout.payment_intent_id)

        client_id = invoice["client_id"]
        log_event(
            logger,
            "invoice_marked_paid",
            invoice_id=invoice["id"],
            client_id=client_id,
            case=intent.plans.case,
        )

        await self.create_project_and_workflow(invoice, client_id, checkout, intent.plans)

        async with self.pool.acquire() as conn:
            user = await queries.find_user(conn, client_id)
        if user is not None:
            await best_effort(
                "payment_success",
                lambda: self.notifications.send_payment_success(
                    user_id=client_id,
                    email=user["email"],
                    first_name=user.get("first_name") or "Client",
                    invoice_id=invoice["id"],
                    invoice_number=invoice["invoice_number"],
                    plan_name=invoice["plan_name"] or "Votre formule",
                    amount_cents=_amount_cents(invoice["amount"]),
                ),
                client_id=client_id,
            )

    # ── Shared: subscription + project ───────────────────────

    async def create_project_and_workflow(
        self,
        invoice: dict[str, Any],
        client_id: str,
        checkout: CompletedCheckout,
        plans: PlanSelection,
    ) -> None:
        if checkout.subscription_id and plans.has_recurring:
            await self._record_subscription(invoice, client_id, checkout, plans)

        if invoice.get("plan_id") and invoice.get("plan_name"):
            await self._provision_project(invoice, client_id, checkout.subscription_id, plans)
        else:
            logger.info("invoice_has_no_plan", extra={"invoice_id": invoice["id"]})

    async def _record_subscription(
        self,
        invoice: dict[str, Any],
        client_id: str,
        checkout: CompletedCheckout,
        plans: PlanSelection,
    ) -> None:
        plan_id = plans.subscription_plan_id(invoice.get("plan_id"))
        if not plan_id:
            logger.error(
                "subscription_plan_missing",
                extra={"invoice_id": invoice["id"], "subscription_id": checkout.subscription_id},
            )
            return
        try:
            stripe_sub = await self.retrieve_subscription(checkout.subscription_id)
            period_start, period_end = stripe_service.subscription_period(stripe_sub)
            async with self.pool.acquire() as conn:
                await queries.upsert_subscription(
                    conn,
                    client_id=client_id,
                    plan_id=plan_id,
                    stripe_subscription_id=checkout.subscription_id,
                    stripe_customer_id=checkout.customer_id,
                    status=_subscription_status(stripe_sub.get("status")),
                    current_period_start=period_start,
                    current_period_end=period_end,
                    trial_end=stripe_service.to_datetime(stripe_sub.get("trial_end")),
                )
        except Exception as exc:
            # Later subscription.updated events rebuild the row.
            log_exception(
                logger,
                "subscription_record_failed",
                exc,
                {"invoice_id": invoice["id"], "subscription_id": checkout.subscription_id},
            )
            return
        log_event(
            logger,
            "subscription_recorded",
            client_id=client_id,
            subscription_id=checkout.subscription_id,
            stripe_status=stripe_sub.get("status"),
        )

    async def _provision_project(
        self,
        invoice: dict[str, Any],
        client_id: str,
        subscription_id: Optional[str],
        plans: PlanSelection,
    ) -> None:
        request = build_project_request(invoice, client_id, subscription_id, plans)
        try:
            data = await self.provisioner.create(request)
            project_id = str(data["project"]["id"])
            async with self.pool.acquire() as conn:
                await queries.set_invoice_project(conn, invoice["id"], project_id)
        except Exception as exc:
            provisioning_failures_total.labels(shape=request.shape).inc()
            log_exception(
                logger,
                "project_provisioning_failed",
                exc,
                {
                    "invoice_id": invoice["id"],
                    "client_id": client_id,
                    "shape": request.shape,
                },
                level=logging.CRITICAL,
            )
            return

        log_event(
            logger,
            "project_provisioned",
            invoice_id=invoice["id"],
            client_id=client_id,
            project_id=project_id,
            shape=request.shape,
            modules=len(data.get("modules") or []),
            briefs=len(data.get("briefs") or []),
        )
