"""Client for the notification service's internal delivery endpoints."""

import logging
from typing import Any, Optional, Sequence

import httpx

from services.payments.errors import NotificationError
from services.shared.http_client import internal_client

logger = logging.getLogger("payments.notifications")

DEFAULT_CHANNELS = ("in_app", "email")


class NotificationGateway:
    """
    Thin HTTP client. Every method raises NotificationError on transport
    errors or non-2xx responses; callers wrap them with best_effort().
    """

    def __init__(self, base_url: str, internal_secret: str, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.internal_secret = internal_secret
        self.timeout = timeout

    async def _post(self, path: str, body: dict[str, Any]) -> None:
        async with internal_client(self.base_url, self.internal_secret, timeout=self.timeout) as client:
            try:
                resp = await client.post(path, json=body)
                resp.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise NotificationError(f"{path} returned {exc.response.status_code}") from exc
            except httpx.HTTPError as exc:
                raise NotificationError(f"{path} unreachable: {exc}") from exc
        logger.debug("notification_sent", extra={"path": path})

    async def send_welcome(self, *, user_id: str, email: str, first_name: str) -> None:
        await self._post(
            "/internal/notifications/welcome",
            {
                "userId": user_id,
                "email": email,
                "firstName": first_name,
                "channels": list(DEFAULT_CHANNELS),
            },
        )

    async def send_payment_success(
        self,
        *,
        user_id: str,
        email: str,
        first_name: str,
        invoice_id: str,
        invoice_number: str,
        plan_name: str,
        amount_cents: int,
    ) -> None:
        await self._post(
            "/internal/notifications/payment-success",
            {
                "userId": user_id,
                "email": email,
                "firstName": first_name,
                "invoiceId": invoice_id,
                "invoiceNumber": invoice_number,
                "planName": plan_name,
                "amountCents": amount_cents,
                "channels": list(DEFAULT_CHANNELS),
            },
        )

    async def send_verification_email(
        self, *, user_id: str, email: str, first_name: str, verification_token: str
    ) -> None:
        await self._post(
            "/internal/notifications/verification-email",
            {
                "userId": user_id,
                "email": email,
                "firstName": first_name,
                "verificationToken": verification_token,
            },
        )

    async def send_payment_failed(self, user_id: str, amount: float) -> None:
        await self._post(
            "/internal/notifications/payment-failed",
            {"userId": user_id, "amount": amount},
        )

    async def send_subscription_cancelled(self, user_id: str) -> None:
        await self._post(
            "/internal/notifications/subscription-cancelled",
            {"userId": user_id},
        )

    async def notify_admins(
        self,
        admin_ids: Sequence[str],
        notification_type: str,
        data: dict[str, Any],
        link: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> None:
        await self._post(
            "/internal/notifications/admins",
            {
                "adminIds": list(admin_ids),
                "type": notification_type,
                "data": data,
                "link": link,
                "entityType": entity_type,
                "entityId": entity_id,
            },
        )

    async def create_custom(
        self,
        *,
        user_id: str,
        notification_type: str,
        category: str,
        title: str,
        message: str,
        priority: str = "normal",
    ) -> None:
        await self._post(
            "/internal/notifications/custom",
            {
                "userId": user_id,
                "type": notification_type,
                "category": category,
                "title": title,
                "message": message,
                "priority": priority,
            },
        )
