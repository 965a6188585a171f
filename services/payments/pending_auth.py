"""
Hand-off of freshly minted tokens to the browser that just paid.

The workflow stages a token pair under the checkout session id; the
success page exchanges the session id for it once. When nothing is staged
(restart, expiry) the pair is re-derived from the paid invoice.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

from services.payments.db import queries
from services.payments.errors import PaymentServiceError
from services.payments.models import SessionTokens
from services.payments.services.tokens import DEFAULT_ROLES, TokenIssuer, issue_session_tokens
from services.shared.kv_store import KeyValueStore

logger = logging.getLogger("payments.pending_auth")

KEY_PREFIX = "pending_auth"


class ExchangeRefused(PaymentServiceError):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class PendingAuthExchange:
    def __init__(
        self,
        store: KeyValueStore,
        issuer: TokenIssuer,
        ttl_seconds: int = 600,
        grace_seconds: int = 120,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.issuer = issuer
        self.ttl_seconds = ttl_seconds
        self.grace_seconds = grace_seconds
        self._clock = clock

    async def start(self) -> None:
        await self.store.start()

    async def stop(self) -> None:
        await self.store.stop()

    @staticmethod
    def _key(session_id: str) -> str:
        return f"{KEY_PREFIX}:{session_id}"

    async def stage(self, session_id: str, tokens: SessionTokens) -> None:
        entry = {
            "access_token": tokens.access_token,
            "refresh_token": tokens.refresh_token,
            "user_id": tokens.user_id,
            "email": tokens.email,
            "created_at": self._clock(),
            "consumed_at": None,
        }
        await self.store.put(self._key(session_id), entry, self.ttl_seconds)
        logger.info("pending_auth_staged", extra={"session_id": session_id, "user_id": tokens.user_id})

    async def get(self, session_id: str) -> Optional[SessionTokens]:
        """
        Staged tokens for session_id, or None.

        The first read starts a grace period (bounded by the validity
        window) during which repeat reads return the same pair; after it
        the entry is gone.
        """
        key = self._key(session_id)
        entry: Optional[dict[str, Any]] = await self.store.get(key)
        if entry is None:
            return None

        now = self._clock()
        age = now - float(entry["created_at"])
        if age > self.ttl_seconds:
            await self.store.delete(key)
            return None

        consumed_at = entry.get("consumed_at")
        if consumed_at is None:
            remaining = min(self.grace_seconds, self.ttl_seconds - age)
            await self.store.put(key, {**entry, "consumed_at": now}, remaining)
        elif now - float(consumed_at) > self.grace_seconds:
            await self.store.delete(key)
            return None

        return SessionTokens(
            access_token=entry["access_token"],
            refresh_token=entry["refresh_token"],
            user_id=entry["user_id"],
            email=entry["email"],
        )

    async def exchange(self, session_id: str, pool) -> SessionTokens:
        """
        Staged tokens, or a fresh pair for the user who paid for session_id.

        Raises ExchangeRefused (404 unknown session or user, 400 unpaid invoice).
        """
        tokens = await self.get(session_id)
        if tokens is not None:
            logger.info("pending_auth_hit", extra={"session_id": session_id, "user_id": tokens.user_id})
            return tokens

        logger.info("pending_auth_miss", extra={"session_id": session_id})
        async with pool.acquire() as conn:
            invoice = await queries.find_invoice_by_session(conn, session_id)
            if invoice is None:
                raise ExchangeRefused(404, "Session not found")
            if invoice["status"] != "paid":
                logger.info(
                    "pending_auth_invoice_unpaid",
                    extra={"session_id": session_id, "status": invoice["status"]},
                )
                raise ExchangeRefused(400, "Payment not completed yet")

            user = await queries.find_user(conn, invoice["client_id"])
            if user is None:
                raise ExchangeRefused(404, "User not found")

            async with conn.transaction():
                tokens = await issue_session_tokens(
                    conn,
                    self.issuer,
                    user["id"],
                    user["email"],
                    user.get("roles") or DEFAULT_ROLES,
                )
        logger.info("pending_auth_reissued", extra={"session_id": session_id, "user_id": tokens.user_id})
        return tokens
