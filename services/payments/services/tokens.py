"""Access/refresh token minting for the post-payment auto-login."""
from __future__ import annotations

import asyncio
import hashlib
import secrets
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Sequence

import bcrypt
from jose import jwt

from services.payments.db import queries
from services.payments.models import SessionTokens

ALGORITHM = "HS256"
BCRYPT_ROUNDS = 10
DEFAULT_ROLES = ("client",)


class TokenIssuer:
    def __init__(
        self,
        secret: str,
        refresh_secret: str,
        access_ttl_seconds: int = 900,
        refresh_ttl_days: int = 7,
        clock: Callable[[], float] = time.time,
    ):
        self.secret = secret
        self.refresh_secret = refresh_secret
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_days = refresh_ttl_days
        self._clock = clock

    def issue(self, user_id: str, email: str, roles: Sequence[str]) -> SessionTokens:
        now = int(self._clock())
        claims = {"sub": str(user_id), "email": email, "roles": list(roles), "iat": now}
        access = jwt.encode(
            {**claims, "type": "access", "exp": now + self.access_ttl_seconds},
            self.secret,
            algorithm=ALGORITHM,
        )
        refresh = jwt.encode(
            {
                **claims,
                "type": "refresh",
                "jti": str(uuid.uuid4()),
                "exp": now + self.refresh_ttl_days * 86400,
            },
            self.refresh_secret,
            algorithm=ALGORITHM,
        )
        return SessionTokens(access_token=access, refresh_token=refresh, user_id=str(user_id), email=email)

    def refresh_expires_at(self) -> datetime:
        issued = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        return issued + timedelta(days=self.refresh_ttl_days)


def _digest(token: str) -> bytes:
    # bcrypt only reads 72 bytes; JWTs are longer.
    return hashlib.sha256(token.encode("utf-8")).hexdigest().encode("ascii")


def hash_refresh_token(token: str) -> str:
    return bcrypt.hashpw(_digest(token), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_refresh_token(token: str, token_hash: str) -> bool:
    return bcrypt.checkpw(_digest(token), token_hash.encode("utf-8"))


def random_password_hash() -> str:
    """Password hash for accounts that sign in through an OAuth provider."""
    password = secrets.token_hex(32).encode("ascii")
    return bcrypt.hashpw(password, bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


async def issue_session_tokens(
    conn,
    issuer: TokenIssuer,
    user_id: str,
    email: str,
    roles: Sequence[str] = DEFAULT_ROLES,
) -> SessionTokens:
    """Mint a token pair and persist the refresh token's hash."""
    tokens = issuer.issue(user_id, email, roles)
    token_hash = await asyncio.to_thread(hash_refresh_token, tokens.refresh_token)
    await queries.insert_refresh_token(conn, user_id, token_hash, issuer.refresh_expires_at())
    return tokens
