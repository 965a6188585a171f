import pytest
from jose import jwt

from services.payments.services.tokens import (
    TokenIssuer,
    hash_refresh_token,
    issue_session_tokens,
    random_password_hash,
    verify_refresh_token,
)

pytestmark = [pytest.mark.unit]


def _issuer(clock):
    return TokenIssuer("access-secret", "refresh-secret", access_ttl_seconds=900, refresh_ttl_days=7, clock=clock)


def test_issue_signs_access_and_refresh_with_separate_keys(clock):
    tokens = _issuer(clock).issue("user-1", "c@example.com", ["client"])

    access = jwt.decode(tokens.access_token, "access-secret", algorithms=["HS256"], options={"verify_exp": False})
    refresh = jwt.decode(tokens.refresh_token, "refresh-secret", algorithms=["HS256"], options={"verify_exp": False})

    assert access["sub"] == "user-1"
    assert access["type"] == "access"
    assert access["roles"] == ["client"]
    assert access["exp"] - access["iat"] == 900
    assert refresh["type"] == "refresh"
    assert refresh["exp"] - refresh["iat"] == 7 * 86400
    assert refresh["jti"]


def test_refresh_tokens_are_unique(clock):
    issuer = _issuer(clock)
    first = issuer.issue("user-1", "c@example.com", ["client"])
    second = issuer.issue("user-1", "c@example.com", ["client"])
    assert first.refresh_token != second.refresh_token


def test_refresh_token_hash_round_trip(clock):
    token = _issuer(clock).issue("user-1", "c@example.com", ["client"]).refresh_token
    token_hash = hash_refresh_token(token)
    assert token not in token_hash
    assert verify_refresh_token(token, token_hash) is True
    assert verify_refresh_token(token + "x", token_hash) is False


def test_random_password_hash_is_bcrypt():
    assert random_password_hash().startswith("$2b$")


def test_to_response_uses_camel_case(clock):
    tokens = _issuer(clock).issue("user-1", "c@example.com", ["client"])
    assert set(tokens.to_response()) == {"accessToken", "refreshToken", "userId", "email"}


async def test_issue_session_tokens_persists_hash(clock, ledger):
    issuer = _issuer(clock)

    tokens = await issue_session_tokens(None, issuer, "user-1", "c@example.com")

    stored = ledger.refresh_tokens[0]
    assert stored["user_id"] == "user-1"
    assert verify_refresh_token(tokens.refresh_token, stored["token_hash"])
    assert (stored["expires_at"] - issuer.refresh_expires_at()).total_seconds() == 0
