"""Ledger reads and writes. Every function takes an open asyncpg connection."""
from __future__ import annotations

import json
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import asyncpg

STAFF_ROLES = ("admin", "super_admin")

_INVOICE_COLUMNS = """
    id, client_id, invoice_number, amount, currency, status, plan_id, plan_name,
    description, stripe_checkout_session_id, stripe_payment_intent_id,
    stripe_customer_id, project_id, metadata, paid_at, created_at, updated_at
"""

_SUBSCRIPTION_COLUMNS = """
    id, client_id, plan_id, stripe_subscription_id, stripe_customer_id, status,
    current_period_start, current_period_end, trial_end, cancel_at_period_end,
    cancelled_at
"""


def _as_dict(row) -> Dict[str, Any] | None:
    if row is None:
        return None
    result: Dict[str, Any] = {}
    for key, value in dict(row).items():
        if isinstance(value, uuid.UUID):
            value = str(value)
        elif key == "metadata" and isinstance(value, str):
            value = json.loads(value)
        result[key] = value
    return result


# ── Invoices ─────────────────────────────────────────────────


async def find_invoice_by_session(
    conn: asyncpg.Connection, checkout_session_id: str
) -> Dict[str, Any] | None:
    """Live invoice for a checkout session, or the latest cancelled one."""
    row = await conn.fetchrow(
        f"""
        SELECT {_INVOICE_COLUMNS}
        FROM invoices
        WHERE stripe_checkout_session_id = $1
        ORDER BY (status = 'cancelled'), created_at DESC
        LIMIT 1
        """,
        checkout_session_id,
    )
    return _as_dict(row)


async def find_invoice_by_payment_intent(
    conn: asyncpg.Connection, payment_intent_id: str
) -> Dict[str, Any] | None:
    row = await conn.fetchrow(
        f"""
        SELECT {_INVOICE_COLUMNS}
        FROM invoices
        WHERE stripe_payment_intent_id = $1
        ORDER BY created_at DESC
        LIMIT 1
        """,
        payment_intent_id,
    )
    return _as_dict(row)


async def find_recurring_invoice(
    conn: asyncpg.Connection,
    payment_intent_id: Optional[str],
    stripe_invoice_id: str,
) -> Dict[str, Any] | None:
    """Invoice already recorded for a Stripe invoice, matched by payment intent or invoice id."""
    row = await conn.fetchrow(
        f"""
        SELECT {_INVOICE_COLUMNS}
        FROM invoices
        WHERE ($1::text IS NOT NULL AND stripe_payment_intent_id = $1)
           OR metadata->>'stripeInvoiceId' = $2
        LIMIT 1
        """,
        payment_intent_id,
        stripe_invoice_id,
    )
    return _as_dict(row)


async def insert_invoice(
    conn: asyncpg.Connection,
    *,
    client_id: str,
    invoice_number: str,
    amount: Decimal,
    status: str,
    plan_id: Optional[str],
    plan_name: Optional[str],
    description: Optional[str],
    currency: str = "eur",
    checkout_session_id: Optional[str] = None,
    payment_intent_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    metadata: Optional[dict] = None,
    paid_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    row = await conn.fetchrow(
        f"""
        INSERT INTO invoices (
            client_id, invoice_number, amount, currency, status, plan_id, plan_name,
            description, stripe_checkout_session_id, stripe_payment_intent_id,
            stripe_customer_id, metadata, paid_at
        )
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12::jsonb, $13)
        RETURNING {_INVOICE_COLUMNS}
        """,
        client_id,
        invoice_number,
        amount,
        currency,
        status,
        plan_id,
        plan_name,
        description,
        checkout_session_id,
        payment_intent_id,
        customer_id,
        json.dumps(metadata or {}, default=str),
        paid_at,
    )
    return _as_dict(row)


async def mark_invoice_paid(
    conn: asyncpg.Connection, invoice_id: str, payment_intent_id: Optional[str]
) -> Dict[str, Any]:
    row = await conn.fetchrow(
        f"""
        UPDATE invoices
        SET status = 'paid',
            paid_at = NOW(),
            stripe_payment_intent_id = COALESCE($2, stripe_payment_intent_id),
            updated_at = NOW()
        WHERE id = $1
        RETURNING {_INVOICE_COLUMNS}
        """,
        invoice_id,
        payment_intent_id,
    )
    return _as_dict(row)


async def set_invoice_status(conn: asyncpg.Connection, invoice_id: str, status: str) -> None:
    await conn.execute(
        "UPDATE invoices SET status = $2, updated_at = NOW() WHERE id = $1",
        invoice_id,
        status,
    )


async def set_invoice_project(conn: asyncpg.Connection, invoice_id: str, project_id: str) -> None:
    await conn.execute(
        "UPDATE invoices SET project_id = $2, updated_at = NOW() WHERE id = $1",
        invoice_id,
        project_id,
    )


# ── Users and credentials ────────────────────────────────────


async def insert_user(
    conn: asyncpg.Connection,
    *,
    email: str,
    password_hash: str,
    first_name: str,
    last_name: str,
    company_name: Optional[str],
    phone: Optional[str],
    avatar_url: Optional[str],
    roles: List[str],
    email_verified: bool,
) -> Dict[str, Any]:
    row = await conn.fetchrow(
        """
        INSERT INTO users (
            email, password_hash, first_name, last_name, company_name, phone,
            avatar_url, roles, email_verified, is_active
        )
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, TRUE)
        RETURNING id, email, first_name, last_name, roles, email_verified
        """,
        email,
        password_hash,
        first_name,
        last_name,
        company_name,
        phone,
        avatar_url,
        roles,
        email_verified,
    )
    return _as_dict(row)


async def find_user(conn: asyncpg.Connection, user_id: str) -> Dict[str, Any] | None:
    row = await conn.fetchrow(
        """
        SELECT id, email, first_name, last_name, roles, is_active
        FROM users
        WHERE id = $1
        """,
        user_id,
    )
    return _as_dict(row)


async def fetch_staff_user_ids(conn: asyncpg.Connection) -> List[str]:
    rows = await conn.fetch(
        """
        SELECT id FROM users
        WHERE is_active AND roles && $1::text[]
        ORDER BY created_at
        """,
        list(STAFF_ROLES),
    )
    return [str(r["id"]) for r in rows]


async def insert_refresh_token(
    conn: asyncpg.Connection, user_id: str, token_hash: str, expires_at: datetime
) -> None:
    await conn.execute(
        "INSERT INTO refresh_tokens (user_id, token_hash, expires_at) VALUES ($1, $2, $3)",
        user_id,
        token_hash,
        expires_at,
    )


# ── Subscriptions ────────────────────────────────────────────


async def find_subscription(
    conn: asyncpg.Connection, stripe_subscription_id: str, *, for_update: bool = False
) -> Dict[str, Any] | None:
    lock = " FOR UPDATE" if for_update else ""
    row = await conn.fetchrow(
        f"""
        SELECT {_SUBSCRIPTION_COLUMNS}
        FROM client_subscriptions
        WHERE stripe_subscription_id = $1{lock}
        """,
        stripe_subscription_id,
    )
    return _as_dict(row)


async def upsert_subscription(
    conn: asyncpg.Connection,
    *,
    client_id: str,
    plan_id: str,
    stripe_subscription_id: str,
    stripe_customer_id: Optional[str],
    status: str,
    current_period_start: Optional[datetime],
    current_period_end: Optional[datetime],
    trial_end: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Insert the subscription row, or overwrite it when the Stripe id is already known."""
    row = await conn.fetchrow(
        f"""
        INSERT INTO client_subscriptions (
            client_id, plan_id, stripe_subscription_id, stripe_customer_id, status,
            current_period_start, current_period_end, trial_end, cancel_at_period_end
        )
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, FALSE)
        ON CONFLICT (stripe_subscription_id) DO UPDATE
        SET plan_id = EXCLUDED.plan_id,
            stripe_customer_id = COALESCE(EXCLUDED.stripe_customer_id, client_subscriptions.stripe_customer_id),
            status = EXCLUDED.status,
            current_period_start = EXCLUDED.current_period_start,
            current_period_end = EXCLUDED.current_period_end,
            trial_end = EXCLUDED.trial_end,
            updated_at = NOW()
        RETURNING {_SUBSCRIPTION_COLUMNS}
        """,
        client_id,
        plan_id,
        stripe_subscription_id,
        stripe_customer_id,
        status,
        current_period_start,
        current_period_end,
        trial_end,
    )
    return _as_dict(row)


async def mirror_subscription(
    conn: asyncpg.Connection,
    stripe_subscription_id: str,
    *,
    status: str,
    current_period_start: Optional[datetime],
    current_period_end: Optional[datetime],
    cancel_at_period_end: bool,
    trial_end: Optional[datetime],
) -> None:
    await conn.execute(
        """
        UPDATE client_subscriptions
        SET status = $2,
            current_period_start = COALESCE($3, current_period_start),
            current_period_end = COALESCE($4, current_period_end),
            cancel_at_period_end = $5,
            trial_end = $6,
            updated_at = NOW()
        WHERE stripe_subscription_id = $1
        """,
        stripe_subscription_id,
        status,
        current_period_start,
        current_period_end,
        cancel_at_period_end,
        trial_end,
    )


async def renew_subscription_period(
    conn: asyncpg.Connection,
    stripe_subscription_id: str,
    current_period_start: Optional[datetime],
    current_period_end: Optional[datetime],
) -> None:
    await conn.execute(
        """
        UPDATE client_subscriptions
        SET status = 'active',
            current_period_start = COALESCE($2, current_period_start),
            current_period_end = COALESCE($3, current_period_end),
            updated_at = NOW()
        WHERE stripe_subscription_id = $1
        """,
        stripe_subscription_id,
        current_period_start,
        current_period_end,
    )


async def set_subscription_status(
    conn: asyncpg.Connection, stripe_subscription_id: str, status: str
) -> None:
    await conn.execute(
        """
        UPDATE client_subscriptions SET status = $2, updated_at = NOW()
        WHERE stripe_subscription_id = $1
        """,
        stripe_subscription_id,
        status,
    )


async def cancel_subscription(conn: asyncpg.Connection, stripe_subscription_id: str) -> None:
    await conn.execute(
        """
        UPDATE client_subscriptions
        SET status = 'cancelled', cancelled_at = NOW(), updated_at = NOW()
        WHERE stripe_subscription_id = $1
        """,
        stripe_subscription_id,
    )


# ── Storage quotas ───────────────────────────────────────────


async def add_storage(
    conn: asyncpg.Connection,
    client_id: str,
    plan_id: Optional[str],
    add_bytes: int,
    base_bytes: int,
) -> Dict[str, Any]:
    """Grow the quota by add_bytes, creating it at base_bytes + add_bytes when absent."""
    row = await conn.fetchrow(
        """
        INSERT INTO client_storage_quotas (client_id, plan_id, storage_limit_bytes)
        VALUES ($1, $2, $4::bigint + $3::bigint)
        ON CONFLICT (client_id) DO UPDATE
        SET storage_limit_bytes = GREATEST(client_storage_quotas.storage_limit_bytes, $4::bigint) + $3::bigint,
            updated_at = NOW()
        RETURNING client_id, storage_limit_bytes, used_storage_bytes, file_count
        """,
        client_id,
        plan_id,
        add_bytes,
        base_bytes,
    )
    return _as_dict(row)


async def remove_storage(
    conn: asyncpg.Connection,
    client_id: str,
    remove_bytes: int,
    base_bytes: int,
) -> Dict[str, Any] | None:
    """Shrink the quota by remove_bytes, never below base_bytes. None when the client has no quota."""
    row = await conn.fetchrow(
        """
        UPDATE client_storage_quotas
        SET storage_limit_bytes = GREATEST($3::bigint, storage_limit_bytes - $2::bigint),
            updated_at = NOW()
        WHERE client_id = $1
        RETURNING client_id, storage_limit_bytes, used_storage_bytes, file_count
        """,
        client_id,
        remove_bytes,
        base_bytes,
    )
    return _as_dict(row)
