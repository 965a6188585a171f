import json
import uuid
from decimal import Decimal

import pytest

from services.payments.db import queries
from tests.helpers.ledger import GIB, FakeConn

pytestmark = [pytest.mark.unit, pytest.mark.asyncio]


def _last(conn):
    return conn.executed[-1]


async def test_session_lookup_prefers_live_invoice():
    conn = FakeConn()
    await queries.find_invoice_by_session(conn, "cs_1")
    query, args = _last(conn)
    assert "WHERE stripe_checkout_session_id = $1" in query
    assert "ORDER BY (status = 'cancelled'), created_at DESC" in query
    assert "LIMIT 1" in query
    assert args == ("cs_1",)


async def test_recurring_lookup_matches_intent_or_invoice_id():
    conn = FakeConn()
    await queries.find_recurring_invoice(conn, None, "in_1")
    query, args = _last(conn)
    assert "($1::text IS NOT NULL AND stripe_payment_intent_id = $1)" in query
    assert "OR metadata->>'stripeInvoiceId' = $2" in query
    assert args == (None, "in_1")


async def test_row_ids_and_metadata_are_decoded():
    conn = FakeConn()
    row_id = uuid.uuid4()
    conn.fetchrow_result = {"id": row_id, "metadata": '{"storageGb": 10}', "amount": Decimal("9.99")}

    invoice = await queries.find_invoice_by_payment_intent(conn, "pi_1")

    assert invoice == {"id": str(row_id), "metadata": {"storageGb": 10}, "amount": Decimal("9.99")}


async def test_missing_row_is_none():
    conn = FakeConn()
    assert await queries.find_invoice_by_session(conn, "cs_missing") is None


async def test_insert_invoice_serializes_metadata():
    conn = FakeConn()
    conn.fetchrow_result = {"id": "inv-1"}
    await queries.insert_invoice(
        conn,
        client_id="user-1",
        invoice_number="INV-1",
        amount=Decimal("29.00"),
        status="paid",
        plan_id="growth",
        plan_name="Growth",
        description=None,
        metadata={"case": "A", "amount": Decimal("29.00")},
    )
    query, args = _last(conn)
    assert "$12::jsonb" in query
    assert args[3] == "eur"
    assert json.loads(args[11]) == {"case": "A", "amount": "29.00"}


async def test_mark_paid_keeps_existing_payment_intent():
    conn = FakeConn()
    conn.fetchrow_result = {"id": "inv-1", "status": "paid"}
    await queries.mark_invoice_paid(conn, "inv-1", None)
    query, args = _last(conn)
    assert "stripe_payment_intent_id = COALESCE($2, stripe_payment_intent_id)" in query
    assert args == ("inv-1", None)


async def test_staff_lookup_filters_active_admins():
    conn = FakeConn()
    conn.fetch_result = [{"id": uuid.UUID(int=1)}, {"id": "user-2"}]

    ids = await queries.fetch_staff_user_ids(conn)

    query, args = _last(conn)
    assert "roles && $1::text[]" in query
    assert args == (["admin", "super_admin"],)
    assert ids == [str(uuid.UUID(int=1)), "user-2"]


async def test_subscription_lock_is_optional():
    conn = FakeConn()
    await queries.find_subscription(conn, "sub_1")
    assert "FOR UPDATE" not in _last(conn)[0]

    await queries.find_subscription(conn, "sub_1", for_update=True)
    assert _last(conn)[0].rstrip().endswith("$1 FOR UPDATE")


async def test_subscription_upsert_keys_on_stripe_id():
    conn = FakeConn()
    conn.fetchrow_result = {"id": "s-1"}
    await queries.upsert_subscription(
        conn,
        client_id="user-1",
        plan_id="growth",
        stripe_subscription_id="sub_1",
        stripe_customer_id=None,
        status="trialing",
        current_period_start=None,
        current_period_end=None,
    )
    query, args = _last(conn)
    assert "ON CONFLICT (stripe_subscription_id) DO UPDATE" in query
    assert "COALESCE(EXCLUDED.stripe_customer_id, client_subscriptions.stripe_customer_id)" in query
    assert args[2] == "sub_1"
    assert args[4] == "trialing"


async def test_mirror_leaves_cancelled_at_alone():
    conn = FakeConn()
    await queries.mirror_subscription(
        conn,
        "sub_1",
        status="cancelled",
        current_period_start=None,
        current_period_end=None,
        cancel_at_period_end=False,
        trial_end=None,
    )
    query, _ = _last(conn)
    assert "cancelled_at" not in query


async def test_cancel_stamps_cancelled_at():
    conn = FakeConn()
    await queries.cancel_subscription(conn, "sub_1")
    query, args = _last(conn)
    assert "status = 'cancelled', cancelled_at = NOW()" in query
    assert args == ("sub_1",)


async def test_add_storage_grows_from_base_floor():
    conn = FakeConn()
    conn.fetchrow_result = {"client_id": "user-1", "storage_limit_bytes": 15 * GIB}
    quota = await queries.add_storage(conn, "user-1", "storage-10", 10 * GIB, 5 * GIB)

    query, args = _last(conn)
    assert "VALUES ($1, $2, $4::bigint + $3::bigint)" in query
    assert "ON CONFLICT (client_id) DO UPDATE" in query
    assert "GREATEST(client_storage_quotas.storage_limit_bytes, $4::bigint) + $3::bigint" in query
    assert args == ("user-1", "storage-10", 10 * GIB, 5 * GIB)
    assert quota["storage_limit_bytes"] == 15 * GIB


async def test_remove_storage_never_drops_below_base():
    conn = FakeConn()
    await queries.remove_storage(conn, "user-1", 10 * GIB, 5 * GIB)

    query, args = _last(conn)
    assert "GREATEST($3::bigint, storage_limit_bytes - $2::bigint)" in query
    assert "WHERE client_id = $1" in query
    assert args == ("user-1", 10 * GIB, 5 * GIB)


async def test_remove_storage_without_quota_is_none():
    conn = FakeConn()
    assert await queries.remove_storage(conn, "user-1", GIB, 5 * GIB) is None
