import json
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from services.payments.errors import CheckoutMetadataError, ProvisioningError
from services.payments.pending_auth import PendingAuthExchange
from services.payments.phoenix import PhoenixWorkflow
from services.payments.services.notifications import NotificationGateway
from services.payments.services.provisioner import ProjectProvisioner
from services.payments.services.tokens import TokenIssuer
from services.shared.kv_store import InMemoryKeyValueStore
from services.shared.metrics import provisioning_failures_total
from tests.helpers.ledger import GIB

pytestmark = [pytest.mark.unit, pytest.mark.asyncio]

TRIALING_SUB = {
    "id": "sub_1",
    "status": "trialing",
    "trial_end": 1702592000,
    "items": {
        "data": [
            {
                "price": {"unit_amount": 2900},
                "current_period_start": 1700000000,
                "current_period_end": 1702592000,
            }
        ]
    },
}

MODULES = [
    {"planId": "pack-a", "planName": "Pack A", "priceCents": 10000, "type": "production"},
    {"planId": "pack-b", "planName": "Pack B", "priceCents": 5000, "type": "production"},
]


def _counter_value(metric, **labels):
    return metric.labels(**labels)._value.get()


@pytest.fixture
def provisioner():
    mock = AsyncMock(spec=ProjectProvisioner)
    mock.create.return_value = {"project": {"id": "proj-1"}, "modules": [], "briefs": []}
    return mock


@pytest.fixture
def notifications():
    return AsyncMock(spec=NotificationGateway)


@pytest.fixture
def retrieve_subscription():
    return AsyncMock(return_value=TRIALING_SUB)


@pytest.fixture
def pending_auth(clock):
    issuer = TokenIssuer("access-secret", "refresh-secret", clock=clock)
    return PendingAuthExchange(InMemoryKeyValueStore(clock=clock), issuer, clock=clock)


@pytest.fixture
def workflow(pool, provisioner, notifications, pending_auth, retrieve_subscription):
    return PhoenixWorkflow(
        pool,
        provisioner=provisioner,
        notifications=notifications,
        pending_auth=pending_auth,
        token_issuer=pending_auth.issuer,
        storage_base_bytes=5 * GIB,
        retrieve_subscription=retrieve_subscription,
    )


def _session(metadata, *, session_id="cs_test_1", amount=4900, subscription="sub_1"):
    return {
        "id": session_id,
        "amount_total": amount,
        "payment_intent": "pi_1",
        "subscription": subscription,
        "customer": "cus_1",
        "metadata": metadata,
    }


def _registration(**extra):
    metadata = {
        "pendingUserEmail": "new@example.com",
        "pendingUserFirstName": "Ada",
        "pendingUserLastName": "Lovelace",
        "pendingUserHashedPassword": "$2b$10$existinghash",
        "authMethod": "email",
    }
    metadata.update(extra)
    return metadata


async def test_case_a_registration_end_to_end(workflow, ledger, provisioner, notifications, pending_auth):
    await workflow.handle_checkout_completed(
        _session(_registration(case="A", webPlanId="growth"))
    )

    (user,) = ledger.users.values()
    assert user["email"] == "new@example.com"
    assert user["password_hash"] == "$2b$10$existinghash"
    assert user["email_verified"] is False

    (invoice,) = ledger.invoices
    assert invoice["status"] == "paid"
    assert invoice["amount"] == Decimal("49.00")
    assert invoice["plan_id"] == "growth"
    assert invoice["plan_name"] == "Growth"
    assert invoice["invoice_number"].startswith("INV-A-")
    assert invoice["project_id"] == "proj-1"
    assert "pendingUserHashedPassword" not in invoice["metadata"]
    assert invoice["metadata"]["totalAmountCents"] == "4900"

    subscription = ledger.subscriptions["sub_1"]
    assert subscription["status"] == "trialing"
    assert subscription["plan_id"] == "growth"
    assert subscription["client_id"] == user["id"]
    assert subscription["trial_end"] is not None

    request = provisioner.create.await_args.args[0]
    assert request.shape == "single"
    assert request.body["metadata"]["hasSubscription"] is True

    staged = await pending_auth.get("cs_test_1")
    assert staged.user_id == user["id"]
    assert len(ledger.refresh_tokens) == 1

    notifications.send_welcome.assert_awaited_once()
    notifications.send_payment_success.assert_awaited_once()
    assert notifications.send_payment_success.await_args.kwargs["amount_cents"] == 4900
    notifications.send_verification_email.assert_awaited_once()


async def test_oauth_registration_skips_verification(workflow, ledger, notifications):
    await workflow.handle_checkout_completed(
        _session(_registration(pendingUserHashedPassword="", authMethod="google"))
    )

    (user,) = ledger.users.values()
    assert user["email_verified"] is True
    assert user["password_hash"].startswith("$2b$")
    notifications.send_verification_email.assert_not_awaited()


async def test_case_b_modules_provision_every_module(workflow, ledger, provisioner, retrieve_subscription):
    metadata = _registration(case="B", modulesJson=json.dumps(MODULES), moduleCount="2")

    await workflow.handle_checkout_completed(_session(metadata, amount=15000, subscription=None))

    (invoice,) = ledger.invoices
    assert invoice["plan_id"] == "pack-a"
    assert invoice["plan_name"] == "Pack A + Pack B"
    assert invoice["amount"] == Decimal("150.00")
    assert ledger.subscriptions == {}
    retrieve_subscription.assert_not_awaited()

    request = provisioner.create.await_args.args[0]
    assert request.shape == "modules"
    assert [m["planId"] for m in request.body["modules"]] == ["pack-a", "pack-b"]


async def test_registration_is_recorded_once(workflow, ledger, provisioner):
    session = _session(_registration())
    await workflow.handle_checkout_completed(session)
    await workflow.handle_checkout_completed(session)

    assert len(ledger.users) == 1
    assert len(ledger.invoices) == 1
    provisioner.create.assert_awaited_once()


async def test_provisioning_failure_keeps_invoice_paid(workflow, ledger, provisioner, notifications):
    provisioner.create.side_effect = ProvisioningError("project service down")
    before = _counter_value(provisioning_failures_total, shape="single")

    await workflow.handle_checkout_completed(_session(_registration()))

    (invoice,) = ledger.invoices
    assert invoice["status"] == "paid"
    assert invoice["project_id"] is None
    assert _counter_value(provisioning_failures_total, shape="single") == before + 1
    notifications.send_welcome.assert_awaited_once()


async def test_notification_failure_does_not_fail_workflow(workflow, ledger, notifications, pending_auth):
    notifications.send_welcome.side_effect = RuntimeError("smtp down")

    await workflow.handle_checkout_completed(_session(_registration()))

    assert ledger.invoices[0]["status"] == "paid"
    assert await pending_auth.get("cs_test_1") is not None
    notifications.send_payment_success.assert_awaited_once()


async def test_subscription_lookup_failure_still_provisions(workflow, ledger, provisioner, retrieve_subscription):
    retrieve_subscription.side_effect = RuntimeError("stripe unavailable")

    await workflow.handle_checkout_completed(_session(_registration()))

    assert ledger.subscriptions == {}
    provisioner.create.assert_awaited_once()


async def test_invalid_registration_metadata_raises(workflow, ledger):
    with pytest.raises(CheckoutMetadataError):
        await workflow.handle_checkout_completed(
            _session(_registration(pendingUserHashedPassword=""))
        )
    assert ledger.invoices == []


async def test_storage_addon_records_invoice_subscription_and_quota(
    workflow, ledger, retrieve_subscription, notifications
):
    ledger.add_user("user-1")
    retrieve_subscription.return_value = {**TRIALING_SUB, "id": "sub_st", "status": "active"}
    metadata = {"type": "storage_addon", "clientId": "user-1", "storagePlanId": "storage-10", "storageGb": "10"}

    await workflow.handle_checkout_completed(_session(metadata, session_id="cs_test_st", subscription="sub_st"))

    (invoice,) = ledger.invoices
    assert invoice["invoice_number"].startswith("INV-STORAGE-")
    assert invoice["amount"] == Decimal("29.00")
    assert invoice["metadata"]["storageGb"] == 10
    assert ledger.subscriptions["sub_st"]["status"] == "active"
    assert ledger.quotas["user-1"]["storage_limit_bytes"] == 15 * GIB
    assert notifications.send_payment_success.await_args.kwargs["amount_cents"] == 2900


async def test_storage_addon_grows_existing_quota_once(workflow, ledger):
    ledger.add_user("user-1")
    ledger.add_quota("user-1", limit_gb=15)
    metadata = {"type": "storage_addon", "clientId": "user-1", "storagePlanId": "storage-10", "storageGb": "10"}
    session = _session(metadata, session_id="cs_test_st2", subscription="sub_st2")

    await workflow.handle_checkout_completed(session)
    await workflow.handle_checkout_completed(session)

    assert len(ledger.invoices) == 1
    assert ledger.quotas["user-1"]["storage_limit_bytes"] == 25 * GIB


async def test_storage_addon_without_subscription_is_ignored(workflow, ledger, retrieve_subscription):
    metadata = {"type": "storage_addon", "clientId": "user-1", "storageGb": "10"}

    await workflow.handle_checkout_completed(_session(metadata, subscription=None))

    assert ledger.invoices == []
    retrieve_subscription.assert_not_awaited()


async def test_existing_user_invoice_marked_paid(workflow, ledger, provisioner, notifications):
    ledger.add_user("user-1")
    ledger.add_invoice(
        client_id="user-1",
        stripe_checkout_session_id="cs_test_existing",
        status="pending",
        amount=Decimal("29.99"),
        plan_id="growth",
        plan_name="Growth",
    )
    session = _session({"case": "A"}, session_id="cs_test_existing", subscription=None)

    await workflow.handle_checkout_completed(session)
    await workflow.handle_checkout_completed(session)

    (invoice,) = ledger.invoices
    assert invoice["status"] == "paid"
    assert invoice["stripe_payment_intent_id"] == "pi_1"
    assert invoice["project_id"] == "proj-1"
    provisioner.create.assert_awaited_once()
    notifications.send_payment_success.assert_awaited_once()
    assert notifications.send_payment_success.await_args.kwargs["amount_cents"] == 2999


async def test_existing_user_without_invoice_writes_nothing(workflow, ledger, provisioner):
    await workflow.handle_checkout_completed(_session({"case": "A"}, session_id="cs_test_unknown"))

    assert ledger.invoices == []
    provisioner.create.assert_not_awaited()
