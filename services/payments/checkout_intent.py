"""
Parsing of checkout session metadata into a closed set of intents.

Stripe hands back the metadata bag as untyped strings. It is parsed once,
here, into one of StorageAddonIntent, PendingRegistrationIntent or
ExistingUserPaymentIntent; the workflow switches on the type and never
re-reads raw keys for dispatch.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping, Optional, Union

from services.payments.errors import CheckoutMetadataError
from services.payments.services.stripe_service import expandable_id

logger = logging.getLogger("payments.checkout_intent")

STORAGE_ADDON = "storage_addon"
OAUTH_METHODS = frozenset({"google", "oauth"})
RECURRING_CASES = frozenset({"A", "C"})
DEFAULT_CASE = "A"

# Never copied onto invoice metadata.
_SENSITIVE_KEYS = frozenset({"pendingUserHashedPassword"})


@dataclass(frozen=True)
class ModuleLine:
    plan_id: str
    plan_name: str
    price_cents: Optional[int]
    type: str

    @classmethod
    def from_json(cls, raw: Mapping[str, Any]) -> "ModuleLine":
        price = raw.get("priceCents")
        return cls(
            plan_id=str(raw.get("planId") or ""),
            plan_name=str(raw.get("planName") or ""),
            price_cents=int(price) if price not in (None, "") else None,
            type=str(raw.get("type") or ""),
        )


@dataclass(frozen=True)
class CompletedCheckout:
    session_id: str
    payment_intent_id: Optional[str]
    subscription_id: Optional[str]
    customer_id: Optional[str]
    amount_total_cents: int
    metadata: dict[str, str]

    @classmethod
    def from_session(cls, session: Mapping[str, Any]) -> "CompletedCheckout":
        amount_cents = int(session.get("amount_total") or 0)
        metadata = {k: str(v) for k, v in (session.get("metadata") or {}).items() if v is not None}
        # The amount paid today is authoritative for the invoice total.
        metadata["totalAmount"] = str(cents_to_amount(amount_cents))
        metadata["totalAmountCents"] = str(amount_cents)
        return cls(
            session_id=session["id"],
            payment_intent_id=expandable_id(session.get("payment_intent")),
            subscription_id=expandable_id(session.get("subscription")),
            customer_id=expandable_id(session.get("customer")),
            amount_total_cents=amount_cents,
            metadata=metadata,
        )

    def invoice_metadata(self, case: str) -> dict[str, Any]:
        data = {k: v for k, v in self.metadata.items() if k not in _SENSITIVE_KEYS}
        return {"case": case, "type": self.metadata.get("planType"), **data}


@dataclass(frozen=True)
class PlanSelection:
    """Plan choices carried by a non-addon checkout."""

    case: str = DEFAULT_CASE
    plan_id: Optional[str] = None
    plan_type: Optional[str] = None
    web_plan_id: Optional[str] = None
    production_plan_id: Optional[str] = None
    web_plan_budget: Optional[str] = None
    production_plan_budget: Optional[str] = None
    invoice_description: Optional[str] = None
    modules: tuple[ModuleLine, ...] = ()
    module_count: int = 0

    @property
    def has_recurring(self) -> bool:
        return self.case in RECURRING_CASES

    def display_name(self, plan_id: Optional[str], fallback: str) -> str:
        if not plan_id:
            return fallback
        for module in self.modules:
            if module.plan_id == plan_id and module.plan_name:
                return module.plan_name
        return plan_id[:1].upper() + plan_id[1:]

    def derive_plan(self) -> tuple[str, str]:
        """(plan_id, plan_name) recorded on the invoice for this case."""
        if self.case == "C":
            plan_id = self.web_plan_id or "growth"
            web_name = self.display_name(self.web_plan_id, "Formule Web")
            production = [m for m in self.modules if m.type == "production" or "web" not in m.type]
            if production:
                production_names = " + ".join(m.plan_name or m.plan_id for m in production)
            else:
                production_names = self.production_plan_id or "Production"
            return plan_id, f"{web_name} + {production_names}"

        if self.case == "A":
            plan_id = self.web_plan_id or self.plan_id or "growth"
            return plan_id, self.display_name(self.web_plan_id or self.plan_id, "Formule Web")

        first_module = self.modules[0].plan_id if self.modules else None
        plan_id = self.production_plan_id or self.plan_id or first_module or "signature"
        if self.modules:
            plan_name = " + ".join(m.plan_name or m.plan_id for m in self.modules)
        else:
            plan_name = self.display_name(self.production_plan_id or self.plan_id, "Production")
        return plan_id, plan_name

    def subscription_plan_id(self, invoice_plan_id: Optional[str]) -> Optional[str]:
        if self.case == "A":
            return invoice_plan_id
        if self.web_plan_id:
            return self.web_plan_id
        return invoice_plan_id.split(",")[0] if invoice_plan_id else None


@dataclass(frozen=True)
class PendingUser:
    email: str
    first_name: str
    last_name: str
    password_hash: Optional[str]
    company: Optional[str]
    phone: Optional[str]
    avatar_url: Optional[str]
    auth_method: Optional[str]

    @property
    def is_oauth(self) -> bool:
        return self.auth_method in OAUTH_METHODS


@dataclass(frozen=True)
class StorageAddonIntent:
    client_id: str
    storage_plan_id: Optional[str]
    storage_gb: int


@dataclass(frozen=True)
class PendingRegistrationIntent:
    user: PendingUser
    plans: PlanSelection = field(default_factory=PlanSelection)


@dataclass(frozen=True)
class ExistingUserPaymentIntent:
    plans: PlanSelection = field(default_factory=PlanSelection)


CheckoutIntent = Union[StorageAddonIntent, PendingRegistrationIntent, ExistingUserPaymentIntent]


def cents_to_amount(cents: int) -> Decimal:
    return (Decimal(int(cents)) / 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _text(metadata: Mapping[str, str], key: str) -> Optional[str]:
    value = metadata.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _int(metadata: Mapping[str, str], key: str, default: int = 0) -> int:
    raw = _text(metadata, key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise CheckoutMetadataError(f"metadata.{key} must be an integer, got {raw!r}")


def parse_modules(raw: Optional[str]) -> tuple[ModuleLine, ...]:
    """Decode modulesJson. Unreadable input is logged and treated as absent."""
    if not raw:
        return ()
    try:
        decoded = json.loads(raw)
        if not isinstance(decoded, list):
            raise ValueError("modulesJson is not a list")
        return tuple(ModuleLine.from_json(item) for item in decoded if isinstance(item, dict))
    except (ValueError, TypeError) as exc:
        logger.warning("modules_json_unreadable", extra={"error": str(exc)})
        return ()


def parse_plan_selection(metadata: Mapping[str, str]) -> PlanSelection:
    modules = parse_modules(_text(metadata, "modulesJson"))
    try:
        module_count = _int(metadata, "moduleCount", len(modules))
    except CheckoutMetadataError:
        module_count = len(modules)
    return PlanSelection(
        case=(_text(metadata, "case") or DEFAULT_CASE).upper(),
        plan_id=_text(metadata, "planId"),
        plan_type=_text(metadata, "planType"),
        web_plan_id=_text(metadata, "webPlanId"),
        production_plan_id=_text(metadata, "productionPlanId"),
        web_plan_budget=_text(metadata, "webPlanBudget"),
        production_plan_budget=_text(metadata, "productionPlanBudget"),
        invoice_description=_text(metadata, "invoiceDescription"),
        modules=modules,
        module_count=module_count or len(modules),
    )


def _pending_user(metadata: Mapping[str, str]) -> PendingUser:
    email = _text(metadata, "pendingUserEmail")
    if not email:
        raise CheckoutMetadataError("Missing required user email in checkout metadata")
    auth_method = _text(metadata, "authMethod")
    password_hash = _text(metadata, "pendingUserHashedPassword")
    if auth_method not in OAUTH_METHODS and not password_hash:
        raise CheckoutMetadataError("Missing required password in checkout metadata (not OAuth user)")

    full_name = (_text(metadata, "pendingUserFullName") or "").split()
    first_name = _text(metadata, "pendingUserFirstName") or (full_name[0] if full_name else "Client")
    last_name = _text(metadata, "pendingUserLastName") or " ".join(full_name[1:])
    return PendingUser(
        email=email,
        first_name=first_name,
        last_name=last_name,
        password_hash=password_hash,
        company=_text(metadata, "pendingUserCompany"),
        phone=_text(metadata, "pendingUserPhone"),
        avatar_url=_text(metadata, "pendingUserAvatar"),
        auth_method=auth_method,
    )


def parse_checkout_intent(metadata: Mapping[str, str]) -> CheckoutIntent:
    """
    First match wins: storage addon, then pending registration, then a
    payment against an invoice an existing user created before checkout.
    Raises CheckoutMetadataError when the chosen branch lacks required keys.
    """
    if _text(metadata, "type") == STORAGE_ADDON:
        client_id = _text(metadata, "clientId")
        if not client_id:
            raise CheckoutMetadataError("Storage addon checkout has no clientId")
        storage_gb = _int(metadata, "storageGb")
        if storage_gb <= 0:
            raise CheckoutMetadataError("Storage addon checkout needs a positive storageGb")
        return StorageAddonIntent(
            client_id=client_id,
            storage_plan_id=_text(metadata, "storagePlanId"),
            storage_gb=storage_gb,
        )

    if _text(metadata, "pendingUserEmail"):
        return PendingRegistrationIntent(
            user=_pending_user(metadata),
            plans=parse_plan_selection(metadata),
        )

    return ExistingUserPaymentIntent(plans=parse_plan_selection(metadata))
