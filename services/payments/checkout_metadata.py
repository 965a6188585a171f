"""
Producer side of the checkout metadata contract.

Public helpers for the checkout-session service: it writes session metadata
with these builders and services.payments.checkout_intent reads it back when
the session completes. Nothing inside the webhook path calls them; they live
beside the parser so both sides of the contract change together.
Values are strings because Stripe stores metadata as a flat string map.
"""
from __future__ import annotations

import json
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal, Optional, Sequence

from pydantic import BaseModel, Field

from services.payments.checkout_intent import STORAGE_ADDON


class PlanInfo(BaseModel):
    id: str = Field(min_length=1)
    name: str
    price_cents: int = Field(ge=0)
    billing_period: str | None = None
    description: str | None = None


class CartItem(BaseModel):
    plan_id: str = Field(min_length=1)
    type: Literal["subscription", "one_time"] = "one_time"
    billing_period: Literal["monthly", "yearly"] | None = None
    amount: float | None = None


class ModuleData(BaseModel):
    planId: str
    planName: str
    priceCents: int
    type: str = "production"


def build_pending_user_metadata(
    email: str,
    first_name: str,
    last_name: str,
    hashed_password: str,
    company: Optional[str],
    phone: Optional[str],
    auth_method: str,
    avatar: Optional[str] = None,
) -> dict[str, str]:
    metadata = {
        "pendingUserEmail": email,
        "pendingUserFirstName": first_name,
        "pendingUserLastName": last_name,
        "pendingUserHashedPassword": hashed_password,
        "pendingUserCompany": company or "",
        "pendingUserPhone": phone or "",
        "authMethod": auth_method,
    }
    if avatar:
        metadata["pendingUserAvatar"] = avatar
    return metadata


def calculate_price_cents(amount: Optional[float], plan_price_cents: int) -> int:
    """A cart amount in euros overrides the catalog price; zero or None does not."""
    if not amount:
        return plan_price_cents
    return int(Decimal(str(amount)).scaleb(2).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def build_modules_data(
    items: Sequence[CartItem], plans: Sequence[PlanInfo]
) -> tuple[list[ModuleData], Optional[str]]:
    """
    One module entry per production cart item, in cart order.

    Returns (modules, not_found_plan_id). Building stops at the first item
    whose plan is not in the catalog; that plan id is returned so the caller
    can reject the checkout.
    """
    by_id = {plan.id: plan for plan in plans}
    modules: list[ModuleData] = []
    for item in items:
        plan = by_id.get(item.plan_id)
        if plan is None:
            return modules, item.plan_id
        modules.append(
            ModuleData(
                planId=plan.id,
                planName=plan.name,
                priceCents=calculate_price_cents(item.amount, plan.price_cents),
            )
        )
    return modules, None


def modules_metadata(modules: Sequence[ModuleData]) -> dict[str, str]:
    return {
        "modulesJson": json.dumps([m.model_dump() for m in modules]),
        "moduleCount": str(len(modules)),
    }


def build_storage_addon_metadata(
    client_id: str,
    storage_plan_id: str,
    storage_gb: int,
) -> dict[str, str]:
    return {
        "type": STORAGE_ADDON,
        "clientId": client_id,
        "storagePlanId": storage_plan_id,
        "storageGb": str(int(storage_gb)),
    }
