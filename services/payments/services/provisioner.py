"""
Client for the project service, which turns a paid invoice into a
project with briefs and workflow steps.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from services.payments.checkout_intent import PlanSelection
from services.payments.errors import ProvisioningError
from services.shared.http_client import internal_client

logger = logging.getLogger("payments.provisioner")

MODULES_PATH = "/internal/projects/create-with-modules"
WORKFLOW_PATH = "/internal/projects/create-with-workflow"

LEGACY_PLAN_NAMES = {"growth": "Growth", "signature": "Signature"}


@dataclass(frozen=True)
class ProjectRequest:
    shape: str  # modules | legacy_modules | single
    path: str
    body: dict[str, Any]
    timeout: float


def _budget(price_cents: Optional[int]) -> Optional[str]:
    if not price_cents:
        return None
    euros = price_cents / 100
    return str(int(euros)) if euros.is_integer() else str(euros)


def build_project_request(
    invoice: dict[str, Any],
    client_id: str,
    subscription_id: Optional[str],
    plans: PlanSelection,
) -> ProjectRequest:
    """
    Pick the request shape: the module list when the checkout carried one,
    the web + production pair for a legacy case C checkout, otherwise a
    single project for the invoice's plan.
    """
    has_subscription = bool(subscription_id)
    total = str(invoice["amount"])

    if plans.modules:
        modules = [
            {
                "planId": m.plan_id,
                "planName": m.plan_name,
                "budget": _budget(m.price_cents),
                "metadata": {
                    "type": m.type,
                    "hasSubscription": m.type == "web" and has_subscription,
                    "originalPriceCents": m.price_cents,
                },
            }
            for m in plans.modules
        ]
        return ProjectRequest(
            shape="modules",
            path=MODULES_PATH,
            timeout=30.0,
            body={
                "clientId": client_id,
                "invoiceId": invoice["id"],
                "totalBudget": total,
                "modules": modules,
                "metadata": {
                    "case": plans.case,
                    "createdVia": "phoenix_workflow_dynamic_multimodule",
                    "hasSubscription": has_subscription,
                    "moduleCount": plans.module_count or len(modules),
                },
            },
        )

    if plans.case == "C" and plans.web_plan_id and plans.production_plan_id:
        modules = [
            {
                "planId": plans.web_plan_id,
                "planName": LEGACY_PLAN_NAMES.get(plans.web_plan_id, plans.web_plan_id),
                "budget": plans.web_plan_budget,
                "metadata": {"type": "web", "hasSubscription": True},
            },
            {
                "planId": plans.production_plan_id,
                "planName": LEGACY_PLAN_NAMES.get(plans.production_plan_id, plans.production_plan_id),
                "budget": plans.production_plan_budget,
                "metadata": {"type": "production"},
            },
        ]
        return ProjectRequest(
            shape="legacy_modules",
            path=MODULES_PATH,
            timeout=15.0,
            body={
                "clientId": client_id,
                "invoiceId": invoice["id"],
                "totalBudget": total,
                "modules": modules,
                "metadata": {
                    "case": plans.case,
                    "createdVia": "phoenix_workflow_multimodule_legacy",
                    "hasSubscription": has_subscription,
                },
            },
        )

    return ProjectRequest(
        shape="single",
        path=WORKFLOW_PATH,
        timeout=10.0,
        body={
            "clientId": client_id,
            "planId": invoice["plan_id"],
            "planName": invoice["plan_name"],
            "invoiceId": invoice["id"],
            "budget": total,
            "metadata": {
                "case": plans.case,
                "createdVia": "phoenix_workflow",
                "hasSubscription": has_subscription,
                "webPlanId": plans.web_plan_id,
                "productionPlanId": plans.production_plan_id,
            },
        },
    )


class ProjectProvisioner:
    def __init__(self, base_url: str, internal_secret: str):
        self.base_url = base_url.rstrip("/")
        self.internal_secret = internal_secret

    async def create(self, request: ProjectRequest) -> dict[str, Any]:
        """
        POST the request and return the response's data object.

        Raises ProvisioningError on a non-JSON or unsuccessful response;
        httpx errors (timeouts, refused connections) propagate unchanged.
        """
        async with internal_client(self.base_url, self.internal_secret, timeout=request.timeout) as client:
            resp = await client.post(request.path, json=request.body)

        try:
            payload = resp.json()
        except ValueError:
            raise ProvisioningError(f"Project service returned HTTP {resp.status_code} with a non-JSON body")

        if not isinstance(payload, dict) or not payload.get("success"):
            error = payload.get("error") if isinstance(payload, dict) else None
            raise ProvisioningError(error or "Project service returned unsuccessful response")

        data = payload.get("data") or {}
        project = data.get("project") or {}
        if not project.get("id"):
            raise ProvisioningError("Project service response has no project id")
        return data
