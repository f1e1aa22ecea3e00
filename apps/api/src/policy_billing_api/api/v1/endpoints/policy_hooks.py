"""Inbound lifecycle hooks raised by the policy administration system."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, model_validator

from policy_billing_api.api.dependencies.engine import get_reconciliation_engine
from policy_billing_api.api.dependencies.security import require_hook_api_key
from policy_billing_api.services.billing.engine import ReconciliationEngine
from policy_billing_api.services.billing.errors import BillingError
from policy_billing_api.services.billing.events import (
    TERMINATION_KINDS,
    AlterationPackageApplied,
    PaymentCreated,
    PaymentMethodAssigned,
    PolicyEvent,
    PolicyEventKind,
    PolicyTerminated,
    PolicyUpdated,
)

router = APIRouter(prefix="/billing/hooks", tags=["billing-hooks"])


class PolicyHookRequest(BaseModel):
    """Lifecycle notification forwarded by the policy administration system."""

    event: PolicyEventKind
    policy_id: str = Field(..., min_length=1)
    payment: dict[str, Any] | None = None
    alteration_hook_key: str | None = None
    alteration_package: dict[str, Any] | None = None
    updates: dict[str, Any] | None = None

    @model_validator(mode="after")
    def _check_event_payload(self) -> "PolicyHookRequest":
        if self.event is PolicyEventKind.PAYMENT_CREATED and self.payment is None:
            raise ValueError("payment is required for payment_created events")
        if self.event is PolicyEventKind.ALTERATION_PACKAGE_APPLIED and not self.alteration_hook_key:
            raise ValueError("alteration_hook_key is required for alteration_package_applied events")
        return self

    def to_event(self) -> PolicyEvent:
        if self.event is PolicyEventKind.PAYMENT_METHOD_ASSIGNED:
            return PaymentMethodAssigned(policy_id=self.policy_id)
        if self.event is PolicyEventKind.PAYMENT_CREATED:
            return PaymentCreated(policy_id=self.policy_id, payment=self.payment or {})
        if self.event is PolicyEventKind.ALTERATION_PACKAGE_APPLIED:
            return AlterationPackageApplied(
                policy_id=self.policy_id,
                alteration_hook_key=self.alteration_hook_key or "",
                alteration_package=self.alteration_package or {},
            )
        if self.event is PolicyEventKind.POLICY_UPDATED:
            return PolicyUpdated(policy_id=self.policy_id, updates=self.updates or {})
        if self.event in TERMINATION_KINDS:
            return PolicyTerminated(policy_id=self.policy_id, kind=self.event)
        raise ValueError(f"Unsupported policy event {self.event.value}")


@router.post(
    "/policy",
    dependencies=[Depends(require_hook_api_key)],
    summary="Reconcile a policy lifecycle event",
)
async def policy_hook(
    body: PolicyHookRequest,
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> dict[str, str]:
    try:
        await engine.handle_policy_event(body.to_event())
    except BillingError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to reconcile {body.event.value}: {exc.message}",
        ) from exc
    return {"status": "processed", "event": body.event.value, "policy_id": body.policy_id}
