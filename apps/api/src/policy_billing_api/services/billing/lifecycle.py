"""Dispatch table for policy lifecycle events."""

from __future__ import annotations

from typing import Any, Awaitable, Callable

from policy_billing_api.services.billing.alterations import handle_alteration_package_applied
from policy_billing_api.services.billing.cancellations import handle_policy_terminated
from policy_billing_api.services.billing.context import BillingContext
from policy_billing_api.services.billing.events import PolicyEvent, PolicyEventKind
from policy_billing_api.services.billing.payment_methods import handle_payment_method_assigned
from policy_billing_api.services.billing.payments import handle_payment_created
from policy_billing_api.services.billing.policy_updates import handle_policy_updated

PolicyEventHandler = Callable[[BillingContext, Any], Awaitable[None]]

POLICY_EVENT_HANDLERS: dict[PolicyEventKind, PolicyEventHandler] = {
    PolicyEventKind.PAYMENT_METHOD_ASSIGNED: handle_payment_method_assigned,
    PolicyEventKind.PAYMENT_CREATED: handle_payment_created,
    PolicyEventKind.ALTERATION_PACKAGE_APPLIED: handle_alteration_package_applied,
    PolicyEventKind.PAYMENT_METHOD_REMOVED: handle_policy_terminated,
    PolicyEventKind.POLICY_CANCELLED: handle_policy_terminated,
    PolicyEventKind.POLICY_EXPIRED: handle_policy_terminated,
    PolicyEventKind.POLICY_LAPSED: handle_policy_terminated,
    PolicyEventKind.POLICY_UPDATED: handle_policy_updated,
}


async def handle_policy_event(ctx: BillingContext, event: PolicyEvent) -> None:
    await POLICY_EVENT_HANDLERS[event.kind](ctx, event)


__all__ = ["POLICY_EVENT_HANDLERS", "handle_policy_event"]
