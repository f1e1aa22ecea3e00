"""Resolve which policy a processor event belongs to before dispatching it."""

from __future__ import annotations

from typing import Any, Mapping

from loguru import logger

from policy_billing_api.services.billing.context import BillingContext
from policy_billing_api.services.billing.events import ProcessorEventType
from policy_billing_api.services.billing.invoice_events import invoice_policy_id
from policy_billing_api.services.billing.subscriptions import object_id


async def _policy_id_from_invoice(ctx: BillingContext, invoice_id: str | None) -> str | None:
    if not invoice_id:
        return None
    return invoice_policy_id(await ctx.stripe.retrieve_invoice(invoice_id))


async def resolve_policy_id(ctx: BillingContext, event_type: str, data_object: Mapping[str, Any]) -> str | None:
    """Policy id for the event, or ``None`` when the event is not ours to reconcile."""

    parsed = ProcessorEventType.parse(event_type)
    if parsed is None:
        return None

    if parsed is ProcessorEventType.INVOICE_CREATED:
        return invoice_policy_id(data_object)
    if parsed in (
        ProcessorEventType.INVOICE_PAID,
        ProcessorEventType.INVOICE_PAYMENT_FAILED,
        ProcessorEventType.INVOICE_VOIDED,
        ProcessorEventType.INVOICE_MARKED_UNCOLLECTIBLE,
    ):
        return invoice_policy_id(data_object) or await _policy_id_from_invoice(ctx, data_object.get("id"))
    if parsed is ProcessorEventType.CHARGE_REFUNDED:
        return await _policy_id_from_invoice(ctx, object_id(data_object.get("invoice")))
    if parsed is ProcessorEventType.CHARGE_DISPUTE_FUNDS_WITHDRAWN:
        charge_id = object_id(data_object.get("charge"))
        if not charge_id:
            return None
        charge = await ctx.stripe.retrieve_charge(charge_id)
        return await _policy_id_from_invoice(ctx, object_id(charge.get("invoice")))

    policy_id = (data_object.get("metadata") or {}).get("rootPolicyId")
    return str(policy_id) if policy_id else None


async def is_assigned_to_collection_module(ctx: BillingContext, policy_id: str) -> bool:
    """Only policies whose payment method belongs to a collection module are billed here."""

    method = await ctx.policies.get_policy_payment_method(policy_id)
    if not (method or {}).get("collection_module_definition_id"):
        logger.info("Policy payment method is not assigned to the collection module", policy_id=policy_id)
        return False
    return True


__all__ = ["is_assigned_to_collection_module", "resolve_policy_id"]
