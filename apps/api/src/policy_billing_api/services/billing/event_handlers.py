"""Processor event handlers for billing reconciliation."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Mapping

from policy_billing_api.services.billing.charge_events import handle_charge_refunded, handle_dispute_funds_withdrawn
from policy_billing_api.services.billing.context import BillingContext
from policy_billing_api.services.billing.errors import InvalidStateError
from policy_billing_api.services.billing.events import ProcessorEventType
from policy_billing_api.services.billing.invoice_events import (
    handle_invoice_created,
    handle_invoice_not_collected,
    handle_invoice_paid,
    handle_invoice_payment_failed,
)
from policy_billing_api.services.billing.payment_intent_events import (
    handle_payment_intent_failed,
    handle_payment_intent_succeeded,
)
from policy_billing_api.services.billing.schedule_events import handle_schedule_updated

ProcessorEventHandler = Callable[[BillingContext, Mapping[str, Any]], Awaitable[None]]

PROCESSOR_EVENT_HANDLERS: dict[ProcessorEventType, ProcessorEventHandler] = {
    ProcessorEventType.INVOICE_CREATED: handle_invoice_created,
    ProcessorEventType.INVOICE_PAID: handle_invoice_paid,
    ProcessorEventType.INVOICE_PAYMENT_FAILED: handle_invoice_payment_failed,
    ProcessorEventType.INVOICE_VOIDED: handle_invoice_not_collected,
    ProcessorEventType.INVOICE_MARKED_UNCOLLECTIBLE: handle_invoice_not_collected,
    ProcessorEventType.CHARGE_REFUNDED: handle_charge_refunded,
    ProcessorEventType.CHARGE_DISPUTE_FUNDS_WITHDRAWN: handle_dispute_funds_withdrawn,
    ProcessorEventType.SUBSCRIPTION_SCHEDULE_UPDATED: handle_schedule_updated,
    ProcessorEventType.PAYMENT_INTENT_SUCCEEDED: handle_payment_intent_succeeded,
    ProcessorEventType.PAYMENT_INTENT_PAYMENT_FAILED: handle_payment_intent_failed,
}


async def handle_stripe_event(ctx: BillingContext, event_type: str, data_object: Mapping[str, Any]) -> None:
    """Dispatch Stripe webhook payloads to their reconciliation handler."""

    parsed = ProcessorEventType.parse(event_type)
    if parsed is None:
        raise InvalidStateError("Unsupported processor event type", event_type=event_type)
    await PROCESSOR_EVENT_HANDLERS[parsed](ctx, data_object)


__all__ = ["PROCESSOR_EVENT_HANDLERS", "handle_stripe_event"]
