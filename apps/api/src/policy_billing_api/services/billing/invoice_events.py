"""Mirror processor invoice lifecycle into policy payment records."""

from __future__ import annotations

from typing import Any, Mapping

from loguru import logger

from policy_billing_api.services.billing.context import BillingContext
from policy_billing_api.services.billing.errors import MissingMetadataError
from policy_billing_api.services.billing.invoice_mapping import (
    InvoicePaymentMapping,
    invoice_line_items,
    mapping_metadata,
    retrieve_invoice_with_mapping,
)
from policy_billing_api.services.billing.payment_records import (
    DEFAULT_COLLECTION_FAILURE,
    invoice_line_payment,
    payment_status_update,
)
from policy_billing_api.services.billing.subscriptions import object_id, policy_id_from_metadata
from policy_billing_api.services.policy.schemas import FailureAction, PaymentStatus

FAILED_PAYMENT_NOTIFICATION = "failed_payment_retry"


def invoice_subscription_id(invoice: Mapping[str, Any]) -> str | None:
    if invoice.get("subscription"):
        return object_id(invoice["subscription"])
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return object_id(details.get("subscription"))


def invoice_policy_id(invoice: Mapping[str, Any]) -> str | None:
    """Policy id stamped on the invoice, or on the subscription that generated it."""

    policy_id = (invoice.get("metadata") or {}).get("rootPolicyId")
    if policy_id:
        return str(policy_id)
    details = invoice.get("subscription_details") or (invoice.get("parent") or {}).get("subscription_details") or {}
    policy_id = (details.get("metadata") or {}).get("rootPolicyId")
    return str(policy_id) if policy_id else None


def _require_invoice_id(invoice: Mapping[str, Any]) -> str:
    invoice_id = invoice.get("id")
    if not invoice_id:
        raise MissingMetadataError("Invoice event carries no invoice id")
    return str(invoice_id)


async def mapped_payment_ids(ctx: BillingContext, invoice_id: str) -> tuple[Mapping[str, Any], list[str]]:
    """Resolve the policy payment for every line item before any of them is touched."""

    invoice, mapping = await retrieve_invoice_with_mapping(
        ctx.stripe.retrieve_invoice,
        invoice_id,
        policy=ctx.retry_policy,
        sleep=ctx.sleep,
    )
    return invoice, mapping.resolve(invoice_line_items(invoice), invoice_id=invoice_id)


async def handle_invoice_created(ctx: BillingContext, invoice: Mapping[str, Any]) -> None:
    """Create one policy payment per line item and record the mapping on the invoice.

    The mapping is written after every payment so a failure part way through leaves a valid
    partial mapping; re-delivery skips line items that are already mapped.
    """

    invoice_id = _require_invoice_id(invoice)
    if (invoice.get("metadata") or {}).get("createdBy") == "manual":
        logger.info("Skipping manually created invoice", invoice_id=invoice_id)
        return

    subscription_id = invoice_subscription_id(invoice)
    if not subscription_id:
        raise MissingMetadataError("Invoice is not linked to a subscription", invoice_id=invoice_id)
    if invoice.get("amount_due") is None:
        raise MissingMetadataError("Invoice has no amount due", invoice_id=invoice_id)

    subscription = await ctx.stripe.retrieve_subscription(subscription_id)
    policy_id = policy_id_from_metadata(subscription, kind="Subscription")
    payment_method_id = await ctx.require_payment_method_id(policy_id)

    current = await ctx.stripe.retrieve_invoice(invoice_id)
    mapping = InvoicePaymentMapping.from_invoice(current)
    for item in invoice_line_items(invoice):
        if mapping.payment_for(str(item["id"])):
            logger.info("Invoice line item already mapped", invoice_id=invoice_id, line_item_id=item["id"])
            continue
        payload = invoice_line_payment(invoice, item, payment_method_id=payment_method_id, tz=ctx.timezone)
        payment = await ctx.policies.create_policy_payment(policy_id, payload)
        payment_id = (payment or {}).get("payment_id")
        if not payment_id:
            raise MissingMetadataError(
                "Policy service returned no payment id",
                policy_id=policy_id,
                invoice_id=invoice_id,
                line_item_id=item["id"],
            )
        mapping = mapping.append(str(item["id"]), str(payment_id))
        await ctx.stripe.update_invoice_metadata(invoice_id, mapping_metadata(mapping, policy_id))

    logger.info(
        "Recorded invoice payments",
        policy_id=policy_id,
        invoice_id=invoice_id,
        payments=len(mapping),
        amount_due=invoice.get("amount_due"),
    )


async def handle_invoice_paid(ctx: BillingContext, invoice: Mapping[str, Any]) -> None:
    invoice_id = _require_invoice_id(invoice)
    if int(invoice.get("amount_due") or 0) == 0:
        logger.info("Zero amount invoice already recorded as successful", invoice_id=invoice_id)
        return

    _, payment_ids = await mapped_payment_ids(ctx, invoice_id)
    await ctx.policies.update_payments(
        [payment_status_update(payment_id, PaymentStatus.SUCCESSFUL) for payment_id in payment_ids]
    )
    logger.info("Marked invoice payments successful", invoice_id=invoice_id, payments=len(payment_ids))


async def handle_invoice_payment_failed(ctx: BillingContext, invoice: Mapping[str, Any]) -> None:
    invoice_id = _require_invoice_id(invoice)
    current, payment_ids = await mapped_payment_ids(ctx, invoice_id)
    policy_id = invoice_policy_id(current) or invoice_policy_id(invoice)
    if not policy_id:
        raise MissingMetadataError("Invoice is missing rootPolicyId metadata", invoice_id=invoice_id)

    for payment_id in payment_ids:
        await ctx.policies.trigger_custom_notification_event(
            custom_event_key=FAILED_PAYMENT_NOTIFICATION,
            custom_event_type="payment",
            policy_id=policy_id,
            payment_id=payment_id,
        )
    logger.info("Notified failed invoice payments", invoice_id=invoice_id, policy_id=policy_id, payments=len(payment_ids))


async def handle_invoice_not_collected(ctx: BillingContext, invoice: Mapping[str, Any]) -> None:
    """Voided and uncollectible invoices fail their payments and block the payment method."""

    invoice_id = _require_invoice_id(invoice)
    current, payment_ids = await mapped_payment_ids(ctx, invoice_id)
    error = current.get("last_finalization_error") or invoice.get("last_finalization_error") or {}
    reason = error.get("message") or DEFAULT_COLLECTION_FAILURE
    await ctx.policies.update_payments(
        [
            payment_status_update(
                payment_id,
                PaymentStatus.FAILED,
                failure_reason=reason,
                failure_action=FailureAction.BLOCK_PAYMENT_METHOD,
            )
            for payment_id in payment_ids
        ]
    )
    logger.info("Marked invoice payments failed", invoice_id=invoice_id, payments=len(payment_ids), reason=reason)


__all__ = [
    "FAILED_PAYMENT_NOTIFICATION",
    "handle_invoice_created",
    "handle_invoice_not_collected",
    "handle_invoice_paid",
    "handle_invoice_payment_failed",
    "invoice_policy_id",
    "invoice_subscription_id",
    "mapped_payment_ids",
]
