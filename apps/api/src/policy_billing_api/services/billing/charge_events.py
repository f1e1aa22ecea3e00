"""Refunds and disputes raised against processor charges."""

from __future__ import annotations

from typing import Any, Mapping

from loguru import logger

from policy_billing_api.services.billing.context import BillingContext
from policy_billing_api.services.billing.errors import MissingMetadataError
from policy_billing_api.services.billing.invoice_events import mapped_payment_ids
from policy_billing_api.services.billing.payment_records import (
    DEFAULT_DISPUTE_FAILURE,
    charge_refund_payment,
    payment_status_update,
)
from policy_billing_api.services.billing.subscriptions import object_id, policy_id_from_metadata
from policy_billing_api.services.policy.schemas import FailureAction, PaymentStatus


def _charge_invoice_id(charge: Mapping[str, Any]) -> str:
    invoice_id = object_id(charge.get("invoice"))
    if not invoice_id:
        raise MissingMetadataError("Charge is not linked to an invoice", charge_id=charge.get("id"))
    return invoice_id


async def handle_charge_refunded(ctx: BillingContext, charge: Mapping[str, Any]) -> None:
    invoice = await ctx.stripe.retrieve_invoice(_charge_invoice_id(charge))
    policy_id = policy_id_from_metadata(invoice, kind="Invoice")
    payment_method_id = await ctx.require_payment_method_id(policy_id)

    payload = charge_refund_payment(charge, payment_method_id=payment_method_id, tz=ctx.timezone)
    payment = await ctx.policies.create_policy_payment(policy_id, payload)
    logger.info(
        "Recorded charge refund",
        policy_id=policy_id,
        charge_id=charge.get("id"),
        amount=payload["amount"],
        payment_id=(payment or {}).get("payment_id"),
    )


async def handle_dispute_funds_withdrawn(ctx: BillingContext, dispute: Mapping[str, Any]) -> None:
    charge_id = object_id(dispute.get("charge"))
    if not charge_id:
        raise MissingMetadataError("Dispute is not linked to a charge", dispute_id=dispute.get("id"))

    charge = await ctx.stripe.retrieve_charge(charge_id)
    invoice_id = _charge_invoice_id(charge)
    _, payment_ids = await mapped_payment_ids(ctx, invoice_id)
    reason = dispute.get("reason") or DEFAULT_DISPUTE_FAILURE
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
    logger.info(
        "Marked disputed payments failed",
        dispute_id=dispute.get("id"),
        charge_id=charge_id,
        invoice_id=invoice_id,
        payments=len(payment_ids),
    )


__all__ = ["handle_charge_refunded", "handle_dispute_funds_withdrawn"]
