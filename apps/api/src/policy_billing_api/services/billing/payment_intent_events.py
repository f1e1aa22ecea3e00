"""Payment intent outcomes for payments charged outside of invoices."""

from __future__ import annotations

from typing import Any, Mapping

from loguru import logger

from policy_billing_api.services.billing.context import BillingContext
from policy_billing_api.services.billing.errors import MissingMetadataError
from policy_billing_api.services.billing.payment_records import DEFAULT_INTENT_FAILURE, payment_status_update
from policy_billing_api.services.policy.schemas import FailureAction, PaymentStatus


def _payment_id(intent: Mapping[str, Any]) -> str:
    payment_id = (intent.get("metadata") or {}).get("rootPaymentId")
    if not payment_id:
        raise MissingMetadataError("Payment intent is missing rootPaymentId metadata", payment_intent_id=intent.get("id"))
    return str(payment_id)


async def handle_payment_intent_succeeded(ctx: BillingContext, intent: Mapping[str, Any]) -> None:
    payment_id = _payment_id(intent)
    await ctx.policies.update_payments([payment_status_update(payment_id, PaymentStatus.SUCCESSFUL)])
    logger.info("Marked payment successful", payment_id=payment_id, payment_intent_id=intent.get("id"))


async def handle_payment_intent_failed(ctx: BillingContext, intent: Mapping[str, Any]) -> None:
    payment_id = _payment_id(intent)
    reason = (intent.get("last_payment_error") or {}).get("message") or DEFAULT_INTENT_FAILURE
    await ctx.policies.update_payments(
        [
            payment_status_update(
                payment_id,
                PaymentStatus.FAILED,
                failure_reason=reason,
                failure_action=FailureAction.ALLOW_RETRY,
            )
        ]
    )
    logger.info("Marked payment failed", payment_id=payment_id, payment_intent_id=intent.get("id"), reason=reason)


__all__ = ["handle_payment_intent_failed", "handle_payment_intent_succeeded"]
