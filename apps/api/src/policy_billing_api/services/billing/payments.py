"""Charge pending policy payments through processor payment intents."""

from __future__ import annotations

from loguru import logger

from policy_billing_api.services.billing.context import BillingContext
from policy_billing_api.services.billing.errors import MissingLinkageError, MissingMetadataError
from policy_billing_api.services.billing.events import PaymentCreated
from policy_billing_api.services.billing.linkage import BillingLinkage
from policy_billing_api.services.billing.payment_records import is_processor_generated
from policy_billing_api.services.policy.schemas import PaymentStatus


async def handle_payment_created(ctx: BillingContext, event: PaymentCreated) -> None:
    payment = event.payment
    if is_processor_generated(payment.get("description")):
        logger.info("Skipping payment created from a processor event", policy_id=event.policy_id)
        return
    if payment.get("status") != PaymentStatus.PENDING.value:
        logger.warning(
            "Skipping payment that is not pending",
            policy_id=event.policy_id,
            payment_id=payment.get("payment_id"),
            status=payment.get("status"),
        )
        return

    payment_id = payment.get("payment_id")
    if not payment_id:
        raise MissingMetadataError("Created payment has no payment_id", policy_id=event.policy_id)

    profile = await ctx.load_profile(event.policy_id)
    linkage = BillingLinkage.from_app_data(profile.app_data)
    if not linkage.customer_id:
        raise MissingLinkageError("Policy has no processor customer to charge", policy_id=profile.policy_id)

    policy_method = await ctx.policies.get_policy_payment_method(profile.policy_id)
    processor_method_id = ((policy_method or {}).get("module") or {}).get("payment_method")
    if not processor_method_id:
        raise MissingLinkageError("Policy has no processor payment method to charge", policy_id=profile.policy_id)

    intent = await ctx.stripe.create_payment_intent(
        amount=int(payment["amount"]),
        currency=profile.currency,
        customer=linkage.customer_id,
        payment_method=processor_method_id,
        description=payment.get("description"),
        metadata={"rootPaymentId": str(payment_id), "rootPolicyId": profile.policy_id},
        payment_method_types=["card"],
        confirm=True,
        off_session=True,
        idempotency_key=f"policy-payment-{payment_id}",
    )
    logger.info(
        "Created payment intent for policy payment",
        policy_id=profile.policy_id,
        payment_id=payment_id,
        payment_intent_id=intent.get("id"),
        status=intent.get("status"),
    )


__all__ = ["handle_payment_created"]
