"""Payment-method assignment: link a policy to a processor customer and schedule."""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Mapping

from loguru import logger

from policy_billing_api.services.billing.context import BillingContext
from policy_billing_api.services.billing.errors import MissingMetadataError
from policy_billing_api.services.billing.events import PaymentMethodAssigned
from policy_billing_api.services.billing.linkage import BillingLinkage
from policy_billing_api.services.billing.mapper import coerce_frequency
from policy_billing_api.services.billing.subscriptions import create_cycle_price, create_schedule, object_id
from policy_billing_api.services.policy.schemas import BillingFrequency, PolicyBillingProfile


async def _create_customer(
    ctx: BillingContext,
    profile: PolicyBillingProfile,
    payment_method_id: str,
) -> str:
    policyholder: Mapping[str, Any] = {}
    if profile.policyholder_id:
        policyholder = await ctx.policies.get_policyholder(profile.policyholder_id)
    name = " ".join(part for part in (policyholder.get("first_name"), policyholder.get("last_name")) if part)

    customer = await ctx.stripe.create_customer(
        name=name or None,
        email=policyholder.get("email"),
        description=f"Policyholder for policy {profile.policy_number}",
        payment_method=payment_method_id,
        invoice_settings={"default_payment_method": payment_method_id},
        metadata={"rootPolicyId": profile.policy_id, "rootPolicyHolderId": profile.policyholder_id or ""},
    )
    logger.info("Created processor customer", policy_id=profile.policy_id, customer_id=customer["id"])
    return str(customer["id"])


async def link_default_payment_method(
    ctx: BillingContext,
    *,
    customer_id: str,
    payment_method: Mapping[str, Any],
    subscription: Mapping[str, Any] | None = None,
) -> None:
    """Make ``payment_method`` the customer's default, attaching it first when needed."""

    payment_method_id = str(payment_method["id"])
    current_default = object_id((subscription or {}).get("default_payment_method"))
    if subscription is not None and current_default == payment_method_id:
        logger.info(
            "Payment method already linked to subscription",
            subscription_id=subscription.get("id"),
            payment_method_id=payment_method_id,
        )
        return

    if object_id(payment_method.get("customer")) != customer_id:
        await ctx.stripe.attach_payment_method(payment_method_id, customer_id=customer_id)
    await ctx.stripe.update_customer(customer_id, invoice_settings={"default_payment_method": payment_method_id})

    if subscription is not None and current_default:
        await ctx.stripe.update_subscription(str(subscription["id"]), default_payment_method=payment_method_id)


async def handle_payment_method_assigned(ctx: BillingContext, event: PaymentMethodAssigned) -> None:
    profile = await ctx.load_profile(event.policy_id)
    policy_method = await ctx.policies.get_policy_payment_method(profile.policy_id)
    processor_method_id = ((policy_method or {}).get("module") or {}).get("payment_method")
    if not processor_method_id:
        raise MissingMetadataError(
            "Policy payment method does not reference a processor payment method",
            policy_id=profile.policy_id,
        )

    payment_method = await ctx.stripe.retrieve_payment_method(str(processor_method_id))
    linkage = BillingLinkage.from_app_data(profile.app_data)
    if not linkage.customer_id:
        customer_id = await _create_customer(ctx, profile, str(processor_method_id))
        linkage = replace(linkage, customer_id=customer_id)
        payment_method = {**payment_method, "customer": customer_id}
    customer_id = str(linkage.customer_id)

    if coerce_frequency(profile.billing_frequency) is BillingFrequency.ONCE_OFF:
        await link_default_payment_method(ctx, customer_id=customer_id, payment_method=payment_method)
        await ctx.write_linkage(profile, linkage)
        logger.info("Once-off policy linked without a schedule", policy_id=profile.policy_id)
        return

    subscription = None
    if linkage.subscription_id:
        subscription = await ctx.stripe.retrieve_subscription(linkage.subscription_id)
    await link_default_payment_method(
        ctx,
        customer_id=customer_id,
        payment_method=payment_method,
        subscription=subscription,
    )

    if not linkage.is_linked:
        price_id = await create_cycle_price(ctx, profile)
        schedule = await create_schedule(ctx, profile, price_id=price_id, customer_id=customer_id)
        linkage = linkage.with_schedule(str(schedule["id"]), object_id(schedule.get("subscription")))

    await ctx.write_linkage(profile, linkage)


__all__ = ["handle_payment_method_assigned", "link_default_payment_method"]
