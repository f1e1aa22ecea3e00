"""Processor operations shared by several reconciliation handlers."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

from loguru import logger

from policy_billing_api.services.billing.context import BillingContext
from policy_billing_api.services.billing.errors import MissingMetadataError
from policy_billing_api.services.billing.linkage import BillingLinkage
from policy_billing_api.services.billing.mapper import (
    SCHEDULABLE_STATUSES,
    premium_for_cycle,
    price_for,
    profile_to_schedule_params,
)
from policy_billing_api.services.billing.proration import successful_invoice_charges
from policy_billing_api.services.billing.providers.stripe import StripeRefundResponse
from policy_billing_api.services.policy.schemas import PolicyBillingProfile

CHARGE_LOOKBACK_LIMIT = 3


def object_id(value: Any) -> str | None:
    """Id of a processor reference that may be expanded into an object."""

    if value is None:
        return None
    if isinstance(value, Mapping):
        return value.get("id")
    return str(value)


async def create_cycle_price(ctx: BillingContext, profile: PolicyBillingProfile, monthly_premium: int | None = None) -> str:
    """Create a price for one billing cycle of ``profile`` and return its id."""

    monthly = profile.monthly_premium if monthly_premium is None else monthly_premium
    amount = premium_for_cycle(monthly, profile.billing_frequency)
    price = await ctx.stripe.create_price(
        price_for(profile.billing_frequency, amount, product_id=ctx.product_id, currency=profile.currency)
    )
    logger.info(
        "Created processor price",
        policy_id=profile.policy_id,
        price_id=price["id"],
        amount=amount,
        frequency=profile.billing_frequency,
    )
    return str(price["id"])


async def create_schedule(
    ctx: BillingContext,
    profile: PolicyBillingProfile,
    *,
    price_id: str,
    customer_id: str,
    proration_behavior: str = "none",
    start_date: datetime | None = None,
) -> Mapping[str, Any]:
    params = profile_to_schedule_params(
        profile,
        price_id,
        customer_id=customer_id,
        proration_behavior=proration_behavior,
        start_date=start_date,
    )
    schedule = await ctx.stripe.create_subscription_schedule(params)
    logger.info(
        "Created subscription schedule",
        policy_id=profile.policy_id,
        schedule_id=schedule["id"],
        start_date=params["start_date"],
    )
    return schedule


async def resolve_subscription_id(ctx: BillingContext, linkage: BillingLinkage) -> str | None:
    """The stored subscription id, or the one a started schedule has spawned."""

    if linkage.subscription_id:
        return linkage.subscription_id
    if linkage.schedule_id:
        schedule = await ctx.stripe.retrieve_schedule(linkage.schedule_id)
        return schedule.get("subscription") or None
    return None


async def cancel_schedule_and_subscription(
    ctx: BillingContext,
    linkage: BillingLinkage,
    *,
    prorate: bool = False,
    invoice_now: bool = False,
) -> None:
    """Cancel the linked schedule and subscription, skipping objects already finished.

    The schedule is cancelled first; the subscription is then re-read so that one cancelled
    along with its schedule is not cancelled twice.
    """

    subscription_id = linkage.subscription_id
    if linkage.schedule_id:
        schedule = await ctx.stripe.retrieve_schedule(linkage.schedule_id)
        subscription_id = subscription_id or schedule.get("subscription")
        if schedule.get("status") in SCHEDULABLE_STATUSES:
            await ctx.stripe.cancel_schedule(linkage.schedule_id, prorate=prorate, invoice_now=invoice_now)
            logger.info("Cancelled subscription schedule", schedule_id=linkage.schedule_id, prorate=prorate)
        else:
            logger.info(
                "Subscription schedule already finished",
                schedule_id=linkage.schedule_id,
                status=schedule.get("status"),
            )

    if subscription_id:
        subscription = await ctx.stripe.retrieve_subscription(subscription_id)
        if subscription.get("status") != "canceled":
            await ctx.stripe.cancel_subscription(subscription_id, prorate=prorate, invoice_now=invoice_now)
            logger.info("Cancelled subscription", subscription_id=subscription_id, prorate=prorate)


async def successful_charges(ctx: BillingContext, customer_id: str) -> list[Mapping[str, Any]]:
    charges = await ctx.stripe.list_charges(customer_id, limit=CHARGE_LOOKBACK_LIMIT)
    return successful_invoice_charges(charges)


async def refund_successful_charges(ctx: BillingContext, customer_id: str) -> list[StripeRefundResponse]:
    refunds = []
    for charge in await successful_charges(ctx, customer_id):
        refund = await ctx.stripe.create_refund(str(charge["id"]))
        logger.info("Refunded charge", customer_id=customer_id, charge_id=charge["id"], refund_id=refund.refund_id)
        refunds.append(refund)
    return refunds


def policy_id_from_metadata(obj: Mapping[str, Any], *, kind: str) -> str:
    policy_id = (obj.get("metadata") or {}).get("rootPolicyId")
    if not policy_id:
        raise MissingMetadataError(f"{kind} is missing rootPolicyId metadata", processor_object_id=obj.get("id"))
    return str(policy_id)


__all__ = [
    "CHARGE_LOOKBACK_LIMIT",
    "cancel_schedule_and_subscription",
    "create_cycle_price",
    "create_schedule",
    "object_id",
    "policy_id_from_metadata",
    "refund_successful_charges",
    "resolve_subscription_id",
    "successful_charges",
]
