"""Cancellation, lapse, expiry, and payment-method removal."""

from __future__ import annotations

from loguru import logger

from policy_billing_api.services.billing.context import BillingContext
from policy_billing_api.services.billing.errors import MissingLinkageError
from policy_billing_api.services.billing.events import PolicyTerminated
from policy_billing_api.services.billing.linkage import BillingLinkage
from policy_billing_api.services.billing.proration import should_prorate_cancellation, within_cooling_off
from policy_billing_api.services.billing.subscriptions import (
    cancel_schedule_and_subscription,
    refund_successful_charges,
)


async def handle_policy_terminated(ctx: BillingContext, event: PolicyTerminated) -> None:
    """Refund within cooling-off, cancel processor billing, then clear the linkage.

    Refunds run before cancellation because they rely on the customer's live charge history.
    """

    profile = await ctx.load_profile(event.policy_id)
    linkage = BillingLinkage.from_app_data(profile.app_data)
    if not linkage.is_linked or not linkage.customer_id:
        raise MissingLinkageError(
            "Policy has no processor subscription to cancel",
            policy_id=profile.policy_id,
            event=event.kind.value,
        )

    now = ctx.now()
    cooling_off = within_cooling_off(profile.start_date, now, period_days=ctx.cooling_off_period_days)
    if cooling_off:
        refunds = await refund_successful_charges(ctx, linkage.customer_id)
        logger.info(
            "Refunded charges for cancellation within cooling-off period",
            policy_id=profile.policy_id,
            refunds=len(refunds),
        )

    prorate = should_prorate_cancellation(profile.billing_frequency, profile.claimed_against, cooling_off)
    await cancel_schedule_and_subscription(ctx, linkage, prorate=prorate, invoice_now=prorate)
    await ctx.write_linkage(profile, linkage.detached())
    logger.info(
        "Policy billing cancelled",
        policy_id=profile.policy_id,
        event=event.kind.value,
        prorated=prorate,
        within_cooling_off=cooling_off,
    )


__all__ = ["handle_policy_terminated"]
