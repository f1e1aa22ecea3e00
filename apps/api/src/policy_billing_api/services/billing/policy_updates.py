"""Policy attribute updates that change processor billing."""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Mapping

from loguru import logger

from policy_billing_api.services.billing.context import BillingContext
from policy_billing_api.services.billing.errors import InvalidFrequencyError, MissingLinkageError
from policy_billing_api.services.billing.events import PolicyUpdated
from policy_billing_api.services.billing.linkage import BillingLinkage
from policy_billing_api.services.billing.mapper import (
    SCHEDULABLE_STATUSES,
    coerce_frequency,
    next_billing_date,
    rescheduled_phases,
)
from policy_billing_api.services.billing.subscriptions import create_cycle_price, object_id
from policy_billing_api.services.policy.schemas import BillingFrequency, PolicyBillingProfile

BILLING_RELEVANT_KEYS = ("start_date", "end_date", "monthly_premium", "billing_day")


def current_phase_start(schedule: Mapping[str, Any], subscription: Mapping[str, Any] | None = None) -> int:
    """Start of the phase in effect, which the processor requires to stay fixed on update."""

    current = schedule.get("current_phase") or {}
    if current.get("start_date"):
        return int(current["start_date"])
    phases = schedule.get("phases") or []
    if phases and phases[0].get("start_date"):
        return int(phases[0]["start_date"])
    return int((subscription or {})["start_date"])


def subscription_price_id(subscription: Mapping[str, Any]) -> str:
    item = subscription["items"]["data"][0]
    return str(object_id(item["price"]))


async def reschedule_billing_day(ctx: BillingContext, profile: PolicyBillingProfile, linkage: BillingLinkage) -> None:
    """Split the schedule into the current terms and new terms starting on the new billing day."""

    if coerce_frequency(profile.billing_frequency) is BillingFrequency.ONCE_OFF:
        raise InvalidFrequencyError("Once-off policies have no billing day", policy_id=profile.policy_id)

    schedule: Mapping[str, Any] | None = None
    subscription_id = linkage.subscription_id
    if linkage.schedule_id:
        schedule = await ctx.stripe.retrieve_schedule(linkage.schedule_id)
        if not subscription_id and schedule.get("subscription"):
            subscription_id = object_id(schedule["subscription"])
            linkage = replace(linkage, subscription_id=subscription_id)
            await ctx.write_linkage(profile, linkage)
    if not subscription_id:
        raise MissingLinkageError(
            "Policy subscription has not started yet",
            policy_id=profile.policy_id,
            schedule_id=linkage.schedule_id,
        )

    subscription = await ctx.stripe.retrieve_subscription(subscription_id)
    if schedule is None or schedule.get("status") not in SCHEDULABLE_STATUSES:
        schedule = await ctx.stripe.create_schedule_from_subscription(subscription_id)
        linkage = linkage.with_schedule(str(schedule["id"]), subscription_id)
        await ctx.write_linkage(profile, linkage)

    price_id = await create_cycle_price(ctx, profile)
    split_at = next_billing_date(profile.billing_day, policy_start=profile.start_date, now=ctx.now())
    phases = rescheduled_phases(
        first_phase_start=current_phase_start(schedule, subscription),
        first_phase_price=subscription_price_id(subscription),
        next_phase_price=price_id,
        split_at=split_at,
        end_date=profile.end_date,
        metadata=profile.correlation_metadata(),
        anchor_first_phase=False,
    )
    await ctx.stripe.update_schedule(str(schedule["id"]), phases=phases)
    logger.info(
        "Rescheduled billing day",
        policy_id=profile.policy_id,
        schedule_id=schedule["id"],
        billing_day=profile.billing_day,
        next_billing_date=split_at.isoformat(),
    )


async def handle_policy_updated(ctx: BillingContext, event: PolicyUpdated) -> None:
    changed = sorted(key for key in BILLING_RELEVANT_KEYS if key in event.updates)
    if not changed:
        logger.info("Policy update does not affect billing", policy_id=event.policy_id)
        return

    profile = await ctx.load_profile(event.policy_id)
    linkage = BillingLinkage.from_app_data(profile.app_data)
    if not linkage.is_linked:
        logger.warning("Policy update skipped, policy is not linked to a subscription", policy_id=profile.policy_id)
        return

    if changed == ["billing_day"]:
        await reschedule_billing_day(ctx, profile, linkage)
        return

    logger.info("Unsupported policy update combination", policy_id=profile.policy_id, keys=changed)


__all__ = [
    "BILLING_RELEVANT_KEYS",
    "current_phase_start",
    "handle_policy_updated",
    "reschedule_billing_day",
    "subscription_price_id",
]
