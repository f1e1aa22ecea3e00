"""Alteration package handlers keyed by the alteration hook."""

from __future__ import annotations

from typing import Awaitable, Callable

from loguru import logger

from policy_billing_api.services.billing.context import BillingContext
from policy_billing_api.services.billing.errors import InvalidStateError, MissingLinkageError, MissingMetadataError
from policy_billing_api.services.billing.events import AlterationHook, AlterationPackageApplied
from policy_billing_api.services.billing.linkage import BillingLinkage
from policy_billing_api.services.billing.mapper import (
    SCHEDULABLE_STATUSES,
    coerce_frequency,
    next_billing_date,
    premium_for_cycle,
    rescheduled_phases,
)
from policy_billing_api.services.billing.payment_records import adhoc_payment
from policy_billing_api.services.billing.policy_updates import current_phase_start
from policy_billing_api.services.billing.proration import (
    months_remaining,
    outstanding_premium,
    refund_amount_for_downgrade,
)
from policy_billing_api.services.billing.subscriptions import (
    cancel_schedule_and_subscription,
    create_cycle_price,
    create_schedule,
    object_id,
    resolve_subscription_id,
    successful_charges,
)
from policy_billing_api.services.policy.schemas import BillingFrequency, PolicyBillingProfile

AlterationHandler = Callable[[BillingContext, AlterationPackageApplied], Awaitable[None]]


def _require_customer(profile: PolicyBillingProfile, linkage: BillingLinkage) -> str:
    if not linkage.customer_id:
        raise MissingLinkageError("Policy has no processor customer", policy_id=profile.policy_id)
    return linkage.customer_id


async def update_billing_frequency(ctx: BillingContext, event: AlterationPackageApplied) -> None:
    """Move a policy onto yearly billing with a schedule backdated to the policy start."""

    profile = await ctx.load_profile(event.policy_id)
    if coerce_frequency(profile.billing_frequency) is not BillingFrequency.YEARLY:
        raise InvalidStateError(
            "Billing frequency alterations are only permitted onto yearly billing",
            policy_id=profile.policy_id,
            alteration_hook_key=event.alteration_hook_key,
            billing_frequency=profile.billing_frequency,
        )

    linkage = BillingLinkage.from_app_data(profile.app_data)
    customer_id = _require_customer(profile, linkage)
    subscription_id = await resolve_subscription_id(ctx, linkage)
    if not subscription_id:
        raise MissingLinkageError(
            "Policy has no subscription to move onto yearly billing",
            policy_id=profile.policy_id,
            schedule_id=linkage.schedule_id,
        )

    await cancel_schedule_and_subscription(ctx, linkage, prorate=False, invoice_now=False)
    linkage = linkage.detached()
    await ctx.write_linkage(profile, linkage)

    if profile.end_date is not None and profile.billing_day is not None:
        months = months_remaining(profile.end_date, profile.billing_day, ctx.now())
        logger.info(
            "Outstanding premium for billing frequency change",
            policy_id=profile.policy_id,
            months_remaining=months,
            outstanding_premium=outstanding_premium(months, profile.monthly_premium),
        )

    price_id = await create_cycle_price(ctx, profile)
    schedule = await create_schedule(
        ctx,
        profile,
        price_id=price_id,
        customer_id=customer_id,
        start_date=profile.start_date,
    )
    linked = linkage.with_schedule(str(schedule["id"]), object_id(schedule.get("subscription")))
    await ctx.write_linkage(profile, linked)


async def renew_policy(ctx: BillingContext, event: AlterationPackageApplied) -> None:
    """Start a fresh schedule from now; the previous subscription has already run out."""

    profile = await ctx.load_profile(event.policy_id)
    linkage = BillingLinkage.from_app_data(profile.app_data)
    customer_id = _require_customer(profile, linkage)

    price_id = await create_cycle_price(ctx, profile)
    schedule = await create_schedule(ctx, profile, price_id=price_id, customer_id=customer_id, start_date=ctx.now())
    linkage = linkage.detached()
    await ctx.write_linkage(profile, linkage)
    linked = linkage.with_schedule(str(schedule["id"]), object_id(schedule.get("subscription")))
    await ctx.write_linkage(profile, linked)


async def collect_adhoc_payment(ctx: BillingContext, event: AlterationPackageApplied) -> None:
    input_data = event.input_data
    amount = input_data.get("payment_amount")
    if amount is None:
        raise MissingMetadataError(
            "Ad-hoc payment alteration is missing payment_amount",
            policy_id=event.policy_id,
        )

    payment_method_id = await ctx.require_payment_method_id(event.policy_id)
    payload = adhoc_payment(
        amount=int(amount),
        payment_type=str(input_data.get("payment_type") or ""),
        description=str(input_data.get("description") or ""),
        payment_method_id=payment_method_id,
        now=ctx.now(),
    )
    payment = await ctx.policies.create_policy_payment(event.policy_id, payload)
    logger.info(
        "Created ad-hoc payment",
        policy_id=event.policy_id,
        payment_id=(payment or {}).get("payment_id"),
        amount=payload["amount"],
    )


async def _refund_downgrade_credit(
    ctx: BillingContext,
    profile: PolicyBillingProfile,
    customer_id: str,
    subscription_id: str,
) -> None:
    charges = await successful_charges(ctx, customer_id)
    if not charges:
        logger.warning("No successful charges to refund for premium decrease", policy_id=profile.policy_id)
        return

    subscription = await ctx.stripe.retrieve_subscription(subscription_id)
    latest_invoice_id = subscription.get("latest_invoice")
    if isinstance(latest_invoice_id, dict):
        latest_invoice_id = latest_invoice_id.get("id")
    total = None
    if latest_invoice_id:
        invoice = await ctx.stripe.retrieve_invoice(str(latest_invoice_id))
        total = invoice.get("total")

    decision = refund_amount_for_downgrade(total, charges)
    if decision is None:
        logger.info(
            "No refund issued for premium decrease",
            policy_id=profile.policy_id,
            latest_invoice_total=total,
        )
        return

    refund = await ctx.stripe.create_refund(decision.charge_id, amount=decision.amount)
    logger.info(
        "Refunded premium decrease credit",
        policy_id=profile.policy_id,
        charge_id=decision.charge_id,
        amount=decision.amount,
        refund_id=refund.refund_id,
    )


async def update_billing_terms(ctx: BillingContext, event: AlterationPackageApplied) -> None:
    """Apply a new premium to whatever the policy is currently linked to."""

    profile = await ctx.load_profile(event.policy_id)
    linkage = BillingLinkage.from_app_data(profile.app_data)
    frequency = coerce_frequency(profile.billing_frequency)
    price_id = await create_cycle_price(ctx, profile)

    if linkage.subscription_id:
        subscription = await ctx.stripe.retrieve_subscription(linkage.subscription_id)
        if subscription.get("status") != "active":
            raise InvalidStateError(
                "Cannot alter billing for a subscription that is not active",
                policy_id=profile.policy_id,
                subscription_id=linkage.subscription_id,
                status=subscription.get("status"),
            )

        item = subscription["items"]["data"][0]
        current_amount = int((item.get("price") or {}).get("unit_amount") or 0)
        new_amount = premium_for_cycle(profile.monthly_premium, frequency)
        decreased = new_amount < current_amount
        proration_behavior = "none" if frequency is BillingFrequency.MONTHLY and decreased else "always_invoice"
        await ctx.stripe.update_subscription(
            linkage.subscription_id,
            items=[{"id": item["id"], "price": price_id}],
            proration_behavior=proration_behavior,
        )
        logger.info(
            "Updated subscription price",
            policy_id=profile.policy_id,
            subscription_id=linkage.subscription_id,
            price_id=price_id,
            proration_behavior=proration_behavior,
        )

        if linkage.schedule_id:
            schedule = await ctx.stripe.retrieve_schedule(linkage.schedule_id)
            split_at = next_billing_date(profile.billing_day, policy_start=profile.start_date, now=ctx.now())
            phases = rescheduled_phases(
                first_phase_start=current_phase_start(schedule, subscription),
                first_phase_price=price_id,
                next_phase_price=price_id,
                split_at=split_at,
                end_date=profile.end_date,
                metadata=profile.correlation_metadata(),
            )
            await ctx.stripe.update_schedule(
                linkage.schedule_id,
                phases=phases,
                end_behavior="cancel" if profile.end_date is not None else "release",
            )

        if frequency is BillingFrequency.YEARLY and decreased:
            await _refund_downgrade_credit(
                ctx,
                profile,
                _require_customer(profile, linkage),
                linkage.subscription_id,
            )
        return

    if linkage.schedule_id:
        schedule = await ctx.stripe.retrieve_schedule(linkage.schedule_id)
        status = schedule.get("status")
        if status not in SCHEDULABLE_STATUSES:
            raise InvalidStateError(
                "Cannot alter billing for a finished subscription schedule",
                policy_id=profile.policy_id,
                schedule_id=linkage.schedule_id,
                status=status,
            )
        customer_id = _require_customer(profile, linkage)
        await ctx.stripe.cancel_schedule(linkage.schedule_id, prorate=False, invoice_now=False)
        linkage = linkage.detached()
        await ctx.write_linkage(profile, linkage)
        replacement = await create_schedule(ctx, profile, price_id=price_id, customer_id=customer_id)
        await ctx.write_linkage(
            profile,
            linkage.with_schedule(str(replacement["id"]), object_id(replacement.get("subscription"))),
        )
        return

    raise MissingLinkageError(
        "Cannot alter billing for a policy that was never linked to a subscription",
        policy_id=profile.policy_id,
        alteration_hook_key=event.alteration_hook_key,
    )


ALTERATION_HANDLERS: dict[AlterationHook, AlterationHandler] = {
    AlterationHook.UPDATE_BILLING_FREQUENCY: update_billing_frequency,
    AlterationHook.COLLECT_OUTSTANDING_PREMIUM: update_billing_frequency,
    AlterationHook.RENEW_POLICY: renew_policy,
    AlterationHook.COLLECT_ADHOC_PAYMENT: collect_adhoc_payment,
    AlterationHook.UPDATE_POLICY_COVER: update_billing_terms,
}


def resolve_alteration_handler(alteration_hook_key: str) -> AlterationHandler:
    """Dedicated handler for known hook keys; any other key takes the generic path."""

    try:
        return ALTERATION_HANDLERS[AlterationHook(alteration_hook_key)]
    except ValueError:
        logger.info("No dedicated alteration handler, applying generic billing update", hook=alteration_hook_key)
        return update_billing_terms


async def handle_alteration_package_applied(ctx: BillingContext, event: AlterationPackageApplied) -> None:
    handler = resolve_alteration_handler(event.alteration_hook_key)
    await handler(ctx, event)


__all__ = [
    "ALTERATION_HANDLERS",
    "collect_adhoc_payment",
    "handle_alteration_package_applied",
    "renew_policy",
    "resolve_alteration_handler",
    "update_billing_frequency",
    "update_billing_terms",
]
