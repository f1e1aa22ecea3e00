"""Subscription schedule activation: sync linkage and the policy payment method."""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Mapping

from loguru import logger

from policy_billing_api.services.billing.context import BillingContext
from policy_billing_api.services.billing.errors import MissingMetadataError
from policy_billing_api.services.billing.linkage import BillingLinkage
from policy_billing_api.services.billing.subscriptions import object_id, policy_id_from_metadata
from policy_billing_api.services.policy.schemas import CollectionType, PolicyBillingProfile


async def _sync_policy_payment_method(
    ctx: BillingContext,
    profile: PolicyBillingProfile,
    processor_method_id: str,
) -> None:
    current = await ctx.policies.get_policy_payment_method(profile.policy_id)
    if ((current or {}).get("module") or {}).get("payment_method") == processor_method_id:
        logger.info("Policy payment method already in sync", policy_id=profile.policy_id)
        return
    if not profile.policyholder_id:
        raise MissingMetadataError("Policy has no policyholder", policy_id=profile.policy_id)

    methods = await ctx.policies.get_policyholder_payment_methods(profile.policyholder_id)
    match = next(
        (method for method in methods if (method.get("module") or {}).get("payment_method") == processor_method_id),
        None,
    )
    if match is None:
        match = await ctx.policies.create_policyholder_payment_method(
            profile.policyholder_id,
            {
                "type": CollectionType.COLLECTION_MODULE.value,
                "collection_module_key": ctx.collection_module_key,
                "module": {"payment_method": processor_method_id},
                "policy_ids": [profile.policy_id],
            },
        )
        logger.info("Created policyholder payment method", policy_id=profile.policy_id)

    await ctx.policies.assign_policy_payment_method(profile.policy_id, str(match["payment_method_id"]))
    logger.info(
        "Assigned policy payment method",
        policy_id=profile.policy_id,
        payment_method_id=match["payment_method_id"],
    )


async def handle_schedule_updated(ctx: BillingContext, schedule: Mapping[str, Any]) -> None:
    policy_id = policy_id_from_metadata(schedule, kind="Subscription schedule")
    if schedule.get("status") != "active":
        logger.info("Ignoring inactive subscription schedule", schedule_id=schedule.get("id"), status=schedule.get("status"))
        return
    subscription_id = object_id(schedule.get("subscription"))
    if not subscription_id:
        raise MissingMetadataError("Active schedule has no subscription", schedule_id=schedule.get("id"))

    profile = await ctx.load_profile(policy_id)
    stored = BillingLinkage.from_app_data(profile.app_data)
    linkage = replace(
        stored,
        customer_id=object_id(schedule.get("customer")) or stored.customer_id,
        subscription_id=subscription_id,
        schedule_id=str(schedule["id"]),
    )
    if linkage != stored:
        await ctx.write_linkage(profile, linkage)

    subscription = await ctx.stripe.retrieve_subscription(subscription_id)
    processor_method_id = object_id(subscription.get("default_payment_method"))
    if not processor_method_id:
        logger.info("Subscription has no default payment method", subscription_id=subscription_id)
        return
    await _sync_policy_payment_method(ctx, profile, processor_method_id)


__all__ = ["handle_schedule_updated"]
