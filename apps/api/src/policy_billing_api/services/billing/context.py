"""Shared dependencies handed to every reconciliation handler."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from zoneinfo import ZoneInfo

from loguru import logger

from policy_billing_api.services.billing.errors import MissingLinkageError
from policy_billing_api.services.billing.invoice_mapping import MetadataRetryPolicy
from policy_billing_api.services.billing.linkage import BillingLinkage, apply_linkage
from policy_billing_api.services.billing.providers.stripe import StripeBillingProvider
from policy_billing_api.services.policy.client import PolicyServiceClient
from policy_billing_api.services.policy.schemas import PolicyBillingProfile


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class BillingContext:
    stripe: StripeBillingProvider
    policies: PolicyServiceClient
    product_id: str
    collection_module_key: str = ""
    currency: str = "zar"
    timezone: str = "Africa/Johannesburg"
    cooling_off_period_days: int = 14
    retry_policy: MetadataRetryPolicy = field(default_factory=MetadataRetryPolicy)
    clock: Callable[[], datetime] = _utcnow
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep

    def now(self) -> datetime:
        return self.clock().astimezone(ZoneInfo(self.timezone))

    async def load_profile(self, policy_id: str) -> PolicyBillingProfile:
        policy = await self.policies.get_policy(policy_id)
        return PolicyBillingProfile.from_policy(policy, tz=self.timezone, default_currency=self.currency)

    async def write_linkage(self, profile: PolicyBillingProfile, linkage: BillingLinkage) -> dict[str, Any]:
        """Persist ``linkage`` onto the policy and keep ``profile`` in step."""

        app_data = apply_linkage(profile.app_data, linkage)
        await self.policies.update_policy_app_data(profile.policy_id, app_data)
        profile.app_data = app_data
        logger.info(
            "Billing linkage updated",
            policy_id=profile.policy_id,
            state=linkage.state.value,
            customer_id=linkage.customer_id,
            subscription_id=linkage.subscription_id,
            schedule_id=linkage.schedule_id,
        )
        return app_data

    async def require_payment_method_id(self, policy_id: str) -> str:
        method = await self.policies.get_policy_payment_method(policy_id)
        payment_method_id = (method or {}).get("payment_method_id")
        if not payment_method_id:
            raise MissingLinkageError("Policy has no payment method", policy_id=policy_id)
        return str(payment_method_id)


__all__ = ["BillingContext"]
