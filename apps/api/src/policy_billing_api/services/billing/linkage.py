"""Billing linkage persisted on the policy's ``app_data``."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Mapping

CUSTOMER_KEY = "stripe_customer_id"
SUBSCRIPTION_KEY = "stripe_subscription_id"
SCHEDULE_KEY = "stripe_subscription_schedule_id"


class LinkageState(str, Enum):
    UNLINKED = "unlinked"
    SCHEDULED = "scheduled"
    SUBSCRIBED = "subscribed"


@dataclass(frozen=True, slots=True)
class BillingLinkage:
    """Processor identifiers linked to a single policy."""

    customer_id: str | None = None
    subscription_id: str | None = None
    schedule_id: str | None = None

    @classmethod
    def from_app_data(cls, app_data: Mapping[str, Any] | None) -> "BillingLinkage":
        data = app_data or {}
        return cls(
            customer_id=data.get(CUSTOMER_KEY) or None,
            subscription_id=data.get(SUBSCRIPTION_KEY) or None,
            schedule_id=data.get(SCHEDULE_KEY) or None,
        )

    @property
    def state(self) -> LinkageState:
        if self.subscription_id:
            return LinkageState.SUBSCRIBED
        if self.schedule_id:
            return LinkageState.SCHEDULED
        return LinkageState.UNLINKED

    @property
    def is_linked(self) -> bool:
        return self.state is not LinkageState.UNLINKED

    def detached(self) -> "BillingLinkage":
        """Drop subscription and schedule ids, keeping the customer."""

        return replace(self, subscription_id=None, schedule_id=None)

    def with_schedule(self, schedule_id: str, subscription_id: str | None = None) -> "BillingLinkage":
        return replace(self, schedule_id=schedule_id, subscription_id=subscription_id)

    def as_fields(self) -> dict[str, str | None]:
        return {
            CUSTOMER_KEY: self.customer_id,
            SUBSCRIPTION_KEY: self.subscription_id,
            SCHEDULE_KEY: self.schedule_id,
        }


def apply_linkage(app_data: Mapping[str, Any] | None, linkage: BillingLinkage) -> dict[str, Any]:
    """Merge ``linkage`` into a copy of ``app_data``.

    Unrelated keys are preserved. Linkage keys whose value is unset are removed so that
    a detached policy carries no stale processor ids.
    """

    merged = dict(app_data or {})
    for key, value in linkage.as_fields().items():
        if value:
            merged[key] = value
        else:
            merged.pop(key, None)
    return merged


__all__ = [
    "BillingLinkage",
    "CUSTOMER_KEY",
    "LinkageState",
    "SCHEDULE_KEY",
    "SUBSCRIPTION_KEY",
    "apply_linkage",
]
