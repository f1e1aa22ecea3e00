"""Policy administration payload shapes consumed by the billing engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Mapping
from zoneinfo import ZoneInfo

from policy_billing_api.services.billing.errors import MissingMetadataError


class BillingFrequency(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"
    ONCE_OFF = "once_off"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    FAILED = "failed"
    SUCCESSFUL = "successful"
    CANCELLED = "cancelled"


class PaymentType(str, Enum):
    PREMIUM = "premium"
    REVERSAL = "reversal"
    CLAIM_PAYOUT = "claim_payout"
    PREMIUM_REFUND = "premium_refund"
    OTHER = "other"


class PremiumType(str, Enum):
    RECURRING = "recurring"


class FailureAction(str, Enum):
    BLOCK_RETRY = "block_retry"
    BLOCK_PAYMENT_METHOD = "block_payment_method"
    ALLOW_RETRY = "allow_retry"


class CollectionType(str, Enum):
    COLLECTION_MODULE = "collection_module"


def parse_policy_datetime(value: Any, tz: str) -> datetime | None:
    """Parse a policy date field into an aware datetime in the billing timezone."""

    if value is None or value == "":
        return None
    zone = ZoneInfo(tz)
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=zone)
    return parsed.astimezone(zone)


@dataclass(slots=True)
class PolicyBillingProfile:
    """Billing attributes of a policy, read from the policy service."""

    policy_id: str
    policy_number: str
    policyholder_id: str | None
    monthly_premium: int
    currency: str
    billing_frequency: str
    billing_day: int | None
    start_date: datetime
    end_date: datetime | None
    claimed_against: bool = False
    status: str | None = None
    app_data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_policy(cls, policy: Mapping[str, Any], *, tz: str, default_currency: str = "zar") -> "PolicyBillingProfile":
        policy_id = policy.get("policy_id")
        if not policy_id:
            raise MissingMetadataError("Policy document is missing policy_id")
        start_date = parse_policy_datetime(policy.get("start_date"), tz)
        if start_date is None:
            raise MissingMetadataError("Policy document is missing start_date", policy_id=policy_id)

        module = policy.get("module") or {}
        billing_day = policy.get("billing_day")
        return cls(
            policy_id=str(policy_id),
            policy_number=str(policy.get("policy_number") or ""),
            policyholder_id=policy.get("policyholder_id"),
            monthly_premium=int(policy.get("monthly_premium") or 0),
            currency=str(policy.get("currency") or default_currency).lower(),
            billing_frequency=str(policy.get("billing_frequency") or ""),
            billing_day=int(billing_day) if billing_day else None,
            start_date=start_date,
            end_date=parse_policy_datetime(policy.get("end_date"), tz),
            claimed_against=bool(module.get("claimed_against", False)),
            status=policy.get("status"),
            app_data=dict(policy.get("app_data") or {}),
        )

    def correlation_metadata(self) -> dict[str, str]:
        return {"rootPolicyId": self.policy_id, "rootPolicyNumber": self.policy_number}


__all__ = [
    "BillingFrequency",
    "CollectionType",
    "FailureAction",
    "PaymentStatus",
    "PaymentType",
    "PolicyBillingProfile",
    "PremiumType",
    "parse_policy_datetime",
]
