"""Typed inbound events consumed by the reconciliation engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Union


class PolicyEventKind(str, Enum):
    PAYMENT_METHOD_ASSIGNED = "payment_method_assigned"
    PAYMENT_CREATED = "payment_created"
    PAYMENT_METHOD_REMOVED = "payment_method_removed"
    ALTERATION_PACKAGE_APPLIED = "alteration_package_applied"
    POLICY_CANCELLED = "policy_cancelled"
    POLICY_EXPIRED = "policy_expired"
    POLICY_LAPSED = "policy_lapsed"
    POLICY_UPDATED = "policy_updated"


TERMINATION_KINDS = frozenset(
    {
        PolicyEventKind.PAYMENT_METHOD_REMOVED,
        PolicyEventKind.POLICY_CANCELLED,
        PolicyEventKind.POLICY_EXPIRED,
        PolicyEventKind.POLICY_LAPSED,
    }
)


class ProcessorEventType(str, Enum):
    INVOICE_CREATED = "invoice.created"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_VOIDED = "invoice.voided"
    INVOICE_MARKED_UNCOLLECTIBLE = "invoice.marked_uncollectible"
    CHARGE_REFUNDED = "charge.refunded"
    CHARGE_DISPUTE_FUNDS_WITHDRAWN = "charge.dispute.funds_withdrawn"
    SUBSCRIPTION_SCHEDULE_UPDATED = "subscription_schedule.updated"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_PAYMENT_FAILED = "payment_intent.payment_failed"

    @classmethod
    def parse(cls, value: str) -> "ProcessorEventType | None":
        try:
            return cls(value)
        except ValueError:
            return None


class AlterationHook(str, Enum):
    UPDATE_BILLING_FREQUENCY = "update_billing_frequency"
    COLLECT_OUTSTANDING_PREMIUM = "collect_outstanding_premium"
    RENEW_POLICY = "renew_policy"
    COLLECT_ADHOC_PAYMENT = "collect_adhoc_payment"
    UPDATE_POLICY_COVER = "update_policy_cover"


@dataclass(frozen=True, slots=True)
class PaymentMethodAssigned:
    policy_id: str

    @property
    def kind(self) -> PolicyEventKind:
        return PolicyEventKind.PAYMENT_METHOD_ASSIGNED


@dataclass(frozen=True, slots=True)
class PaymentCreated:
    policy_id: str
    payment: Mapping[str, Any]

    @property
    def kind(self) -> PolicyEventKind:
        return PolicyEventKind.PAYMENT_CREATED


@dataclass(frozen=True, slots=True)
class AlterationPackageApplied:
    policy_id: str
    alteration_hook_key: str
    alteration_package: Mapping[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> PolicyEventKind:
        return PolicyEventKind.ALTERATION_PACKAGE_APPLIED

    @property
    def input_data(self) -> Mapping[str, Any]:
        return self.alteration_package.get("input_data") or {}


@dataclass(frozen=True, slots=True)
class PolicyTerminated:
    """Cancellation, lapse, expiry, or removal of the policy's payment method."""

    policy_id: str
    kind: PolicyEventKind = PolicyEventKind.POLICY_CANCELLED

    def __post_init__(self) -> None:
        if self.kind not in TERMINATION_KINDS:
            raise ValueError(f"{self.kind} is not a termination event")


@dataclass(frozen=True, slots=True)
class PolicyUpdated:
    policy_id: str
    updates: Mapping[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> PolicyEventKind:
        return PolicyEventKind.POLICY_UPDATED


PolicyEvent = Union[PaymentMethodAssigned, PaymentCreated, AlterationPackageApplied, PolicyTerminated, PolicyUpdated]


__all__ = [
    "AlterationHook",
    "AlterationPackageApplied",
    "PaymentCreated",
    "PaymentMethodAssigned",
    "PolicyEvent",
    "PolicyEventKind",
    "PolicyTerminated",
    "PolicyUpdated",
    "ProcessorEventType",
    "TERMINATION_KINDS",
]
