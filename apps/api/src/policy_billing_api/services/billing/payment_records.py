"""Convert processor objects into policy service payment payloads."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping
from zoneinfo import ZoneInfo

from policy_billing_api.services.policy.schemas import (
    CollectionType,
    FailureAction,
    PaymentStatus,
    PaymentType,
    PremiumType,
)

INVOICE_ITEM_PREFIX = "Stripe created invoice item:"
REFUND_PREFIX = "Refund for Stripe charge:"
DEFAULT_COLLECTION_FAILURE = "Stripe payment failed to collect"
DEFAULT_DISPUTE_FAILURE = "Stripe payment disputed."
DEFAULT_INTENT_FAILURE = "Stripe payment intent failed"


def format_processor_timestamp(timestamp: int, tz: str) -> str:
    return datetime.fromtimestamp(int(timestamp), tz=ZoneInfo(tz)).isoformat(timespec="milliseconds")


def is_processor_generated(description: str | None) -> bool:
    """Payments the engine created from processor events must not be charged again."""

    text = description or ""
    return INVOICE_ITEM_PREFIX in text or REFUND_PREFIX in text


def invoice_line_payment(
    invoice: Mapping[str, Any],
    line_item: Mapping[str, Any],
    *,
    payment_method_id: str,
    tz: str,
) -> dict[str, Any]:
    settled = int(invoice.get("amount_due") or 0) == 0
    amount = int(line_item.get("amount") or 0)
    created_at = format_processor_timestamp(invoice["created"], tz)
    payload: dict[str, Any] = {
        "status": (PaymentStatus.SUCCESSFUL if settled else PaymentStatus.PENDING).value,
        "amount": amount,
        "description": f"{INVOICE_ITEM_PREFIX} {line_item.get('description') or line_item['id']}",
        "payment_date": created_at,
        "external_reference": line_item["id"],
        "payment_method_id": payment_method_id,
        "payment_type": (PaymentType.PREMIUM_REFUND if amount < 0 else PaymentType.PREMIUM).value,
        "collection_type": CollectionType.COLLECTION_MODULE.value,
    }
    if amount >= 0:
        payload["premium_type"] = PremiumType.RECURRING.value
    if settled:
        payload["finalized_at"] = created_at
    return payload


def charge_refund_payment(charge: Mapping[str, Any], *, payment_method_id: str, tz: str) -> dict[str, Any]:
    created_at = format_processor_timestamp(charge["created"], tz)
    return {
        "status": PaymentStatus.SUCCESSFUL.value,
        "amount": -int(charge.get("amount_refunded") or 0),
        "description": f"{INVOICE_ITEM_PREFIX} {REFUND_PREFIX} {charge['id']}",
        "payment_date": created_at,
        "finalized_at": created_at,
        "external_reference": charge["id"],
        "payment_method_id": payment_method_id,
        "payment_type": PaymentType.REVERSAL.value,
        "collection_type": CollectionType.COLLECTION_MODULE.value,
    }


def adhoc_payment(
    *,
    amount: int,
    payment_type: str,
    description: str,
    payment_method_id: str,
    now: datetime,
) -> dict[str, Any]:
    return {
        "status": PaymentStatus.PENDING.value,
        "amount": int(amount),
        "description": f"{payment_type} - {description}",
        "payment_date": now.isoformat(timespec="milliseconds"),
        "payment_method_id": payment_method_id,
        "payment_type": PaymentType.OTHER.value,
        "collection_type": CollectionType.COLLECTION_MODULE.value,
    }


def payment_status_update(
    payment_id: str,
    status: PaymentStatus,
    *,
    failure_reason: str | None = None,
    failure_action: FailureAction | None = None,
) -> dict[str, Any]:
    update: dict[str, Any] = {"payment_id": payment_id, "status": status.value}
    if failure_reason is not None:
        update["failure_reason"] = failure_reason
    if failure_action is not None:
        update["failure_action"] = failure_action.value
    return update


__all__ = [
    "DEFAULT_COLLECTION_FAILURE",
    "DEFAULT_DISPUTE_FAILURE",
    "DEFAULT_INTENT_FAILURE",
    "INVOICE_ITEM_PREFIX",
    "REFUND_PREFIX",
    "adhoc_payment",
    "charge_refund_payment",
    "format_processor_timestamp",
    "invoice_line_payment",
    "is_processor_generated",
    "payment_status_update",
]
