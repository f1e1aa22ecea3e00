"""Pure proration and refund calculations."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Iterable, Mapping

from policy_billing_api.services.billing.errors import MissingBillingDayError
from policy_billing_api.services.billing.mapper import add_months
from policy_billing_api.services.policy.schemas import BillingFrequency


@dataclass(frozen=True, slots=True)
class RefundDecision:
    charge_id: str
    amount: int


def _as_date(value: date | datetime) -> date:
    return value.date() if isinstance(value, datetime) else value


def whole_months_between(start: date, end: date) -> int:
    """Calendar months between two dates, truncated toward zero.

    A month counts once the day-clamped anniversary of ``start`` is reached, so
    Jan 31 to Feb 28 is one month.
    """

    if end < start:
        return -whole_months_between(end, start)
    months = (end.year - start.year) * 12 + (end.month - start.month)
    if add_months(start, months) > end:
        months -= 1
    return months


def months_remaining(end_date: date | datetime, billing_day: int | None, now: date | datetime) -> int:
    """Whole months left on the policy, excluding a cycle already billed this month."""

    if billing_day is None:
        raise MissingBillingDayError("Billing day is required to compute months remaining")

    today = _as_date(now)
    months = whole_months_between(today, _as_date(end_date))
    if billing_day <= today.day:
        months -= 1
    return months


def outstanding_premium(months: int, monthly_amount: int) -> int:
    return max(months, 0) * monthly_amount


def within_cooling_off(start_date: datetime, now: datetime, *, period_days: int = 14) -> bool:
    return now < start_date + timedelta(days=period_days)


def should_prorate_cancellation(frequency: str, claimed_against: bool, within_cooling_off: bool) -> bool:
    return frequency == BillingFrequency.YEARLY.value and not claimed_against and not within_cooling_off


def successful_invoice_charges(charges: Iterable[Mapping[str, Any]]) -> list[Mapping[str, Any]]:
    """Charges that settled an invoice and have not been refunded."""

    return [
        charge
        for charge in charges
        if charge.get("status") == "succeeded" and not charge.get("refunded") and charge.get("invoice")
    ]


def refund_amount_for_downgrade(
    latest_invoice_total: int | None,
    candidate_charges: Iterable[Mapping[str, Any]],
) -> RefundDecision | None:
    """Pick the charge to refund when a yearly premium drops mid-term.

    The processor books the difference as a negative invoice total (account credit). The
    credit is refunded in cash against the most recent charge large enough to cover it,
    since partial refunds spread over smaller charges are not allowed.
    """

    if not latest_invoice_total or latest_invoice_total > 0:
        return None

    amount = abs(latest_invoice_total)
    eligible = [
        charge
        for charge in candidate_charges
        if int(charge.get("amount") or 0) > 0 and int(charge.get("amount") or 0) >= amount
    ]
    if not eligible:
        return None

    latest = max(eligible, key=lambda charge: int(charge.get("created") or 0))
    return RefundDecision(charge_id=str(latest["id"]), amount=amount)


__all__ = [
    "RefundDecision",
    "months_remaining",
    "outstanding_premium",
    "refund_amount_for_downgrade",
    "should_prorate_cancellation",
    "successful_invoice_charges",
    "whole_months_between",
    "within_cooling_off",
]
