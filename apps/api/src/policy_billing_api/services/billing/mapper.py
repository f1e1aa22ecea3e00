"""Translate policy billing attributes into processor price and schedule parameters."""

from __future__ import annotations

from calendar import monthrange
from datetime import datetime
from typing import Any, Mapping

from policy_billing_api.services.billing.errors import (
    InvalidFrequencyError,
    InvalidStateError,
    MissingBillingDayError,
)
from policy_billing_api.services.policy.schemas import BillingFrequency, PolicyBillingProfile

_RECURRING_INTERVALS: dict[BillingFrequency, str | None] = {
    BillingFrequency.MONTHLY: "month",
    BillingFrequency.YEARLY: "year",
    BillingFrequency.ONCE_OFF: None,
}

SCHEDULABLE_STATUSES = frozenset({"not_started", "active"})


def coerce_frequency(frequency: str | BillingFrequency) -> BillingFrequency:
    try:
        return BillingFrequency(frequency)
    except ValueError as exc:
        raise InvalidFrequencyError("Unsupported billing frequency", frequency=frequency) from exc


def add_months(value: datetime, months: int) -> datetime:
    """Shift ``value`` by whole calendar months, clamping to the last day of short months."""

    total = value.month - 1 + months
    year = value.year + total // 12
    month = total % 12 + 1
    day = min(value.day, monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def to_unix(value: datetime) -> int:
    return int(value.timestamp())


def premium_for_cycle(monthly_premium: int, frequency: str | BillingFrequency) -> int:
    """Processor prices are per billing cycle, so yearly policies bill twelve months at once."""

    if coerce_frequency(frequency) is BillingFrequency.YEARLY:
        return monthly_premium * 12
    return monthly_premium


def price_for(
    frequency: str | BillingFrequency,
    amount_in_cents: int,
    *,
    product_id: str,
    currency: str,
) -> dict[str, Any]:
    interval = _RECURRING_INTERVALS[coerce_frequency(frequency)]
    params: dict[str, Any] = {
        "product": product_id,
        "currency": currency.lower(),
        "unit_amount": int(amount_in_cents),
    }
    if interval is not None:
        params["recurring"] = {"interval": interval}
    return params


def _phase(
    price_id: str,
    *,
    metadata: Mapping[str, str],
    end_date: datetime | None,
    proration_behavior: str | None = None,
    start_date: int | None = None,
    anchor_to_phase_start: bool = True,
) -> dict[str, Any]:
    phase: dict[str, Any] = {"items": [{"price": price_id}], "metadata": dict(metadata)}
    if start_date is not None:
        phase["start_date"] = start_date
    if end_date is not None:
        phase["end_date"] = to_unix(end_date)
    if proration_behavior is not None:
        phase["proration_behavior"] = proration_behavior
    if anchor_to_phase_start:
        phase["billing_cycle_anchor"] = "phase_start"
    return phase


def profile_to_schedule_params(
    profile: PolicyBillingProfile,
    price_id: str,
    *,
    customer_id: str,
    proration_behavior: str = "none",
    start_date: datetime | None = None,
) -> dict[str, Any]:
    """Build a two-phase schedule for ``profile``.

    The first phase covers one calendar month from the start so the first invoice lands on
    the start date; the second runs to the policy end date. Policies without an end date
    release the subscription once the second phase completes.
    """

    if coerce_frequency(profile.billing_frequency) is BillingFrequency.ONCE_OFF:
        raise InvalidFrequencyError(
            "Once-off policies are charged directly and never scheduled",
            policy_id=profile.policy_id,
        )

    start = start_date or profile.start_date
    metadata = profile.correlation_metadata()
    phases = [
        _phase(price_id, metadata=metadata, end_date=add_months(start, 1), proration_behavior=proration_behavior),
        _phase(price_id, metadata=metadata, end_date=profile.end_date, proration_behavior=proration_behavior),
    ]
    return {
        "customer": customer_id,
        "start_date": to_unix(start),
        "end_behavior": "cancel" if profile.end_date is not None else "release",
        "phases": phases,
        "metadata": metadata,
    }


def next_billing_date(billing_day: int | None, *, policy_start: datetime, now: datetime) -> datetime:
    """Return the next occurrence of ``billing_day`` that has not already passed.

    Counting starts from the later of the policy start and ``now``. Billing days beyond the
    length of a month fall on that month's last day.
    """

    if billing_day is None:
        raise MissingBillingDayError("Billing day is required to compute the next billing date")
    if billing_day < 1 or billing_day > 31:
        raise InvalidStateError("Billing day must be between 1 and 31", billing_day=billing_day)

    reference = max(policy_start, now)
    candidate = reference.replace(day=min(billing_day, monthrange(reference.year, reference.month)[1]))
    if candidate < reference:
        candidate = _with_billing_day(add_months(candidate, 1), billing_day)
    if candidate < now:
        candidate = _with_billing_day(add_months(candidate, 1), billing_day)
    return candidate


def _with_billing_day(value: datetime, billing_day: int) -> datetime:
    return value.replace(day=min(billing_day, monthrange(value.year, value.month)[1]))


def rescheduled_phases(
    *,
    first_phase_start: int,
    first_phase_price: str,
    next_phase_price: str,
    split_at: datetime,
    end_date: datetime | None,
    metadata: Mapping[str, str],
    anchor_first_phase: bool = True,
) -> list[dict[str, Any]]:
    """Two phases split at ``split_at``: the current terms, then the new price."""

    first = _phase(
        first_phase_price,
        metadata=metadata,
        end_date=split_at,
        start_date=first_phase_start,
        anchor_to_phase_start=anchor_first_phase,
    )
    second = _phase(next_phase_price, metadata=metadata, end_date=end_date)
    return [first, second]


__all__ = [
    "SCHEDULABLE_STATUSES",
    "add_months",
    "coerce_frequency",
    "next_billing_date",
    "premium_for_cycle",
    "price_for",
    "profile_to_schedule_params",
    "rescheduled_phases",
    "to_unix",
]
