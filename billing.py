from __future__ import annotations

import calendar
import math
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Iterable, NamedTuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

DATE_FORMAT = "%Y-%m-%d"
DEFAULT_CATEGORY = "Uncategorized"
UPCOMING_RENEWALS_LIMIT = 5
CENT = Decimal("0.01")

Number = Union[Decimal, int, float, str]


class BillingCycle(str, Enum):
    MONTHLY = "Monthly"
    YEARLY = "Yearly"
    WEEKLY = "Weekly"
    QUARTERLY = "Quarterly"
    BIWEEKLY = "Biweekly"
    CUSTOM = "Custom"

    @classmethod
    def parse(cls, value: object) -> BillingCycle:
        """Resolve a cycle name case-insensitively; anything unknown is ``Custom``."""
        if isinstance(value, cls):
            return value
        cleaned = str(value or "").strip().lower()
        for cycle in cls:
            if cycle.value.lower() == cleaned:
                return cycle
        return cls.CUSTOM


# Average billing events per month for cycles shorter than a month.
MONTHLY_MULTIPLIERS: dict[BillingCycle, Decimal] = {
    BillingCycle.WEEKLY: Decimal("4.33"),
    BillingCycle.BIWEEKLY: Decimal("2.17"),
}
# Months covered by one charge for cycles longer than a month.
MONTHLY_DIVISORS: dict[BillingCycle, int] = {
    BillingCycle.QUARTERLY: 3,
    BillingCycle.YEARLY: 12,
}
DAY_INCREMENTS = {
    BillingCycle.WEEKLY: 7,
    BillingCycle.BIWEEKLY: 14,
}
MONTH_INCREMENTS = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.QUARTERLY: 3,
    BillingCycle.YEARLY: 12,
}


class Subscription(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int | None = None
    name: str = ""
    amount: Decimal = Field(ge=0)
    billing_cycle: BillingCycle = Field(default=BillingCycle.MONTHLY, alias="billingCycle")
    category: str = DEFAULT_CATEGORY
    start_date: date | None = Field(default=None, alias="startDate")
    next_payment: date | None = Field(default=None, alias="nextPayment")
    description: str = ""

    @field_validator("billing_cycle", mode="before")
    @classmethod
    def _coerce_cycle(cls, value: object) -> BillingCycle:
        return BillingCycle.parse(value)

    @field_validator("category", mode="before")
    @classmethod
    def _default_category(cls, value: object) -> str:
        return normalize_category_name(value)

    @property
    def monthly_amount(self) -> Decimal:
        return normalize_to_monthly(self.amount, self.billing_cycle)


class UpcomingRenewal(NamedTuple):
    subscription: Subscription
    days_until: int


def normalize_category_name(value: object) -> str:
    if value is None:
        return DEFAULT_CATEGORY
    cleaned = " ".join(str(value).split())
    return cleaned if cleaned else DEFAULT_CATEGORY


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_money(value: Number) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def parse_date(value: str) -> date:
    return datetime.strptime(value, DATE_FORMAT).date()


def format_date(value: date) -> str:
    return value.strftime(DATE_FORMAT)


def as_day(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


# ---------------------------------------------------------------------------
# Monthly normalisation
# ---------------------------------------------------------------------------


def normalize_to_monthly(amount: Number, billing_cycle: BillingCycle | str | None) -> Decimal:
    """Convert ``amount`` charged once per ``billing_cycle`` into a monthly equivalent.

    Unknown and custom cycles are treated as monthly and never raise.
    """
    cycle = BillingCycle.parse(billing_cycle)
    value = to_decimal(amount)
    if cycle in MONTHLY_MULTIPLIERS:
        return value * MONTHLY_MULTIPLIERS[cycle]
    if cycle in MONTHLY_DIVISORS:
        return value / MONTHLY_DIVISORS[cycle]
    return value


def monthly_cost(amount: Number, billing_cycle: BillingCycle | str | None) -> Decimal:
    return quantize_money(normalize_to_monthly(amount, billing_cycle))


def aggregate_by_category(subscriptions: Iterable[Subscription]) -> dict[str, Decimal]:
    totals: dict[str, Decimal] = {}
    for subscription in subscriptions:
        category = normalize_category_name(subscription.category)
        totals[category] = totals.get(category, Decimal(0)) + subscription.monthly_amount
    return totals


def percentage_of(part: Decimal, total: Decimal) -> int:
    if total == 0:
        return 0
    return int((part / total * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def category_breakdown(totals: dict[str, Decimal]) -> list[dict[str, object]]:
    grand_total = sum(totals.values(), Decimal(0))
    breakdown = [
        {
            "name": name,
            "amount": float(quantize_money(amount)),
            "percentage": percentage_of(amount, grand_total),
        }
        for name, amount in totals.items()
    ]
    breakdown.sort(key=lambda item: item["amount"], reverse=True)
    return breakdown


def top_n(subscriptions: Iterable[Subscription], n: int) -> list[Subscription]:
    # sorted() is stable with reverse=True, so ties keep their input order.
    ranked = sorted(subscriptions, key=lambda item: item.monthly_amount, reverse=True)
    return ranked[: max(n, 0)]


def days_until(target: date, reference: date | datetime) -> int:
    if isinstance(reference, datetime):
        target_start = datetime.combine(target, datetime.min.time(), tzinfo=reference.tzinfo)
        seconds = (target_start - reference).total_seconds()
        return math.ceil(seconds / 86400)
    return (target - reference).days


def upcoming_within_days(
    subscriptions: Iterable[Subscription],
    days: int,
    reference: date | datetime,
    limit: int = UPCOMING_RENEWALS_LIMIT,
) -> list[UpcomingRenewal]:
    upcoming = []
    for subscription in subscriptions:
        if subscription.next_payment is None:
            continue
        remaining = days_until(subscription.next_payment, reference)
        if 0 <= remaining <= days:
            upcoming.append(UpcomingRenewal(subscription, remaining))

    upcoming.sort(key=lambda entry: entry.days_until)
    return upcoming[:limit]


# ---------------------------------------------------------------------------
# Renewal scheduling
# ---------------------------------------------------------------------------


def add_months(source_date: date, months: int) -> date:
    month_index = source_date.month - 1 + months
    target_year = source_date.year + month_index // 12
    target_month = month_index % 12 + 1
    max_day = calendar.monthrange(target_year, target_month)[1]
    return source_date.replace(year=target_year, month=target_month, day=min(source_date.day, max_day))


def advance(source_date: date, billing_cycle: BillingCycle | str | None, steps: int = 1) -> date:
    """Move ``source_date`` forward by ``steps`` billing increments.

    Month-based cycles clamp the day to the end of a shorter target month,
    e.g. 2024-01-31 + 1 month is 2024-02-29.
    """
    cycle = BillingCycle.parse(billing_cycle)
    if cycle in DAY_INCREMENTS:
        return source_date + timedelta(days=DAY_INCREMENTS[cycle] * steps)
    return add_months(source_date, MONTH_INCREMENTS.get(cycle, 1) * steps)


def _first_after(anchor: date, billing_cycle: BillingCycle | str | None, reference: date, strict: bool) -> date:
    steps = 0
    candidate = anchor
    while candidate < reference or (strict and candidate == reference):
        steps += 1
        following = advance(anchor, billing_cycle, steps)
        if following <= candidate:
            raise ValueError(f"billing increment for {billing_cycle!r} did not advance past {candidate}")
        candidate = following
    return candidate


def compute_initial_next_payment(
    start_date: date,
    billing_cycle: BillingCycle | str | None,
    reference: date | datetime,
) -> date:
    """Return the first payment date strictly after ``reference``.

    A start date in the future is the first charge itself. Otherwise the
    start date is advanced by whole billing cycles, always measured from the
    start date so the original day of month survives short months.
    """
    today = as_day(reference)
    if start_date > today:
        return start_date
    return _first_after(start_date, billing_cycle, today, strict=True)


def roll_forward(
    next_payment: date,
    billing_cycle: BillingCycle | str | None,
    reference: date | datetime,
) -> date:
    """Advance a stored due date until it is not before ``reference``; due today stays today."""
    return _first_after(next_payment, billing_cycle, as_day(reference), strict=False)


def refresh_next_payment(subscription: Subscription, reference: date | datetime) -> Subscription:
    """Return ``subscription`` with a due date that is not before ``reference``.

    Stale dates are recounted from the start date when one is known, so a
    due date clamped into a short month does not stay clamped afterwards.
    """
    if subscription.next_payment is None:
        return subscription
    today = as_day(reference)
    if subscription.next_payment >= today:
        return subscription
    if subscription.start_date is not None:
        current = roll_forward(subscription.start_date, subscription.billing_cycle, today)
    else:
        current = roll_forward(subscription.next_payment, subscription.billing_cycle, today)
    return subscription.model_copy(update={"next_payment": current})
