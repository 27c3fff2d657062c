"""
Date and money math for subscriptions.

Everything here is a pure function of its arguments: no clock reads, no I/O,
no mutation of the subscription passed in.
"""
import datetime
import math
from decimal import ROUND_HALF_UP, Decimal
from fractions import Fraction
from typing import Dict, Mapping, Optional, Union

from deyncare_billing.aggregate import (
    Discount,
    DiscountType,
    DisplayStatus,
    PlanType,
    Pricing,
    Subscription,
    SubscriptionStatus,
)

PLAN_DURATION_DAYS = {
    PlanType.TRIAL.value: 14,
    PlanType.MONTHLY.value: 30,
    PlanType.YEARLY.value: 365,
}
DEFAULT_DURATION_DAYS = 30

# Prices are quoted per 30 days for every plan, the yearly plan just has a lower rate.
RATE_PERIOD_DAYS = 30

TRIAL_ENDING_SOON_DAYS = 2
EXPIRING_SOON_DAYS = 5

CENT = Decimal("0.01")
SECONDS_PER_DAY = 24 * 60 * 60

PlanTypeLike = Union[PlanType, str]


def _plan_key(plan_type: PlanTypeLike) -> str:
    return plan_type.value if isinstance(plan_type, PlanType) else str(plan_type)


def plan_duration_days(plan_type: PlanTypeLike) -> int:
    """Length of one period of ``plan_type``; unknown plan types fall back to 30 days."""
    return PLAN_DURATION_DAYS.get(_plan_key(plan_type), DEFAULT_DURATION_DAYS)


def compute_end_date(start_date: datetime.datetime, plan_type: PlanTypeLike) -> datetime.datetime:
    return start_date + datetime.timedelta(days=plan_duration_days(plan_type))


def days_until(end: datetime.datetime, now: datetime.datetime) -> int:
    """Whole days from ``now`` to ``end``, rounded up. Negative when ``end`` has passed."""
    return math.ceil((end - now).total_seconds() / SECONDS_PER_DAY)


def days_remaining(end: datetime.datetime, now: datetime.datetime) -> int:
    return max(0, days_until(end, now))


def daily_rate_table(prices: Mapping[str, Decimal]) -> Dict[str, Fraction]:
    """Exact per-day rate for each plan type, from the per-period price table."""
    return {plan: Fraction(Decimal(price)) / RATE_PERIOD_DAYS for plan, price in prices.items()}


def _round_half_up(value: Fraction) -> int:
    return math.floor(value + Fraction(1, 2))


def compute_prorated_extension(
    old_plan_type: PlanTypeLike,
    new_plan_type: PlanTypeLike,
    days_remaining: int,
    rate_table: Mapping[str, Fraction],
) -> int:
    """
    Convert the unused days of the old plan into days of the new plan.

    :param days_remaining: unused days left on the old plan.
    :param rate_table: per-day rate by plan type, see :func:`daily_rate_table`.
    :return: days to grant on the new plan, never negative.
    """
    if days_remaining <= 0:
        return 0
    old_rate = Fraction(rate_table[_plan_key(old_plan_type)])
    new_rate = Fraction(rate_table[_plan_key(new_plan_type)])
    if new_rate <= 0:
        raise ValueError(f"Daily rate for plan {_plan_key(new_plan_type)} must be positive")
    remaining_value = days_remaining * old_rate
    return max(0, _round_half_up(remaining_value / new_rate))


def discount_applies(discount: Optional[Discount], now: Optional[datetime.datetime] = None) -> bool:
    if discount is None or not discount.active:
        return False
    if now is not None and discount.expires_at is not None and now > discount.expires_at:
        return False
    return True


def apply_discount(
    base_price: Decimal,
    discount: Optional[Discount],
    now: Optional[datetime.datetime] = None,
) -> Decimal:
    """Price after ``discount``, clamped to ``[0, base_price]`` and rounded to cents."""
    base_price = Decimal(base_price)
    if not discount_applies(discount, now):
        return base_price.quantize(CENT, rounding=ROUND_HALF_UP)

    if discount.type is DiscountType.FIXED:
        price = base_price - Decimal(discount.value)
    else:
        price = base_price - base_price * Decimal(discount.value) / Decimal(100)

    price = min(max(price, Decimal(0)), base_price)
    return price.quantize(CENT, rounding=ROUND_HALF_UP)


def effective_price(pricing: Pricing, now: Optional[datetime.datetime] = None) -> Decimal:
    return apply_discount(pricing.base_price, pricing.discount, now)


def duration_days(subscription: Subscription) -> int:
    return max(0, days_until(subscription.dates.end_date, subscription.dates.start_date))


def percentage_used(subscription: Subscription, now: datetime.datetime) -> int:
    total = duration_days(subscription)
    if total == 0:
        return 100
    used = total - days_remaining(subscription.dates.end_date, now)
    return min(100, max(0, _round_half_up(Fraction(used * 100, total))))


def compute_display_status(subscription: Subscription, now: datetime.datetime) -> DisplayStatus:
    """Classification for display, layered over the raw status. Never mutates."""
    if subscription.is_deleted:
        return DisplayStatus.DELETED
    if subscription.status is SubscriptionStatus.CANCELED:
        return DisplayStatus.CANCELED

    days_left = days_until(subscription.dates.end_date, now)

    if subscription.status is SubscriptionStatus.TRIAL:
        if days_left <= 0:
            return DisplayStatus.TRIAL_EXPIRED
        if days_left <= TRIAL_ENDING_SOON_DAYS:
            return DisplayStatus.TRIAL_ENDING_SOON
        return DisplayStatus.TRIAL

    if subscription.status is SubscriptionStatus.EXPIRED or days_left <= 0:
        return DisplayStatus.EXPIRED
    if days_left <= EXPIRING_SOON_DAYS:
        return DisplayStatus.EXPIRING_SOON
    if subscription.payment.failed_payments > 0:
        return DisplayStatus.PAYMENT_ISSUE
    return DisplayStatus(subscription.status.value)
