import datetime
from decimal import Decimal

import pytest
from hypothesis import given, settings, strategies as st

from deyncare_billing import billing_calculator as calc
from deyncare_billing.aggregate import Discount, DiscountType, DisplayStatus, PlanType, SubscriptionStatus
from deyncare_billing.builder import build_subscription
from deyncare_billing.config import BillingSettings

NOW = datetime.datetime(2025, 3, 1, 12, 0, tzinfo=datetime.timezone.utc)
PRICES = BillingSettings().plan_prices
RATES = calc.daily_rate_table(PRICES)


@pytest.mark.parametrize("plan_type, days", [
    (PlanType.TRIAL, 14),
    (PlanType.MONTHLY, 30),
    (PlanType.YEARLY, 365),
    ("monthly", 30),
    ("lifetime", 30),
])
def test_compute_end_date(plan_type, days):
    assert calc.compute_end_date(NOW, plan_type) == NOW + datetime.timedelta(days=days)


def test_prorated_extension_rounds_half_up_exactly():
    # 10 days at 10/30 is worth 12.5 days at 8/30
    assert calc.compute_prorated_extension("monthly", "yearly", 10, RATES) == 13


def test_prorated_extension_yearly_to_monthly():
    assert calc.compute_prorated_extension(PlanType.YEARLY, PlanType.MONTHLY, 30, RATES) == 24


def test_prorated_extension_nothing_left():
    assert calc.compute_prorated_extension("monthly", "yearly", 0, RATES) == 0
    assert calc.compute_prorated_extension("monthly", "yearly", -3, RATES) == 0


def test_prorated_extension_rejects_free_target():
    with pytest.raises(ValueError):
        calc.compute_prorated_extension("monthly", "trial", 10, RATES)


def test_days_until_rounds_up():
    assert calc.days_until(NOW + datetime.timedelta(days=2, hours=1), NOW) == 3
    assert calc.days_until(NOW - datetime.timedelta(hours=1), NOW) == 0
    assert calc.days_remaining(NOW - datetime.timedelta(days=3), NOW) == 0


@pytest.mark.parametrize("discount, expected", [
    (None, Decimal("10.00")),
    (Discount(type=DiscountType.FIXED, value=Decimal("3")), Decimal("7.00")),
    (Discount(type=DiscountType.FIXED, value=Decimal("25")), Decimal("0.00")),
    (Discount(type=DiscountType.PERCENTAGE, value=Decimal("15")), Decimal("8.50")),
    (Discount(type=DiscountType.PERCENTAGE, value=Decimal("150")), Decimal("0.00")),
    (Discount(type=DiscountType.FIXED, value=Decimal("-5")), Decimal("10.00")),
    (Discount(type=DiscountType.FIXED, value=Decimal("3"), active=False), Decimal("10.00")),
])
def test_apply_discount(discount, expected):
    assert calc.apply_discount(Decimal("10"), discount, NOW) == expected


def test_expired_discount_is_ignored():
    discount = Discount(type=DiscountType.PERCENTAGE, value=Decimal("50"), expires_at=NOW - datetime.timedelta(days=1))
    assert calc.apply_discount(Decimal("10"), discount, NOW) == Decimal("10.00")
    assert calc.apply_discount(Decimal("10"), discount) == Decimal("5.00")


@given(
    base_price=st.decimals(min_value=0, max_value=10000, places=2, allow_nan=False, allow_infinity=False),
    discount_type=st.sampled_from(list(DiscountType)),
    value=st.decimals(min_value=-500, max_value=20000, places=2, allow_nan=False, allow_infinity=False),
    active=st.booleans(),
)
@settings(max_examples=200)
def test_discounted_price_stays_within_base_price(base_price, discount_type, value, active):
    price = calc.apply_discount(base_price, Discount(type=discount_type, value=value, active=active), NOW)
    assert Decimal(0) <= price <= base_price


@given(
    days_left=st.integers(min_value=0, max_value=400),
    old=st.sampled_from([PlanType.MONTHLY, PlanType.YEARLY]),
    new=st.sampled_from([PlanType.MONTHLY, PlanType.YEARLY]),
)
def test_proration_never_negative(days_left, old, new):
    days = calc.compute_prorated_extension(old, new, days_left, RATES)
    assert days >= 0
    if old == new:
        assert days == days_left


def _subscription(plan_type, start=NOW):
    return build_subscription("shop_1", plan_type, start, PRICES)


def test_display_status_trial_phases():
    sub = _subscription("trial")
    assert calc.compute_display_status(sub, NOW) is DisplayStatus.TRIAL
    assert calc.compute_display_status(sub, NOW + datetime.timedelta(days=12)) is DisplayStatus.TRIAL_ENDING_SOON
    assert calc.compute_display_status(sub, NOW + datetime.timedelta(days=15)) is DisplayStatus.TRIAL_EXPIRED


def test_display_status_paid_phases():
    sub = _subscription("monthly")
    assert calc.compute_display_status(sub, NOW) is DisplayStatus.ACTIVE
    assert calc.compute_display_status(sub, NOW + datetime.timedelta(days=26)) is DisplayStatus.EXPIRING_SOON
    assert calc.compute_display_status(sub, NOW + datetime.timedelta(days=31)) is DisplayStatus.EXPIRED

    sub.payment.failed_payments = 1
    assert calc.compute_display_status(sub, NOW) is DisplayStatus.PAYMENT_ISSUE

    sub.status = SubscriptionStatus.PAST_DUE
    sub.payment.failed_payments = 0
    assert calc.compute_display_status(sub, NOW) is DisplayStatus.PAST_DUE


def test_display_status_deleted_and_canceled_win():
    sub = _subscription("monthly")
    sub.status = SubscriptionStatus.CANCELED
    assert calc.compute_display_status(sub, NOW) is DisplayStatus.CANCELED
    sub.is_deleted = True
    assert calc.compute_display_status(sub, NOW) is DisplayStatus.DELETED


def test_display_status_does_not_mutate():
    sub = _subscription("trial")
    before = (sub.status, sub.dates.end_date, sub.history)
    calc.compute_display_status(sub, NOW + datetime.timedelta(days=20))
    assert (sub.status, sub.dates.end_date, sub.history) == before


def test_percentage_used_and_duration():
    sub = _subscription("monthly")
    assert calc.duration_days(sub) == 30
    assert calc.percentage_used(sub, NOW) == 0
    assert calc.percentage_used(sub, NOW + datetime.timedelta(days=15)) == 50
    assert calc.percentage_used(sub, NOW + datetime.timedelta(days=45)) == 100


def test_effective_price_uses_pricing_discount():
    sub = _subscription("yearly")
    sub.pricing.discount = Discount(type=DiscountType.FIXED, value=Decimal("2"))
    assert calc.effective_price(sub.pricing, NOW) == Decimal("6.00")
