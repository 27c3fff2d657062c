import datetime
import uuid
from decimal import Decimal
from typing import Mapping, Optional

from deyncare_billing.aggregate import (
    Dates,
    Discount,
    HistoryAction,
    Payment,
    PaymentMethod,
    Plan,
    PlanType,
    Pricing,
    RenewalSettings,
    Subscription,
    SubscriptionStatus,
)
from deyncare_billing.billing_calculator import compute_end_date
from deyncare_billing.errors import InvalidPlanTypeError, ValidationError


def generate_subscription_id() -> str:
    return f"sub_{uuid.uuid4().hex[:12]}"


def parse_plan_type(value) -> PlanType:
    try:
        return PlanType(value)
    except ValueError:
        raise InvalidPlanTypeError(f"Invalid plan type: {value!r}", {"planType": value})


def billing_cycle_for(plan_type: PlanType) -> str:
    return "yearly" if plan_type is PlanType.YEARLY else "monthly"


def build_subscription(
    shop_id: str,
    plan_type,
    now: datetime.datetime,
    prices: Mapping[str, Decimal],
    *,
    subscription_id: Optional[str] = None,
    currency: str = "USD",
    payment_method: Optional[PaymentMethod] = None,
    auto_renew: Optional[bool] = None,
    discount: Optional[Discount] = None,
    performed_by: str = "system",
    notes: Optional[str] = None,
) -> Subscription:
    """
    Compute the complete initial state of a subscription.

    Every default is derived here from ``plan_type`` and ``now`` so nothing is
    left to be filled in at save time.

    :param shop_id: tenant the subscription belongs to.
    :param plan_type: ``trial``, ``monthly`` or ``yearly``.
    :param now: creation instant; becomes ``startDate``.
    :param prices: base price per plan type.
    :return: an unsaved aggregate with version 0 and one history entry.
    """
    if not shop_id or not str(shop_id).strip():
        raise ValidationError("shop_id is required")
    plan = parse_plan_type(plan_type)
    is_trial = plan is PlanType.TRIAL

    end_date = compute_end_date(now, plan)
    method = payment_method or (PaymentMethod.FREE if is_trial else PaymentMethod.OFFLINE)

    subscription = Subscription(
        subscription_id=subscription_id or generate_subscription_id(),
        shop_id=str(shop_id).strip(),
        plan=Plan(type=plan),
        pricing=Pricing(
            base_price=Decimal(prices[plan.value]),
            billing_cycle=billing_cycle_for(plan),
            currency=currency,
            discount=discount,
        ),
        status=SubscriptionStatus.TRIAL if is_trial else SubscriptionStatus.ACTIVE,
        payment=Payment(
            method=method,
            verified=is_trial or method is PaymentMethod.FREE,
            next_payment_date=end_date,
        ),
        dates=Dates(
            start_date=now,
            end_date=end_date,
            last_updated=now,
            trial_ends_at=end_date if is_trial else None,
        ),
        # A trial has no payment method on file, so it cannot renew itself.
        renewal_settings=RenewalSettings(auto_renew=(not is_trial) if auto_renew is None else auto_renew),
    )
    subscription.metadata.notes = notes
    subscription.append_history(
        HistoryAction.TRIAL_STARTED if is_trial else HistoryAction.CREATED,
        now,
        performed_by,
        {"planType": plan, "endDate": end_date},
    )
    return subscription
