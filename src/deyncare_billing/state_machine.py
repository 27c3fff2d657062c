"""
The one place where a subscription changes state.

Every operation loads the aggregate, checks the transition table and the
operation's guard, mutates a deep copy, re-checks the aggregate invariants and
saves the copy with a compare-and-swap on its version. A guard failure raises
before anything is written, so callers always see either the old or the new
aggregate.
"""
import copy
import datetime
import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, FrozenSet, Mapping, Optional

from deyncare_billing.aggregate import (
    NON_TERMINAL_STATUSES,
    PAID_PLAN_TYPES,
    CancellationReason,
    Discount,
    HistoryAction,
    PaymentMethod,
    PaymentRecord,
    PlanType,
    PreviousPlan,
    Subscription,
    SubscriptionStatus,
)
from deyncare_billing.billing_calculator import (
    apply_discount,
    compute_end_date,
    compute_prorated_extension,
    daily_rate_table,
    days_remaining,
    plan_duration_days,
)
from deyncare_billing.builder import billing_cycle_for, build_subscription, parse_plan_type
from deyncare_billing.clock import SystemClock
from deyncare_billing.config import BillingSettings
from deyncare_billing.errors import (
    AlreadyCanceledError,
    ConflictError,
    FatalError,
    InsufficientPaymentError,
    InvalidPlanTypeError,
    InvalidTransitionError,
    NonPositiveExtensionError,
    NotFoundError,
    NotInTrialError,
    ValidationError,
)
from deyncare_billing.integration import call_with_timeout
from deyncare_billing.shop_gateway import SHOP_ACTIVE, SHOP_SUSPENDED, ShopGateway
from deyncare_billing.store import SubscriptionStore


class Operation(str, Enum):
    CREATE = "create"
    CONVERT_TRIAL_TO_PAID = "convert_trial_to_paid"
    CHANGE_PLAN = "change_plan"
    EXTEND = "extend"
    CANCEL = "cancel"
    MARK_EXPIRED = "mark_expired"
    RECORD_PAYMENT = "record_payment"
    RECORD_FAILURE = "record_failure"
    MARK_REMINDER_SENT = "mark_reminder_sent"


_S = SubscriptionStatus

# operation -> {current status (None for a new aggregate) -> statuses it may end in}
TRANSITIONS: Dict[Operation, Dict[Optional[SubscriptionStatus], FrozenSet[SubscriptionStatus]]] = {
    Operation.CREATE: {None: frozenset([_S.TRIAL, _S.ACTIVE])},
    Operation.CONVERT_TRIAL_TO_PAID: {_S.TRIAL: frozenset([_S.ACTIVE])},
    Operation.CHANGE_PLAN: {_S.ACTIVE: frozenset([_S.ACTIVE])},
    Operation.EXTEND: {s: frozenset([s]) for s in NON_TERMINAL_STATUSES},
    Operation.CANCEL: {s: frozenset([_S.CANCELED]) for s in NON_TERMINAL_STATUSES},
    Operation.MARK_EXPIRED: {s: frozenset([_S.EXPIRED]) for s in NON_TERMINAL_STATUSES},
    Operation.RECORD_PAYMENT: {s: frozenset([_S.ACTIVE]) for s in NON_TERMINAL_STATUSES},
    Operation.RECORD_FAILURE: {
        _S.ACTIVE: frozenset([_S.ACTIVE, _S.PAST_DUE]),
        _S.PAST_DUE: frozenset([_S.PAST_DUE]),
    },
    Operation.MARK_REMINDER_SENT: {s: frozenset([s]) for s in NON_TERMINAL_STATUSES},
}


def _check_transition_table() -> None:
    missing = [op.value for op in Operation if op not in TRANSITIONS]
    if missing:
        raise RuntimeError(f"Transition table has no entry for: {', '.join(missing)}")

    reachable = set()
    for op, edges in TRANSITIONS.items():
        for source, targets in edges.items():
            if source is not None and source.is_terminal:
                raise RuntimeError(f"{op.value} leaves terminal status {source.value}")
            if not targets:
                raise RuntimeError(f"{op.value} from {source} has no target status")
            reachable.update(targets)

    unreachable = [s.value for s in SubscriptionStatus if s not in reachable]
    if unreachable:
        raise RuntimeError(f"Statuses never reached by any operation: {', '.join(unreachable)}")

    for status in NON_TERMINAL_STATUSES:
        leaving = [op for op, edges in TRANSITIONS.items() if status in edges and edges[status] != frozenset([status])]
        if not leaving:
            raise RuntimeError(f"Status {status.value} has no way out")


_check_transition_table()


@dataclass(frozen=True)
class PaymentEvidence:
    transaction_id: str
    method: PaymentMethod
    amount: Decimal
    receipt_url: Optional[str] = None
    plan_type: Optional[str] = None


@dataclass(frozen=True)
class PaymentOutcome:
    subscription: Subscription
    transaction_id: str
    applied: bool
    record: Optional[PaymentRecord] = None


Mutation = Callable[[Subscription, datetime.datetime], None]


class SubscriptionStateMachine:
    """
    Enforces the subscription lifecycle.

    :param store: persistence with compare-and-swap saves.
    :param clock: object with ``now()`` returning an aware UTC datetime.
    :param prices: base price per plan type.
    :param failed_payment_threshold: failures after which ``active`` becomes ``past_due``.
    :param data_retention_days: how long data is kept after expiry.
    :param shop_gateway: optional; receives shop status changes after a save.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        clock=None,
        prices: Optional[Mapping[str, Decimal]] = None,
        failed_payment_threshold: int = 3,
        data_retention_days: int = 30,
        shop_gateway: Optional[ShopGateway] = None,
        currency: str = "USD",
        integration_timeout: float = 10.0,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._prices = dict(prices or BillingSettings().plan_prices)
        self._rates = daily_rate_table(self._prices)
        self._failed_payment_threshold = failed_payment_threshold
        self._data_retention_days = data_retention_days
        self._shop_gateway = shop_gateway
        self._currency = currency
        self._integration_timeout = integration_timeout

    @property
    def failed_payment_threshold(self) -> int:
        return self._failed_payment_threshold

    def now(self) -> datetime.datetime:
        return self._clock.now()

    def price_for(self, plan_type: PlanType, discount: Optional[Discount] = None, now=None) -> Decimal:
        return apply_discount(self._prices[plan_type.value], discount, now)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, subscription_id: str) -> Subscription:
        subscription = self._store.find_by_id(subscription_id)
        if subscription is None:
            raise NotFoundError(f"Subscription {subscription_id} not found", {"subscriptionId": subscription_id})
        return subscription

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create(
        self,
        shop_id: str,
        plan_type,
        *,
        payment_method: Optional[PaymentMethod] = None,
        auto_renew: Optional[bool] = None,
        discount: Optional[Discount] = None,
        notes: Optional[str] = None,
        performed_by: str = "system",
    ) -> Subscription:
        try:
            method = PaymentMethod(payment_method) if payment_method else None
        except ValueError:
            raise ValidationError(f"Invalid payment method: {payment_method!r}", {"paymentMethod": payment_method})
        now = self._clock.now()
        subscription = build_subscription(
            shop_id,
            plan_type,
            now,
            self._prices,
            currency=self._currency,
            payment_method=method,
            auto_renew=auto_renew,
            discount=discount,
            performed_by=performed_by,
            notes=notes,
        )
        if subscription.status not in TRANSITIONS[Operation.CREATE][None]:
            raise InvalidTransitionError(f"Cannot create a subscription in status {subscription.status.value}")
        self._check_invariants(subscription, now)
        saved = self._store.save(subscription, 0)
        logging.info(
            f"Subscription {saved.subscription_id} created for shop {saved.shop_id} "
            f"({saved.plan.type.value}, {saved.status.value})"
        )
        return saved

    def convert_trial_to_paid(
        self,
        subscription_id: str,
        plan_type,
        payment_method: Optional[PaymentMethod] = None,
        performed_by: str = "system",
    ) -> Subscription:
        current = self.get(subscription_id)
        plan = self._parse_paid_plan(plan_type)
        try:
            method = PaymentMethod(payment_method) if payment_method else PaymentMethod.OFFLINE
        except ValueError:
            raise ValidationError(f"Invalid payment method: {payment_method!r}", {"paymentMethod": payment_method})

        def mutate(sub: Subscription, now: datetime.datetime) -> None:
            if sub.dates.trial_ends_at is None or now > sub.dates.trial_ends_at:
                raise NotInTrialError(
                    f"Trial of subscription {sub.subscription_id} has already ended",
                    {"subscriptionId": sub.subscription_id, "trialEndsAt": sub.dates.trial_ends_at},
                )
            self._start_paid_period(sub, plan, now)
            sub.status = SubscriptionStatus.ACTIVE
            sub.payment.method = method
            sub.payment.verified = method is not PaymentMethod.OFFLINE
            sub.payment.last_payment_date = now
            sub.renewal_settings.auto_renew = True
            sub.append_history(
                HistoryAction.TRIAL_CONVERTED,
                now,
                performed_by,
                {"planType": plan, "paymentMethod": method, "endDate": sub.dates.end_date},
            )

        return self._apply(current, Operation.CONVERT_TRIAL_TO_PAID, mutate)

    def change_plan(
        self,
        subscription_id: str,
        plan_type,
        prorated: bool = True,
        performed_by: str = "system",
    ) -> Subscription:
        current = self.get(subscription_id)
        plan = self._parse_paid_plan(plan_type)

        def mutate(sub: Subscription, now: datetime.datetime) -> None:
            old_plan = sub.plan.type
            sub.metadata.previous_plans.append(
                PreviousPlan(
                    name=sub.plan.name,
                    type=old_plan,
                    start_date=sub.dates.start_date,
                    end_date=now,
                )
            )

            granted_days = None
            if prorated and sub.is_running(now):
                remaining = days_remaining(sub.dates.end_date, now)
                # At least one day so that endDate stays after startDate.
                granted_days = max(1, compute_prorated_extension(old_plan, plan, remaining, self._rates))

            sub.plan.type = plan
            sub.pricing.base_price = Decimal(self._prices[plan.value])
            sub.pricing.billing_cycle = billing_cycle_for(plan)
            sub.dates.start_date = now
            if granted_days is not None:
                sub.dates.end_date = now + datetime.timedelta(days=granted_days)
            else:
                granted_days = plan_duration_days(plan)
                sub.dates.end_date = compute_end_date(now, plan)
            sub.payment.next_payment_date = sub.dates.end_date
            sub.renewal_settings.reminder_sent = False
            sub.append_history(
                HistoryAction.PLAN_CHANGED,
                now,
                performed_by,
                {"fromPlan": old_plan, "toPlan": plan, "prorated": prorated, "daysGranted": granted_days},
            )

        return self._apply(current, Operation.CHANGE_PLAN, mutate)

    def extend(
        self,
        subscription_id: str,
        days: int,
        reason: Optional[str] = None,
        performed_by: str = "system",
    ) -> Subscription:
        if isinstance(days, bool) or not isinstance(days, int) or days <= 0:
            raise NonPositiveExtensionError(f"Extension must be a positive number of days, got {days!r}", {"days": days})
        current = self.get(subscription_id)

        def mutate(sub: Subscription, now: datetime.datetime) -> None:
            sub.dates.end_date = sub.dates.end_date + datetime.timedelta(days=days)
            if sub.status is SubscriptionStatus.TRIAL:
                sub.dates.trial_ends_at = sub.dates.end_date
            sub.payment.next_payment_date = sub.dates.end_date
            sub.renewal_settings.reminder_sent = False
            sub.append_history(
                HistoryAction.UPDATED,
                now,
                performed_by,
                {"extendedDays": days, "newEndDate": sub.dates.end_date, "reason": reason},
            )

        return self._apply(current, Operation.EXTEND, mutate)

    def cancel(
        self,
        subscription_id: str,
        reason=None,
        feedback: Optional[str] = None,
        immediate: bool = False,
        performed_by: str = "system",
    ) -> Subscription:
        try:
            cancel_reason = CancellationReason(reason) if reason else CancellationReason.OTHER
        except ValueError:
            raise ValidationError(f"Invalid cancellation reason: {reason!r}", {"reason": reason})
        current = self.get(subscription_id)

        def mutate(sub: Subscription, now: datetime.datetime) -> None:
            sub.status = SubscriptionStatus.CANCELED
            sub.dates.canceled_at = now
            sub.renewal_settings.auto_renew = False
            sub.cancellation.reason = cancel_reason
            sub.cancellation.feedback = feedback
            sub.cancellation.by_user_id = performed_by
            if immediate:
                if now > sub.dates.start_date:
                    sub.dates.end_date = now
                else:
                    sub.dates.end_date = sub.dates.start_date + datetime.timedelta(seconds=1)
            sub.append_history(
                HistoryAction.CANCELED,
                now,
                performed_by,
                {"reason": cancel_reason, "immediateEffect": immediate, "endDate": sub.dates.end_date},
            )

        return self._apply(current, Operation.CANCEL, mutate)

    def mark_expired(self, subscription_id: str, performed_by: str = "system") -> Subscription:
        current = self.get(subscription_id)

        def mutate(sub: Subscription, now: datetime.datetime) -> None:
            if now <= sub.dates.end_date:
                raise InvalidTransitionError(
                    f"Subscription {sub.subscription_id} has not reached its end date",
                    {"subscriptionId": sub.subscription_id, "endDate": sub.dates.end_date},
                )
            was_trial = sub.status is SubscriptionStatus.TRIAL
            sub.status = SubscriptionStatus.EXPIRED
            sub.dates.data_retention_until = now + datetime.timedelta(days=self._data_retention_days)
            sub.append_history(
                HistoryAction.EXPIRED,
                now,
                performed_by,
                {
                    "endDate": sub.dates.end_date,
                    "dataRetentionUntil": sub.dates.data_retention_until,
                    "wasTrial": was_trial,
                },
            )

        return self._apply(current, Operation.MARK_EXPIRED, mutate)

    def record_payment(
        self,
        subscription_id: str,
        evidence: PaymentEvidence,
        performed_by: str = "system",
    ) -> PaymentOutcome:
        """
        Apply a payment once per ``evidence.transaction_id``.

        A transaction id already in the ledger returns the stored subscription
        with ``applied=False`` and writes nothing.
        """
        current = self.get(subscription_id)
        existing = current.payment.find_transaction(evidence.transaction_id)
        if existing is not None:
            logging.info(
                f"Subscription {subscription_id}: transaction {evidence.transaction_id} already applied, skipping"
            )
            return PaymentOutcome(current, evidence.transaction_id, applied=False, record=existing)

        def mutate(sub: Subscription, now: datetime.datetime) -> None:
            converting = sub.status is SubscriptionStatus.TRIAL
            plan = self._parse_paid_plan(evidence.plan_type or PlanType.MONTHLY.value) if converting else sub.plan.type
            required = self.price_for(plan, sub.pricing.discount, now)
            amount = Decimal(evidence.amount)
            if amount < required:
                raise InsufficientPaymentError(
                    f"Payment of {amount} is less than the price {required}",
                    {"amount": amount, "required": required, "transactionId": evidence.transaction_id},
                )

            if converting:
                self._start_paid_period(sub, plan, now)
                sub.renewal_settings.auto_renew = True
                sub.append_history(HistoryAction.TRIAL_CONVERTED, now, performed_by, {"planType": plan})
            else:
                sub.dates.end_date = max(now, sub.dates.end_date) + datetime.timedelta(days=plan_duration_days(plan))

            previous_status = sub.status
            sub.status = SubscriptionStatus.ACTIVE
            sub.payment.method = PaymentMethod(evidence.method)
            sub.payment.verified = True
            sub.payment.failed_payments = 0
            sub.payment.last_payment_date = now
            sub.payment.next_payment_date = sub.dates.end_date
            sub.renewal_settings.renewal_attempts = 0
            sub.renewal_settings.reminder_sent = False
            sub.payment.transactions.append(
                PaymentRecord(
                    transaction_id=evidence.transaction_id,
                    method=PaymentMethod(evidence.method),
                    amount=amount,
                    recorded_at=now,
                    new_end_date=sub.dates.end_date,
                    receipt_url=evidence.receipt_url,
                )
            )
            sub.append_history(
                HistoryAction.PAYMENT_SUCCEEDED,
                now,
                performed_by,
                {
                    "transactionId": evidence.transaction_id,
                    "amount": amount,
                    "method": evidence.method,
                    "previousStatus": previous_status,
                    "newEndDate": sub.dates.end_date,
                },
            )

        saved = self._apply(current, Operation.RECORD_PAYMENT, mutate)
        return PaymentOutcome(
            saved,
            evidence.transaction_id,
            applied=True,
            record=saved.payment.find_transaction(evidence.transaction_id),
        )

    def record_failure(
        self,
        subscription_id: str,
        reason: Optional[str] = None,
        performed_by: str = "system",
        failure_id: Optional[str] = None,
    ) -> Subscription:
        """
        Count a failed payment attempt.

        A ``failure_id`` already in the failure ledger returns the stored
        subscription and writes nothing.
        """
        current = self.get(subscription_id)
        if failure_id and current.payment.has_failure(failure_id):
            logging.info(f"Subscription {subscription_id}: failure {failure_id} already counted, skipping")
            return current

        def mutate(sub: Subscription, now: datetime.datetime) -> None:
            sub.payment.failed_payments += 1
            if failure_id:
                sub.payment.failed_transactions.append(failure_id)
            sub.renewal_settings.renewal_attempts += 1
            if (
                sub.status is SubscriptionStatus.ACTIVE
                and sub.payment.failed_payments >= self._failed_payment_threshold
            ):
                sub.status = SubscriptionStatus.PAST_DUE
            sub.append_history(
                HistoryAction.PAYMENT_FAILED,
                now,
                performed_by,
                {
                    "reason": reason,
                    "failureId": failure_id,
                    "failedPayments": sub.payment.failed_payments,
                    "status": sub.status,
                },
            )

        return self._apply(current, Operation.RECORD_FAILURE, mutate)

    def mark_reminder_sent(
        self,
        subscription_id: str,
        sent: bool = True,
        expected_version: Optional[int] = None,
    ) -> Subscription:
        """
        Set or clear the reminder flag with a compare-and-swap.

        :param expected_version: version the caller last read; a different
            stored version raises :class:`ConflictError`.
        :raises ConflictError: the flag already has the requested value, or
            the aggregate moved on.
        """
        current = self.get(subscription_id)
        if expected_version is not None and current.version != expected_version:
            raise ConflictError(
                f"Subscription {subscription_id} changed since it was read",
                {"subscriptionId": subscription_id, "expectedVersion": expected_version},
            )
        if current.renewal_settings.reminder_sent == sent:
            raise ConflictError(
                f"Reminder flag of subscription {subscription_id} is already {sent}",
                {"subscriptionId": subscription_id},
            )

        def mutate(sub: Subscription, now: datetime.datetime) -> None:
            sub.renewal_settings.reminder_sent = sent

        return self._apply(current, Operation.MARK_REMINDER_SENT, mutate)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _parse_paid_plan(self, plan_type) -> PlanType:
        plan = parse_plan_type(plan_type)
        if plan not in PAID_PLAN_TYPES:
            raise InvalidPlanTypeError(f"Plan type must be monthly or yearly, got {plan.value}", {"planType": plan.value})
        return plan

    def _start_paid_period(self, sub: Subscription, plan: PlanType, now: datetime.datetime) -> None:
        sub.plan.type = plan
        sub.pricing.base_price = Decimal(self._prices[plan.value])
        sub.pricing.billing_cycle = billing_cycle_for(plan)
        sub.dates.start_date = now
        sub.dates.end_date = compute_end_date(now, plan)
        sub.payment.next_payment_date = sub.dates.end_date
        sub.renewal_settings.reminder_sent = False

    @staticmethod
    def _rejection(op: Operation, sub: Subscription) -> InvalidTransitionError:
        details = {"subscriptionId": sub.subscription_id, "status": sub.status.value, "operation": op.value}
        if op is Operation.CANCEL and sub.status is SubscriptionStatus.CANCELED:
            return AlreadyCanceledError(f"Subscription {sub.subscription_id} is already canceled", details)
        if op is Operation.CONVERT_TRIAL_TO_PAID:
            return NotInTrialError(f"Subscription {sub.subscription_id} is not in trial", details)
        return InvalidTransitionError(
            f"Cannot {op.value} subscription {sub.subscription_id} in status {sub.status.value}", details
        )

    def _check_invariants(self, sub: Subscription, now: datetime.datetime) -> None:
        if sub.dates.end_date <= sub.dates.start_date:
            raise InvalidTransitionError(
                f"Subscription {sub.subscription_id} would end before it starts",
                {"startDate": sub.dates.start_date, "endDate": sub.dates.end_date},
            )
        price = apply_discount(sub.pricing.base_price, sub.pricing.discount, now)
        if not Decimal(0) <= price <= sub.pricing.base_price:
            raise ValidationError(f"Price {price} is outside [0, {sub.pricing.base_price}]")

    def _apply(self, current: Subscription, op: Operation, mutate: Mutation) -> Subscription:
        allowed = TRANSITIONS[op].get(current.status)
        if allowed is None:
            raise self._rejection(op, current)

        now = self._clock.now()
        updated = copy.deepcopy(current)
        mutate(updated, now)

        if updated.status not in allowed:
            raise InvalidTransitionError(
                f"{op.value} cannot move subscription {current.subscription_id} "
                f"from {current.status.value} to {updated.status.value}"
            )
        updated.dates.last_updated = now
        self._check_invariants(updated, now)

        saved = self._store.save(updated, current.version)
        logging.info(
            f"Subscription {saved.subscription_id}: {op.value} "
            f"({current.status.value} -> {saved.status.value}, version {saved.version})"
        )
        self._sync_shop(current, saved, now)
        return saved

    def _sync_shop(self, before: Subscription, after: Subscription, now: datetime.datetime) -> None:
        if self._shop_gateway is None or before.status is after.status:
            return
        if after.status is SubscriptionStatus.EXPIRED:
            shop_status = SHOP_SUSPENDED
        elif after.status is SubscriptionStatus.CANCELED and after.dates.end_date <= now:
            shop_status = SHOP_SUSPENDED
        elif before.status is SubscriptionStatus.PAST_DUE and after.status is SubscriptionStatus.ACTIVE:
            shop_status = SHOP_ACTIVE
        else:
            return

        # The subscription is already saved here; sync failures are only logged.
        try:
            call_with_timeout(
                self._shop_gateway.set_shop_status,
                self._integration_timeout,
                after.shop_id,
                shop_status,
                description=f"set shop {after.shop_id} status",
            )
        except FatalError:
            raise
        except Exception as e:
            logging.error(f"Failed to set shop {after.shop_id} to {shop_status}: {e}", exc_info=True)
