"""
Daily lifecycle jobs.

Each job scans the store for candidates and acts on each one through the
state machine or the payment reconciler. Items run on a bounded thread pool;
one item failing never stops the others. Only a :class:`FatalError` (the
store is gone) ends a run early.
"""
import datetime
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from deyncare_billing.aggregate import PaymentMethod, Subscription
from deyncare_billing.billing_calculator import days_remaining
from deyncare_billing.clock import SystemClock
from deyncare_billing.errors import (
    ConflictError,
    FatalError,
    JobAlreadyRunningError,
    NotFoundError,
    TransientIntegrationError,
)
from deyncare_billing.integration import call_with_timeout
from deyncare_billing.job_lock import JobLock
from deyncare_billing.notifier import EventType, Notifier
from deyncare_billing.payment_reconciler import PaymentReconciler
from deyncare_billing.shop_gateway import ShopGateway, ShopInfo
from deyncare_billing.state_machine import PaymentEvidence, SubscriptionStateMachine
from deyncare_billing.store import SubscriptionStore

TRIAL_REMINDERS = "trialReminders"
EXPIRY_REMINDERS = "expiryReminders"
AUTO_RENEWALS = "autoRenewals"
DEACTIVATE_EXPIRED = "deactivateExpired"
ALL_TASKS = "all"

JOB_NAMES = (TRIAL_REMINDERS, EXPIRY_REMINDERS, AUTO_RENEWALS, DEACTIVATE_EXPIRED)
TASKS = JOB_NAMES + (ALL_TASKS,)


class ItemResult(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class JobSummary:
    job: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    lease_denied: bool = False
    failures: List[Dict[str, str]] = field(default_factory=list)

    def count(self, result: ItemResult) -> None:
        self.processed += 1
        if result is ItemResult.SUCCEEDED:
            self.succeeded += 1
        elif result is ItemResult.FAILED:
            self.failed += 1
        else:
            self.skipped += 1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def renewal_reference(subscription: Subscription) -> str:
    """Payment reference of one renewal cycle; stable across reruns of the same cycle."""
    return f"auto_renewal_{subscription.subscription_id}_{subscription.dates.end_date:%Y%m%d}"


ItemHandler = Callable[[Subscription, datetime.datetime], ItemResult]


class LifecycleScheduler:
    """
    Runs the four lifecycle jobs.

    :param trial_reminder_days: how far ahead trial endings are announced.
    :param expiry_reminder_days: how far ahead paid period endings are announced.
    :param renewal_window_days: how far ahead auto-renewal is attempted.
    :param max_workers: subscriptions handled in parallel per job.
    :param integration_timeout: seconds allowed for each notifier or shop call.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        state_machine: SubscriptionStateMachine,
        reconciler: PaymentReconciler,
        notifier: Notifier,
        shop_gateway: ShopGateway,
        clock=None,
        job_lock: Optional[JobLock] = None,
        trial_reminder_days: int = 2,
        expiry_reminder_days: int = 5,
        renewal_window_days: int = 3,
        data_retention_days: int = 30,
        max_workers: int = 4,
        integration_timeout: float = 10.0,
    ) -> None:
        self._store = store
        self._state_machine = state_machine
        self._reconciler = reconciler
        self._notifier = notifier
        self._shop_gateway = shop_gateway
        self._clock = clock or SystemClock()
        self._job_lock = job_lock or JobLock(clock=self._clock)
        self._trial_reminder_days = trial_reminder_days
        self._expiry_reminder_days = expiry_reminder_days
        self._renewal_window_days = renewal_window_days
        self._data_retention_days = data_retention_days
        self._max_workers = max_workers
        self._integration_timeout = integration_timeout
        self._jobs = {
            TRIAL_REMINDERS: self.run_trial_reminders,
            EXPIRY_REMINDERS: self.run_expiry_reminders,
            AUTO_RENEWALS: self.run_auto_renewals,
            DEACTIVATE_EXPIRED: self.run_deactivate_expired,
        }

    def run(self, task: str = ALL_TASKS) -> List[JobSummary]:
        if task == ALL_TASKS:
            return [self._jobs[name]() for name in JOB_NAMES]
        if task not in self._jobs:
            raise ValueError(f"Unknown task {task!r}; expected one of {', '.join(TASKS)}")
        return [self._jobs[task]()]

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def run_trial_reminders(self) -> JobSummary:
        def candidates(now):
            return self._store.find_trials_ending_by(now + datetime.timedelta(days=self._trial_reminder_days), since=now)

        return self._run_job(TRIAL_REMINDERS, candidates, self._send_trial_reminder)

    def run_expiry_reminders(self) -> JobSummary:
        def candidates(now):
            return self._store.find_expiring_by(now + datetime.timedelta(days=self._expiry_reminder_days), since=now)

        return self._run_job(EXPIRY_REMINDERS, candidates, self._send_expiry_reminder)

    def run_auto_renewals(self) -> JobSummary:
        def candidates(now):
            return self._store.find_renewal_candidates(now + datetime.timedelta(days=self._renewal_window_days))

        return self._run_job(AUTO_RENEWALS, candidates, self._renew)

    def run_deactivate_expired(self) -> JobSummary:
        return self._run_job(DEACTIVATE_EXPIRED, self._store.find_expired_active, self._expire)

    # ------------------------------------------------------------------
    # Item handlers
    # ------------------------------------------------------------------

    def _send_trial_reminder(self, subscription: Subscription, now: datetime.datetime) -> ItemResult:
        shop = self._require_shop(subscription)
        if not self._claim_reminder(subscription):
            return ItemResult.SKIPPED
        self._notify_or_release(
            subscription,
            EventType.TRIAL_ENDING_REMINDER,
            {
                "shopName": shop.name,
                "email": shop.email,
                "subscriptionId": subscription.subscription_id,
                "trialEndsAt": subscription.dates.trial_ends_at,
                "daysLeft": days_remaining(subscription.dates.trial_ends_at, now),
            },
        )
        return ItemResult.SUCCEEDED

    def _send_expiry_reminder(self, subscription: Subscription, now: datetime.datetime) -> ItemResult:
        shop = self._require_shop(subscription)
        if not self._claim_reminder(subscription):
            return ItemResult.SKIPPED
        self._notify_or_release(
            subscription,
            EventType.SUBSCRIPTION_EXPIRY_REMINDER,
            {
                "shopName": shop.name,
                "email": shop.email,
                "subscriptionId": subscription.subscription_id,
                "planType": subscription.plan.type,
                "endDate": subscription.dates.end_date,
                "daysLeft": days_remaining(subscription.dates.end_date, now),
                "autoRenew": subscription.renewal_settings.auto_renew,
            },
        )
        return ItemResult.SUCCEEDED

    def _renew(self, subscription: Subscription, now: datetime.datetime) -> ItemResult:
        shop = self._require_shop(subscription)
        subscription_id = subscription.subscription_id
        reference = renewal_reference(subscription)

        if (
            subscription.payment.method is PaymentMethod.ONLINE
            and shop.billing_account
            and self._reconciler.has_gateway
        ):
            outcome = self._reconciler.charge(
                subscription_id,
                payer_phone=shop.phone,
                payer_account=shop.billing_account,
                reference=reference,
            )
            if not outcome.result.success:
                self._notify_best_effort(
                    outcome.subscription,
                    EventType.PAYMENT_FAILED,
                    {
                        "shopName": shop.name,
                        "subscriptionId": subscription_id,
                        "reason": outcome.result.response_message,
                        "failedPayments": outcome.subscription.payment.failed_payments,
                    },
                )
                logging.info(f"{AUTO_RENEWALS}: charge for {subscription_id} declined")
                return ItemResult.FAILED
            renewed, applied = outcome.subscription, outcome.applied
        else:
            amount = self._state_machine.price_for(subscription.plan.type, subscription.pricing.discount, now)
            outcome = self._reconciler.record_payment(
                subscription_id,
                PaymentEvidence(transaction_id=reference, method=subscription.payment.method, amount=amount),
            )
            renewed, applied = outcome.subscription, outcome.applied

        if not applied:
            return ItemResult.SKIPPED
        self._notify_best_effort(
            renewed,
            EventType.SUBSCRIPTION_RENEWED,
            {
                "shopName": shop.name,
                "subscriptionId": subscription_id,
                "planType": renewed.plan.type,
                "newEndDate": renewed.dates.end_date,
                "amount": renewed.payment.transactions[-1].amount if renewed.payment.transactions else None,
            },
        )
        return ItemResult.SUCCEEDED

    def _expire(self, subscription: Subscription, now: datetime.datetime) -> ItemResult:
        shop = self._require_shop(subscription)
        expired = self._state_machine.mark_expired(subscription.subscription_id)
        self._notify_best_effort(
            expired,
            EventType.SUBSCRIPTION_EXPIRED,
            {
                "shopName": shop.name,
                "subscriptionId": expired.subscription_id,
                "endDate": expired.dates.end_date,
                "dataRetentionUntil": expired.dates.data_retention_until,
                "gracePeriodDays": self._data_retention_days,
            },
        )
        return ItemResult.SUCCEEDED

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_shop(self, subscription: Subscription) -> ShopInfo:
        shop = call_with_timeout(
            self._shop_gateway.get_shop_by_id,
            self._integration_timeout,
            subscription.shop_id,
            description=f"shop lookup {subscription.shop_id}",
        )
        if shop is None:
            raise NotFoundError(
                f"Shop {subscription.shop_id} of subscription {subscription.subscription_id} not found",
                {"shopId": subscription.shop_id},
            )
        return shop

    def _claim_reminder(self, subscription: Subscription) -> bool:
        try:
            self._state_machine.mark_reminder_sent(
                subscription.subscription_id, True, expected_version=subscription.version
            )
        except ConflictError as e:
            logging.info(f"Reminder for {subscription.subscription_id} already claimed: {e}")
            return False
        return True

    def _notify(self, subscription: Subscription, event_type: EventType, payload: Dict[str, Any]) -> None:
        result = call_with_timeout(
            self._notifier.notify,
            self._integration_timeout,
            event_type,
            subscription.shop_id,
            payload,
            description=f"{event_type.value} notification for {subscription.subscription_id}",
        )
        if not result.success:
            raise TransientIntegrationError(
                f"Notifier rejected {event_type.value} for {subscription.subscription_id}: {result.error}",
                {"subscriptionId": subscription.subscription_id},
            )

    def _notify_or_release(self, subscription: Subscription, event_type: EventType, payload: Dict[str, Any]) -> None:
        try:
            self._notify(subscription, event_type, payload)
        except Exception:
            try:
                self._state_machine.mark_reminder_sent(subscription.subscription_id, False)
            except ConflictError as release_error:
                logging.error(f"Could not release reminder flag of {subscription.subscription_id}: {release_error}")
            raise

    def _notify_best_effort(self, subscription: Subscription, event_type: EventType, payload: Dict[str, Any]) -> None:
        # Called after the transition is saved; the item keeps its result.
        try:
            self._notify(subscription, event_type, payload)
        except FatalError:
            raise
        except Exception as e:
            logging.error(f"{event_type.value} notification for {subscription.subscription_id} failed: {e}", exc_info=True)

    def _run_job(
        self,
        name: str,
        find_candidates: Callable[[datetime.datetime], List[Subscription]],
        handle: ItemHandler,
    ) -> JobSummary:
        summary = JobSummary(job=name)
        try:
            with self._job_lock.hold(name):
                now = self._clock.now()
                candidates = find_candidates(now)
                logging.info(f"{name}: {len(candidates)} candidate(s) at {now.isoformat()}")
                if candidates:
                    self._process(name, candidates, handle, now, summary)
        except JobAlreadyRunningError as e:
            logging.warning(f"{name}: skipped, {e}")
            summary.lease_denied = True
            return summary

        logging.info(
            f"{name}: processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} skipped={summary.skipped}"
        )
        return summary

    def _process(
        self,
        name: str,
        candidates: List[Subscription],
        handle: ItemHandler,
        now: datetime.datetime,
        summary: JobSummary,
    ) -> None:
        with ThreadPoolExecutor(max_workers=min(self._max_workers, len(candidates)), thread_name_prefix=name) as executor:
            future_to_subscription = {executor.submit(handle, sub, now): sub for sub in candidates}

            for future in as_completed(future_to_subscription):
                subscription = future_to_subscription[future]
                try:
                    summary.count(future.result())
                except FatalError:
                    logging.error(f"{name}: aborting run, store unavailable", exc_info=True)
                    for pending in future_to_subscription:
                        pending.cancel()
                    raise
                except Exception as e:
                    logging.error(f"{name}: subscription {subscription.subscription_id} failed: {e}", exc_info=True)
                    summary.count(ItemResult.FAILED)
                    summary.failures.append({"subscriptionId": subscription.subscription_id, "error": str(e)})
