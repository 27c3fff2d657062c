import datetime
from decimal import Decimal

import pytest

from deyncare_billing.aggregate import PaymentMethod, SubscriptionStatus
from deyncare_billing.errors import StoreUnavailableError
from deyncare_billing.job_lock import JobLock
from deyncare_billing.notifier import EventType
from deyncare_billing.payment_gateway import GatewayResult, PaymentGateway
from deyncare_billing.payment_reconciler import PaymentReconciler
from deyncare_billing.scheduler import (
    AUTO_RENEWALS,
    DEACTIVATE_EXPIRED,
    EXPIRY_REMINDERS,
    TRIAL_REMINDERS,
    LifecycleScheduler,
    renewal_reference,
)
from deyncare_billing.shop_gateway import ShopInfo
from deyncare_billing.state_machine import PaymentEvidence


class DecliningGateway(PaymentGateway):
    def __init__(self):
        self.requests = []

    def charge(self, request):
        self.requests.append(request)
        return GatewayResult(False, None, "card_declined", "Your card was declined.")


def make_scheduler(store, state_machine, reconciler, notifier, shop_gateway, clock, **kwargs):
    return LifecycleScheduler(
        store, state_machine, reconciler, notifier, shop_gateway, clock=clock, integration_timeout=0.5, **kwargs
    )


def test_no_candidates_is_a_successful_noop(scheduler, notifier):
    summary = scheduler.run_trial_reminders()
    assert (summary.processed, summary.succeeded, summary.failed, summary.skipped) == (0, 0, 0, 0)
    assert notifier.sent == []


def test_trial_reminders_are_sent_once(scheduler, state_machine, notifier, clock):
    sub = state_machine.create("shop_1", "trial")
    clock.advance(days=12, hours=1)

    first = scheduler.run_trial_reminders()
    second = scheduler.run_trial_reminders()

    assert first.succeeded == 1
    assert second.processed == 0
    sent = notifier.events(EventType.TRIAL_ENDING_REMINDER)
    assert len(sent) == 1
    assert sent[0][1] == "shop_1"
    assert sent[0][2]["daysLeft"] == 2
    assert state_machine.get(sub.subscription_id).renewal_settings.reminder_sent is True


def test_trial_reminder_outside_window_is_not_sent(scheduler, state_machine, notifier, clock):
    state_machine.create("shop_1", "trial")
    clock.advance(days=5)
    assert scheduler.run_trial_reminders().processed == 0
    assert notifier.sent == []


def test_failed_notification_releases_reminder_flag(scheduler, state_machine, notifier, clock):
    sub = state_machine.create("shop_1", "trial")
    clock.advance(days=13)
    notifier.fail_for.add("shop_1")

    failed = scheduler.run_trial_reminders()

    assert failed.failed == 1
    assert failed.failures[0]["subscriptionId"] == sub.subscription_id
    assert state_machine.get(sub.subscription_id).renewal_settings.reminder_sent is False

    notifier.fail_for.clear()
    retried = scheduler.run_trial_reminders()
    assert retried.succeeded == 1
    assert len(notifier.events(EventType.TRIAL_ENDING_REMINDER)) == 1


def test_notifier_timeout_fails_only_its_item(scheduler, state_machine, notifier, clock):
    slow = state_machine.create("shop_1", "trial")
    state_machine.create("shop_2", "trial")
    clock.advance(days=13)
    notifier.delay_for["shop_1"] = 1.5

    summary = scheduler.run_trial_reminders()

    assert (summary.processed, summary.succeeded, summary.failed) == (2, 1, 1)
    assert summary.failures[0]["subscriptionId"] == slow.subscription_id
    assert state_machine.get(slow.subscription_id).renewal_settings.reminder_sent is False


def test_missing_shop_counts_as_failed(scheduler, state_machine, clock):
    state_machine.create("shop_404", "trial")
    state_machine.create("shop_1", "trial")
    clock.advance(days=13)

    summary = scheduler.run_trial_reminders()

    assert summary.failed == 1
    assert summary.succeeded == 1


def test_expiry_reminders(scheduler, state_machine, notifier, clock):
    state_machine.create("shop_1", "monthly")
    state_machine.create("shop_2", "yearly")
    clock.advance(days=26)

    summary = scheduler.run_expiry_reminders()

    assert summary.succeeded == 1
    sent = notifier.events(EventType.SUBSCRIPTION_EXPIRY_REMINDER)
    assert [s[1] for s in sent] == ["shop_1"]
    assert sent[0][2]["daysLeft"] == 4


def test_auto_renewal_without_gateway_records_system_payment(scheduler, state_machine, notifier, clock):
    sub = state_machine.create("shop_1", "monthly")
    clock.advance(days=28)

    summary = scheduler.run_auto_renewals()

    renewed = state_machine.get(sub.subscription_id)
    assert summary.succeeded == 1
    assert renewed.dates.end_date == sub.dates.end_date + datetime.timedelta(days=30)
    assert renewed.payment.transactions[0].transaction_id == renewal_reference(sub)
    assert renewed.payment.transactions[0].amount == Decimal("10.00")
    assert len(notifier.events(EventType.SUBSCRIPTION_RENEWED)) == 1

    again = scheduler.run_auto_renewals()
    assert again.processed == 0


def test_auto_renewal_reference_is_stable_per_cycle(reconciler, state_machine, clock):
    sub = state_machine.create("shop_1", "monthly")
    clock.advance(days=28)
    reference = renewal_reference(sub)

    evidence = PaymentEvidence(reference, PaymentMethod.OFFLINE, Decimal("10"))
    assert reconciler.record_payment(sub.subscription_id, evidence).applied is True
    assert reconciler.record_payment(sub.subscription_id, evidence).applied is False
    assert reference == f"auto_renewal_{sub.subscription_id}_20250131"


def test_auto_renewal_decline_records_failure_and_notifies(store, state_machine, notifier, shop_gateway, clock):
    gateway = DecliningGateway()
    reconciler = PaymentReconciler(state_machine, payment_gateway=gateway, timeout=1.0)
    scheduler = make_scheduler(store, state_machine, reconciler, notifier, shop_gateway, clock)
    shop_gateway.shops["shop_1"] = ShopInfo("shop_1", "Shop 1", phone="252610000001", billing_account="cus_1")
    sub = state_machine.create("shop_1", "monthly", payment_method="online")
    clock.advance(days=29)

    summary = scheduler.run_auto_renewals()

    assert summary.failed == 1
    assert gateway.requests[0].reference == renewal_reference(sub)
    assert gateway.requests[0].payer_account == "cus_1"
    assert state_machine.get(sub.subscription_id).payment.failed_payments == 1
    assert notifier.events(EventType.PAYMENT_FAILED)[0][2]["reason"] == "Your card was declined."


def test_auto_renewal_skips_non_renewing(scheduler, state_machine, clock):
    state_machine.create("shop_1", "monthly", auto_renew=False)
    state_machine.create("shop_2", "trial")
    clock.advance(days=28)
    assert scheduler.run_auto_renewals().processed == 0


def test_deactivate_expired(scheduler, state_machine, notifier, shop_gateway, clock):
    lapsed = state_machine.create("shop_1", "monthly", auto_renew=False)
    renewing = state_machine.create("shop_2", "monthly")
    past_due = state_machine.create("shop_3", "monthly")
    for _ in range(3):
        state_machine.record_failure(past_due.subscription_id, "declined")
    clock.advance(days=31)

    summary = scheduler.run_deactivate_expired()

    assert summary.succeeded == 2
    assert state_machine.get(lapsed.subscription_id).status is SubscriptionStatus.EXPIRED
    assert state_machine.get(past_due.subscription_id).status is SubscriptionStatus.EXPIRED
    assert state_machine.get(renewing.subscription_id).status is SubscriptionStatus.ACTIVE
    expired_events = notifier.events(EventType.SUBSCRIPTION_EXPIRED)
    assert {e[1] for e in expired_events} == {"shop_1", "shop_3"}
    assert expired_events[0][2]["gracePeriodDays"] == 30
    assert ("shop_1", "suspended") in shop_gateway.status_changes


def test_overlapping_run_is_skipped(store, state_machine, reconciler, notifier, shop_gateway, clock):
    job_lock = JobLock(clock=clock)
    scheduler = make_scheduler(store, state_machine, reconciler, notifier, shop_gateway, clock, job_lock=job_lock)
    state_machine.create("shop_1", "trial")
    clock.advance(days=13)

    with job_lock.hold(TRIAL_REMINDERS):
        summary = scheduler.run_trial_reminders()

    assert summary.lease_denied is True
    assert summary.processed == 0
    assert notifier.sent == []


def test_store_outage_aborts_the_run(scheduler, store, monkeypatch):
    def unavailable(*args, **kwargs):
        raise StoreUnavailableError("database is down")

    monkeypatch.setattr(store, "find_expired_active", unavailable)
    with pytest.raises(StoreUnavailableError):
        scheduler.run_deactivate_expired()


def test_fatal_item_error_aborts_the_run(scheduler, state_machine, clock, monkeypatch):
    state_machine.create("shop_1", "monthly", auto_renew=False)
    clock.advance(days=31)

    def unavailable(*args, **kwargs):
        raise StoreUnavailableError("database is down")

    monkeypatch.setattr(state_machine, "mark_expired", unavailable)
    with pytest.raises(StoreUnavailableError):
        scheduler.run_deactivate_expired()


def test_run_all_and_unknown_task(scheduler):
    summaries = scheduler.run("all")
    assert [s.job for s in summaries] == [TRIAL_REMINDERS, EXPIRY_REMINDERS, AUTO_RENEWALS, DEACTIVATE_EXPIRED]
    with pytest.raises(ValueError):
        scheduler.run("everything")


def test_auto_renewal_racing_a_manual_payment_extends_once(scheduler, state_machine, store, clock, monkeypatch):
    sub = state_machine.create("shop_1", "monthly")
    clock.advance(days=28)
    original_save = store.save

    def save_after_manual_payment(subscription, expected_version):
        monkeypatch.setattr(store, "save", original_save)
        state_machine.record_payment(
            sub.subscription_id, PaymentEvidence("manual_1", PaymentMethod.EVC_PLUS, Decimal("10"))
        )
        return original_save(subscription, expected_version)

    monkeypatch.setattr(store, "save", save_after_manual_payment)
    summary = scheduler.run_auto_renewals()

    assert summary.failed == 1
    renewed = state_machine.get(sub.subscription_id)
    assert renewed.dates.end_date == sub.dates.end_date + datetime.timedelta(days=30)
    assert [t.transaction_id for t in renewed.payment.transactions] == ["manual_1"]
