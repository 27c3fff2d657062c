import datetime
import json
from decimal import Decimal

import pytest
from pydantic import ValidationError as ModelValidationError

from deyncare_billing.aggregate import (
    HistoryAction,
    PaymentMethod,
    PaymentRecord,
    PlanType,
    SubscriptionStatus,
    from_document,
    to_document,
)
from deyncare_billing.builder import build_subscription, generate_subscription_id
from deyncare_billing.config import BillingSettings
from deyncare_billing.errors import InvalidPlanTypeError, ValidationError

NOW = datetime.datetime(2025, 1, 1, 9, 0, tzinfo=datetime.timezone.utc)
PRICES = BillingSettings().plan_prices


def test_build_trial_subscription():
    sub = build_subscription("shop_1", "trial", NOW, PRICES)

    assert sub.subscription_id.startswith("sub_")
    assert sub.status is SubscriptionStatus.TRIAL
    assert sub.plan.type is PlanType.TRIAL
    assert sub.pricing.base_price == Decimal("0")
    assert sub.payment.method is PaymentMethod.FREE
    assert sub.dates.end_date == NOW + datetime.timedelta(days=14)
    assert sub.dates.trial_ends_at == sub.dates.end_date
    assert sub.renewal_settings.auto_renew is False
    assert sub.version == 0
    assert [entry.action for entry in sub.history] == [HistoryAction.TRIAL_STARTED]


def test_build_paid_subscription():
    sub = build_subscription("shop_1", PlanType.YEARLY, NOW, PRICES, performed_by="user_9")

    assert sub.status is SubscriptionStatus.ACTIVE
    assert sub.pricing.base_price == Decimal("8")
    assert sub.pricing.billing_cycle == "yearly"
    assert sub.dates.trial_ends_at is None
    assert sub.renewal_settings.auto_renew is True
    assert sub.history[0].action is HistoryAction.CREATED
    assert sub.history[0].performed_by == "user_9"


def test_build_rejects_bad_input():
    with pytest.raises(InvalidPlanTypeError):
        build_subscription("shop_1", "weekly", NOW, PRICES)
    with pytest.raises(ValidationError):
        build_subscription("  ", "trial", NOW, PRICES)


def test_generated_ids_are_unique():
    assert len({generate_subscription_id() for _ in range(100)}) == 100


def test_history_entries_are_frozen():
    sub = build_subscription("shop_1", "trial", NOW, PRICES)
    first = sub.history
    sub.append_history(HistoryAction.UPDATED, NOW, "system", {"when": NOW, "amount": Decimal("1.5")})

    assert len(first) == 1
    assert len(sub.history) == 2
    assert sub.history[0] is first[0]
    assert sub.history[1].details == {"when": "2025-01-01T09:00:00Z", "amount": "1.5"}
    with pytest.raises(ModelValidationError):
        sub.history[0].action = HistoryAction.EXPIRED


def test_document_codec_preserves_aggregate():
    sub = build_subscription("shop_1", "monthly", NOW, PRICES, notes="migrated")
    sub.payment.transactions.append(
        PaymentRecord(
            transaction_id="txn_1",
            method=PaymentMethod.EVC_PLUS,
            amount=Decimal("10.00"),
            recorded_at=NOW,
            new_end_date=sub.dates.end_date,
            receipt_url="https://r/1",
        )
    )

    document = to_document(sub)
    json.dumps(document)
    restored = from_document(document, version=4)

    assert restored.version == 4
    assert to_document(restored) == document
    assert restored.payment.find_transaction("txn_1").amount == Decimal("10.00")
    assert restored.dates.start_date.tzinfo is not None


def test_document_uses_camel_case_keys():
    sub = build_subscription("shop_1", "trial", NOW, PRICES)

    document = to_document(sub)

    assert document["subscriptionId"] == sub.subscription_id
    assert document["dates"]["trialEndsAt"] == "2025-01-15T09:00:00Z"
    assert document["renewalSettings"] == {"autoRenew": False, "reminderSent": False, "renewalAttempts": 0}
    assert document["payment"]["failedTransactions"] == []
    assert "version" not in document
