"""
Subscription aggregate: lifecycle enums and the pydantic models that make up
one subscription.

The aggregate is only ever mutated by :mod:`deyncare_billing.state_machine`,
which works on a deep copy and hands the copy to the store. The store keeps
it as the camelCase JSON document produced by :func:`to_document`.
"""
import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from pydantic_core import to_jsonable_python


class SubscriptionStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED)


NON_TERMINAL_STATUSES = frozenset(s for s in SubscriptionStatus if not s.is_terminal)


class PlanType(str, Enum):
    TRIAL = "trial"
    MONTHLY = "monthly"
    YEARLY = "yearly"


PAID_PLAN_TYPES = frozenset([PlanType.MONTHLY, PlanType.YEARLY])


class DiscountType(str, Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"


class PaymentMethod(str, Enum):
    OFFLINE = "offline"
    EVC_PLUS = "evc_plus"
    ONLINE = "online"
    FREE = "free"


class HistoryAction(str, Enum):
    CREATED = "created"
    ACTIVATED = "activated"
    RENEWED = "renewed"
    UPDATED = "updated"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    CANCELED = "canceled"
    EXPIRED = "expired"
    PLAN_CHANGED = "plan_changed"
    TRIAL_STARTED = "trial_started"
    TRIAL_ENDED = "trial_ended"
    TRIAL_CONVERTED = "trial_converted"


class CancellationReason(str, Enum):
    COST = "cost"
    FEATURES = "features"
    COMPETITOR = "competitor"
    USABILITY = "usability"
    SUPPORT = "support"
    OTHER = "other"


class DisplayStatus(str, Enum):
    DELETED = "deleted"
    CANCELED = "canceled"
    TRIAL = "trial"
    TRIAL_ENDING_SOON = "trial_ending_soon"
    TRIAL_EXPIRED = "trial_expired"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"
    PAYMENT_ISSUE = "payment_issue"




class AggregateModel(BaseModel):
    """Base of every aggregate part: snake_case in Python, camelCase in the stored document."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Plan(AggregateModel):
    type: PlanType
    name: str = "standard"


class Discount(AggregateModel):
    type: DiscountType
    value: Decimal
    active: bool = True
    expires_at: Optional[datetime.datetime] = None
    code: Optional[str] = None


class Pricing(AggregateModel):
    base_price: Decimal
    billing_cycle: str
    currency: str = "USD"
    discount: Optional[Discount] = None


class PaymentRecord(AggregateModel):
    transaction_id: str
    method: PaymentMethod
    amount: Decimal
    recorded_at: datetime.datetime
    new_end_date: datetime.datetime
    receipt_url: Optional[str] = None


class Payment(AggregateModel):
    method: PaymentMethod
    verified: bool = False
    last_payment_date: Optional[datetime.datetime] = None
    next_payment_date: Optional[datetime.datetime] = None
    failed_payments: int = 0
    transactions: List[PaymentRecord] = Field(default_factory=list)
    # Keys of failures already counted in ``failed_payments``.
    failed_transactions: List[str] = Field(default_factory=list)

    def find_transaction(self, transaction_id: str) -> Optional[PaymentRecord]:
        for record in self.transactions:
            if record.transaction_id == transaction_id:
                return record
        return None

    def has_failure(self, failure_id: str) -> bool:
        return failure_id in self.failed_transactions


class Dates(AggregateModel):
    start_date: datetime.datetime
    end_date: datetime.datetime
    last_updated: datetime.datetime
    trial_ends_at: Optional[datetime.datetime] = None
    canceled_at: Optional[datetime.datetime] = None
    data_retention_until: Optional[datetime.datetime] = None


class RenewalSettings(AggregateModel):
    auto_renew: bool = True
    reminder_sent: bool = False
    renewal_attempts: int = 0


class Cancellation(AggregateModel):
    reason: Optional[CancellationReason] = None
    feedback: Optional[str] = None
    by_user_id: Optional[str] = None


class HistoryEntry(AggregateModel):
    model_config = ConfigDict(frozen=True)

    action: HistoryAction
    date: datetime.datetime
    performed_by: str = "system"
    details: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("details", mode="before")
    @classmethod
    def _jsonable_details(cls, value: Any) -> Any:
        # Stored as JSON primitives so a reloaded entry equals the one appended.
        return to_jsonable_python(value or {})


class PreviousPlan(AggregateModel):
    name: str
    type: PlanType
    start_date: datetime.datetime
    end_date: datetime.datetime


class Metadata(AggregateModel):
    notes: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    previous_plans: List[PreviousPlan] = Field(default_factory=list)


class Subscription(AggregateModel):
    subscription_id: str
    shop_id: str
    plan: Plan
    pricing: Pricing
    status: SubscriptionStatus
    payment: Payment
    dates: Dates
    renewal_settings: RenewalSettings = Field(default_factory=RenewalSettings)
    cancellation: Cancellation = Field(default_factory=Cancellation)
    history: Tuple[HistoryEntry, ...] = ()
    metadata: Metadata = Field(default_factory=Metadata)
    is_deleted: bool = False
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def is_in_trial(self, now: datetime.datetime) -> bool:
        if self.status is not SubscriptionStatus.TRIAL or self.dates.trial_ends_at is None:
            return False
        return now <= self.dates.trial_ends_at

    def is_running(self, now: datetime.datetime) -> bool:
        """Not terminal, not deleted and inside the paid/trial period."""
        if self.is_deleted or self.is_terminal:
            return False
        return now <= self.dates.end_date

    def append_history(
        self,
        action: HistoryAction,
        date: datetime.datetime,
        performed_by: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> HistoryEntry:
        entry = HistoryEntry(action=action, date=date, performed_by=performed_by, details=details or {})
        self.history = self.history + (entry,)
        return entry


def to_document(subscription: Subscription) -> Dict[str, Any]:
    """JSON compatible document of the aggregate. ``version`` is owned by the store."""
    return subscription.model_dump(mode="json", by_alias=True, exclude={"version"})


def from_document(document: Dict[str, Any], version: int = 0) -> Subscription:
    subscription = Subscription.model_validate(document)
    subscription.version = version
    return subscription
