import copy
import datetime
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import sessionmaker

from deyncare_billing.aggregate import (
    NON_TERMINAL_STATUSES,
    Subscription,
    SubscriptionStatus,
    from_document,
    to_document,
)
from deyncare_billing.errors import ConflictError, StoreUnavailableError
from deyncare_billing.models.subscription import SubscriptionRecord


class SubscriptionStore(ABC):
    """
    Persistence for the subscription aggregate.

    Reads return detached aggregates; writes go through :meth:`save`, which is
    a compare-and-swap on ``version``. Soft-deleted subscriptions are never
    returned.
    """

    @abstractmethod
    def find_by_id(self, subscription_id: str) -> Optional[Subscription]:
        ...

    @abstractmethod
    def find_by_shop(self, shop_id: str) -> List[Subscription]:
        ...

    @abstractmethod
    def find_trials_ending_by(
        self, date: datetime.datetime, since: Optional[datetime.datetime] = None
    ) -> List[Subscription]:
        """Trials with ``trialEndsAt`` in ``[since, date]`` whose reminder was not sent."""

    @abstractmethod
    def find_expiring_by(
        self, date: datetime.datetime, since: Optional[datetime.datetime] = None
    ) -> List[Subscription]:
        """Active subscriptions with ``endDate`` in ``[since, date]`` whose reminder was not sent."""

    @abstractmethod
    def find_renewal_candidates(self, date: datetime.datetime) -> List[Subscription]:
        """Active, auto-renewing subscriptions with ``endDate`` on or before ``date``."""

    @abstractmethod
    def find_expired_active(self, now: datetime.datetime) -> List[Subscription]:
        """
        Non-terminal subscriptions whose ``endDate`` has passed and that the
        renewal job will not pick up: auto-renew is off, or the status is not
        ``active``.
        """

    @abstractmethod
    def save(self, subscription: Subscription, expected_version: int) -> Subscription:
        """
        Persist ``subscription`` if the stored version still equals
        ``expected_version`` (0 means "must not exist yet").

        :return: a copy carrying the new version.
        :raises ConflictError: the stored version moved on.
        """


class SqlAlchemySubscriptionStore(SubscriptionStore):

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _guard(self, operation: str):
        try:
            yield
        except (OperationalError, InterfaceError) as e:
            logging.error(f"Subscription store unavailable during {operation}: {e}", exc_info=True)
            raise StoreUnavailableError(f"Subscription store unavailable during {operation}") from e

    def _load(self, record: SubscriptionRecord) -> Subscription:
        return from_document(record.document, version=record.version)

    def _query(self, operation: str, *criteria) -> List[Subscription]:
        stmt = select(SubscriptionRecord).where(SubscriptionRecord.is_deleted.is_(False), *criteria)
        with self._guard(operation):
            with self._session_factory() as session:
                return [self._load(record) for record in session.scalars(stmt).all()]

    def find_by_id(self, subscription_id: str) -> Optional[Subscription]:
        found = self._query("find_by_id", SubscriptionRecord.subscription_id == subscription_id)
        return found[0] if found else None

    def find_by_shop(self, shop_id: str) -> List[Subscription]:
        found = self._query("find_by_shop", SubscriptionRecord.shop_id == shop_id)
        return sorted(found, key=lambda s: s.dates.start_date, reverse=True)

    def find_trials_ending_by(self, date, since=None) -> List[Subscription]:
        criteria = [
            SubscriptionRecord.status == SubscriptionStatus.TRIAL.value,
            SubscriptionRecord.reminder_sent.is_(False),
            SubscriptionRecord.trial_ends_at.is_not(None),
            SubscriptionRecord.trial_ends_at <= date,
        ]
        if since is not None:
            criteria.append(SubscriptionRecord.trial_ends_at >= since)
        return self._query("find_trials_ending_by", *criteria)

    def find_expiring_by(self, date, since=None) -> List[Subscription]:
        criteria = [
            SubscriptionRecord.status == SubscriptionStatus.ACTIVE.value,
            SubscriptionRecord.reminder_sent.is_(False),
            SubscriptionRecord.end_date <= date,
        ]
        if since is not None:
            criteria.append(SubscriptionRecord.end_date >= since)
        return self._query("find_expiring_by", *criteria)

    def find_renewal_candidates(self, date) -> List[Subscription]:
        return self._query(
            "find_renewal_candidates",
            SubscriptionRecord.status == SubscriptionStatus.ACTIVE.value,
            SubscriptionRecord.auto_renew.is_(True),
            SubscriptionRecord.end_date <= date,
        )

    def find_expired_active(self, now) -> List[Subscription]:
        return self._query(
            "find_expired_active",
            SubscriptionRecord.status.in_([status.value for status in NON_TERMINAL_STATUSES]),
            SubscriptionRecord.end_date < now,
            or_(
                SubscriptionRecord.auto_renew.is_(False),
                SubscriptionRecord.status != SubscriptionStatus.ACTIVE.value,
            ),
        )

    @staticmethod
    def _columns(subscription: Subscription) -> Dict[str, Any]:
        return {
            "shop_id": subscription.shop_id,
            "status": subscription.status.value,
            "plan_type": subscription.plan.type.value,
            "end_date": subscription.dates.end_date,
            "trial_ends_at": subscription.dates.trial_ends_at,
            "auto_renew": subscription.renewal_settings.auto_renew,
            "reminder_sent": subscription.renewal_settings.reminder_sent,
            "is_deleted": subscription.is_deleted,
            "document": to_document(subscription),
        }

    def save(self, subscription: Subscription, expected_version: int) -> Subscription:
        subscription_id = subscription.subscription_id
        values = self._columns(subscription)
        with self._guard("save"):
            with self._session_factory() as session:
                if expected_version == 0:
                    session.add(SubscriptionRecord(subscription_id=subscription_id, version=1, **values))
                    try:
                        session.commit()
                    except IntegrityError as e:
                        session.rollback()
                        raise ConflictError(
                            f"Subscription {subscription_id} already exists",
                            {"subscriptionId": subscription_id},
                        ) from e
                else:
                    result = session.execute(
                        update(SubscriptionRecord)
                        .where(
                            SubscriptionRecord.subscription_id == subscription_id,
                            SubscriptionRecord.version == expected_version,
                        )
                        .values(version=expected_version + 1, **values)
                    )
                    if result.rowcount != 1:
                        session.rollback()
                        raise ConflictError(
                            f"Subscription {subscription_id} was modified concurrently",
                            {"subscriptionId": subscription_id, "expectedVersion": expected_version},
                        )
                    session.commit()

        saved = copy.deepcopy(subscription)
        saved.version = expected_version + 1
        return saved
