import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from pydantic_core import to_jsonable_python
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from deyncare_billing.clock import SystemClock
from deyncare_billing.models.notification import NotificationRecord


class EventType(str, Enum):
    TRIAL_ENDING_REMINDER = "trial_ending_reminder"
    SUBSCRIPTION_EXPIRY_REMINDER = "subscription_expiry_reminder"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    PAYMENT_FAILED = "payment_failed"


@dataclass(frozen=True)
class NotifyResult:
    success: bool
    error: Optional[str] = None


class Notifier(ABC):

    @abstractmethod
    def notify(self, event_type: EventType, shop_id: str, payload: Dict[str, Any]) -> NotifyResult:
        """
        Hand a notification to the delivery side.

        :param event_type: which template the delivery side renders.
        :param shop_id: recipient tenant.
        :param payload: template variables; converted to JSON primitives.
        :return: whether the notification was accepted.
        """


class OutboxNotifier(Notifier):
    """Writes notifications to the ``notifications`` outbox table for a separate sender to deliver."""

    def __init__(self, session_factory: sessionmaker, clock=None) -> None:
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    def notify(self, event_type: EventType, shop_id: str, payload: Dict[str, Any]) -> NotifyResult:
        record = NotificationRecord(
            event_type=EventType(event_type).value,
            shop_id=shop_id,
            payload=to_jsonable_python(payload),
            status="pending",
            created_at=self._clock.now(),
        )
        try:
            with self._session_factory() as session:
                session.add(record)
                session.commit()
        except SQLAlchemyError as e:
            logging.error(f"Failed to enqueue {record.event_type} for shop {shop_id}: {e}", exc_info=True)
            return NotifyResult(success=False, error=str(e))
        logging.info(f"Queued {record.event_type} notification for shop {shop_id}")
        return NotifyResult(success=True)
