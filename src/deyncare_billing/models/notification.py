from sqlalchemy import JSON, Column, DateTime, Integer, String

from deyncare_billing.models.base import Base


class NotificationRecord(Base):
    """Outbox row; a separate delivery worker renders and sends it."""
    __tablename__ = 'notifications'

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String, nullable=False, index=True)
    shop_id = Column(String, nullable=False, index=True)
    payload = Column(JSON, nullable=False)
    status = Column(String, nullable=False, default='pending')
    created_at = Column(DateTime(timezone=True), nullable=False)
