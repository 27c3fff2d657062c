from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, func

from deyncare_billing.models.base import Base


class SubscriptionRecord(Base):
    """
    Persisted subscription aggregate.

    The full aggregate lives in ``document``; the flat columns duplicate the
    fields the scheduler scans on so they can be indexed.
    """
    __tablename__ = 'subscriptions'

    subscription_id = Column(String, primary_key=True, unique=True, nullable=False)
    shop_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, index=True)
    plan_type = Column(String, nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False, index=True)
    trial_ends_at = Column(DateTime(timezone=True), nullable=True, index=True)
    auto_renew = Column(Boolean, nullable=False, default=True)
    reminder_sent = Column(Boolean, nullable=False, default=False)
    is_deleted = Column(Boolean, nullable=False, default=False)
    version = Column(Integer, nullable=False, default=1)
    document = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self) -> str:
        return f"<SubscriptionRecord(id={self.subscription_id}, status={self.status}, version={self.version})>"
