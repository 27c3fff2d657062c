from sqlalchemy import Column, DateTime, String

from deyncare_billing.models.base import Base


class JobLeaseRecord(Base):
    __tablename__ = 'job_leases'

    job_name = Column(String, primary_key=True, nullable=False)
    holder = Column(String, nullable=False)
    acquired_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
