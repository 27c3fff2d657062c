from sqlalchemy import Column, DateTime, String, func

from deyncare_billing.models.base import Base


class ShopRecord(Base):
    """Billing-relevant slice of a tenant. The shop itself is owned by the shop service."""
    __tablename__ = 'shops'

    shop_id = Column(String, primary_key=True, nullable=False)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    status = Column(String, nullable=False, default='active')
    billing_account = Column(String, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self) -> str:
        return f"<ShopRecord(id={self.shop_id}, status={self.status})>"
