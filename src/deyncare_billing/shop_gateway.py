import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from deyncare_billing.cache import Cache
from deyncare_billing.errors import NotFoundError, TransientIntegrationError
from deyncare_billing.models.shop import ShopRecord

SHOP_ACTIVE = "active"
SHOP_SUSPENDED = "suspended"


@dataclass(frozen=True)
class ShopInfo:
    shop_id: str
    name: str
    status: str = SHOP_ACTIVE
    email: Optional[str] = None
    phone: Optional[str] = None
    billing_account: Optional[str] = None


class ShopGateway(ABC):
    """Tenant lookups and status changes. The shop itself is owned elsewhere."""

    @abstractmethod
    def get_shop_by_id(self, shop_id: str) -> Optional[ShopInfo]:
        ...

    @abstractmethod
    def set_shop_status(self, shop_id: str, status: str) -> None:
        ...


class SqlAlchemyShopGateway(ShopGateway):

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _guard(self, operation: str):
        try:
            yield
        except SQLAlchemyError as e:
            logging.error(f"Shop lookup failed during {operation}: {e}", exc_info=True)
            raise TransientIntegrationError(f"Shop gateway error during {operation}") from e

    @staticmethod
    def _to_info(record: ShopRecord) -> ShopInfo:
        return ShopInfo(
            shop_id=record.shop_id,
            name=record.name,
            status=record.status,
            email=record.email,
            phone=record.phone,
            billing_account=record.billing_account,
        )

    def get_shop_by_id(self, shop_id: str) -> Optional[ShopInfo]:
        with self._guard("get_shop_by_id"):
            with self._session_factory() as session:
                record = session.scalars(select(ShopRecord).where(ShopRecord.shop_id == shop_id)).first()
                return self._to_info(record) if record else None

    def set_shop_status(self, shop_id: str, status: str) -> None:
        with self._guard("set_shop_status"):
            with self._session_factory() as session:
                record = session.get(ShopRecord, shop_id)
                if record is None:
                    raise NotFoundError(f"Shop {shop_id} not found", {"shopId": shop_id})
                record.status = status
                session.commit()
        logging.info(f"Shop {shop_id} status set to {status}")


class CachingShopGateway(ShopGateway):
    """
    Read-through cache in front of another gateway.

    Status writes go to the wrapped gateway and drop the cached entry, so the
    next lookup sees the new status.
    """

    def __init__(self, inner: ShopGateway, cache: Cache) -> None:
        self._inner = inner
        self._cache = cache

    def get_shop_by_id(self, shop_id: str) -> Optional[ShopInfo]:
        cached = self._cache.get(shop_id)
        if cached is not None:
            return cached
        shop = self._inner.get_shop_by_id(shop_id)
        if shop is not None:
            self._cache.put(shop_id, shop)
        return shop

    def set_shop_status(self, shop_id: str, status: str) -> None:
        try:
            self._inner.set_shop_status(shop_id, status)
        finally:
            self._cache.remove(shop_id)
