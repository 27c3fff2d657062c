import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from deyncare_billing.cache import Cache, EvictionPolicy
from deyncare_billing.clock import SystemClock
from deyncare_billing.config import BillingSettings
from deyncare_billing.job_lock import JobLock, SqlAlchemyJobLease
from deyncare_billing.models.base import create_db_engine, create_session_factory, init_db
from deyncare_billing.notifier import Notifier, OutboxNotifier
from deyncare_billing.payment_gateway import PaymentGateway, StripePaymentGateway
from deyncare_billing.payment_reconciler import PaymentReconciler
from deyncare_billing.scheduler import LifecycleScheduler
from deyncare_billing.shop_gateway import CachingShopGateway, ShopGateway, SqlAlchemyShopGateway
from deyncare_billing.state_machine import SubscriptionStateMachine
from deyncare_billing.store import SqlAlchemySubscriptionStore, SubscriptionStore


@dataclass
class Services:
    """Everything one process needs, wired once. ``close()`` releases the owned resources."""
    settings: BillingSettings
    engine: Engine
    session_factory: sessionmaker
    store: SubscriptionStore
    shop_cache: Cache
    shop_gateway: ShopGateway
    notifier: Notifier
    payment_gateway: Optional[PaymentGateway]
    state_machine: SubscriptionStateMachine
    reconciler: PaymentReconciler
    scheduler: LifecycleScheduler
    owns_engine: bool = True

    def close(self) -> None:
        self.shop_cache.close()
        if self.owns_engine:
            self.engine.dispose()


def build_services(
    settings: Optional[BillingSettings] = None,
    clock=None,
    engine: Optional[Engine] = None,
    notifier: Optional[Notifier] = None,
    payment_gateway: Optional[PaymentGateway] = None,
) -> Services:
    """
    Wire the billing engine against one database.

    :param settings: defaults to :meth:`BillingSettings.from_env`.
    :param engine: reuse an existing engine (tests pass an in-memory one); it is then not disposed on close.
    :param payment_gateway: defaults to Stripe when ``STRIPE_API_KEY`` is set, otherwise charging is disabled.
    """
    settings = settings or BillingSettings.from_env()
    clock = clock or SystemClock()
    owns_engine = engine is None
    engine = engine or create_db_engine(settings.database_url)
    init_db(engine)
    session_factory = create_session_factory(engine)

    store = SqlAlchemySubscriptionStore(session_factory)
    shop_cache = Cache(
        capacity=settings.shop_cache_capacity,
        eviction_policy=EvictionPolicy.LRU,
        ttl_seconds=settings.shop_cache_ttl_seconds,
    )
    shop_gateway = CachingShopGateway(SqlAlchemyShopGateway(session_factory), shop_cache)
    notifier = notifier or OutboxNotifier(session_factory, clock)
    if payment_gateway is None and settings.stripe_api_key:
        payment_gateway = StripePaymentGateway(
            api_key=settings.stripe_api_key,
            max_retries=settings.gateway_max_retries,
            retry_delay=settings.gateway_retry_delay,
        )
    if payment_gateway is None:
        logging.info("No payment gateway configured; online charges are disabled")

    state_machine = SubscriptionStateMachine(
        store,
        clock=clock,
        prices=settings.plan_prices,
        failed_payment_threshold=settings.failed_payment_threshold,
        data_retention_days=settings.data_retention_days,
        shop_gateway=shop_gateway,
        currency=settings.currency,
        integration_timeout=settings.integration_timeout_seconds,
    )
    reconciler = PaymentReconciler(
        state_machine,
        payment_gateway=payment_gateway,
        timeout=settings.integration_timeout_seconds,
        currency=settings.currency,
    )
    job_lock = JobLock(SqlAlchemyJobLease(session_factory), clock=clock, lease_seconds=settings.job_lease_seconds)
    scheduler = LifecycleScheduler(
        store,
        state_machine,
        reconciler,
        notifier,
        shop_gateway,
        clock=clock,
        job_lock=job_lock,
        trial_reminder_days=settings.trial_reminder_days,
        expiry_reminder_days=settings.expiry_reminder_days,
        renewal_window_days=settings.renewal_window_days,
        data_retention_days=settings.data_retention_days,
        max_workers=settings.batch_max_workers,
        integration_timeout=settings.integration_timeout_seconds,
    )
    return Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        store=store,
        shop_cache=shop_cache,
        shop_gateway=shop_gateway,
        notifier=notifier,
        payment_gateway=payment_gateway,
        state_machine=state_machine,
        reconciler=reconciler,
        scheduler=scheduler,
        owns_engine=owns_engine,
    )
