import copy
import datetime
import threading
import time

import pytest
from fastapi.testclient import TestClient

from deyncare_billing.aggregate import NON_TERMINAL_STATUSES, SubscriptionStatus
from deyncare_billing.bootstrap import build_services
from deyncare_billing.config import BillingSettings
from deyncare_billing.errors import ConflictError
from deyncare_billing.job_lock import JobLock
from deyncare_billing.models.base import create_db_engine, create_session_factory, init_db
from deyncare_billing.notifier import Notifier, NotifyResult
from deyncare_billing.payment_reconciler import PaymentReconciler
from deyncare_billing.scheduler import LifecycleScheduler
from deyncare_billing.shop_gateway import ShopGateway, ShopInfo
from deyncare_billing.state_machine import SubscriptionStateMachine
from deyncare_billing.store import SubscriptionStore

BASE_TIME = datetime.datetime(2025, 1, 1, 9, 0, tzinfo=datetime.timezone.utc)


class FrozenClock:
    def __init__(self, now=BASE_TIME):
        self._now = now

    def now(self):
        return self._now

    def set(self, now):
        self._now = now

    def advance(self, **kwargs):
        self._now = self._now + datetime.timedelta(**kwargs)


class InMemorySubscriptionStore(SubscriptionStore):
    """Dict-backed store with the same compare-and-swap contract as the SQL one."""

    def __init__(self):
        self._rows = {}
        self._lock = threading.Lock()
        self.saves = 0

    def _all(self):
        with self._lock:
            return [copy.deepcopy(s) for s in self._rows.values() if not s.is_deleted]

    def find_by_id(self, subscription_id):
        with self._lock:
            found = self._rows.get(subscription_id)
            return copy.deepcopy(found) if found and not found.is_deleted else None

    def find_by_shop(self, shop_id):
        return sorted(
            (s for s in self._all() if s.shop_id == shop_id),
            key=lambda s: s.dates.start_date,
            reverse=True,
        )

    def find_trials_ending_by(self, date, since=None):
        return [
            s for s in self._all()
            if s.status is SubscriptionStatus.TRIAL
            and not s.renewal_settings.reminder_sent
            and s.dates.trial_ends_at is not None
            and s.dates.trial_ends_at <= date
            and (since is None or s.dates.trial_ends_at >= since)
        ]

    def find_expiring_by(self, date, since=None):
        return [
            s for s in self._all()
            if s.status is SubscriptionStatus.ACTIVE
            and not s.renewal_settings.reminder_sent
            and s.dates.end_date <= date
            and (since is None or s.dates.end_date >= since)
        ]

    def find_renewal_candidates(self, date):
        return [
            s for s in self._all()
            if s.status is SubscriptionStatus.ACTIVE
            and s.renewal_settings.auto_renew
            and s.dates.end_date <= date
        ]

    def find_expired_active(self, now):
        return [
            s for s in self._all()
            if s.status in NON_TERMINAL_STATUSES
            and s.dates.end_date < now
            and (not s.renewal_settings.auto_renew or s.status is not SubscriptionStatus.ACTIVE)
        ]

    def save(self, subscription, expected_version):
        with self._lock:
            stored = self._rows.get(subscription.subscription_id)
            stored_version = stored.version if stored else 0
            if stored_version != expected_version:
                raise ConflictError(f"Subscription {subscription.subscription_id} was modified concurrently")
            saved = copy.deepcopy(subscription)
            saved.version = expected_version + 1
            self._rows[saved.subscription_id] = saved
            self.saves += 1
            return copy.deepcopy(saved)

    def put(self, subscription):
        """Insert or overwrite without version checks (test setup only)."""
        with self._lock:
            stored = self._rows.get(subscription.subscription_id)
            saved = copy.deepcopy(subscription)
            saved.version = (stored.version if stored else 0) + 1
            self._rows[saved.subscription_id] = saved
            return copy.deepcopy(saved)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []
        self.fail_for = set()
        self.delay_for = {}
        self._lock = threading.Lock()

    def notify(self, event_type, shop_id, payload):
        if shop_id in self.delay_for:
            time.sleep(self.delay_for[shop_id])
        if shop_id in self.fail_for:
            return NotifyResult(success=False, error="mailbox unavailable")
        with self._lock:
            self.sent.append((event_type, shop_id, payload))
        return NotifyResult(success=True)

    def events(self, event_type=None):
        return [s for s in self.sent if event_type is None or s[0] == event_type]


class FakeShopGateway(ShopGateway):
    def __init__(self, shops=()):
        self.shops = {shop.shop_id: shop for shop in shops}
        self.status_changes = []

    def get_shop_by_id(self, shop_id):
        return self.shops.get(shop_id)

    def set_shop_status(self, shop_id, status):
        self.status_changes.append((shop_id, status))
        shop = self.shops[shop_id]
        self.shops[shop_id] = ShopInfo(
            shop_id=shop.shop_id,
            name=shop.name,
            status=status,
            email=shop.email,
            phone=shop.phone,
            billing_account=shop.billing_account,
        )


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store():
    return InMemorySubscriptionStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def shop_gateway():
    return FakeShopGateway([
        ShopInfo(shop_id=f"shop_{n}", name=f"Shop {n}", email=f"owner{n}@example.com", phone=f"25261000000{n}")
        for n in range(1, 6)
    ])


@pytest.fixture
def state_machine(store, clock, shop_gateway):
    return SubscriptionStateMachine(store, clock=clock, shop_gateway=shop_gateway, integration_timeout=1.0)


@pytest.fixture
def reconciler(state_machine):
    return PaymentReconciler(state_machine, timeout=1.0)


@pytest.fixture
def scheduler(store, state_machine, reconciler, notifier, shop_gateway, clock):
    return LifecycleScheduler(
        store,
        state_machine,
        reconciler,
        notifier,
        shop_gateway,
        clock=clock,
        job_lock=JobLock(clock=clock),
        max_workers=2,
        integration_timeout=0.5,
    )


@pytest.fixture
def db_engine():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def services(db_engine, clock):
    settings = BillingSettings(database_url="sqlite://", integration_timeout_seconds=1.0)
    services = build_services(settings, clock=clock, engine=db_engine)
    yield services
    services.close()


@pytest.fixture
def client(services):
    from deyncare_billing.app import app

    app.state.services = services
    with TestClient(app) as test_client:
        yield test_client
    app.state.services = None
