import datetime

import pytest

from deyncare_billing.errors import JobAlreadyRunningError
from deyncare_billing.job_lock import JobLock, SqlAlchemyJobLease
from deyncare_billing.models.job_lease import JobLeaseRecord


@pytest.fixture
def lease(session_factory):
    return SqlAlchemyJobLease(session_factory)


def test_lease_blocks_second_holder_until_expiry(lease, clock):
    now = clock.now()
    assert lease.acquire("autoRenewals", "host-a", now, 3600) is True
    assert lease.acquire("autoRenewals", "host-b", now + datetime.timedelta(minutes=5), 3600) is False
    assert lease.acquire("autoRenewals", "host-b", now + datetime.timedelta(hours=2), 3600) is True


def test_release_only_removes_own_lease(lease, clock, db_session):
    lease.acquire("trialReminders", "host-a", clock.now(), 3600)
    lease.release("trialReminders", "host-b")
    assert db_session.get(JobLeaseRecord, "trialReminders") is not None

    lease.release("trialReminders", "host-a")
    db_session.expire_all()
    assert db_session.get(JobLeaseRecord, "trialReminders") is None


def test_job_lock_across_processes(lease, clock):
    first = JobLock(lease, clock=clock, holder="host-a")
    second = JobLock(lease, clock=clock, holder="host-b")

    with first.hold("deactivateExpired"):
        with pytest.raises(JobAlreadyRunningError):
            with second.hold("deactivateExpired"):
                pass
        assert first.is_running("deactivateExpired")

    with second.hold("deactivateExpired"):
        assert second.is_running("deactivateExpired")
    assert not second.is_running("deactivateExpired")


def test_job_lock_in_process(clock):
    lock = JobLock(clock=clock)
    with lock.hold("expiryReminders"):
        with pytest.raises(JobAlreadyRunningError):
            with lock.hold("expiryReminders"):
                pass
        with lock.hold("autoRenewals"):
            pass


def test_lease_released_after_failure(lease, clock):
    lock = JobLock(lease, clock=clock, holder="host-a")
    with pytest.raises(RuntimeError):
        with lock.hold("autoRenewals"):
            raise RuntimeError("boom")

    assert lease.acquire("autoRenewals", "host-b", clock.now(), 3600) is True
