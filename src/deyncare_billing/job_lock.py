"""
Keeps two runs of the same batch job apart.

Within one process a plain set of running job names is enough; across
processes (two cron hosts, a manual run during the nightly one) the run also
takes a time-bounded lease row in ``job_leases``. A lease left behind by a
crashed run stops blocking once it expires.
"""
import datetime
import logging
import os
import socket
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Iterator, Optional, Set

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import sessionmaker

from deyncare_billing.clock import SystemClock, ensure_utc
from deyncare_billing.errors import JobAlreadyRunningError, StoreUnavailableError
from deyncare_billing.models.job_lease import JobLeaseRecord


def default_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class JobLease(ABC):

    @abstractmethod
    def acquire(self, job_name: str, holder: str, now: datetime.datetime, ttl_seconds: int) -> bool:
        """Take the lease unless another holder has an unexpired one."""

    @abstractmethod
    def release(self, job_name: str, holder: str) -> None:
        ...


class SqlAlchemyJobLease(JobLease):

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def acquire(self, job_name, holder, now, ttl_seconds) -> bool:
        expires_at = now + datetime.timedelta(seconds=ttl_seconds)
        try:
            with self._session_factory() as session:
                current = session.get(JobLeaseRecord, job_name)
                if current is None:
                    session.add(JobLeaseRecord(job_name=job_name, holder=holder, acquired_at=now, expires_at=expires_at))
                    try:
                        session.commit()
                    except IntegrityError:
                        session.rollback()
                        return False
                    return True

                if ensure_utc(current.expires_at) > now and current.holder != holder:
                    return False

                # Take over an expired lease only if nobody else took it first.
                result = session.execute(
                    update(JobLeaseRecord)
                    .where(
                        JobLeaseRecord.job_name == job_name,
                        JobLeaseRecord.holder == current.holder,
                        JobLeaseRecord.expires_at == current.expires_at,
                    )
                    .values(holder=holder, acquired_at=now, expires_at=expires_at)
                )
                session.commit()
                return result.rowcount == 1
        except (OperationalError, InterfaceError) as e:
            logging.error(f"Job lease store unavailable for {job_name}: {e}", exc_info=True)
            raise StoreUnavailableError(f"Job lease store unavailable for {job_name}") from e

    def release(self, job_name, holder) -> None:
        try:
            with self._session_factory() as session:
                session.execute(
                    delete(JobLeaseRecord).where(JobLeaseRecord.job_name == job_name, JobLeaseRecord.holder == holder)
                )
                session.commit()
        except (OperationalError, InterfaceError) as e:
            logging.error(f"Failed to release lease for {job_name}: {e}", exc_info=True)
            raise StoreUnavailableError(f"Job lease store unavailable for {job_name}") from e


class JobLock:
    """
    :param lease: optional cross-process lease; without it only runs in this process are kept apart.
    :param lease_seconds: lifetime of a lease row.
    """

    def __init__(self, lease: Optional[JobLease] = None, clock=None, lease_seconds: int = 3600, holder: Optional[str] = None) -> None:
        self._lease = lease
        self._clock = clock or SystemClock()
        self._lease_seconds = lease_seconds
        self._holder = holder or default_holder()
        self._running: Set[str] = set()
        self._guard = threading.Lock()

    def is_running(self, job_name: str) -> bool:
        with self._guard:
            return job_name in self._running

    @contextmanager
    def hold(self, job_name: str) -> Iterator[None]:
        with self._guard:
            if job_name in self._running:
                raise JobAlreadyRunningError(f"Job {job_name} is already running in this process", {"job": job_name})
            self._running.add(job_name)

        try:
            if self._lease is not None and not self._lease.acquire(
                job_name, self._holder, self._clock.now(), self._lease_seconds
            ):
                raise JobAlreadyRunningError(f"Job {job_name} is already running elsewhere", {"job": job_name})
            try:
                yield
            finally:
                if self._lease is not None:
                    self._lease.release(job_name, self._holder)
        finally:
            with self._guard:
                self._running.discard(job_name)
