# mbalit-dispatch/mbalit_dispatch/jobs.py
"""
Job persistence for the Mbalit dispatch core.

JobStore is the contract a backing document store has to fulfil. Every status
write is a compare-and-set: it names the status it expects to replace and
fails, rather than overwrites, when another writer got there first. That one
primitive resolves customer-cancel vs. dispatch races and concurrent
collector updates without any global lock.

InMemoryJobStore is the thread-safe reference backend used by tests, the
simulation and the benchmark.
"""

from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import fields, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from . import utils
from .models import GeoLocation, Job, JobStatus, PaymentStatus, WasteSize, WasteType

logger = logging.getLogger(__name__)

JobCallback = Callable[[Job], None]
Unsubscribe = Callable[[], None]

# Fields a status write may set alongside the status itself
_WRITABLE_FIELDS = frozenset(
    f.name for f in fields(Job) if f.name not in ("job_id", "status", "customer_id", "created_at")
)


class JobStore(ABC):
    """Authoritative record of pickup jobs."""

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[Job]:
        """Snapshot of the job, or None if unknown."""

    @abstractmethod
    def create_job(
        self,
        customer_id: str,
        waste_type: WasteType,
        pickup: GeoLocation,
        amount: float,
        payment_status: PaymentStatus = PaymentStatus.PENDING,
        waste_size: WasteSize = WasteSize.SMALL,
        job_id: Optional[str] = None,
    ) -> str:
        """Store a new pending job and return its id."""

    @abstractmethod
    def compare_and_set_status(
        self,
        job_id: str,
        expected: JobStatus,
        new: JobStatus,
        **extra_fields: Any,
    ) -> bool:
        """
        Atomically move the job from `expected` to `new`, writing `extra_fields`
        in the same step. Returns False, changing nothing, if the stored status
        is not `expected` or the job does not exist.
        """

    @abstractmethod
    def set_payment_status(self, job_id: str, status: PaymentStatus) -> bool:
        """Record the payment gateway's verdict. False if the job is unknown."""

    @abstractmethod
    def subscribe(self, job_id: str, callback: JobCallback) -> Unsubscribe:
        """Call `callback` with the new snapshot after every change to the job."""

    @abstractmethod
    def list_jobs(self, status: Optional[JobStatus] = None) -> List[Job]:
        """All jobs, optionally filtered by status, oldest first."""


class InMemoryJobStore(JobStore):
    """
    Thread-safe in-memory JobStore.

    One lock guards the whole table, so every compare-and-set is atomic with
    respect to every other write. Snapshots handed out are copies.
    Subscribers are notified after the lock is released.
    """

    def __init__(self, clock: Callable[[], datetime] = utils.utc_now) -> None:
        self._clock = clock
        self._jobs: Dict[str, Job] = {}
        self._subscribers: Dict[str, List[JobCallback]] = {}
        self._lock = threading.Lock()

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job is not None else None

    def create_job(
        self,
        customer_id: str,
        waste_type: WasteType,
        pickup: GeoLocation,
        amount: float,
        payment_status: PaymentStatus = PaymentStatus.PENDING,
        waste_size: WasteSize = WasteSize.SMALL,
        job_id: Optional[str] = None,
    ) -> str:
        if amount < 0:
            raise ValueError(f"Job amount must be >= 0, got {amount}")
        now = self._clock()
        job_id = job_id or uuid.uuid4().hex
        job = Job(
            job_id=job_id,
            customer_id=customer_id,
            waste_type=waste_type,
            pickup=pickup,
            amount=amount,
            payment_status=payment_status,
            waste_size=waste_size,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            if job_id in self._jobs:
                raise ValueError(f"Job {job_id!r} already exists")
            self._jobs[job_id] = job
        logger.debug(f"Created job {job_id} ({waste_type.value}) for customer {customer_id}")
        return job_id

    def compare_and_set_status(
        self,
        job_id: str,
        expected: JobStatus,
        new: JobStatus,
        **extra_fields: Any,
    ) -> bool:
        unknown = set(extra_fields) - _WRITABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot write job fields: {sorted(unknown)}")

        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status is not expected:
                return False
            updated = replace(job, status=new, updated_at=self._clock(), **extra_fields)
            self._jobs[job_id] = updated
            snapshot = replace(updated)

        self._notify(snapshot)
        return True

    def set_payment_status(self, job_id: str, status: PaymentStatus) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            updated = replace(job, payment_status=status, updated_at=self._clock())
            self._jobs[job_id] = updated
            snapshot = replace(updated)

        self._notify(snapshot)
        return True

    def subscribe(self, job_id: str, callback: JobCallback) -> Unsubscribe:
        with self._lock:
            self._subscribers.setdefault(job_id, []).append(callback)

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(job_id, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return unsubscribe

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[Job]:
        with self._lock:
            jobs = [replace(j) for j in self._jobs.values() if status is None or j.status is status]
        return sorted(jobs, key=lambda j: j.created_at)

    def _notify(self, job: Job) -> None:
        with self._lock:
            callbacks = list(self._subscribers.get(job.job_id, []))
        for callback in callbacks:
            try:
                callback(replace(job))
            except Exception:
                logger.exception(f"Subscriber for job {job.job_id} failed")
