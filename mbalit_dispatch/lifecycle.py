# mbalit-dispatch/mbalit_dispatch/lifecycle.py
"""
Collector- and customer-driven job transitions.

Every write is a compare-and-set against the status the caller observed. When
another writer wins, the job is re-read and the request is validated again
against the new state, so a late "accept" on a job the customer just
cancelled fails with InvalidTransition instead of resurrecting it.

Side effects:
- completed: the collector is released and their wallet is credited
- cancelled: the assigned collector, if any, is released
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from . import state_machine, utils
from .errors import InvalidTransition, JobNotFound
from .jobs import JobStore
from .models import CancelledBy, Job, JobStatus
from .presence import PresenceRegistry
from .wallet import Wallet

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
"""Actor id used for cancellations made by the platform itself."""


class JobLifecycle:
    """
    Applies status changes requested by collectors and customers.

    Attributes:
        jobs: Job store written with compare-and-set
        registry: Presence registry, to release collectors
        wallet: Credited when a job completes
    """

    def __init__(
        self,
        jobs: JobStore,
        registry: PresenceRegistry,
        wallet: Wallet,
        clock: Callable[[], datetime] = utils.utc_now,
    ) -> None:
        self.jobs = jobs
        self.registry = registry
        self.wallet = wallet
        self._clock = clock

    def _load(self, job_id: str) -> Job:
        job = self.jobs.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def advance_status(self, job_id: str, actor_id: str, target: JobStatus) -> Job:
        """
        Move a job one step forward on behalf of its assigned collector.

        Args:
            job_id: The job
            actor_id: Collector making the request
            target: Next status (accepted, in_progress, arrived or completed)

        Returns:
            The updated job

        Raises:
            JobNotFound: Unknown job
            InvalidTransition: Illegal move, or actor is not the assigned collector
        """
        while True:
            job = self._load(job_id)
            if job.assigned_collector_id is None or actor_id != job.assigned_collector_id:
                raise InvalidTransition(
                    f"{actor_id} is not the collector assigned to job {job_id}",
                    current=job.status.value, target=target.value,
                )
            state_machine.validate_collector_advance(job.status, target)

            extra = {}
            if target is JobStatus.COMPLETED:
                extra["completed_at"] = self._clock()

            if self.jobs.compare_and_set_status(job_id, job.status, target, **extra):
                break
            logger.debug(f"Job {job_id} changed under {actor_id}, re-validating {target.value}")

        logger.info(f"Job {job_id}: {job.status.value} -> {target.value} by {actor_id}")
        if target is JobStatus.COMPLETED:
            self._on_completed(job)
        return self._load(job_id)

    def cancel(self, job_id: str, actor_id: str, reason: Optional[str] = None) -> Job:
        """
        Cancel a job on behalf of its customer, its collector or the system.

        The customer may only cancel while the job is pending; the assigned
        collector must give a reason; the system may cancel any live job.

        Raises:
            JobNotFound: Unknown job
            InvalidTransition: Job is terminal, or the actor may not cancel it now
        """
        while True:
            job = self._load(job_id)
            by = self._role_of(job, actor_id)
            state_machine.validate_cancel(job.status, by, reason)

            if self.jobs.compare_and_set_status(
                job_id, job.status, JobStatus.CANCELLED,
                cancel_reason=reason, cancelled_by=by,
            ):
                break
            logger.debug(f"Job {job_id} changed under cancel by {actor_id}, re-validating")

        logger.info(f"Job {job_id} cancelled by {by.value}: {reason}")
        if job.assigned_collector_id is not None:
            self.registry.mark_free(job.assigned_collector_id, job_id)
        return self._load(job_id)

    def active_job_for(self, collector_id: str) -> Optional[Job]:
        """The job the collector is currently busy with, if any."""
        presence = self.registry.get(collector_id)
        if presence is None or presence.current_job_id is None:
            return None
        job = self.jobs.get_job(presence.current_job_id)
        if job is None or job.status not in state_machine.ACTIVE_STATES:
            return None
        return job

    def _role_of(self, job: Job, actor_id: str) -> CancelledBy:
        if actor_id == SYSTEM_ACTOR:
            return CancelledBy.SYSTEM
        if actor_id == job.customer_id:
            return CancelledBy.CUSTOMER
        if job.assigned_collector_id is not None and actor_id == job.assigned_collector_id:
            return CancelledBy.COLLECTOR
        raise InvalidTransition(
            f"{actor_id} is neither the customer nor the collector of job {job.job_id}",
            current=job.status.value, target=JobStatus.CANCELLED.value,
        )

    def _on_completed(self, job: Job) -> None:
        # Only the writer that won arrived -> completed gets here, so this runs once per job
        collector_id = job.assigned_collector_id
        self.registry.mark_free(collector_id, job.job_id)
        if job.amount <= 0:
            logger.debug(f"Job {job.job_id} has no amount to credit")
            return
        try:
            self.wallet.credit(
                collector_id, job.amount,
                f"Pickup {job.job_id} ({job.waste_type.value})",
                reference=job.job_id,
            )
        except Exception:
            logger.exception(f"Wallet credit failed for job {job.job_id}, collector {collector_id}")
            raise
