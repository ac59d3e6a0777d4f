# mbalit-dispatch/mbalit_dispatch/dispatch.py
"""
Dispatch Engine for the Mbalit dispatch core.

Drives a pending, paid job to either an assignment or a cancellation:

1. **Match**: ask the Matcher for the nearest eligible collector.
2. **Claim**: compare-and-set the collector busy with this job. Losing the
   claim to a concurrent dispatch is not a miss: matching runs again at once
   without that collector and no attempt is used up.
3. **Assign**: compare-and-set the job pending -> assigned. If that write
   fails (customer cancelled, another dispatch won the job, store error) the
   collector claim is rolled back so nobody is left busy with no job.
4. **Retry**: a round with no candidate waits `retry_delay_seconds` and tries
   again, up to `max_attempts` rounds, then cancels the job with
   "no collectors available".

Correctness rests only on the two per-entity compare-and-sets. No global lock
is taken, and any number of dispatch calls may run at once.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Dict, Iterable, Optional, Set, Tuple

from . import config as defaults
from . import utils
from .config import DispatchConfig
from .errors import ConcurrentClaimLost, JobNotFound, NoEligibleCollector, NotDispatchable
from .jobs import JobStore
from .lifecycle import JobLifecycle
from .matcher import Matcher
from .models import CancelledBy, DispatchOutcome, Job, JobStatus, MatchResult, PaymentStatus
from .presence import PresenceRegistry
from .wallet import Wallet

logger = logging.getLogger(__name__)


def payment_cleared(job: Job) -> bool:
    """Default payment check: the job record says the payment went through."""
    return job.payment_status is PaymentStatus.PAID


class Dispatcher:
    """
    Matches pending jobs to collectors with bounded retries.

    Also the entry point for collector/customer surfaces: `advance_status`
    and `cancel` delegate to the JobLifecycle it owns.

    Attributes:
        jobs: Job store
        registry: Presence registry
        matcher: Collector selection
        lifecycle: Status advances and cancellations
        config: Retry policy and ETA settings
    """

    def __init__(
        self,
        jobs: JobStore,
        registry: PresenceRegistry,
        wallet: Wallet,
        config: Optional[DispatchConfig] = None,
        matcher: Optional[Matcher] = None,
        payment_check: Callable[[Job], bool] = payment_cleared,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utils.utc_now,
    ) -> None:
        self.jobs = jobs
        self.registry = registry
        self.config = config or registry.config
        self.matcher = matcher or Matcher(registry, self.config)
        self.lifecycle = JobLifecycle(jobs, registry, wallet, clock)
        self._payment_check = payment_check
        self._sleep = sleep
        self._clock = clock

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _load_for_dispatch(self, job_id: str) -> Tuple[Job, bool]:
        """
        Load the job and check the preconditions.

        Returns:
            (job, dispatchable). A job that is no longer pending is returned
            with dispatchable=False; callers treat it as a no-op.

        Raises:
            JobNotFound: Unknown job
            NotDispatchable: Pending but payment has not cleared
        """
        job = self.jobs.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if job.status is not JobStatus.PENDING:
            return job, False
        if not self._payment_check(job):
            raise NotDispatchable(
                f"Job {job_id} payment is {job.payment_status.value}; dispatch needs a cleared payment",
                user_message="we're still waiting for your payment to clear",
            )
        return job, True

    def _claim_and_assign(self, job: Job, match: MatchResult) -> Job:
        """
        Claim the matched collector and assign the job to them as one unit.

        Returns:
            The job snapshot after the attempt (assigned to this collector,
            or whatever state another writer moved it to)

        Raises:
            ConcurrentClaimLost: The collector was claimed by someone else,
                or the job write failed while the job is still pending
        """
        collector_id = match.collector_id
        if not self.registry.mark_busy(collector_id, job.job_id):
            raise ConcurrentClaimLost(f"Collector {collector_id} was claimed before job {job.job_id}")

        try:
            assigned = self.jobs.compare_and_set_status(
                job.job_id, JobStatus.PENDING, JobStatus.ASSIGNED,
                assigned_collector_id=collector_id,
                assigned_at=self._clock(),
                distance_km=match.distance_km,
            )
        except Exception:
            logger.warning(f"Job write failed for {job.job_id}, releasing collector {collector_id}")
            self.registry.mark_free(collector_id, job.job_id)
            raise

        if not assigned:
            self.registry.mark_free(collector_id, job.job_id)
            current = self.jobs.get_job(job.job_id)
            if current is None:
                raise JobNotFound(job.job_id)
            if current.status is JobStatus.PENDING:
                raise ConcurrentClaimLost(f"Job {job.job_id} write was refused, collector {collector_id} released")
            logger.warning(
                f"Job {job.job_id} moved to {current.status.value} during dispatch; "
                f"collector {collector_id} released"
            )
            return current

        logger.info(
            f"Job {job.job_id} assigned to {collector_id} "
            f"({utils.format_distance(match.distance_km)}, ETA {utils.format_eta(match.eta_minutes)})"
        )
        return self.jobs.get_job(job.job_id)

    def _round(self, job_id: str, exclude: Set[str]) -> Tuple[Optional[DispatchOutcome], Optional[str]]:
        """
        One matching round.

        Returns:
            (outcome, None) when the job got assigned or left pending;
            (None, collector_id) when the claim on that collector was lost

        Raises:
            NoEligibleCollector: Nobody to match this round
        """
        job = self.jobs.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if job.status is not JobStatus.PENDING:
            return DispatchOutcome(job=job), None

        match = self.matcher.find_match(job.pickup, job.waste_type, exclude)
        if not match.found:
            raise NoEligibleCollector(f"No eligible {job.waste_type.value} collector for job {job_id}")

        try:
            current = self._claim_and_assign(job, match)
        except ConcurrentClaimLost as e:
            logger.warning(f"Claim lost for job {job_id}: {e}")
            return None, match.collector_id

        won = current.status is JobStatus.ASSIGNED and current.assigned_collector_id == match.collector_id
        return DispatchOutcome(job=current, assigned=won, match=match if won else None), None

    def try_dispatch(self, job_id: str, exclude: Iterable[str] = ()) -> DispatchOutcome:
        """
        Run a single matching round without waiting or cancelling.

        Lost claims are retried immediately against the next-nearest collector
        until one sticks or nobody is left. A job that is no longer pending is
        returned unchanged.

        Returns:
            DispatchOutcome; `assigned` False with the job still pending means
            no collector was available this round

        Raises:
            JobNotFound, NotDispatchable
        """
        job, dispatchable = self._load_for_dispatch(job_id)
        if not dispatchable:
            return DispatchOutcome(job=job)

        excluded = set(exclude)
        while True:
            try:
                outcome, lost = self._round(job_id, excluded)
            except NoEligibleCollector:
                return DispatchOutcome(job=self.jobs.get_job(job_id), attempts=1)
            if outcome is not None:
                outcome.attempts = 1
                return outcome
            excluded.add(lost)

    def dispatch(self, job_id: str) -> DispatchOutcome:
        """
        Assign a pending, paid job to the nearest eligible collector.

        Safe to call again: on a job that is no longer pending it returns the
        current state and changes nothing.

        Returns:
            DispatchOutcome for the job

        Raises:
            JobNotFound: Unknown job
            NotDispatchable: Pending job whose payment has not cleared
            NoEligibleCollector: Every attempt failed; the job is now cancelled.
                The exception carries the cancelled `job` and `attempts`.
        """
        job, dispatchable = self._load_for_dispatch(job_id)
        if not dispatchable:
            logger.debug(f"Job {job_id} is {job.status.value}, nothing to dispatch")
            return DispatchOutcome(job=job)

        max_attempts = self.config.max_attempts
        excluded: Set[str] = set()
        attempts = 0

        # Only rounds that find nobody use up an attempt. Every lost claim
        # grows `excluded`, so a run of lost claims ends when the candidates do.
        while attempts < max_attempts:
            try:
                outcome, lost = self._round(job_id, excluded)
            except NoEligibleCollector:
                attempts += 1
                logger.debug(f"Job {job_id}: no collector on attempt {attempts}/{max_attempts}")
                excluded.clear()
                if attempts < max_attempts:
                    self._sleep(self.config.retry_delay_seconds)
                continue

            if outcome is not None:
                outcome.attempts = attempts + 1
                return outcome
            excluded.add(lost)

        cancelled = self.cancel_unmatched(job_id)
        if cancelled.status is not JobStatus.CANCELLED or cancelled.cancelled_by is not CancelledBy.SYSTEM:
            # Someone else settled the job while we were retrying
            return DispatchOutcome(job=cancelled, attempts=attempts)

        raise NoEligibleCollector(
            f"No collector found for job {job_id} after {attempts} attempt(s); job cancelled",
            job=cancelled, attempts=attempts,
        )

    def cancel_unmatched(self, job_id: str) -> Job:
        """
        Cancel a job the system could not match. Only a still-pending job is
        touched; one that got assigned or cancelled meanwhile is returned as is.
        """
        if self.jobs.compare_and_set_status(
            job_id, JobStatus.PENDING, JobStatus.CANCELLED,
            cancel_reason=defaults.NO_COLLECTORS_REASON,
            cancelled_by=CancelledBy.SYSTEM,
        ):
            logger.warning(f"Job {job_id} cancelled: {defaults.NO_COLLECTORS_REASON}")
        job = self.jobs.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def dispatch_pending(self) -> Dict[str, DispatchOutcome]:
        """
        Sweep: dispatch every pending, paid job concurrently.

        Jobs whose payment has not cleared are skipped. Jobs that exhaust their
        retries come back as cancelled outcomes instead of raising.

        Returns:
            Mapping of job id to its outcome
        """
        pending = [j for j in self.jobs.list_jobs(JobStatus.PENDING) if self._payment_check(j)]
        if not pending:
            return {}

        logger.info(f"Sweeping {len(pending)} pending job(s)")
        results: Dict[str, DispatchOutcome] = {}
        with ThreadPoolExecutor(max_workers=self.config.sweep_max_workers) as pool:
            futures = {pool.submit(self.dispatch, job.job_id): job.job_id for job in pending}
            for future, job_id in futures.items():
                try:
                    results[job_id] = future.result()
                except NoEligibleCollector as e:
                    results[job_id] = DispatchOutcome(job=e.job, attempts=e.attempts)
                except NotDispatchable:
                    # Payment was reverted between listing and dispatch
                    results[job_id] = DispatchOutcome(job=self.jobs.get_job(job_id))
        return results

    # ------------------------------------------------------------------
    # Collector / customer operations
    # ------------------------------------------------------------------

    def advance_status(self, job_id: str, actor_id: str, target: JobStatus) -> Job:
        """See JobLifecycle.advance_status."""
        return self.lifecycle.advance_status(job_id, actor_id, target)

    def cancel(self, job_id: str, actor_id: str, reason: Optional[str] = None) -> Job:
        """See JobLifecycle.cancel."""
        return self.lifecycle.cancel(job_id, actor_id, reason)
