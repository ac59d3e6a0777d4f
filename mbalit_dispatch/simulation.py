# mbalit-dispatch/mbalit_dispatch/simulation.py
"""
Simulation Engine for the Mbalit dispatch core.

A discrete-time simulation of a pickup marketplace that exercises the real
Dispatcher, Presence Registry and Job Lifecycle on a simulated clock.
Key responsibilities:
- Time management (tick-based, one simulated minute per tick)
- Collector shifts (going online/offline, location heartbeats)
- Job injection based on creation minute
- Dispatch rounds with the retry policy played out in simulated time
- Collector workflow: accept, travel, arrive, complete
- KPI calculation and reporting
"""

from __future__ import annotations

import csv
import logging
import os
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from . import config, pricing, utils
from .config import DispatchConfig
from .dispatch import Dispatcher
from .jobs import InMemoryJobStore
from .models import GeoLocation, JobStatus, PaymentStatus, WasteSize, WasteType
from .presence import InMemoryPresenceStore, PresenceRegistry
from .wallet import InMemoryWallet

logger = logging.getLogger(__name__)

SIMULATION_EPOCH = datetime(2026, 1, 5, 8, 0, tzinfo=timezone.utc)
"""Simulated minute 0 (a Monday, 08:00)."""


@dataclass
class SimJob:
    """A job request as it appears in the input data."""
    job_id: str
    customer_id: str
    waste_type: WasteType
    waste_size: WasteSize
    pickup_lat: float
    pickup_lng: float
    created_minute: int
    payment_status: PaymentStatus = PaymentStatus.PAID

    @property
    def pickup(self) -> GeoLocation:
        return GeoLocation(self.pickup_lat, self.pickup_lng)


@dataclass
class SimCollector:
    """
    A collector as it appears in the input data, plus their simulated plan.

    Dynamic State:
        lat/lng: Current position
        job_id: Job being worked, None when free
        schedule: Remaining (minute, status) steps of the current job
    """
    collector_id: str
    lat: float
    lng: float
    capabilities: List[WasteType]
    online_from: int = 0
    online_until: int = config.SIMULATION_MAX_MINUTES

    job_id: Optional[str] = None
    schedule: List[Tuple[int, JobStatus]] = field(default_factory=list)

    @property
    def location(self) -> GeoLocation:
        return GeoLocation(self.lat, self.lng)

    def on_shift(self, minute: int) -> bool:
        return self.online_from <= minute < self.online_until


class Simulation:
    """
    Tick-based simulation of the pickup marketplace.

    At each tick:
    1. Collectors report presence according to their shifts
    2. Jobs whose creation minute has arrived are created in the job store
    3. Pending jobs due for a matching round are dispatched
    4. Busy collectors advance their jobs through the lifecycle
    5. KPIs are tracked

    Attributes:
        dispatcher: The real dispatcher, on in-memory stores
        current_minute: Minutes since SIMULATION_EPOCH
    """

    def __init__(
        self,
        collectors: List[SimCollector],
        jobs: List[SimJob],
        max_attempts: int = config.DISPATCH_MAX_ATTEMPTS,
        retry_delay_minutes: int = 1,
        max_minutes: int = config.SIMULATION_MAX_MINUTES,
    ) -> None:
        self.current_minute: int = 0
        self.max_minutes = max_minutes
        self.retry_delay_minutes = retry_delay_minutes

        self.collectors: Dict[str, SimCollector] = {c.collector_id: c for c in collectors}
        self.master_jobs: List[SimJob] = sorted(jobs, key=lambda j: j.created_minute)
        self.total_jobs = len(jobs)

        dispatch_config = DispatchConfig(
            max_attempts=max_attempts,
            retry_delay_seconds=retry_delay_minutes * 60,
        )
        self.job_store = InMemoryJobStore(clock=self.now)
        self.wallet = InMemoryWallet(clock=self.now)
        self.registry = PresenceRegistry(InMemoryPresenceStore(), dispatch_config, clock=self.now)
        self.dispatcher = Dispatcher(
            self.job_store, self.registry, self.wallet,
            config=dispatch_config, clock=self.now,
        )

        # Retry bookkeeping: job_id -> (attempts used, minute of next round)
        self._retry_state: Dict[str, Tuple[int, int]] = {}

        # KPI tracking
        self.created_minute: Dict[str, int] = {}
        self.assigned_minute: Dict[str, int] = {}
        self.pickup_distances: List[float] = []
        self.etas: List[int] = []
        self.collectors_activated: set = set()
        self.total_busy_ticks: int = 0
        self.total_online_ticks: int = 0

    def now(self) -> datetime:
        """Simulated wall clock handed to every component."""
        return SIMULATION_EPOCH + timedelta(minutes=self.current_minute)

    @staticmethod
    def load_data(jobs_file: str, collectors_file: str) -> Tuple[List[SimCollector], List[SimJob]]:
        """
        Load simulation data from CSV files.

        Args:
            jobs_file: Path to jobs CSV
            collectors_file: Path to collectors CSV

        Returns:
            Tuple of (collectors, jobs) lists

        Raises:
            FileNotFoundError: If files don't exist
            ValueError: If file format is invalid
        """
        if not os.path.exists(jobs_file):
            raise FileNotFoundError(f"Jobs file not found: {jobs_file}")
        if not os.path.exists(collectors_file):
            raise FileNotFoundError(f"Collectors file not found: {collectors_file}")

        jobs: List[SimJob] = []
        with open(jobs_file, 'r', newline='') as f:
            reader = csv.DictReader(f)
            for row in reader:
                try:
                    jobs.append(SimJob(
                        job_id=row['job_id'],
                        customer_id=row['customer_id'],
                        waste_type=WasteType(row['waste_type'].strip()),
                        waste_size=WasteSize(row['waste_size'].strip()),
                        pickup_lat=float(row['pickup_lat']),
                        pickup_lng=float(row['pickup_lng']),
                        created_minute=int(row['created_minute']),
                        payment_status=PaymentStatus((row.get('payment_status') or 'paid').strip()),
                    ))
                    utils.validate_coordinates(jobs[-1].pickup_lat, jobs[-1].pickup_lng)
                except (KeyError, ValueError) as e:
                    raise ValueError(f"Invalid job data in {jobs_file}: {e}")

        collectors: List[SimCollector] = []
        with open(collectors_file, 'r', newline='') as f:
            reader = csv.DictReader(f)
            for row in reader:
                try:
                    capabilities = [
                        WasteType(c.strip()) for c in row['capabilities'].split(';') if c.strip()
                    ]
                    collectors.append(SimCollector(
                        collector_id=row['collector_id'],
                        lat=float(row['lat']),
                        lng=float(row['lng']),
                        capabilities=capabilities,
                        online_from=int(row.get('online_from_minute') or 0),
                        online_until=int(row.get('online_until_minute') or config.SIMULATION_MAX_MINUTES),
                    ))
                    utils.validate_coordinates(collectors[-1].lat, collectors[-1].lng)
                except (KeyError, ValueError) as e:
                    raise ValueError(f"Invalid collector data in {collectors_file}: {e}")

        return collectors, jobs

    @staticmethod
    def generate_synthetic(
        n_jobs: int,
        n_collectors: int,
        seed: Optional[int] = None,
        radius_km: float = 5.0,
        horizon_minutes: int = 120,
    ) -> Tuple[List[SimCollector], List[SimJob]]:
        """
        Random fleet and job stream scattered around SIMULATION_CENTER.

        Every collector handles household waste plus one to three other types,
        so the capability filter actually matters.
        """
        rng = random.Random(seed)
        center_lat, center_lng = config.SIMULATION_CENTER
        # ~111 km per degree of latitude; good enough for a few km around Banjul
        spread = radius_km / 111.0
        waste_types = list(WasteType)

        def scatter() -> Tuple[float, float]:
            return (
                round(center_lat + rng.uniform(-spread, spread), 6),
                round(center_lng + rng.uniform(-spread, spread), 6),
            )

        collectors: List[SimCollector] = []
        for i in range(n_collectors):
            lat, lng = scatter()
            extra = rng.sample(waste_types[1:], rng.randint(1, 3))
            collectors.append(SimCollector(
                collector_id=f"C{i + 1:03d}",
                lat=lat,
                lng=lng,
                capabilities=[WasteType.HOUSEHOLD] + extra,
            ))

        jobs: List[SimJob] = []
        for i in range(n_jobs):
            lat, lng = scatter()
            jobs.append(SimJob(
                job_id=f"J{i + 1:04d}",
                customer_id=f"U{rng.randint(1, max(1, n_jobs // 2)):04d}",
                waste_type=rng.choice(waste_types),
                waste_size=rng.choice(list(WasteSize)),
                pickup_lat=lat,
                pickup_lng=lng,
                created_minute=rng.randint(0, horizon_minutes),
            ))
        return collectors, jobs

    def _update_presence(self) -> None:
        """Online collectors send a heartbeat; off-shift collectors go offline."""
        for collector in self.collectors.values():
            if collector.on_shift(self.current_minute) or collector.job_id is not None:
                self.registry.report_presence(
                    collector.collector_id, online=True,
                    location=collector.location,
                    capabilities=collector.capabilities,
                )
                self.total_online_ticks += 1
            else:
                self.registry.go_offline(collector.collector_id)

    def _inject_new_jobs(self) -> None:
        """Create jobs whose creation minute has arrived."""
        while self.master_jobs and self.master_jobs[0].created_minute <= self.current_minute:
            sim_job = self.master_jobs.pop(0)
            amount = pricing.calculate_price(sim_job.waste_type, sim_job.waste_size, 0.0)
            self.job_store.create_job(
                customer_id=sim_job.customer_id,
                waste_type=sim_job.waste_type,
                pickup=sim_job.pickup,
                amount=amount,
                payment_status=sim_job.payment_status,
                waste_size=sim_job.waste_size,
                job_id=sim_job.job_id,
            )
            self.created_minute[sim_job.job_id] = self.current_minute
            if sim_job.payment_status is PaymentStatus.PAID:
                self._retry_state[sim_job.job_id] = (0, self.current_minute)

    def _dispatch_due_jobs(self) -> List[str]:
        """
        Run one matching round for every pending job whose round is due.
        The retry policy of Dispatcher.dispatch, played out in simulated time.
        """
        assigned: List[str] = []
        max_attempts = self.dispatcher.config.max_attempts

        for job_id, (attempts, due) in sorted(self._retry_state.items(), key=lambda kv: kv[1][1]):
            if due > self.current_minute:
                continue
            outcome = self.dispatcher.try_dispatch(job_id)

            if outcome.assigned:
                del self._retry_state[job_id]
                self._plan_job(outcome.job.assigned_collector_id, job_id, outcome.match.eta_minutes)
                self.assigned_minute[job_id] = self.current_minute
                self.pickup_distances.append(outcome.match.distance_km)
                self.etas.append(outcome.match.eta_minutes)
                assigned.append(job_id)
            elif outcome.status is JobStatus.PENDING:
                attempts += 1
                if attempts >= max_attempts:
                    del self._retry_state[job_id]
                    self.dispatcher.cancel_unmatched(job_id)
                else:
                    self._retry_state[job_id] = (attempts, self.current_minute + self.retry_delay_minutes)
            else:
                del self._retry_state[job_id]

        return assigned

    def _plan_job(self, collector_id: str, job_id: str, eta_minutes: int) -> None:
        """Lay out the collector's accept/travel/arrive/complete steps."""
        collector = self.collectors[collector_id]
        accept_at = self.current_minute + config.ACCEPT_DELAY_MINUTES
        arrive_at = accept_at + max(1, eta_minutes)
        collector.job_id = job_id
        collector.schedule = [
            (accept_at, JobStatus.ACCEPTED),
            (accept_at, JobStatus.IN_PROGRESS),
            (arrive_at, JobStatus.ARRIVED),
            (arrive_at + config.SERVICE_TIME_MINUTES, JobStatus.COMPLETED),
        ]
        self.collectors_activated.add(collector_id)

    def _advance_collectors(self) -> None:
        """Busy collectors perform every step that is due."""
        for collector in self.collectors.values():
            if collector.job_id is None:
                continue
            self.total_busy_ticks += 1

            while collector.schedule and collector.schedule[0][0] <= self.current_minute:
                _, target = collector.schedule.pop(0)
                job = self.dispatcher.advance_status(collector.job_id, collector.collector_id, target)

                if target is JobStatus.ARRIVED:
                    collector.lat, collector.lng = job.pickup.lat, job.pickup.lng
                if target is JobStatus.COMPLETED:
                    collector.job_id = None
                    collector.schedule = []

    def _unsettled(self) -> bool:
        """Jobs still to be injected, dispatched, or worked on."""
        return bool(
            self.master_jobs
            or self._retry_state
            or any(c.job_id is not None for c in self.collectors.values())
        )

    def tick(self, verbose: bool = True) -> None:
        """Execute a single simulation tick."""
        self._update_presence()
        self._inject_new_jobs()
        assigned = self._dispatch_due_jobs()
        self._advance_collectors()

        if verbose and (assigned or self.current_minute % 10 == 0):
            clock = self.now().strftime('%H:%M')
            print(f"[{clock}] Assigned: {len(assigned)}, "
                  f"Pending: {len(self._retry_state)}, "
                  f"Busy collectors: {sum(1 for c in self.collectors.values() if c.job_id)}")

        self.current_minute += config.SIMULATION_SPEED_MINUTES

    def run(self, verbose: bool = True) -> Dict[str, Any]:
        """
        Run until every job is settled or the day ends.

        Returns:
            Dictionary of KPI results
        """
        if verbose:
            print(f"======== Starting Simulation: {len(self.master_jobs)} jobs, "
                  f"{len(self.collectors)} collectors ========")

        while self.current_minute < self.max_minutes and self._unsettled():
            self.tick(verbose)

        if verbose:
            print("Simulation complete. Calculating results...")
        return self.get_results()

    def get_results(self) -> Dict[str, Any]:
        """
        Calculate the KPIs of the run.

        Returns:
            Dictionary with job outcomes, wait times, distances and earnings
        """
        jobs = self.job_store.list_jobs()
        by_status: Dict[JobStatus, int] = {status: 0 for status in JobStatus}
        for job in jobs:
            by_status[job.status] += 1

        completed = by_status[JobStatus.COMPLETED]
        cancelled = by_status[JobStatus.CANCELLED]
        awaiting_payment = sum(
            1 for j in jobs if j.status is JobStatus.PENDING and j.payment_status is not PaymentStatus.PAID
        )

        waits = [self.assigned_minute[j] - self.created_minute[j] for j in self.assigned_minute]
        avg_wait = sum(waits) / len(waits) if waits else 0.0
        avg_distance = sum(self.pickup_distances) / len(self.pickup_distances) if self.pickup_distances else 0.0
        avg_eta = sum(self.etas) / len(self.etas) if self.etas else 0.0
        total_credited = sum(self.wallet.balance(cid) for cid in self.collectors)
        utilization = (self.total_busy_ticks / self.total_online_ticks * 100) if self.total_online_ticks else 0.0

        return {
            "total_jobs": self.total_jobs,
            "jobs_completed": completed,
            "jobs_cancelled": cancelled,
            "jobs_awaiting_payment": awaiting_payment,
            "jobs_unfinished": len(jobs) - completed - cancelled - awaiting_payment,
            "completion_rate_pct": round(completed / self.total_jobs * 100, 2) if self.total_jobs else 0.0,
            "avg_wait_to_assign_min": round(avg_wait, 2),
            "avg_pickup_distance_km": round(avg_distance, 2),
            "avg_eta_min": round(avg_eta, 2),
            "collectors_used": len(self.collectors_activated),
            "total_collectors": len(self.collectors),
            "collector_utilization_pct": round(utilization, 2),
            "total_credited": round(total_credited, 2),
            "simulated_minutes": self.current_minute,
        }
