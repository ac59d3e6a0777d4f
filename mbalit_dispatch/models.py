# mbalit-dispatch/mbalit_dispatch/models.py
"""
Core domain models for the Mbalit dispatch core.

This module defines the fundamental data structures used throughout dispatch:
- Job: A customer's pickup request, from creation to completion/cancellation
- CollectorPresence: A collector's live online/location/busy state
- MatchResult: The outcome of one matching attempt
- DispatchOutcome: What a dispatch call did to a job
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import FrozenSet, Optional

from . import utils


class WasteType(Enum):
    """Waste-handling capability a job requires and a collector declares."""
    HOUSEHOLD = "household"
    KITCHEN = "kitchen"
    CHEMICAL = "chemical"
    ELECTRONIC = "electronic"
    CONSTRUCTION = "construction"
    GARDEN = "garden"
    MEDICAL = "medical"
    RECYCLABLE = "recyclable"


class WasteSize(Enum):
    """Volume of a pickup. Only affects pricing."""
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"
    EXTRA_LARGE = "extra-large"


class JobStatus(Enum):
    """
    Lifecycle states for a pickup job.

    pending -> assigned -> accepted -> in_progress -> arrived -> completed,
    with cancelled reachable from every non-terminal state.
    """
    PENDING = "pending"          # Created, looking for a collector
    ASSIGNED = "assigned"        # Collector claimed by dispatch
    ACCEPTED = "accepted"        # Collector confirmed the job
    IN_PROGRESS = "in_progress"  # Collector on the way
    ARRIVED = "arrived"          # Collector at the pickup point
    COMPLETED = "completed"      # Waste collected
    CANCELLED = "cancelled"      # Terminated before completion


class PaymentStatus(Enum):
    """Payment lifecycle, independent of the job status."""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class CancelledBy(Enum):
    """Who is asking for a cancellation."""
    CUSTOMER = "customer"
    COLLECTOR = "collector"
    SYSTEM = "system"


@dataclass(frozen=True)
class GeoLocation:
    """
    A point on the map.

    Attributes:
        lat: Latitude in decimal degrees, [-90, 90]
        lng: Longitude in decimal degrees, [-180, 180]
        address: Optional human-readable address
    """
    lat: float
    lng: float
    address: Optional[str] = None

    def __post_init__(self) -> None:
        utils.validate_coordinates(self.lat, self.lng)

    def __repr__(self) -> str:
        return f"GeoLocation({self.lat:.5f}, {self.lng:.5f})"


@dataclass
class Job:
    """
    A customer's pickup request.

    Attributes:
        job_id: Unique identifier assigned by the job store
        customer_id: The requester
        waste_type: Capability a collector must declare to take the job
        pickup: Where the waste is
        amount: Agreed price, credited to the collector on completion
        payment_status: Must be PAID before the job can be dispatched
        waste_size: Volume of the pickup

    Dynamic State:
        status: Current lifecycle state
        assigned_collector_id: Set on assignment, kept after completion/cancellation
        distance_km: Collector-to-pickup distance at assignment time
        cancel_reason / cancelled_by: Set when the job is cancelled
    """
    job_id: str
    customer_id: str
    waste_type: WasteType
    pickup: GeoLocation
    amount: float
    payment_status: PaymentStatus = PaymentStatus.PENDING
    waste_size: WasteSize = WasteSize.SMALL

    # Dynamic state
    status: JobStatus = JobStatus.PENDING
    assigned_collector_id: Optional[str] = None
    distance_km: Optional[float] = None
    cancel_reason: Optional[str] = None
    cancelled_by: Optional[CancelledBy] = None

    # Timestamps
    created_at: datetime = field(default_factory=utils.utc_now)
    updated_at: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        """True once the job is completed or cancelled."""
        return self.status in (JobStatus.COMPLETED, JobStatus.CANCELLED)

    @property
    def is_paid(self) -> bool:
        return self.payment_status is PaymentStatus.PAID

    def __repr__(self) -> str:
        return f"Job({self.job_id}, {self.status.value}, collector={self.assigned_collector_id})"


@dataclass
class CollectorPresence:
    """
    A collector's live eligibility to receive jobs.

    Attributes:
        collector_id: Unique identifier
        capabilities: Waste types the collector handles
        online: Whether the collector's client reports them as available
        location: Last reported position, None if never reported
        last_updated: When the last report arrived
        current_job_id: The job the collector is busy with, None when free
    """
    collector_id: str
    capabilities: FrozenSet[WasteType] = frozenset()
    online: bool = False
    location: Optional[GeoLocation] = None
    last_updated: Optional[datetime] = None
    current_job_id: Optional[str] = None

    @property
    def is_busy(self) -> bool:
        return self.current_job_id is not None

    def is_live(self, now: Optional[datetime] = None, lease_seconds: Optional[float] = None) -> bool:
        """
        Online and, when a lease is configured, reported within the lease.
        """
        if not self.online:
            return False
        if lease_seconds is None:
            return True
        if self.last_updated is None:
            return False
        now = now or utils.utc_now()
        return now - self.last_updated <= timedelta(seconds=lease_seconds)

    def is_eligible_for(
        self,
        capability: WasteType,
        now: Optional[datetime] = None,
        lease_seconds: Optional[float] = None,
    ) -> bool:
        """Online, located, free, and able to handle the waste type."""
        return (
            self.is_live(now, lease_seconds)
            and self.location is not None
            and not self.is_busy
            and capability in self.capabilities
        )

    def __repr__(self) -> str:
        state = "online" if self.online else "offline"
        return f"CollectorPresence({self.collector_id}, {state}, job={self.current_job_id})"


@dataclass(frozen=True)
class MatchResult:
    """
    Outcome of one matching attempt. Never persisted.

    Attributes:
        collector_id: Selected collector, None when nobody is eligible
        distance_km: Straight-line distance from collector to pickup
        eta_minutes: Estimated travel time in whole minutes
    """
    collector_id: Optional[str] = None
    distance_km: Optional[float] = None
    eta_minutes: Optional[int] = None

    @property
    def found(self) -> bool:
        return self.collector_id is not None

    @classmethod
    def none(cls) -> MatchResult:
        """The explicit "no eligible collector" outcome."""
        return cls()

    def __repr__(self) -> str:
        if not self.found:
            return "MatchResult(none)"
        return f"MatchResult({self.collector_id}, {self.distance_km:.2f}km, {self.eta_minutes}min)"


@dataclass
class DispatchOutcome:
    """
    What a dispatch call did.

    Attributes:
        job: Job snapshot after the call
        assigned: True only if this call made the assignment
        attempts: Matching rounds used by this call
        match: The winning match when assigned
    """
    job: Job
    assigned: bool = False
    attempts: int = 0
    match: Optional[MatchResult] = None

    @property
    def status(self) -> JobStatus:
        return self.job.status

    def __repr__(self) -> str:
        return f"DispatchOutcome({self.job.job_id}, {self.status.value}, assigned={self.assigned}, attempts={self.attempts})"
