# mbalit-dispatch/mbalit_dispatch/config.py
"""
Configuration parameters for the Mbalit collector-matching and dispatch core.

This module centralizes all tunable parameters, making it easy to:
- Adjust the retry policy used when no collector is available
- Change the travel-time model used for ETAs
- Configure pricing for waste pickups

Module-level constants are the defaults. Components never read them directly at
call time; they receive a DispatchConfig snapshot instead, so two dispatchers in
one process can run with different settings.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final, Optional

# =============================================================================
# PHYSICS AND TIME CONSTANTS
# =============================================================================

EARTH_RADIUS_KM: Final[float] = 6371.0
"""Mean Earth radius used by the haversine formula."""

AVG_SPEED_KMH: float = 30.0
"""Average collector speed in km/h for city travel. Drives the ETA estimate."""

# =============================================================================
# DISPATCH RETRY POLICY
# =============================================================================

DISPATCH_MAX_ATTEMPTS: int = 3
"""
Number of matching rounds before a pending job is cancelled.
Each round that finds no eligible collector counts as one attempt.
"""

DISPATCH_RETRY_DELAY_SECONDS: float = 30.0
"""Wait between two matching rounds of the same job."""

NO_COLLECTORS_REASON: Final[str] = "no collectors available"
"""Cancellation reason recorded when the retry budget is exhausted."""

SWEEP_MAX_WORKERS: int = 8
"""Thread pool size used when sweeping all pending jobs at once."""

# =============================================================================
# PRESENCE
# =============================================================================

PRESENCE_LEASE_SECONDS: Optional[float] = None
"""
How long a presence report stays valid without a refresh.
None disables the lease: a collector stays online until they report otherwise.
Collector clients report every few seconds while foregrounded, so 120s is a
reasonable value when the lease is wanted.
"""

# =============================================================================
# PRICING (GMD - Gambian Dalasi)
# =============================================================================

CURRENCY: Final[str] = "GMD"
CURRENCY_SYMBOL: Final[str] = "D"

BASE_FEE: float = 50.0
"""Flat fee of every pickup before distance and multipliers."""

PER_KM_RATE: float = 10.0
"""Charge per kilometre between collector and pickup point."""

MIN_PRICE: float = 75.0
"""Lower clamp for a quoted price."""

MAX_PRICE: float = 5000.0
"""Upper clamp for a quoted price."""

MIN_WITHDRAWAL_AMOUNT: float = 50.0
"""Smallest amount a collector may withdraw from their wallet."""

# =============================================================================
# ROAD DISTANCE (OSRM) CONFIGURATION
# =============================================================================

USE_ROAD_DISTANCE: bool = False
"""
Enable road travel time via OSRM for ETAs.
Matching always ranks by straight-line distance; this only affects the ETA.
"""

OSRM_SERVER_URL: str = "https://router.project-osrm.org"
"""
OSRM server URL. Options:
- "https://router.project-osrm.org" (public demo, rate-limited)
- "http://localhost:5000" (local Docker instance)
"""

OSRM_TIMEOUT_SECONDS: float = 5.0
"""Timeout for OSRM API requests. Fail fast so a dispatch round never stalls."""

OSRM_CACHE_SIZE: int = 10000
"""Maximum number of route results to cache."""

HAVERSINE_FALLBACK_MULTIPLIER: float = 1.4
"""
Multiplier applied to haversine distance when OSRM fails.
Typical city roads are 1.3-1.5x longer than straight-line distance.
"""

# =============================================================================
# SIMULATION PARAMETERS
# =============================================================================

SIMULATION_SPEED_MINUTES: int = 1
"""Simulated minutes per tick."""

SIMULATION_MAX_MINUTES: int = 8 * 60
"""Hard stop for a simulation run (one working day)."""

ACCEPT_DELAY_MINUTES: int = 1
"""Time a simulated collector takes to accept an assigned job."""

SERVICE_TIME_MINUTES: int = 5
"""Time spent loading waste once a simulated collector has arrived."""

SIMULATION_CENTER: Final[tuple] = (13.4549, -16.5790)
"""Banjul city centre, used for synthetic fleets."""


@dataclass(frozen=True)
class DispatchConfig:
    """
    Snapshot of the settings one dispatcher runs with.

    Attributes:
        max_attempts: Matching rounds before the job is cancelled
        retry_delay_seconds: Wait between two rounds
        avg_speed_kmh: Speed used for the ETA estimate
        presence_lease_seconds: Presence expiry, or None for no expiry
        sweep_max_workers: Thread pool size for dispatch_pending
        use_road_distance: Ask OSRM for ETAs instead of the linear model
        osrm_server_url: Base URL of the OSRM server
        osrm_timeout_seconds: Per-request OSRM timeout
    """
    max_attempts: int = DISPATCH_MAX_ATTEMPTS
    retry_delay_seconds: float = DISPATCH_RETRY_DELAY_SECONDS
    avg_speed_kmh: float = AVG_SPEED_KMH
    presence_lease_seconds: Optional[float] = PRESENCE_LEASE_SECONDS
    sweep_max_workers: int = SWEEP_MAX_WORKERS
    use_road_distance: bool = USE_ROAD_DISTANCE
    osrm_server_url: str = OSRM_SERVER_URL
    osrm_timeout_seconds: float = OSRM_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.retry_delay_seconds < 0:
            raise ValueError(f"retry_delay_seconds must be >= 0, got {self.retry_delay_seconds}")
        if self.avg_speed_kmh <= 0:
            raise ValueError(f"avg_speed_kmh must be positive, got {self.avg_speed_kmh}")
        if self.presence_lease_seconds is not None and self.presence_lease_seconds <= 0:
            raise ValueError("presence_lease_seconds must be positive or None")
        if self.sweep_max_workers < 1:
            raise ValueError(f"sweep_max_workers must be at least 1, got {self.sweep_max_workers}")
        if not self.osrm_server_url:
            raise ValueError("osrm_server_url must not be empty")
        if self.osrm_timeout_seconds <= 0:
            raise ValueError(f"osrm_timeout_seconds must be positive, got {self.osrm_timeout_seconds}")
