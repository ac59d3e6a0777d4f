# mbalit-dispatch/mbalit_dispatch/matcher.py
"""
Collector matching for the Mbalit dispatch core.

Nearest-eligible-collector selection: among the collectors the Presence
Registry reports as eligible for the job's waste type, pick the one with the
smallest straight-line distance to the pickup point. Equal distances (bit for
bit) are broken by the lowest collector id, so the result never depends on the
order in which the store happened to return candidates.

The matcher is a pure selection over a snapshot. It never claims a collector
or touches a job; the Dispatcher does that.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Tuple

from . import utils
from .config import DispatchConfig
from .models import CollectorPresence, GeoLocation, MatchResult, WasteType
from .presence import PresenceRegistry

logger = logging.getLogger(__name__)


def select_nearest(
    pickup: GeoLocation,
    candidates: Iterable[CollectorPresence],
    exclude: Iterable[str] = (),
) -> Optional[Tuple[CollectorPresence, float]]:
    """
    Nearest candidate to `pickup`, skipping ids in `exclude`.

    Args:
        pickup: Where the job is
        candidates: Eligible collectors (must have a location)
        exclude: Collector ids to ignore, e.g. ones whose claim just failed

    Returns:
        (collector, distance_km), or None if no candidate remains
    """
    excluded = set(exclude)
    best: Optional[CollectorPresence] = None
    best_key: Optional[Tuple[float, str]] = None

    for candidate in candidates:
        if candidate.collector_id in excluded or candidate.location is None:
            continue
        dist = utils.distance_km(pickup, candidate.location)
        key = (dist, candidate.collector_id)
        if best_key is None or key < best_key:
            best_key = key
            best = candidate

    if best is None:
        return None
    return best, best_key[0]


class Matcher:
    """
    Picks the single best eligible collector for a job.

    Attributes:
        registry: Source of the eligible-collector snapshot
        config: Speed and road-distance settings for the ETA
    """

    def __init__(self, registry: PresenceRegistry, config: Optional[DispatchConfig] = None) -> None:
        self.registry = registry
        self.config = config or registry.config

    def find_match(
        self,
        pickup: GeoLocation,
        capability: WasteType,
        exclude: Iterable[str] = (),
    ) -> MatchResult:
        """
        Select the nearest eligible collector for a pickup.

        Args:
            pickup: Job location
            capability: Waste type the collector must handle
            exclude: Collector ids to skip

        Returns:
            MatchResult with collector, distance and ETA, or MatchResult.none()
        """
        candidates: List[CollectorPresence] = self.registry.list_eligible(capability)
        logger.debug(f"{len(candidates)} eligible collector(s) for {capability.value}")

        selected = select_nearest(pickup, candidates, exclude)
        if selected is None:
            return MatchResult.none()

        collector, dist = selected
        eta = utils.estimate_travel_minutes(
            collector.location, pickup,
            use_road_distance=self.config.use_road_distance,
            avg_speed_kmh=self.config.avg_speed_kmh,
            osrm_server_url=self.config.osrm_server_url,
            osrm_timeout_seconds=self.config.osrm_timeout_seconds,
        )
        return MatchResult(collector_id=collector.collector_id, distance_km=dist, eta_minutes=eta)
