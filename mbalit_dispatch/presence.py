# mbalit-dispatch/mbalit_dispatch/presence.py
"""
Presence Registry for the Mbalit dispatch core.

Answers "which collectors are eligible right now" and "where is collector X".
Presence is ephemeral: a record is created on a collector's first report and
is treated as absent once they go offline (or, with a lease configured, once
their last report is too old).

The `current_job_id` field is the mutual-exclusion point of the whole system.
`mark_busy` is a compare-and-set on it, never a read-then-write, so two
concurrent dispatches can never give the same collector two jobs.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

from . import utils
from .config import DispatchConfig
from .models import CollectorPresence, GeoLocation, WasteType

logger = logging.getLogger(__name__)

PresenceCallback = Callable[[CollectorPresence], None]


class _AnyJob:
    """Sentinel: compare_and_set_busy without an expected value."""

    def __repr__(self) -> str:
        return "ANY"


ANY = _AnyJob()


class PresenceStore(ABC):
    """Persistence contract for collector presence."""

    @abstractmethod
    def get_presence(self, collector_id: str) -> Optional[CollectorPresence]:
        """Snapshot of the collector's presence, or None if never reported."""

    @abstractmethod
    def set_presence(
        self,
        collector_id: str,
        online: bool,
        location: Optional[GeoLocation],
        capabilities: Optional[Iterable[WasteType]],
        reported_at: datetime,
    ) -> Optional[CollectorPresence]:
        """
        Create or update the record. `location`/`capabilities` of None keep the
        stored values. Returns the new snapshot if anything but the timestamp
        changed, None for a repeated identical report.
        """

    @abstractmethod
    def compare_and_set_busy(self, collector_id: str, job_id: Optional[str], expected: Any = ANY) -> bool:
        """
        Atomically set `current_job_id` to `job_id` if it currently equals
        `expected` (ANY matches everything). False if unknown or mismatched.
        """

    @abstractmethod
    def list_eligible(
        self,
        capability: WasteType,
        now: datetime,
        lease_seconds: Optional[float] = None,
    ) -> List[CollectorPresence]:
        """Collectors that are live, located, free and handle `capability`."""

    @abstractmethod
    def list_presences(self) -> List[CollectorPresence]:
        """Every known record."""


class InMemoryPresenceStore(PresenceStore):
    """Thread-safe in-memory PresenceStore. Snapshots handed out are copies."""

    def __init__(self) -> None:
        self._presences: Dict[str, CollectorPresence] = {}
        self._lock = threading.Lock()

    def get_presence(self, collector_id: str) -> Optional[CollectorPresence]:
        with self._lock:
            presence = self._presences.get(collector_id)
            return replace(presence) if presence is not None else None

    def set_presence(
        self,
        collector_id: str,
        online: bool,
        location: Optional[GeoLocation],
        capabilities: Optional[Iterable[WasteType]],
        reported_at: datetime,
    ) -> Optional[CollectorPresence]:
        with self._lock:
            current = self._presences.get(collector_id)
            if current is None:
                current = CollectorPresence(collector_id=collector_id)
                changed = True
            else:
                changed = False

            new_caps: FrozenSet[WasteType] = (
                frozenset(capabilities) if capabilities is not None else current.capabilities
            )
            new_location = location if location is not None else current.location
            changed = changed or (
                current.online != online
                or current.location != new_location
                or current.capabilities != new_caps
            )

            updated = replace(
                current,
                online=online,
                location=new_location,
                capabilities=new_caps,
                last_updated=reported_at,
            )
            self._presences[collector_id] = updated
            return replace(updated) if changed else None

    def compare_and_set_busy(self, collector_id: str, job_id: Optional[str], expected: Any = ANY) -> bool:
        with self._lock:
            current = self._presences.get(collector_id)
            if current is None:
                return False
            if expected is not ANY and current.current_job_id != expected:
                return False
            self._presences[collector_id] = replace(current, current_job_id=job_id)
            return True

    def list_eligible(
        self,
        capability: WasteType,
        now: datetime,
        lease_seconds: Optional[float] = None,
    ) -> List[CollectorPresence]:
        with self._lock:
            return [
                replace(p) for p in self._presences.values()
                if p.is_eligible_for(capability, now, lease_seconds)
            ]

    def list_presences(self) -> List[CollectorPresence]:
        with self._lock:
            return [replace(p) for p in self._presences.values()]


class PresenceRegistry:
    """
    Live view of collector eligibility.

    Queries never raise for unknown collectors; they report them as absent or
    ineligible. Writes are idempotent: a repeated identical report only
    refreshes the last-seen time and notifies nobody.
    """

    def __init__(
        self,
        store: PresenceStore,
        config: Optional[DispatchConfig] = None,
        clock: Callable[[], datetime] = utils.utc_now,
    ) -> None:
        self.store = store
        self.config = config or DispatchConfig()
        self._clock = clock
        self._observers: List[PresenceCallback] = []
        self._observers_lock = threading.Lock()

    def report_presence(
        self,
        collector_id: str,
        online: bool,
        location: Optional[GeoLocation] = None,
        capabilities: Optional[Iterable[WasteType]] = None,
    ) -> Optional[CollectorPresence]:
        """
        Record a collector's online flag and, if given, position/capabilities.

        Returns:
            The latest snapshot of the collector
        """
        changed = self.store.set_presence(collector_id, online, location, capabilities, self._clock())
        if changed is not None:
            logger.debug(f"Presence of {collector_id}: online={changed.online}, location={changed.location}")
            self._notify(changed)
        return self.store.get_presence(collector_id)

    def go_offline(self, collector_id: str) -> None:
        """Collector closed the app or toggled availability off."""
        if self.store.get_presence(collector_id) is None:
            return
        self.report_presence(collector_id, online=False)

    def get(self, collector_id: str) -> Optional[CollectorPresence]:
        return self.store.get_presence(collector_id)

    def is_eligible(self, collector_id: str, capability: WasteType) -> bool:
        presence = self.store.get_presence(collector_id)
        if presence is None:
            return False
        return presence.is_eligible_for(capability, self._clock(), self.config.presence_lease_seconds)

    def list_eligible(self, capability: WasteType) -> List[CollectorPresence]:
        """All eligible collectors for `capability`. Order is unspecified."""
        return self.store.list_eligible(capability, self._clock(), self.config.presence_lease_seconds)

    def mark_busy(self, collector_id: str, job_id: str) -> bool:
        """
        Claim the collector for `job_id`.

        Returns:
            False if the collector already has a job (or is unknown)
        """
        claimed = self.store.compare_and_set_busy(collector_id, job_id, expected=None)
        if claimed:
            logger.debug(f"Collector {collector_id} claimed for job {job_id}")
            self._notify_current(collector_id)
        else:
            logger.debug(f"Collector {collector_id} already busy, claim for job {job_id} refused")
        return claimed

    def mark_free(self, collector_id: str, job_id: Optional[str] = None) -> bool:
        """
        Release the collector. With `job_id`, only if they are busy with that job,
        so a stale release cannot free a collector who has moved on.
        """
        expected = ANY if job_id is None else job_id
        freed = self.store.compare_and_set_busy(collector_id, None, expected=expected)
        if freed:
            logger.debug(f"Collector {collector_id} is free")
            self._notify_current(collector_id)
        return freed

    def snapshot(self) -> List[Dict[str, Any]]:
        """Online collectors with their position and whether they hold a job."""
        now = self._clock()
        lease = self.config.presence_lease_seconds
        return [
            {
                "collector_id": p.collector_id,
                "location": p.location,
                "has_active_job": p.is_busy,
            }
            for p in sorted(self.store.list_presences(), key=lambda p: p.collector_id)
            if p.is_live(now, lease) and p.location is not None
        ]

    def subscribe(self, callback: PresenceCallback) -> Callable[[], None]:
        """Call `callback` with a snapshot after every presence change."""
        with self._observers_lock:
            self._observers.append(callback)

        def unsubscribe() -> None:
            with self._observers_lock:
                if callback in self._observers:
                    self._observers.remove(callback)

        return unsubscribe

    def _notify_current(self, collector_id: str) -> None:
        presence = self.store.get_presence(collector_id)
        if presence is not None:
            self._notify(presence)

    def _notify(self, presence: CollectorPresence) -> None:
        with self._observers_lock:
            observers = list(self._observers)
        for callback in observers:
            try:
                callback(replace(presence))
            except Exception:
                logger.exception(f"Presence observer failed for {presence.collector_id}")
