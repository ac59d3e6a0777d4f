"""Tests for collector presence and the busy claim."""
import threading
from concurrent.futures import ThreadPoolExecutor

from mbalit_dispatch.config import DispatchConfig
from mbalit_dispatch.models import GeoLocation, WasteType
from mbalit_dispatch.presence import InMemoryPresenceStore, PresenceRegistry


def test_first_report_creates_record(registry, online_collector, clock):
    presence = online_collector("C1", capabilities=[WasteType.HOUSEHOLD, WasteType.GARDEN])

    assert presence.online
    assert presence.capabilities == frozenset({WasteType.HOUSEHOLD, WasteType.GARDEN})
    assert presence.last_updated == clock.now
    assert registry.is_eligible("C1", WasteType.GARDEN)
    assert not registry.is_eligible("C1", WasteType.MEDICAL)


def test_unknown_collector_is_absent(registry):
    assert registry.get("ghost") is None
    assert not registry.is_eligible("ghost", WasteType.HOUSEHOLD)
    assert registry.list_eligible(WasteType.HOUSEHOLD) == []
    registry.go_offline("ghost")
    assert registry.get("ghost") is None


def test_identical_report_only_refreshes_timestamp(registry, online_collector, clock):
    changes = []
    registry.subscribe(changes.append)

    online_collector("C1")
    clock.advance(10)
    again = online_collector("C1")

    assert len(changes) == 1
    assert again.last_updated == clock.now


def test_partial_report_keeps_location_and_capabilities(registry, online_collector):
    online_collector("C1", capabilities=[WasteType.KITCHEN])
    registry.report_presence("C1", online=True)

    presence = registry.get("C1")
    assert presence.location == GeoLocation(13.46, -16.58)
    assert presence.capabilities == frozenset({WasteType.KITCHEN})


def test_go_offline_removes_from_eligible(registry, online_collector):
    online_collector("C1")
    registry.go_offline("C1")

    assert not registry.get("C1").online
    assert registry.list_eligible(WasteType.HOUSEHOLD) == []


def test_collector_without_location_is_not_eligible(registry):
    registry.report_presence("C1", online=True, capabilities=[WasteType.HOUSEHOLD])
    assert not registry.is_eligible("C1", WasteType.HOUSEHOLD)


def test_mark_busy_is_exclusive(registry, online_collector):
    online_collector("C1")

    assert registry.mark_busy("C1", "J1")
    assert not registry.mark_busy("C1", "J2")
    assert registry.get("C1").current_job_id == "J1"
    assert not registry.is_eligible("C1", WasteType.HOUSEHOLD)


def test_mark_busy_unknown_collector(registry):
    assert not registry.mark_busy("ghost", "J1")


def test_concurrent_claims_have_one_winner(registry, online_collector):
    online_collector("C1")
    barrier = threading.Barrier(10)

    def claim(i):
        barrier.wait()
        return registry.mark_busy("C1", f"J{i}")

    with ThreadPoolExecutor(max_workers=10) as pool:
        results = list(pool.map(claim, range(10)))

    assert results.count(True) == 1
    assert registry.get("C1").current_job_id == f"J{results.index(True)}"


def test_mark_free_with_stale_job_id_is_ignored(registry, online_collector):
    online_collector("C1")
    registry.mark_busy("C1", "J2")

    assert not registry.mark_free("C1", "J1")
    assert registry.get("C1").current_job_id == "J2"
    assert registry.mark_free("C1", "J2")
    assert registry.get("C1").current_job_id is None


def test_busy_state_survives_location_updates(registry, online_collector):
    online_collector("C1")
    registry.mark_busy("C1", "J1")
    online_collector("C1", lat=13.44, lng=-16.60)

    assert registry.get("C1").current_job_id == "J1"


def test_lease_expires_stale_presence(clock):
    config = DispatchConfig(presence_lease_seconds=120)
    registry = PresenceRegistry(InMemoryPresenceStore(), config, clock=clock)
    registry.report_presence("C1", True, GeoLocation(13.46, -16.58), [WasteType.HOUSEHOLD])

    clock.advance(119)
    assert registry.is_eligible("C1", WasteType.HOUSEHOLD)
    clock.advance(2)
    assert not registry.is_eligible("C1", WasteType.HOUSEHOLD)
    assert registry.snapshot() == []


def test_snapshot_lists_online_collectors(registry, online_collector):
    online_collector("C2")
    online_collector("C1")
    online_collector("C3")
    registry.go_offline("C3")
    registry.mark_busy("C2", "J1")

    snapshot = registry.snapshot()

    assert [entry["collector_id"] for entry in snapshot] == ["C1", "C2"]
    assert [entry["has_active_job"] for entry in snapshot] == [False, True]


def test_observer_errors_do_not_block_others(registry, online_collector, caplog):
    received = []

    def broken(presence):
        raise RuntimeError("observer down")

    registry.subscribe(broken)
    unsubscribe = registry.subscribe(received.append)
    online_collector("C1")
    unsubscribe()
    registry.go_offline("C1")

    assert [p.collector_id for p in received] == ["C1"]
    assert "Presence observer failed" in caplog.text
