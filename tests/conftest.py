"""
Pytest fixtures for the dispatch core test suite.

Every fixture builds fresh in-memory stores, so tests never share state. Time
is controlled through `FakeClock` and the dispatcher's sleep function only
records the delays it was asked to wait, so retry tests run instantly.
"""
from datetime import datetime, timedelta, timezone

import pytest

from mbalit_dispatch.config import DispatchConfig
from mbalit_dispatch.dispatch import Dispatcher
from mbalit_dispatch.jobs import InMemoryJobStore
from mbalit_dispatch.models import GeoLocation, PaymentStatus, WasteType
from mbalit_dispatch.presence import InMemoryPresenceStore, PresenceRegistry
from mbalit_dispatch.wallet import InMemoryWallet

# Banjul, the default pickup point of the tests
PICKUP = GeoLocation(13.4549, -16.5790)


class FakeClock:
    """A clock that only moves when told to."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class RecordingSleep:
    """Stands in for time.sleep; remembers every requested delay."""

    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def dispatch_config():
    return DispatchConfig(max_attempts=3, retry_delay_seconds=30.0)


@pytest.fixture
def job_store(clock):
    return InMemoryJobStore(clock=clock)


@pytest.fixture
def registry(dispatch_config, clock):
    return PresenceRegistry(InMemoryPresenceStore(), dispatch_config, clock=clock)


@pytest.fixture
def wallet(clock):
    return InMemoryWallet(clock=clock)


@pytest.fixture
def dispatcher(job_store, registry, wallet, dispatch_config, sleep, clock):
    return Dispatcher(job_store, registry, wallet, config=dispatch_config, sleep=sleep, clock=clock)


@pytest.fixture
def make_job(job_store):
    """
    Factory for paid jobs at PICKUP.

    Returns:
        A function accepting overrides and returning the new job id
    """
    def _make(**overrides):
        fields = dict(
            customer_id="U1",
            waste_type=WasteType.HOUSEHOLD,
            pickup=PICKUP,
            amount=150.0,
            payment_status=PaymentStatus.PAID,
        )
        fields.update(overrides)
        return job_store.create_job(**fields)
    return _make


@pytest.fixture
def online_collector(registry):
    """
    Factory that brings a collector online.

    Returns:
        A function (collector_id, lat, lng, capabilities) -> presence snapshot
    """
    def _online(collector_id, lat=13.46, lng=-16.58, capabilities=(WasteType.HOUSEHOLD,)):
        return registry.report_presence(
            collector_id, online=True,
            location=GeoLocation(lat, lng),
            capabilities=capabilities,
        )
    return _online
