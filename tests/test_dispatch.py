"""
Tests for the Dispatcher: assignment, retries, idempotence and the
at-most-one guarantees under concurrency.
"""
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest import mock

import pytest

from mbalit_dispatch import config
from mbalit_dispatch.config import DispatchConfig
from mbalit_dispatch.dispatch import Dispatcher
from mbalit_dispatch.errors import JobNotFound, NoEligibleCollector, NotDispatchable
from mbalit_dispatch.matcher import Matcher
from mbalit_dispatch.models import CancelledBy, JobStatus, MatchResult, PaymentStatus, WasteType


def test_assigns_nearest_eligible_collector(dispatcher, make_job, online_collector, job_store, registry, clock):
    online_collector("C1", lat=13.46, lng=-16.58)
    online_collector("C2", lat=13.50, lng=-16.62)
    job_id = make_job()

    outcome = dispatcher.dispatch(job_id)

    assert outcome.assigned
    assert outcome.attempts == 1
    assert outcome.match.collector_id == "C1"
    job = job_store.get_job(job_id)
    assert job.status is JobStatus.ASSIGNED
    assert job.assigned_collector_id == "C1"
    assert job.assigned_at == clock.now
    assert job.distance_km == outcome.match.distance_km
    assert registry.get("C1").current_job_id == job_id


def test_unknown_job(dispatcher):
    with pytest.raises(JobNotFound):
        dispatcher.dispatch("missing")


def test_unpaid_job_is_not_dispatchable(dispatcher, make_job, online_collector, registry):
    online_collector("C1")
    job_id = make_job(payment_status=PaymentStatus.PENDING)

    with pytest.raises(NotDispatchable) as exc_info:
        dispatcher.dispatch(job_id)

    assert "payment" in exc_info.value.user_message
    assert registry.get("C1").current_job_id is None


def test_dispatch_is_idempotent(dispatcher, make_job, online_collector, job_store, registry):
    online_collector("C1")
    online_collector("C2", lat=13.47, lng=-16.59)
    job_id = make_job()

    first = dispatcher.dispatch(job_id)
    second = dispatcher.dispatch(job_id)

    assert first.assigned
    assert not second.assigned
    assert second.attempts == 0
    assert second.job.assigned_collector_id == "C1"
    assert registry.get("C2").current_job_id is None


def test_dispatch_on_cancelled_job_changes_nothing(dispatcher, make_job, job_store, online_collector):
    online_collector("C1")
    job_id = make_job()
    dispatcher.cancel(job_id, "U1")

    outcome = dispatcher.dispatch(job_id)

    assert outcome.status is JobStatus.CANCELLED
    assert outcome.job.cancelled_by is CancelledBy.CUSTOMER


def test_non_pending_check_precedes_payment_check(dispatcher, make_job, job_store):
    job_id = make_job(payment_status=PaymentStatus.FAILED)
    job_store.compare_and_set_status(job_id, JobStatus.PENDING, JobStatus.CANCELLED)

    assert dispatcher.dispatch(job_id).status is JobStatus.CANCELLED


def test_exhausted_retries_cancel_job(job_store, registry, wallet, dispatch_config, sleep, make_job):
    matcher = Matcher(registry, dispatch_config)
    dispatcher = Dispatcher(job_store, registry, wallet, config=dispatch_config, matcher=matcher, sleep=sleep)
    job_id = make_job()

    with mock.patch.object(matcher, "find_match", wraps=matcher.find_match) as find_match:
        with pytest.raises(NoEligibleCollector) as exc_info:
            dispatcher.dispatch(job_id)

    assert find_match.call_count == dispatch_config.max_attempts
    assert sleep.calls == [dispatch_config.retry_delay_seconds] * (dispatch_config.max_attempts - 1)
    assert exc_info.value.attempts == dispatch_config.max_attempts
    assert exc_info.value.user_message == "no collectors available, please try again later"

    job = job_store.get_job(job_id)
    assert job.status is JobStatus.CANCELLED
    assert job.cancel_reason == config.NO_COLLECTORS_REASON == "no collectors available"
    assert job.cancelled_by is CancelledBy.SYSTEM
    assert exc_info.value.job.job_id == job_id


def test_collector_appearing_between_attempts_is_used(job_store, registry, wallet, dispatch_config, make_job, online_collector):
    waits = []

    def come_online(seconds):
        waits.append(seconds)
        online_collector("C_LATE")

    dispatcher = Dispatcher(job_store, registry, wallet, config=dispatch_config, sleep=come_online)
    outcome = dispatcher.dispatch(make_job())

    assert outcome.assigned
    assert outcome.attempts == 2
    assert outcome.match.collector_id == "C_LATE"
    assert waits == [30.0]


def test_ineligible_capability_counts_as_no_collector(dispatcher, make_job, online_collector, job_store):
    online_collector("C1", capabilities=[WasteType.HOUSEHOLD])
    job_id = make_job(waste_type=WasteType.MEDICAL)

    with pytest.raises(NoEligibleCollector):
        dispatcher.dispatch(job_id)
    assert job_store.get_job(job_id).status is JobStatus.CANCELLED


def test_many_jobs_one_collector(dispatcher, make_job, online_collector, job_store, registry):
    online_collector("C1")
    job_ids = [make_job(customer_id=f"U{i}") for i in range(12)]
    barrier = threading.Barrier(len(job_ids))

    def run(job_id):
        barrier.wait()
        try:
            return dispatcher.dispatch(job_id).assigned
        except NoEligibleCollector:
            return False

    with ThreadPoolExecutor(max_workers=len(job_ids)) as pool:
        results = list(pool.map(run, job_ids))

    assert results.count(True) == 1
    winner = job_ids[results.index(True)]
    assert registry.get("C1").current_job_id == winner
    statuses = [job_store.get_job(j).status for j in job_ids]
    assert statuses.count(JobStatus.ASSIGNED) == 1
    assert statuses.count(JobStatus.CANCELLED) == len(job_ids) - 1


def test_many_jobs_many_collectors_no_double_booking(dispatcher, make_job, online_collector, job_store, registry, sleep):
    for i in range(6):
        online_collector(f"C{i}", lat=13.45 + i * 0.001, lng=-16.58)
    job_ids = [make_job(customer_id=f"U{i}") for i in range(6)]
    barrier = threading.Barrier(len(job_ids))

    def run(job_id):
        barrier.wait()
        return dispatcher.dispatch(job_id)

    with ThreadPoolExecutor(max_workers=len(job_ids)) as pool:
        outcomes = list(pool.map(run, job_ids))

    assert all(o.assigned for o in outcomes)
    collectors = [job_store.get_job(j).assigned_collector_id for j in job_ids]
    assert len(set(collectors)) == 6
    for job_id, collector_id in zip(job_ids, collectors):
        assert registry.get(collector_id).current_job_id == job_id
    assert sleep.calls == []


def test_lost_claim_moves_to_next_collector(dispatcher, make_job, online_collector, registry):
    online_collector("C1", lat=13.455, lng=-16.579)
    online_collector("C2", lat=13.47, lng=-16.59)
    job_id = make_job()

    real_mark_busy = registry.mark_busy

    def steal_first(collector_id, claimed_job):
        if collector_id == "C1":
            # Another dispatch grabs C1 between match and claim
            real_mark_busy("C1", "OTHER")
        return real_mark_busy(collector_id, claimed_job)

    registry.mark_busy = steal_first
    outcome = dispatcher.dispatch(job_id)

    assert outcome.assigned
    assert outcome.match.collector_id == "C2"
    assert registry.get("C1").current_job_id == "OTHER"


def _stealing(registry, stolen):
    """Wrap mark_busy so each collector in `stolen` is grabbed by a rival job first."""
    real_mark_busy = registry.mark_busy

    def mark_busy(collector_id, claimed_job):
        if collector_id in stolen:
            real_mark_busy(collector_id, f"RIVAL-{collector_id}")
        return real_mark_busy(collector_id, claimed_job)

    return mark_busy


def test_lost_claims_do_not_use_up_attempts(dispatcher, dispatch_config, make_job, online_collector, registry, sleep):
    for i in range(1, 5):
        online_collector(f"C{i}", lat=13.4549 + i * 0.002, lng=-16.5790)
    job_id = make_job()
    registry.mark_busy = _stealing(registry, {"C1", "C2", "C3"})

    outcome = dispatcher.dispatch(job_id)

    assert dispatch_config.max_attempts == 3
    assert outcome.assigned
    assert outcome.match.collector_id == "C4"
    assert outcome.attempts == 1
    assert registry.get("C4").current_job_id == job_id
    assert sleep.calls == []


def test_single_attempt_survives_lost_claim(job_store, registry, wallet, sleep, make_job, online_collector):
    dispatcher = Dispatcher(job_store, registry, wallet, config=DispatchConfig(max_attempts=1), sleep=sleep)
    online_collector("C1", lat=13.455, lng=-16.579)
    online_collector("C2", lat=13.47, lng=-16.59)
    job_id = make_job()
    registry.mark_busy = _stealing(registry, {"C1"})

    outcome = dispatcher.dispatch(job_id)

    assert outcome.assigned
    assert job_store.get_job(job_id).assigned_collector_id == "C2"
    assert sleep.calls == []


def test_every_claim_lost_then_no_candidate_uses_one_attempt(job_store, registry, wallet, sleep, make_job, online_collector):
    dispatcher = Dispatcher(job_store, registry, wallet, config=DispatchConfig(max_attempts=1), sleep=sleep)
    online_collector("C1")
    online_collector("C2", lat=13.47, lng=-16.59)
    job_id = make_job()
    registry.mark_busy = _stealing(registry, {"C1", "C2"})

    with pytest.raises(NoEligibleCollector) as exc_info:
        dispatcher.dispatch(job_id)

    assert exc_info.value.attempts == 1
    assert job_store.get_job(job_id).status is JobStatus.CANCELLED


def test_customer_cancel_during_dispatch_releases_collector(dispatcher, make_job, online_collector, job_store, registry):
    online_collector("C1")
    job_id = make_job()
    real_mark_busy = registry.mark_busy

    def cancel_then_claim(collector_id, claimed_job):
        claimed = real_mark_busy(collector_id, claimed_job)
        dispatcher.cancel(claimed_job, "U1")
        return claimed

    registry.mark_busy = cancel_then_claim
    outcome = dispatcher.dispatch(job_id)

    assert not outcome.assigned
    assert outcome.status is JobStatus.CANCELLED
    assert job_store.get_job(job_id).cancelled_by is CancelledBy.CUSTOMER
    assert registry.get("C1").current_job_id is None


def test_job_write_failure_rolls_back_claim(dispatcher, make_job, online_collector, job_store, registry):
    online_collector("C1")
    job_id = make_job()

    with mock.patch.object(job_store, "compare_and_set_status", side_effect=IOError("store down")):
        with pytest.raises(IOError):
            dispatcher.dispatch(job_id)

    assert registry.get("C1").current_job_id is None
    assert job_store.get_job(job_id).status is JobStatus.PENDING


def test_try_dispatch_single_round(dispatcher, make_job, job_store, sleep):
    job_id = make_job()

    outcome = dispatcher.try_dispatch(job_id)

    assert not outcome.assigned
    assert outcome.attempts == 1
    assert outcome.status is JobStatus.PENDING
    assert sleep.calls == []


def test_cancel_unmatched_leaves_assigned_job_alone(dispatcher, make_job, online_collector):
    online_collector("C1")
    job_id = make_job()
    dispatcher.dispatch(job_id)

    job = dispatcher.cancel_unmatched(job_id)

    assert job.status is JobStatus.ASSIGNED


def test_dispatch_pending_sweep(dispatcher, make_job, online_collector, job_store):
    online_collector("C1")
    online_collector("C2", lat=13.47, lng=-16.59)
    paid = [make_job(customer_id=f"U{i}") for i in range(3)]
    unpaid = make_job(customer_id="U9", payment_status=PaymentStatus.PENDING)

    results = dispatcher.dispatch_pending()

    assert set(results) == set(paid)
    assert sum(1 for o in results.values() if o.assigned) == 2
    assert sum(1 for o in results.values() if o.status is JobStatus.CANCELLED) == 1
    assert job_store.get_job(unpaid).status is JobStatus.PENDING


def test_dispatch_pending_with_nothing_to_do(dispatcher):
    assert dispatcher.dispatch_pending() == {}


def test_match_result_none_is_found_false():
    assert not MatchResult.none().found
