"""Tests for the job status transition table."""
import pytest

from mbalit_dispatch import state_machine
from mbalit_dispatch.errors import InvalidTransition
from mbalit_dispatch.models import CancelledBy, JobStatus

HAPPY_PATH = [
    JobStatus.PENDING,
    JobStatus.ASSIGNED,
    JobStatus.ACCEPTED,
    JobStatus.IN_PROGRESS,
    JobStatus.ARRIVED,
    JobStatus.COMPLETED,
]


@pytest.mark.parametrize("current, target", list(zip(HAPPY_PATH, HAPPY_PATH[1:])))
def test_forward_steps_are_legal(current, target):
    assert state_machine.can_transition(current, target)
    assert state_machine.next_status(current) is target


@pytest.mark.parametrize("current", HAPPY_PATH[:-1])
def test_cancel_reachable_from_every_live_state(current):
    assert state_machine.can_transition(current, JobStatus.CANCELLED)


@pytest.mark.parametrize("terminal", [JobStatus.COMPLETED, JobStatus.CANCELLED])
def test_terminal_states_are_absorbing(terminal):
    assert state_machine.is_terminal(terminal)
    for target in JobStatus:
        assert not state_machine.can_transition(terminal, target)
    with pytest.raises(InvalidTransition):
        state_machine.validate_transition(terminal, JobStatus.CANCELLED)


@pytest.mark.parametrize("current, target", [
    (JobStatus.PENDING, JobStatus.IN_PROGRESS),
    (JobStatus.ASSIGNED, JobStatus.ARRIVED),
    (JobStatus.ACCEPTED, JobStatus.ASSIGNED),
    (JobStatus.ARRIVED, JobStatus.PENDING),
])
def test_skips_and_backward_moves_rejected(current, target):
    with pytest.raises(InvalidTransition) as exc_info:
        state_machine.validate_transition(current, target)
    assert exc_info.value.current == current.value
    assert exc_info.value.target == target.value


def test_collector_cannot_assign_themselves():
    with pytest.raises(InvalidTransition):
        state_machine.validate_collector_advance(JobStatus.PENDING, JobStatus.ASSIGNED)


def test_collector_advance_uses_cancel_for_cancellation():
    with pytest.raises(InvalidTransition):
        state_machine.validate_collector_advance(JobStatus.ACCEPTED, JobStatus.CANCELLED)


def test_customer_cancels_only_pending():
    state_machine.validate_cancel(JobStatus.PENDING, CancelledBy.CUSTOMER, None)
    with pytest.raises(InvalidTransition):
        state_machine.validate_cancel(JobStatus.ASSIGNED, CancelledBy.CUSTOMER, "changed my mind")


def test_collector_cancel_needs_reason_and_active_job():
    state_machine.validate_cancel(JobStatus.ACCEPTED, CancelledBy.COLLECTOR, "truck broke down")
    with pytest.raises(InvalidTransition):
        state_machine.validate_cancel(JobStatus.ACCEPTED, CancelledBy.COLLECTOR, "  ")
    with pytest.raises(InvalidTransition):
        state_machine.validate_cancel(JobStatus.PENDING, CancelledBy.COLLECTOR, "not mine")


def test_system_cancels_any_live_job():
    for status in HAPPY_PATH[:-1]:
        state_machine.validate_cancel(status, CancelledBy.SYSTEM, None)


def test_invalid_transition_has_user_message():
    with pytest.raises(InvalidTransition) as exc_info:
        state_machine.validate_transition(JobStatus.COMPLETED, JobStatus.ARRIVED)
    assert exc_info.value.user_message == "this order can no longer be changed"
