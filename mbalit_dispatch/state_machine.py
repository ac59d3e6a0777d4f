# mbalit-dispatch/mbalit_dispatch/state_machine.py
"""
Legal status transitions of a pickup job.

The forward path is strictly linear; nothing may be skipped:

    pending -> assigned -> accepted -> in_progress -> arrived -> completed

`cancelled` is reachable from every non-terminal state. `completed` and
`cancelled` are terminal and reject everything.

Who may perform a transition:
- pending -> assigned: the dispatcher only (SYSTEM)
- assigned -> ... -> completed: the assigned collector only
- * -> cancelled: the customer while pending, the system, or the assigned
  collector (with a reason)
"""

from __future__ import annotations

from typing import Dict, FrozenSet, Optional

from .errors import InvalidTransition
from .models import CancelledBy, JobStatus

TERMINAL_STATES: FrozenSet[JobStatus] = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED})

ACTIVE_STATES: FrozenSet[JobStatus] = frozenset({
    JobStatus.ASSIGNED,
    JobStatus.ACCEPTED,
    JobStatus.IN_PROGRESS,
    JobStatus.ARRIVED,
})
"""States in which the job holds a collector."""

FORWARD_TRANSITIONS: Dict[JobStatus, JobStatus] = {
    JobStatus.PENDING: JobStatus.ASSIGNED,
    JobStatus.ASSIGNED: JobStatus.ACCEPTED,
    JobStatus.ACCEPTED: JobStatus.IN_PROGRESS,
    JobStatus.IN_PROGRESS: JobStatus.ARRIVED,
    JobStatus.ARRIVED: JobStatus.COMPLETED,
}


def is_terminal(status: JobStatus) -> bool:
    return status in TERMINAL_STATES


def next_status(status: JobStatus) -> Optional[JobStatus]:
    """The only forward step allowed from `status`, or None."""
    return FORWARD_TRANSITIONS.get(status)


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """True if the table allows current -> target (ignoring who asks)."""
    if is_terminal(current):
        return False
    if target is JobStatus.CANCELLED:
        return True
    return FORWARD_TRANSITIONS.get(current) is target


def validate_transition(current: JobStatus, target: JobStatus) -> None:
    """
    Check current -> target against the transition table.

    Raises:
        InvalidTransition: If the move is not allowed
    """
    if is_terminal(current):
        raise InvalidTransition(
            f"Job is {current.value}; no further transitions allowed",
            current=current.value, target=target.value,
        )
    if not can_transition(current, target):
        expected = FORWARD_TRANSITIONS.get(current)
        raise InvalidTransition(
            f"Cannot move job from {current.value} to {target.value}"
            + (f" (next allowed: {expected.value})" if expected else ""),
            current=current.value, target=target.value,
        )


def validate_collector_advance(current: JobStatus, target: JobStatus) -> None:
    """
    Check a status advance requested by the assigned collector.

    Collectors drive assigned -> accepted -> in_progress -> arrived -> completed.
    They never perform pending -> assigned and cancel through cancel().
    """
    if target in (JobStatus.ASSIGNED, JobStatus.CANCELLED, JobStatus.PENDING):
        raise InvalidTransition(
            f"Collectors cannot move a job to {target.value}",
            current=current.value, target=target.value,
        )
    validate_transition(current, target)


def validate_cancel(current: JobStatus, by: CancelledBy, reason: Optional[str]) -> None:
    """
    Check a cancellation request.

    Raises:
        InvalidTransition: If the job is terminal, a customer cancels after
            assignment, or a collector cancels without a reason
    """
    validate_transition(current, JobStatus.CANCELLED)
    if by is CancelledBy.CUSTOMER and current is not JobStatus.PENDING:
        raise InvalidTransition(
            f"Customers can only cancel pending jobs, job is {current.value}",
            current=current.value, target=JobStatus.CANCELLED.value,
        )
    if by is CancelledBy.COLLECTOR:
        if current not in ACTIVE_STATES:
            raise InvalidTransition(
                f"Collectors can only cancel jobs assigned to them, job is {current.value}",
                current=current.value, target=JobStatus.CANCELLED.value,
            )
        if not reason or not reason.strip():
            raise InvalidTransition(
                "Collectors must give a reason to cancel",
                current=current.value, target=JobStatus.CANCELLED.value,
            )
