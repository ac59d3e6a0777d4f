# mbalit-dispatch/mbalit_dispatch/errors.py
"""
Exception types raised by the dispatch core.

Every error carries two messages: the exception text is for developers and
logs, `user_message` is the plain sentence a customer or collector screen may
show as-is. Internal codes never reach the user.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import Job


class DispatchError(Exception):
    """Base class for all dispatch core errors."""

    user_message: str = "something went wrong, please try again"

    def __init__(self, message: str, user_message: Optional[str] = None) -> None:
        super().__init__(message)
        if user_message is not None:
            self.user_message = user_message


class JobNotFound(DispatchError):
    """The job id is unknown to the job store."""

    user_message = "this order could not be found"

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id!r} does not exist")
        self.job_id = job_id


class NotDispatchable(DispatchError):
    """
    The job cannot be dispatched: it is not pending or its payment has not
    cleared. Not retried by the system; the caller must fix the precondition.
    """

    user_message = "this order can't be sent to a collector yet"


class NoEligibleCollector(DispatchError):
    """
    No collector is online, free and able to handle the waste type.

    Raised out of dispatch only once the retry budget is spent; `job` is then
    the cancelled job and `attempts` the number of rounds tried.
    """

    user_message = "no collectors available, please try again later"

    def __init__(self, message: str, job: Optional[Job] = None, attempts: int = 0) -> None:
        super().__init__(message)
        self.job = job
        self.attempts = attempts


class ConcurrentClaimLost(DispatchError):
    """
    Another writer won a compare-and-set race: the collector was claimed by a
    concurrent dispatch, or the job status moved underneath us.
    Always absorbed inside dispatch, never shown to users.
    """


class InvalidTransition(DispatchError):
    """The requested status change is not in the legal transition table."""

    user_message = "this order can no longer be changed"

    def __init__(self, message: str, current: Optional[str] = None, target: Optional[str] = None) -> None:
        super().__init__(message)
        self.current = current
        self.target = target


class InvalidCoordinates(DispatchError, ValueError):
    """Latitude/longitude out of range or not a finite number."""

    user_message = "the pickup location is not valid"
