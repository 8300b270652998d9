"""
Validation job state machine.

Strict forward progression; terminal states are absorbing:

    credits_reserved --> queued --> processing --> completed | failed
    credits_reserved | queued | processing --> cancelled

credits_reserved/queued --> failed exists only so the watchdog can close out
jobs whose owner vanished before they were picked up.

Inline single-address jobs pass through queued inside one UPDATE
(ValidationOrchestrator.claim_reserved), so no worker ever sees them queued.
"""

from uuid import UUID

from app.exceptions import InvalidJobTransitionError
from app.models.api import JobStatus

TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.CREDITS_RESERVED: frozenset(
        {JobStatus.QUEUED, JobStatus.CANCELLED, JobStatus.FAILED}
    ),
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

TERMINAL_STATES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
CANCELLABLE_STATES = frozenset(
    {JobStatus.CREDITS_RESERVED, JobStatus.QUEUED, JobStatus.PROCESSING}
)


def is_terminal(status: JobStatus | str) -> bool:
    return JobStatus(status) in TERMINAL_STATES


def can_transition(current: JobStatus | str, target: JobStatus | str) -> bool:
    """Check whether current -> target is an edge of the state machine."""
    return JobStatus(target) in TRANSITIONS[JobStatus(current)]


def assert_transition(job_id: UUID, current: JobStatus | str, target: JobStatus | str) -> None:
    """
    Raise unless current -> target is allowed.

    Raises:
        InvalidJobTransitionError: Edge not in the state machine
    """
    if not can_transition(current, target):
        raise InvalidJobTransitionError(job_id, JobStatus(current).value, JobStatus(target).value)
