"""Job lifecycle states and the legal transitions between them."""
from __future__ import annotations

from enum import Enum

from jobforge.errors import IllegalTransitionError


class JobStatus(str, Enum):
    NEW = "new"
    FILTERED_OUT = "filtered_out"
    APPROVED = "approved"
    EMAILED = "emailed"
    NEEDS_REVIEW = "needs_review"
    PENDING = "pending"
    APPLIED = "applied"
    INTERVIEW = "interview"
    REJECTED = "rejected"
    OFFER = "offer"


TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.NEW: frozenset({JobStatus.FILTERED_OUT, JobStatus.APPROVED, JobStatus.NEEDS_REVIEW}),
    JobStatus.FILTERED_OUT: frozenset({JobStatus.NEEDS_REVIEW}),
    JobStatus.APPROVED: frozenset({JobStatus.EMAILED, JobStatus.NEEDS_REVIEW}),
    JobStatus.EMAILED: frozenset({JobStatus.PENDING, JobStatus.APPLIED}),
    JobStatus.NEEDS_REVIEW: frozenset({JobStatus.NEW, JobStatus.FILTERED_OUT, JobStatus.APPROVED}),
    JobStatus.PENDING: frozenset({JobStatus.APPLIED, JobStatus.REJECTED}),
    JobStatus.APPLIED: frozenset({JobStatus.INTERVIEW, JobStatus.REJECTED}),
    JobStatus.INTERVIEW: frozenset({JobStatus.OFFER, JobStatus.REJECTED}),
    JobStatus.REJECTED: frozenset(),
    JobStatus.OFFER: frozenset(),
}

# States the pipeline itself may write; the rest belong to user actions.
PIPELINE_TARGETS: frozenset[JobStatus] = frozenset({
    JobStatus.NEW,
    JobStatus.FILTERED_OUT,
    JobStatus.APPROVED,
    JobStatus.EMAILED,
    JobStatus.NEEDS_REVIEW,
})
USER_TARGETS: frozenset[JobStatus] = frozenset({
    JobStatus.PENDING,
    JobStatus.APPLIED,
    JobStatus.INTERVIEW,
    JobStatus.REJECTED,
    JobStatus.OFFER,
})

# Statuses where ``emailed`` may be true: emailed itself and everything
# reachable from it.
EMAILED_OR_LATER: frozenset[JobStatus] = frozenset({
    JobStatus.EMAILED,
    JobStatus.PENDING,
    JobStatus.APPLIED,
    JobStatus.INTERVIEW,
    JobStatus.REJECTED,
    JobStatus.OFFER,
})


def is_terminal(status: JobStatus) -> bool:
    return not TRANSITIONS[status]


def can_transition(current: JobStatus | str, target: JobStatus | str) -> bool:
    return JobStatus(target) in TRANSITIONS[JobStatus(current)]


def validate_transition(
    current: JobStatus | str,
    target: JobStatus | str,
    *,
    job_id: str | None = None,
    by_user: bool = False,
) -> JobStatus:
    """Return ``target`` as a JobStatus or raise IllegalTransitionError.

    ``by_user`` distinguishes the user-action collaborator from the
    pipeline: each may only write its own set of target states.
    """
    current = JobStatus(current)
    target = JobStatus(target)
    if target not in TRANSITIONS[current]:
        raise IllegalTransitionError(job_id, current.value, target.value)
    allowed = USER_TARGETS if by_user else PIPELINE_TARGETS
    if target not in allowed:
        actor = "user action" if by_user else "pipeline"
        raise IllegalTransitionError(job_id, current.value, target.value, f"not writable by {actor}")
    return target
