"""Exception taxonomy for the pipeline.

Transport and parse failures are recovered where they happen (a feed is
marked as failed, a rating falls back to REJECT). Invariant violations
are bugs and always propagate.
"""
from __future__ import annotations


class JobForgeError(Exception):
    pass


class ConfigurationError(JobForgeError):
    pass


class JobNotFoundError(JobForgeError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id!r} not found")
        self.job_id = job_id


class FeedError(JobForgeError):
    """Fetch or parse failure of a single feed."""

    def __init__(self, feed_name: str, message: str) -> None:
        super().__init__(f"{feed_name}: {message}")
        self.feed_name = feed_name
        self.message = message


class ProviderError(JobForgeError):
    """A model provider call failed (transport, auth, malformed reply)."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"[{provider}] {message}")
        self.provider = provider
        self.message = message


class ClaimConflictError(JobForgeError):
    """Another run, possibly in another process, holds the job for classification."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id!r} is already claimed for classification")
        self.job_id = job_id


class InvariantViolation(JobForgeError):
    pass


class IllegalTransitionError(InvariantViolation):
    def __init__(self, job_id: str | None, current: str, target: str, reason: str = "") -> None:
        detail = f" ({reason})" if reason else ""
        super().__init__(f"Illegal status transition {current} -> {target} for job {job_id!r}{detail}")
        self.job_id = job_id
        self.current = current
        self.target = target


class StaleStatusError(InvariantViolation):
    """Compare-and-set on status failed: someone else moved the job first."""

    def __init__(self, job_id: str, expected: str, actual: str) -> None:
        super().__init__(f"Job {job_id!r} expected status {expected}, found {actual}")
        self.job_id = job_id
        self.expected = expected
        self.actual = actual


class DuplicateIdentityError(InvariantViolation):
    def __init__(self, unique_id: str) -> None:
        super().__init__(f"A job with unique_id {unique_id!r} already exists")
        self.unique_id = unique_id
