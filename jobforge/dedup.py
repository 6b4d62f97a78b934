"""Duplicate detection and admission of new jobs into the store."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from jobforge.log import get_logger
from jobforge.models import CandidateJob, JobRecord
from jobforge.store import JobStore

log = get_logger(__name__)

DEFAULT_WINDOW_DAYS = 30


class AdmitOutcome(str, Enum):
    NEW = "new"
    DUPLICATE = "duplicate"


@dataclass
class AdmitResult:
    outcome: AdmitOutcome
    job: JobRecord | None = None
    matched_on: str | None = None  # "source_url" | "title_company" | "unique_id"

    @property
    def admitted(self) -> bool:
        return self.outcome is AdmitOutcome.NEW


class DedupGate:
    """Decide new-vs-duplicate and insert new jobs as one atomic step.

    Equivalence, first hit wins: identical source URL; then the same
    title and company (case-insensitive) created within the trailing
    window; then an already-stored unique id.
    """

    def __init__(self, store: JobStore, window_days: int = DEFAULT_WINDOW_DAYS) -> None:
        self.store = store
        self.window_days = window_days

    def find_duplicate(self, candidate: CandidateJob) -> tuple[JobRecord, str] | None:
        match = self.store.find_by_source_url(candidate.source_url)
        if match:
            return match, "source_url"
        match = self.store.find_recent_by_title_company(
            candidate.title, candidate.company, self.window_days,
        )
        if match:
            return match, "title_company"
        match = self.store.find_by_unique_id(candidate.unique_id)
        if match:
            return match, "unique_id"
        return None

    def admit(self, candidate: CandidateJob) -> AdmitResult:
        """Insert ``candidate`` unless an equivalent job exists.

        A failing duplicate lookup admits the candidate rather than drop
        it. DuplicateIdentityError from the insert itself propagates.
        """
        with self.store.transaction():
            try:
                found = self.find_duplicate(candidate)
            except Exception as exc:
                log.warning(
                    "Duplicate check failed for %r @ %r, admitting: %s",
                    candidate.title, candidate.company, exc,
                )
                found = None

            if found:
                existing, rule = found
                log.debug(
                    "Duplicate (%s): %s @ %s matches %s",
                    rule, candidate.title, candidate.company, existing.id,
                )
                return AdmitResult(AdmitOutcome.DUPLICATE, existing, rule)

            job = self.store.insert_job(candidate)
        log.info("Saved job %s: %s @ %s", job.id, job.title, job.company)
        return AdmitResult(AdmitOutcome.NEW, job)
