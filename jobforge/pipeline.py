"""
Job pipeline orchestrator.

Runs: feeds → dedup → tier 1 rating → tier 2 analysis → email digest of approved jobs.
"""
from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

from jobforge.classifier import TwoTierClassifier
from jobforge.config import AgentConfig, LLMConfiguration, PipelineSettings, ProfileTexts
from jobforge.dedup import DedupGate
from jobforge.errors import ClaimConflictError, ConfigurationError, InvariantViolation, StaleStatusError
from jobforge.feeds import FeedGateway, FeedIngestResult
from jobforge.log import get_logger
from jobforge.models import FeedSource, JobRecord, PreferenceProfile, ProcessingRunStats, Rating
from jobforge.providers import ConnectionTestResult, LLMProvider, build_provider
from jobforge.status import JobStatus
from jobforge.store import JobStore

log = get_logger(__name__)

Deliver = Callable[[list[JobRecord]], bool]


@dataclass
class IngestResult:
    feeds: list[FeedIngestResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    cancelled: bool = False
    elapsed_seconds: float = 0.0

    @property
    def found(self) -> int:
        return sum(f.found for f in self.feeds)

    @property
    def added(self) -> int:
        return sum(f.added for f in self.feeds)

    @property
    def duplicates(self) -> int:
        return sum(f.duplicates for f in self.feeds)

    @property
    def violations(self) -> list[str]:
        return [v for f in self.feeds for v in f.violations]


@dataclass
class ClassifyResult:
    processed: int = 0
    approved: int = 0
    filtered: int = 0
    needs_review: int = 0
    skipped: int = 0
    analyzed: int = 0
    errors: list[str] = field(default_factory=list)
    violations: list[str] = field(default_factory=list)
    cancelled: bool = False
    elapsed_seconds: float = 0.0


@dataclass
class FullRunResult:
    ingest: IngestResult
    classify: ClassifyResult | None = None
    emailed: int = 0
    errors: list[str] = field(default_factory=list)
    cancelled: bool = False
    elapsed_seconds: float = 0.0

    @property
    def processed(self) -> int:
        return self.classify.processed if self.classify else 0

    @property
    def approved(self) -> int:
        return self.classify.approved if self.classify else 0

    @property
    def filtered(self) -> int:
        return self.classify.filtered if self.classify else 0

    @property
    def violations(self) -> list[str]:
        return self.ingest.violations + (self.classify.violations if self.classify else [])


class Pipeline:
    """Ingest, classify and full-run operations over one job store.

    Preferences, agent configuration and settings are passed in; nothing
    is read from module-level state. ``deliver`` is the email collaborator:
    it receives approved, not yet emailed jobs and returns True once they
    have been sent.
    """

    def __init__(
        self,
        store: JobStore,
        preferences: PreferenceProfile,
        llm: LLMConfiguration,
        settings: PipelineSettings | None = None,
        texts: ProfileTexts | None = None,
        *,
        deliver: Deliver | None = None,
        gateway: FeedGateway | None = None,
        provider_factory: Callable[[AgentConfig], LLMProvider] = build_provider,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.store = store
        self.preferences = preferences
        self.llm = llm
        self.settings = settings or PipelineSettings()
        self.texts = texts or ProfileTexts()
        self.deliver = deliver
        self.gateway = gateway or FeedGateway(store, self.settings)
        self.dedup = DedupGate(store, self.settings.duplicate_window_days)
        self.provider_factory = provider_factory
        self.cancel_event = cancel_event or threading.Event()

    def cancel(self) -> None:
        """Stop after the item currently in flight."""
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def _today(self) -> str:
        return self.store.clock().date().isoformat()

    # ------------------------------------------------------------------
    # ingest
    # ------------------------------------------------------------------

    def _admit(self, candidate) -> bool:
        return self.dedup.admit(candidate).admitted

    def _process_feed(self, feed: FeedSource) -> FeedIngestResult:
        return self.gateway.process(feed, self._admit, should_stop=self.cancel_event.is_set)

    def ingest(self) -> IngestResult:
        """Fetch every enabled feed and admit new jobs."""
        started = time.monotonic()
        result = IngestResult()
        feeds = self.store.list_feeds(enabled_only=True)
        if not feeds:
            log.warning("No enabled feeds, nothing to ingest")
            return result

        workers = min(self.settings.feed_workers, len(feeds))
        log.info("Ingesting %d feed(s) with %d worker(s)...", len(feeds), workers)
        if workers == 1:
            for i, feed in enumerate(feeds):
                if i and self.cancel_event.wait(self.settings.feed_pacing_seconds):
                    break
                if self.cancelled:
                    break
                result.feeds.append(self._process_feed(feed))
        else:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = {pool.submit(self._process_feed, feed): feed for feed in feeds}
                for future in as_completed(futures):
                    result.feeds.append(future.result())

        result.cancelled = self.cancelled or any(f.cancelled for f in result.feeds)
        result.errors = [f"{f.feed_name}: {f.error}" for f in result.feeds if f.error]
        result.errors += [f"{f.feed_name}: {e}" for f in result.feeds for e in f.item_errors]
        result.elapsed_seconds = time.monotonic() - started
        log.info(
            "Ingest complete: feeds=%d, found=%d, new=%d, duplicates=%d, errors=%d%s",
            len(result.feeds), result.found, result.added, result.duplicates,
            len(result.errors), " (cancelled)" if result.cancelled else "",
        )
        return result

    def ingest_feed(self, feed_id: str) -> IngestResult:
        """Refresh a single feed; unknown or disabled feeds are a no-op."""
        started = time.monotonic()
        result = IngestResult()
        feed = self.store.get_feed(feed_id)
        if feed is None:
            result.errors.append(f"Feed {feed_id!r} not found")
        elif not feed.enabled:
            result.errors.append(f"Feed {feed_id!r} is disabled")
        else:
            feed_result = self._process_feed(feed)
            result.feeds.append(feed_result)
            if feed_result.error:
                result.errors.append(f"{feed.name}: {feed_result.error}")
            result.errors += [f"{feed.name}: {e}" for e in feed_result.item_errors]
            result.cancelled = feed_result.cancelled
        result.elapsed_seconds = time.monotonic() - started
        return result

    # ------------------------------------------------------------------
    # classify
    # ------------------------------------------------------------------

    def _target_for(self, rating: Rating) -> JobStatus:
        if rating is Rating.APPROVE:
            return JobStatus.APPROVED
        if rating is Rating.MAYBE:
            return self.settings.maybe_status
        return JobStatus.FILTERED_OUT

    def _classify_one(self, classifier: TwoTierClassifier, job: JobRecord) -> tuple[JobRecord, Rating]:
        with self.store.claim(job.id):
            basic = classifier.basic_filter(job)
            updated = self.store.transition(
                job.id,
                self._target_for(basic.rating),
                expected=JobStatus.NEW,
                rating=basic.rating,
                reasoning=basic.reasoning,
                top_matches=basic.top_matches,
                date_processed=self.store.now(),
            )
        return updated, basic.rating

    def _analyze(self, classifier: TwoTierClassifier, job: JobRecord) -> None:
        result = classifier.detailed_analysis(job)
        self.store.set_detailed_analysis(job.id, result.analysis)

    def _mark_for_review(self, job: JobRecord, error: str) -> None:
        try:
            self.store.transition(
                job.id, JobStatus.NEEDS_REVIEW, expected=JobStatus.NEW, processing_error=error[:1000],
            )
        except Exception as exc:
            log.error("Could not move %s to needs_review: %s", job.id, exc)

    def classify(self, *, record_stats: bool = True) -> ClassifyResult:
        """Rate every job in ``new``; Tier 2 runs alongside on a single worker."""
        started = time.monotonic()
        result = ClassifyResult()
        if not self.llm.agent1.enabled:
            log.info("Tier 1 agent disabled, skipping classification")
            return result

        classifier = TwoTierClassifier(
            self.llm, self.preferences, self.texts,
            store=self.store, provider_factory=self.provider_factory,
        )
        jobs = self.store.list_jobs(JobStatus.NEW, limit=self.settings.classify_batch_limit)
        log.info("Classifying %d new job(s)...", len(jobs))

        analyses: dict[Future, JobRecord] = {}
        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="tier2") as tier2:
            for job in jobs:
                if self.cancelled:
                    result.cancelled = True
                    break
                try:
                    updated, rating = self._classify_one(classifier, job)
                except (ClaimConflictError, StaleStatusError) as exc:
                    log.warning("Skipping %s, taken by another run: %s", job.id, exc)
                    result.skipped += 1
                    continue
                except InvariantViolation as exc:
                    log.error("Invariant violation classifying %s: %s", job.id, exc)
                    result.violations.append(f"{job.id}: {type(exc).__name__}: {exc}")
                    continue
                except Exception as exc:
                    msg = f"{type(exc).__name__}: {exc}"
                    log.error("Classification failed for %s (%s): %s", job.id, job.title, msg)
                    result.errors.append(f"{job.id}: {msg}")
                    self._mark_for_review(job, msg)
                    result.needs_review += 1
                    continue

                result.processed += 1
                if updated.status is JobStatus.APPROVED:
                    result.approved += 1
                elif updated.status is JobStatus.FILTERED_OUT:
                    result.filtered += 1
                else:
                    result.needs_review += 1
                if classifier.wants_detailed(rating):
                    analyses[tier2.submit(self._analyze, classifier, updated)] = updated

            for future in as_completed(analyses):
                job = analyses[future]
                try:
                    future.result()
                    result.analyzed += 1
                except Exception as exc:
                    log.error("Storing analysis failed for %s: %s", job.id, exc)
                    result.errors.append(f"{job.id}: analysis: {exc}")

        result.elapsed_seconds = time.monotonic() - started
        log.info(
            "Classify complete: processed=%d, approved=%d, filtered=%d, review=%d, errors=%d",
            result.processed, result.approved, result.filtered, result.needs_review, len(result.errors),
        )
        if record_stats:
            self._record_stats(result, emailed=0, elapsed=result.elapsed_seconds)
        return result

    # ------------------------------------------------------------------
    # email handoff and full run
    # ------------------------------------------------------------------

    def deliver_approved(self) -> tuple[int, list[str]]:
        """Hand approved, not yet emailed jobs to the email collaborator."""
        if self.deliver is None:
            return 0, []
        jobs = self.store.list_jobs(JobStatus.APPROVED, emailed=False)
        if not jobs:
            return 0, []
        try:
            ok = self.deliver(jobs)
        except Exception as exc:
            log.error("Email delivery failed: %s", exc)
            return 0, [f"email: {exc}"]
        if not ok:
            log.warning("Email delivery skipped or failed, %d job(s) stay approved", len(jobs))
            return 0, []

        emailed, errors = 0, []
        for job in jobs:
            try:
                self.store.transition(job.id, JobStatus.EMAILED, expected=JobStatus.APPROVED, emailed=True)
                emailed += 1
            except Exception as exc:
                log.error("Could not mark %s emailed: %s", job.id, exc)
                errors.append(f"{job.id}: {exc}")
        log.info("Emailed %d approved job(s)", emailed)
        return emailed, errors

    def run_full(self) -> FullRunResult:
        """Ingest, classify when something new arrived, then email approved jobs."""
        started = time.monotonic()
        result = FullRunResult(ingest=self.ingest())
        result.errors += result.ingest.errors
        result.cancelled = result.ingest.cancelled

        if result.ingest.added and not self.cancelled:
            result.classify = self.classify(record_stats=False)
            result.errors += result.classify.errors
            result.cancelled = result.classify.cancelled
        else:
            log.info("No new jobs admitted, skipping classification")

        email_errors: list[str] = []
        if result.classify and result.classify.approved and not self.cancelled:
            result.emailed, email_errors = self.deliver_approved()
            result.errors += email_errors

        result.elapsed_seconds = time.monotonic() - started
        self._record_stats(
            result.classify or ClassifyResult(), result.emailed, result.elapsed_seconds,
            extra_errors=len(result.ingest.errors) + len(result.ingest.violations) + len(email_errors),
        )
        log.info(
            "Run complete: new=%d, processed=%d, approved=%d, filtered=%d, emailed=%d, errors=%d",
            result.ingest.added, result.processed, result.approved, result.filtered,
            result.emailed, len(result.errors),
        )
        return result

    def _record_stats(self, result: ClassifyResult, emailed: int, elapsed: float, extra_errors: int = 0) -> None:
        stats = ProcessingRunStats(
            run_date=self._today(),
            jobs_processed=result.processed,
            jobs_approved=result.approved,
            jobs_filtered=result.filtered,
            jobs_emailed=emailed,
            errors_count=len(result.errors) + len(result.violations) + extra_errors,
            processing_time_seconds=round(elapsed, 3),
        )
        try:
            self.store.record_run_stats(stats)
        except Exception as exc:
            log.error("Could not record run stats: %s", exc)

    # ------------------------------------------------------------------
    # probes
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        today = self.store.get_run_stats(self._today())
        return {
            "counts": self.store.status_counts(),
            "feeds": [
                {
                    "id": f.id,
                    "name": f.name,
                    "last_fetched": f.last_fetched,
                    "last_fetch_status": f.last_fetch_status,
                    "last_error": f.last_error,
                    "job_count": f.job_count,
                }
                for f in self.store.list_feeds(enabled_only=True)
            ],
            "today": asdict(today) if today else None,
            "llm_usage": self.store.usage_summary(days=30),
        }

    def test_agents(self) -> dict[str, ConnectionTestResult | None]:
        """Connectivity check for each enabled agent; None for a disabled one."""
        results: dict[str, ConnectionTestResult | None] = {}
        for agent in (self.llm.agent1, self.llm.agent2):
            results[agent.name] = self.provider_factory(agent).test_connection() if agent.enabled else None
        return results

    def list_models(self, agent_name: str = "agent1") -> list[dict[str, Any]]:
        agent = getattr(self.llm, agent_name, None)
        if agent is None:
            raise ConfigurationError(f"Unknown agent {agent_name!r}")
        provider = self.provider_factory(agent)
        if not hasattr(provider, "list_models"):
            raise ConfigurationError(f"{agent.provider.value} has no model discovery; only the local endpoint does")
        return provider.list_models()
